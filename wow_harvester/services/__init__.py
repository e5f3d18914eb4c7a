from wow_harvester.services.lookup import CharacterLookupService, LookupResult, LookupStatus

__all__ = ["CharacterLookupService", "LookupResult", "LookupStatus"]
