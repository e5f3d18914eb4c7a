from wow_harvester.db.persistence import Persistence, open_persistence

__all__ = ["Persistence", "open_persistence"]
