from wow_harvester.roster.diff import DiffResult, RosterEvent, diff, is_roster_action
from wow_harvester.roster.service import RosterSyncService

__all__ = ["DiffResult", "RosterEvent", "RosterSyncService", "diff", "is_roster_action"]
