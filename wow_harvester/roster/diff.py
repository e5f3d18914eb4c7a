"""
Roster diff: classify the change between two membership snapshots.

Member ids are partitioned into three sets::

    leave     = previous − current   → LEAVE
    join      = current − previous   → JOIN
    intersect = previous ∩ current   → PROMOTE / DEMOTE when the rank changed

Audit suppression around the owner rank:
  - LEAVE of a member whose previous rank was the owner rank is not audited;
  - JOIN of a member whose new rank is the owner rank is not audited;
  - PROMOTE/DEMOTE is not audited when either endpoint is the owner rank.
Suppressed events are still returned and still applied to membership.

When the owner member itself changes, ``OWNER_CHANGE`` entries are audited
for the outgoing and the incoming owner instead.

``diff()`` is pure.  Persisting ``DiffResult.upserts`` / ``removals`` and the
audit rows is ``RosterSyncService``'s job.

Example::

    previous = {1: RosterMember(member_id=1, rank=0),   # A, owner
                2: RosterMember(member_id=2, rank=2)}   # B
    current  = {2: RosterMember(member_id=2, rank=0),   # B, new owner
                3: RosterMember(member_id=3, rank=2)}   # C
    result = diff(previous, current)
    # B PROMOTE 2→0 (not audited), A LEAVE (not audited), C JOIN (audited),
    # OWNER_CHANGE for A and B (audited)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from wow_harvester.models.guild import AuditAction, AuditLogEntry, GuildRole, RosterMember

_ROSTER_ACTIONS = frozenset({AuditAction.JOIN, AuditAction.LEAVE, AuditAction.PROMOTE, AuditAction.DEMOTE})


@dataclass(frozen=True)
class RosterEvent:
    """One classified transition.

    Attributes:
        member_id: Subject of the transition.
        action:    JOIN / LEAVE / PROMOTE / DEMOTE / OWNER_CHANGE.
        before:    Previous rank (``None`` for JOIN).
        after:     New rank (``None`` for LEAVE).
        audited:   False when suppressed from the audit log.
        member:    The current (or, for LEAVE, previous) roster row.
    """

    member_id: int
    action: AuditAction
    before: Optional[int]
    after: Optional[int]
    audited: bool
    member: RosterMember


@dataclass(frozen=True)
class DiffResult:
    events: tuple[RosterEvent, ...] = ()
    upserts: tuple[RosterMember, ...] = ()
    removals: tuple[int, ...] = ()
    previous_owner: Optional[int] = None
    current_owner: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.events

    @property
    def owner_changed(self) -> bool:
        return any(e.action == AuditAction.OWNER_CHANGE for e in self.events)

    def by_action(self, action: AuditAction) -> list[RosterEvent]:
        return [e for e in self.events if e.action == action]

    @property
    def joins(self) -> list[RosterEvent]:
        return self.by_action(AuditAction.JOIN)

    @property
    def leaves(self) -> list[RosterEvent]:
        return self.by_action(AuditAction.LEAVE)

    @property
    def audited_events(self) -> list[RosterEvent]:
        return [e for e in self.events if e.audited]

    def audit_entries(self, group_id: str, observed_at: datetime) -> list[AuditLogEntry]:
        """Audit rows for every non-suppressed event."""
        return [
            AuditLogEntry(
                subject_id=e.member_id,
                group_id=group_id,
                action=e.action,
                before=e.before,
                after=e.after,
                observed_at=observed_at,
                subject_name=e.member.name,
            )
            for e in self.audited_events
        ]


def _owner_of(roster: Mapping[int, RosterMember], owner_rank: int) -> Optional[int]:
    owners = sorted(mid for mid, m in roster.items() if m.rank == owner_rank)
    return owners[0] if owners else None


def diff(
    previous: Mapping[int, RosterMember],
    current: Mapping[int, RosterMember],
    *,
    owner_rank: int = GuildRole.OWNER,
    lower_rank_is_higher: bool = True,
    suppress_initial_joins: bool = False,
    detect_owner_change: bool = True,
) -> DiffResult:
    """Diff two roster snapshots keyed by ``member_id``.

    Args:
        previous: Last persisted roster.
        current: Freshly fetched roster.
        owner_rank: Rank value that marks the owner role.
        lower_rank_is_higher: When True a numerically lower rank is more
            authority, so moving to a lower number is a PROMOTE.
        suppress_initial_joins: Do not audit JOINs when ``previous`` is empty
            (first-time indexing of a group).
        detect_owner_change: Emit OWNER_CHANGE entries when the owner member
            differs between snapshots that both have one.

    Returns:
        ``DiffResult`` with events ordered LEAVE, JOIN, rank changes,
        OWNER_CHANGE, each by member id.
    """
    owner_rank = int(owner_rank)
    prev_ids = set(previous)
    curr_ids = set(current)
    initial = suppress_initial_joins and not previous

    events: list[RosterEvent] = []
    upserts: list[RosterMember] = []

    for member_id in sorted(prev_ids - curr_ids):
        member = previous[member_id]
        events.append(
            RosterEvent(
                member_id=member_id,
                action=AuditAction.LEAVE,
                before=member.rank,
                after=None,
                audited=member.rank != owner_rank,
                member=member,
            )
        )

    for member_id in sorted(curr_ids - prev_ids):
        member = current[member_id]
        events.append(
            RosterEvent(
                member_id=member_id,
                action=AuditAction.JOIN,
                before=None,
                after=member.rank,
                audited=member.rank != owner_rank and not initial,
                member=member,
            )
        )
        upserts.append(member)

    for member_id in sorted(prev_ids & curr_ids):
        old, new = previous[member_id], current[member_id]
        if old != new:
            upserts.append(new)
        if old.rank == new.rank:
            continue
        moved_up = new.rank < old.rank if lower_rank_is_higher else new.rank > old.rank
        events.append(
            RosterEvent(
                member_id=member_id,
                action=AuditAction.PROMOTE if moved_up else AuditAction.DEMOTE,
                before=old.rank,
                after=new.rank,
                audited=old.rank != owner_rank and new.rank != owner_rank,
                member=new,
            )
        )

    previous_owner = _owner_of(previous, owner_rank)
    current_owner = _owner_of(current, owner_rank)
    if (
        detect_owner_change
        and previous_owner is not None
        and current_owner is not None
        and previous_owner != current_owner
    ):
        outgoing = current.get(previous_owner) or previous[previous_owner]
        events.append(
            RosterEvent(
                member_id=previous_owner,
                action=AuditAction.OWNER_CHANGE,
                before=owner_rank,
                after=current[previous_owner].rank if previous_owner in current else None,
                audited=True,
                member=outgoing,
            )
        )
        events.append(
            RosterEvent(
                member_id=current_owner,
                action=AuditAction.OWNER_CHANGE,
                before=previous[current_owner].rank if current_owner in previous else None,
                after=owner_rank,
                audited=True,
                member=current[current_owner],
            )
        )

    return DiffResult(
        events=tuple(events),
        upserts=tuple(upserts),
        removals=tuple(sorted(prev_ids - curr_ids)),
        previous_owner=previous_owner,
        current_owner=current_owner,
    )


def is_roster_action(action: AuditAction) -> bool:
    return action in _ROSTER_ACTIONS
