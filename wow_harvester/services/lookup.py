"""
On-demand character lookup over request/reply.

``lookup()`` answers from the database when the character is already known;
otherwise it publishes an urgent request-origin job and waits up to
``timeout`` seconds for the worker's reply.  A timeout is not an error: the
job stays queued, completes on its own, and the next lookup finds the row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Optional

from wow_harvester.db.persistence import Persistence
from wow_harvester.messaging.envelope import CharacterOrigin, character_job, make_guid
from wow_harvester.messaging.router import RequestStatus, Router
from wow_harvester.models.character import Character
from wow_harvester.worker.handlers import JobStatus

logger = logging.getLogger(__name__)


class LookupStatus(StrEnum):
    FOUND = "found"
    PENDING = "pending"
    NOT_FOUND = "not-found"
    FAILED = "failed"


@dataclass(frozen=True)
class LookupResult:
    status: LookupStatus
    guid: str
    character: Optional[Character] = None
    error: Optional[str] = None

    @property
    def message(self) -> str:
        if self.status == LookupStatus.PENDING:
            return "Not found yet; queued for retrieval."
        if self.status == LookupStatus.NOT_FOUND:
            return "Character does not exist upstream."
        if self.status == LookupStatus.FAILED:
            return f"Lookup failed: {self.error}"
        return "Found."


class CharacterLookupService:
    """Read-through character lookup.

    Args:
        db:      Persistence facade (read side).
        router:  Router for the request/reply call.
        timeout: Default reply timeout in seconds.
    """

    def __init__(self, db: Persistence, router: Router, timeout: Optional[float] = None) -> None:
        self.db = db
        self.router = router
        self.timeout = timeout

    async def lookup(
        self,
        name: str,
        realm: str,
        timeout: Optional[float] = None,
        *,
        refresh: bool = False,
        access_token: Optional[str] = None,
    ) -> LookupResult:
        guid = make_guid(name, realm)
        if not refresh:
            stored = self.db.characters.get(guid)
            if stored is not None:
                return LookupResult(LookupStatus.FOUND, guid, character=stored)

        envelope = character_job(
            name, realm, CharacterOrigin.REQUEST, source="lookup", access_token=access_token
        )
        result = await self.router.request(envelope, timeout if timeout is not None else self.timeout)

        if result.status == RequestStatus.PENDING:
            return LookupResult(LookupStatus.PENDING, guid)
        if result.status == RequestStatus.FAILED:
            return LookupResult(LookupStatus.FAILED, guid, error=result.error)

        body = result.body or {}
        if body.get("status") == JobStatus.NOT_FOUND:
            return LookupResult(LookupStatus.NOT_FOUND, guid, error=body.get("error"))
        if "character" in body:
            return LookupResult(LookupStatus.FOUND, guid, character=Character.model_validate(body["character"]))
        stored = self.db.characters.get(guid)
        if stored is not None:
            return LookupResult(LookupStatus.FOUND, guid, character=stored)
        return LookupResult(LookupStatus.PENDING, guid)
