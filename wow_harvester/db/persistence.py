"""
Persistence facade: one SQLite connection plus every repository on it.

Workers and producers hold a ``Persistence`` for their whole lifetime and
group related writes in ``transaction()`` so a handler's rows commit
together or not at all::

    with open_persistence(config.database.db_path) as db:
        with db.transaction():
            db.guilds.upsert(guild)
            db.members.upsert_many(guild.guid, members)
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Generator

from wow_harvester.db.connection import get_connection
from wow_harvester.db.migrations import run_migrations
from wow_harvester.db.repositories.character_repo import CharacterRepository
from wow_harvester.db.repositories.guild_repo import (
    AuditLogRepository,
    GuildMemberRepository,
    GuildRepository,
)
from wow_harvester.db.repositories.ladder_repo import LeaderboardRepository
from wow_harvester.db.repositories.market_repo import MarketOrderRepository
from wow_harvester.db.repositories.run_repo import RunMetadataRepository
from wow_harvester.db.schema import apply_schema

logger = logging.getLogger(__name__)


class Persistence:
    """Repositories sharing one connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.characters = CharacterRepository(conn)
        self.guilds = GuildRepository(conn)
        self.members = GuildMemberRepository(conn)
        self.audit = AuditLogRepository(conn)
        self.leaderboards = LeaderboardRepository(conn)
        self.orders = MarketOrderRepository(conn)
        self.runs = RunMetadataRepository(conn)
        self._depth = 0

    @contextmanager
    def transaction(self) -> Generator["Persistence", None, None]:
        """Commit on clean exit of the outermost block, roll back on error."""
        self._depth += 1
        try:
            yield self
        except Exception:
            if self._depth == 1:
                self.conn.rollback()
            raise
        else:
            if self._depth == 1:
                self.conn.commit()
        finally:
            self._depth -= 1


@contextmanager
def open_persistence(db_path: str, wal_mode: bool = True) -> Generator[Persistence, None, None]:
    """Open ``db_path``, bring the schema up to date and yield a ``Persistence``."""
    with get_connection(db_path, wal_mode=wal_mode) as conn:
        apply_schema(conn)
        run_migrations(conn)
        yield Persistence(conn)
