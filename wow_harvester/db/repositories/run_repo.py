"""Repository for sweep ``run_metadata`` records."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Optional

from wow_harvester.db.repositories.base import BaseRepository
from wow_harvester.models.meta import RunMetadata
from wow_harvester.utils.time_utils import isoformat_or_none


class RunMetadataRepository(BaseRepository):
    """Read/write access to the ``run_metadata`` table."""

    def insert_run(self, run: RunMetadata) -> int:
        """Insert a new run record.

        Returns:
            The newly assigned ``run_id``.
        """
        self.execute(
            """
            INSERT INTO run_metadata (
                run_slug, pipeline_stage, status, config_snapshot,
                rows_processed, error_message, started_at, finished_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                run.run_slug,
                run.pipeline_stage,
                run.status,
                json.dumps(run.config_snapshot, default=str),
                run.rows_processed,
                run.error_message,
                run.started_at.isoformat(),
                isoformat_or_none(run.finished_at),
            ),
        )
        return self.last_insert_rowid()

    def update_run_status(
        self,
        run_id: int,
        status: str,
        rows_processed: int,
        error_message: Optional[str] = None,
        finished_at: Optional[datetime] = None,
    ) -> None:
        self.execute(
            """
            UPDATE run_metadata
            SET status = ?, rows_processed = ?, error_message = ?, finished_at = ?
            WHERE run_id = ?;
            """,
            (status, rows_processed, error_message, isoformat_or_none(finished_at), run_id),
        )

    def get_by_slug(self, run_slug: str) -> Optional[RunMetadata]:
        row = self.fetchone("SELECT * FROM run_metadata WHERE run_slug = ?;", (run_slug,))
        return _row_to_run(row) if row else None

    def recent(self, pipeline_stage: Optional[str] = None, limit: int = 20) -> list[RunMetadata]:
        if pipeline_stage is None:
            rows = self.fetchall(
                "SELECT * FROM run_metadata ORDER BY started_at DESC, run_id DESC LIMIT ?;",
                (limit,),
            )
        else:
            rows = self.fetchall(
                """
                SELECT * FROM run_metadata WHERE pipeline_stage = ?
                ORDER BY started_at DESC, run_id DESC LIMIT ?;
                """,
                (pipeline_stage, limit),
            )
        return [_row_to_run(r) for r in rows]


def _row_to_run(row: sqlite3.Row) -> RunMetadata:
    return RunMetadata(
        run_id=row["run_id"],
        run_slug=row["run_slug"],
        pipeline_stage=row["pipeline_stage"],
        status=row["status"],
        config_snapshot=json.loads(row["config_snapshot"]),
        rows_processed=row["rows_processed"],
        error_message=row["error_message"],
        started_at=datetime.fromisoformat(row["started_at"]),
        finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
    )
