"""
Sweep run metadata — the audit record for each producer run.

``RunMetadata`` records a ``config_snapshot`` (full AppConfig as a dict) so
any sweep can be reproduced, plus how many envelopes it emitted.

It is the only Pydantic model in the system that is NOT frozen: its
``status``, ``rows_processed``, ``error_message`` and ``finished_at`` fields
are updated as the sweep executes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

VALID_PIPELINE_STAGES = frozenset({"sweep_ladder", "sweep_guilds", "sweep_auctions"})
VALID_RUN_STATUSES = frozenset({"started", "success", "failed", "skipped"})


class RunMetadata(BaseModel):
    """Sweep execution audit record.

    Attributes:
        run_id: Auto-assigned DB PK; ``None`` before insertion.
        run_slug: UUID4 string uniquely identifying this run.
        pipeline_stage: Which sweep produced this record.
        status: Current execution status.
        config_snapshot: Full ``AppConfig.model_dump()`` at run start time.
        rows_processed: Envelopes emitted.
        error_message: Error description (or skip reason).
        started_at: UTC datetime when the run began.
        finished_at: UTC datetime when the run completed, failed or was skipped.
    """

    model_config = ConfigDict(frozen=False)

    run_id: Optional[int] = None
    run_slug: str
    pipeline_stage: str
    status: str = "started"
    config_snapshot: dict[str, Any]
    rows_processed: int = 0
    error_message: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    @field_validator("pipeline_stage")
    @classmethod
    def validate_pipeline_stage(cls, v: str) -> str:
        if v not in VALID_PIPELINE_STAGES:
            raise ValueError(
                f"Unknown pipeline_stage '{v}'. Must be one of {sorted(VALID_PIPELINE_STAGES)}."
            )
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in VALID_RUN_STATUSES:
            raise ValueError(
                f"Unknown status '{v}'. Must be one of {sorted(VALID_RUN_STATUSES)}."
            )
        return v
