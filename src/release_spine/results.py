"""Result model for a task run.

A :class:`RunReport` captures what one invocation of ``migrate`` or
``migrate-and-seed`` did: the subsystems it started, the migration versions
applied per store, which stores were seeded, the stage it ended in, and, on
failure, the structured error and the exit status.

The launcher only looks at the exit status; operators read the summary
line; log aggregators get ``model_dump()`` as structured fields.

Tags:
    results, models, pydantic, report, release-spine
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Overall status of a task run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class StoreOutcome(BaseModel):
    """What happened to a single store during the run."""

    store: str
    migrations_applied: list[int] = Field(default_factory=list)
    seeded: bool = False


class RunReport(BaseModel):
    """Result of one task run."""

    run_id: str
    operation: str
    stage: str = "idle"
    status: RunStatus = RunStatus.PENDING
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str | None = None
    duration_seconds: float = 0.0
    subsystems: list[str] = Field(default_factory=list)
    stores: list[StoreOutcome] = Field(default_factory=list)
    failed_stage: str | None = None
    error: dict[str, Any] | None = None
    exit_code: int | None = None
    summary: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def migrations_applied(self) -> int:
        return sum(len(s.migrations_applied) for s in self.stores)

    def outcome(self, store: str) -> StoreOutcome:
        """Return (creating if needed) the outcome entry for *store*."""
        for entry in self.stores:
            if entry.store == store:
                return entry
        entry = StoreOutcome(store=store)
        self.stores.append(entry)
        return entry

    def mark_complete(self, exit_code: int, summary: str) -> None:
        """Finalize the run: timestamps, duration, status and summary."""
        self.completed_at = datetime.now(UTC).isoformat()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()
        self.exit_code = exit_code
        self.status = RunStatus.SUCCEEDED if exit_code == 0 else RunStatus.FAILED
        self.summary = summary
