"""Lifecycle controller: the two operations a release launcher can invoke.

Manifesto:
    The task run is a bounded, one-shot batch job that gates a release.
    Stages run strictly in sequence and every error is fatal; the only
    question the launcher asks is "exit 0 or not".

    - **Linear lifecycle:** No branching, no retry edges
    - **Guarded transitions:** Illegal stage changes are a bug, not a state
    - **Always clean up:** Connections are released on success and failure
    - **One clear diagnostic:** Stage, store and version in a single line

Architecture:
    ::

        IDLE ─► DEPENDENCIES_STARTED ─► STORES_CONNECTED ─► MIGRATED ─┬─► TERMINATED
          │              │                      │               │     │
          │              │                      │               └─► SEEDED ─► TERMINATED
          └──────────────┴──────────────────────┴───────────────┴──────┴─► FAILED

        migrate           stops after MIGRATED
        migrate-and-seed  continues through SEEDED

Examples:
    >>> from release_spine.config import ReleaseConfig
    >>> from release_spine.controller import Operation, ReleaseTask
    >>> config = ReleaseConfig.from_toml("release.toml")
    >>> report = ReleaseTask(config).run(Operation.MIGRATE)
    >>> report.exit_code
    0

Tags:
    lifecycle, state-machine, orchestration, release-spine

Doc-Types:
    - API Reference
    - Operations Guide
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum

from release_spine.config import ReleaseConfig
from release_spine.connector import ConnectedStore, close_stores, connect_stores
from release_spine.dependencies import start_dependencies
from release_spine.errors import (
    ExitCode,
    InvalidTransitionError,
    ReleaseError,
    exit_code_for,
)
from release_spine.logging import LogContext, flush_logging, get_logger
from release_spine.migrations import MigrationEngine, SqlMigrationEngine, run_migrations
from release_spine.results import RunReport
from release_spine.seeds import SeedRegistry, run_seeds

logger = get_logger(__name__)


class Operation(str, Enum):
    """Externally invocable operations."""

    MIGRATE = "migrate"
    MIGRATE_AND_SEED = "migrate-and-seed"


class Stage(str, Enum):
    """Lifecycle stage of a task run.

    Valid transition graph::

        IDLE                 → DEPENDENCIES_STARTED | FAILED
        DEPENDENCIES_STARTED → STORES_CONNECTED | FAILED
        STORES_CONNECTED     → MIGRATED | FAILED
        MIGRATED             → SEEDED | TERMINATED | FAILED
        SEEDED               → TERMINATED | FAILED
        TERMINATED           → (terminal)
        FAILED               → (terminal)
    """

    IDLE = "idle"
    DEPENDENCIES_STARTED = "dependencies_started"
    STORES_CONNECTED = "stores_connected"
    MIGRATED = "migrated"
    SEEDED = "seeded"
    TERMINATED = "terminated"
    FAILED = "failed"


STAGE_TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.IDLE: frozenset({Stage.DEPENDENCIES_STARTED, Stage.FAILED}),
    Stage.DEPENDENCIES_STARTED: frozenset({Stage.STORES_CONNECTED, Stage.FAILED}),
    Stage.STORES_CONNECTED: frozenset({Stage.MIGRATED, Stage.FAILED}),
    Stage.MIGRATED: frozenset({Stage.SEEDED, Stage.TERMINATED, Stage.FAILED}),
    Stage.SEEDED: frozenset({Stage.TERMINATED, Stage.FAILED}),
    Stage.TERMINATED: frozenset(),
    Stage.FAILED: frozenset(),
}

# What the run was trying to do when it left each stage
_ATTEMPTS: dict[Stage, str] = {
    Stage.DEPENDENCIES_STARTED: "start dependencies",
    Stage.STORES_CONNECTED: "connect stores",
    Stage.MIGRATED: "run migrations",
    Stage.SEEDED: "run seeds",
    Stage.TERMINATED: "shut down",
}


def validate_stage_transition(current: Stage, target: Stage) -> None:
    """Raise :class:`InvalidTransitionError` if *current* → *target* is illegal."""
    if target not in STAGE_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value)


@dataclass
class RunContext:
    """Process-lifetime state of a task run."""

    config: ReleaseConfig
    stage: Stage = Stage.IDLE
    attempting: Stage | None = None
    connected: list[ConnectedStore] = field(default_factory=list)


class ReleaseTask:
    """Sequences dependency start, store connection, migration and seeding.

    Parameters
    ----------
    config
        The release configuration, built once at process start.
    engine
        Migration engine; defaults to :class:`SqlMigrationEngine`.
    seeds
        Optional table of in-process seed functions.

    A ``ReleaseTask`` runs once.  Use a new instance per invocation.
    """

    def __init__(
        self,
        config: ReleaseConfig,
        *,
        engine: MigrationEngine | None = None,
        seeds: SeedRegistry | None = None,
    ) -> None:
        self.context = RunContext(config=config)
        self._engine = engine or SqlMigrationEngine()
        self._seeds = seeds

    @property
    def stage(self) -> Stage:
        return self.context.stage

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def migrate(self) -> RunReport:
        """Start dependencies, connect, migrate, shut down."""
        return self.run(Operation.MIGRATE)

    def migrate_and_seed(self) -> RunReport:
        """Like :meth:`migrate`, then seed every store that has a seed."""
        return self.run(Operation.MIGRATE_AND_SEED)

    def run(self, operation: Operation | str) -> RunReport:
        """Execute *operation* and return its report.

        Never raises for a stage failure: the error is captured in the
        report, which carries the exit code.
        """
        operation = Operation(operation)
        if self.context.stage is not Stage.IDLE:
            raise InvalidTransitionError(self.context.stage.value, Stage.DEPENDENCIES_STARTED.value)

        report = RunReport(run_id=uuid.uuid4().hex[:12], operation=operation.value)
        with LogContext(operation=operation.value, run_id=report.run_id):
            try:
                self._execute(operation, report)
            except Exception as exc:
                self._fail(operation, report, exc)
            finally:
                close_stores(self.context.connected)
                self.context.connected = []
                report.stage = self.context.stage.value
                flush_logging()
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _advance(self, target: Stage) -> None:
        validate_stage_transition(self.context.stage, target)
        self.context.stage = target

    def _attempt(self, target: Stage) -> None:
        # Checked before the stage's work starts so a bug can't run it
        validate_stage_transition(self.context.stage, target)
        self.context.attempting = target

    def _execute(self, operation: Operation, report: RunReport) -> None:
        config = self.context.config

        self._attempt(Stage.DEPENDENCIES_STARTED)
        subsystems = config.required_subsystems
        logger.info("starting dependencies", subsystems=subsystems)
        started = start_dependencies(subsystems)
        report.subsystems = list(started.names)
        self._advance(Stage.DEPENDENCIES_STARTED)

        self._attempt(Stage.STORES_CONNECTED)
        logger.info("connecting stores", stores=[s.name for s in config.stores])
        if not config.stores:
            logger.warning("no stores configured")
        self.context.connected = connect_stores(config)
        for entry in self.context.connected:
            report.outcome(entry.name)
        self._advance(Stage.STORES_CONNECTED)

        self._attempt(Stage.MIGRATED)

        def record_progress(store: str, versions: list[int]) -> None:
            report.outcome(store).migrations_applied = versions

        # a failed run still reports the versions that committed
        run_migrations(self.context.connected, self._engine, on_progress=record_progress)
        self._advance(Stage.MIGRATED)

        if operation is Operation.MIGRATE_AND_SEED:
            self._attempt(Stage.SEEDED)
            seeded = run_seeds(
                self.context.connected,
                registry=self._seeds,
                timeout=config.seed_timeout,
            )
            for store in seeded:
                report.outcome(store).seeded = True
            self._advance(Stage.SEEDED)

        self._attempt(Stage.TERMINATED)
        self._advance(Stage.TERMINATED)
        report.mark_complete(
            int(ExitCode.SUCCESS),
            f"{operation.value} succeeded: {report.migrations_applied} migration(s) applied "
            f"across {len(report.stores)} store(s)",
        )
        logger.info(
            "success",
            migrations_applied=report.migrations_applied,
            seeded=[s.store for s in report.stores if s.seeded],
            duration_seconds=report.duration_seconds,
        )

    def _fail(self, operation: Operation, report: RunReport, exc: Exception) -> None:
        attempted = self.context.attempting or Stage.IDLE
        self.context.stage = Stage.FAILED
        code = exit_code_for(exc)
        report.failed_stage = attempted.value
        report.error = exc.to_dict() if isinstance(exc, ReleaseError) else {
            "error_type": type(exc).__name__,
            "message": str(exc),
            "category": "INTERNAL",
            "exit_code": int(code),
        }
        summary = failure_summary(operation, attempted, exc)
        report.mark_complete(int(code), summary)
        if isinstance(exc, ReleaseError):
            logger.error("failed", summary=summary, **report.error)
        else:
            logger.exception("failed", summary=summary, exit_code=int(code))


def failure_summary(operation: Operation, attempted: Stage, exc: BaseException) -> str:
    """Build the one-line diagnostic for a failed run.

    Example::

        failure_summary(Operation.MIGRATE, Stage.MIGRATED,
                        MigrationError("boom", store="accounts", version=2))
        # 'migrate failed while trying to run migrations (store accounts, version 2): boom'
    """
    where = []
    store = getattr(exc, "store", None)
    version = getattr(exc, "version", None)
    subsystem = getattr(exc, "subsystem", None)
    if subsystem:
        where.append(f"subsystem {subsystem}")
    if store:
        where.append(f"store {store}")
    if version is not None:
        where.append(f"version {version}")
    location = f" ({', '.join(where)})" if where else ""
    message = exc.message if isinstance(exc, ReleaseError) else f"{type(exc).__name__}: {exc}"
    action = _ATTEMPTS.get(attempted, "start")
    return f"{operation.value} failed while trying to {action}{location}: {message}"


def run_task(
    config: ReleaseConfig,
    operation: Operation | str,
    *,
    engine: MigrationEngine | None = None,
    seeds: SeedRegistry | None = None,
) -> int:
    """Run *operation* once and return the process exit status."""
    report = ReleaseTask(config, engine=engine, seeds=seeds).run(operation)
    return report.exit_code if report.exit_code is not None else int(ExitCode.INTERNAL)


__all__ = [
    "Operation",
    "Stage",
    "STAGE_TRANSITIONS",
    "RunContext",
    "ReleaseTask",
    "validate_stage_transition",
    "failure_summary",
    "run_task",
]
