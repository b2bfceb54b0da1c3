"""Migration engine and runner.

Reads versioned ``.sql`` files from each store's migrations directory, tracks
applied versions in the ``schema_migrations`` table, and applies pending ones
in ascending version order.

The runner is stateless across invocations: what has been applied is known
only from each store's own tracking table, so a second run after a clean
success applies nothing and a run after a failure resumes at the first
unapplied version.

Migration files are named ``<version>_<description>.sql``::

    priv/billing/migrations/
        001_create_invoices.sql
        002_add_invoice_status.sql
        010_backfill_totals.sql

Each file is applied inside its own transaction together with its tracking
row.  A failing file is rolled back by the store; versions committed before
it stay applied.  No down migrations are run.

Example::

    from release_spine.migrations import SqlMigrationEngine, run_migrations

    applied = run_migrations(connected_stores, SqlMigrationEngine())
    # {"billing": [1, 2, 3], "accounts": []}
"""

from __future__ import annotations

import re
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from sqlalchemy import text

from release_spine.connector import ConnectedStore
from release_spine.errors import MigrationError
from release_spine.logging import LogContext, get_logger

logger = get_logger(__name__)

TRACKING_TABLE = "schema_migrations"

_MIGRATION_FILE = re.compile(r"^(?P<version>\d+)_(?P<name>[A-Za-z0-9][\w.-]*)\.sql$")


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class MigrationAsset:
    """A single versioned schema change discovered on disk."""

    version: int
    name: str
    path: Path

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")


@dataclass(frozen=True)
class AppliedMigration:
    """Row of the tracking table."""

    version: int
    name: str
    applied_at: str


def split_sql(sql: str) -> list[str]:
    """Split a SQL script into individual statements.

    A statement ends at the first line after which the accumulated text is
    complete according to ``sqlite3.complete_statement``, so semicolons
    inside string literals and ``CREATE TRIGGER ... BEGIN ... END;`` bodies
    do not split it.  Blank lines and ``--`` comment lines are dropped.
    """
    statements = []
    current: list[str] = []
    for line in sql.splitlines():
        stripped = line.strip()
        if stripped.startswith("--") or not stripped:
            continue
        current.append(line)
        if sqlite3.complete_statement("\n".join(current)):
            stmt = "\n".join(current).strip()
            if stmt and stmt != ";":
                statements.append(stmt)
            current = []
    if current:
        stmt = "\n".join(current).strip()
        if stmt:
            statements.append(stmt)
    return statements


def discover_migrations(store: str, asset_path: Path) -> list[MigrationAsset]:
    """Return the migrations under *asset_path*, sorted by version.

    A missing directory means the store has no migrations.

    Raises:
        MigrationError: If a ``.sql`` file is misnamed or two files share a
            version.
    """
    if not asset_path.is_dir():
        return []

    by_version: dict[int, MigrationAsset] = {}
    for path in asset_path.glob("*.sql"):
        match = _MIGRATION_FILE.match(path.name)
        if match is None:
            raise MigrationError(
                f"migration file {path.name!r} for store {store!r} is not named <version>_<name>.sql",
                store=store,
            ).with_context(path=str(path))
        version = int(match.group("version"))
        if version in by_version:
            raise MigrationError(
                f"store {store!r} has two migrations with version {version}: "
                f"{by_version[version].path.name}, {path.name}",
                store=store,
                version=version,
            ).with_context(path=str(asset_path))
        by_version[version] = MigrationAsset(version=version, name=match.group("name"), path=path)

    return [by_version[v] for v in sorted(by_version)]


class MigrationEngine(Protocol):
    """Applies a store's migrations.  The runner only talks to this."""

    def apply_all(
        self,
        store: ConnectedStore,
        asset_path: Path,
        direction: Direction | str = Direction.UP,
    ) -> list[int]:
        """Apply every unapplied migration; return the versions applied."""
        ...

    def pending(self, store: ConnectedStore, asset_path: Path) -> list[int]:
        """Return the versions that ``apply_all`` would apply."""
        ...


class SqlMigrationEngine:
    """Migration engine for plain ``.sql`` files over a SQLAlchemy connection.

    Parameters
    ----------
    table
        Name of the tracking table.  Defaults to ``schema_migrations``.
    """

    def __init__(self, table: str = TRACKING_TABLE) -> None:
        self._table = table

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply_all(
        self,
        store: ConnectedStore,
        asset_path: Path,
        direction: Direction | str = Direction.UP,
    ) -> list[int]:
        try:
            direction = Direction(direction)
        except ValueError as exc:
            raise MigrationError(
                f"unknown migration direction {direction!r}", store=store.name, cause=exc
            ) from exc
        if direction is not Direction.UP:
            raise MigrationError(
                f"direction {direction.value!r} is not supported; only up migrations are applied",
                store=store.name,
            )

        assets = discover_migrations(store.name, asset_path)
        if not assets:
            logger.info("migration.none_found", store=store.name, path=str(asset_path))

        self._ensure_tracking_table(store)
        done = {record.version for record in self.get_applied(store)}

        unknown = sorted(done - {asset.version for asset in assets})
        if unknown:
            logger.warning("migration.applied_not_on_disk", store=store.name, versions=unknown)

        applied: list[int] = []
        for asset in assets:
            if asset.version in done:
                continue
            try:
                self._apply_one(store, asset)
            except MigrationError as exc:
                exc.applied = list(applied)
                raise
            applied.append(asset.version)
            logger.info(
                "migration.applied",
                store=store.name,
                version=asset.version,
                migration=asset.path.name,
            )
        return applied

    def pending(self, store: ConnectedStore, asset_path: Path) -> list[int]:
        assets = discover_migrations(store.name, asset_path)
        self._ensure_tracking_table(store)
        done = {record.version for record in self.get_applied(store)}
        return [asset.version for asset in assets if asset.version not in done]

    def get_applied(self, store: ConnectedStore) -> list[AppliedMigration]:
        """Return the tracking table's rows in version order."""
        conn = store.connection
        with conn.begin():
            rows = conn.execute(
                text(f"SELECT version, name, applied_at FROM {self._table} ORDER BY version")
            ).all()
        return [AppliedMigration(version=row[0], name=row[1], applied_at=row[2]) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_tracking_table(self, store: ConnectedStore) -> None:
        conn = store.connection
        try:
            with conn.begin():
                conn.exec_driver_sql(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._table} (
                        version BIGINT PRIMARY KEY,
                        name VARCHAR(255) NOT NULL,
                        applied_at VARCHAR(64) NOT NULL
                    )
                    """
                )
        except Exception as exc:
            raise MigrationError(
                f"cannot create {self._table} for store {store.name!r}: {exc}",
                store=store.name,
                cause=exc,
            ) from exc

    def _apply_one(self, store: ConnectedStore, asset: MigrationAsset) -> None:
        conn = store.connection
        try:
            statements = split_sql(asset.read())
            with conn.begin():
                for statement in statements:
                    conn.exec_driver_sql(statement)
                conn.execute(
                    text(
                        f"INSERT INTO {self._table} (version, name, applied_at) "
                        "VALUES (:version, :name, :applied_at)"
                    ),
                    {
                        "version": asset.version,
                        "name": asset.name,
                        "applied_at": datetime.now(UTC).isoformat(),
                    },
                )
        except Exception as exc:
            logger.error(
                "migration.failed",
                store=store.name,
                version=asset.version,
                migration=asset.path.name,
                error=str(exc),
            )
            raise MigrationError(
                f"migration {asset.version} ({asset.path.name}) failed for store {store.name!r}: {exc}",
                store=store.name,
                version=asset.version,
                cause=exc,
            ).with_context(path=str(asset.path)) from exc


def run_migrations(
    connected: Sequence[ConnectedStore],
    engine: MigrationEngine | None = None,
    *,
    on_progress: Callable[[str, list[int]], None] | None = None,
) -> dict[str, list[int]]:
    """Migrate every store, one after another, in configured order.

    Store N+1 is not touched until every pending migration of store N has
    committed.  The first :class:`MigrationError` stops the run.

    Args:
        on_progress: Called with the store name and the versions committed
            for it as soon as that store finishes, including a store that
            failed part way, so callers can report partial progress.

    Returns:
        Versions applied per store name.
    """
    engine = engine or SqlMigrationEngine()
    applied: dict[str, list[int]] = {}
    for entry in connected:
        with LogContext(store=entry.name):
            logger.info(f"running migrations for {entry.name}", path=str(entry.store.migrations_path))
            try:
                versions = engine.apply_all(entry, entry.store.migrations_path, direction=Direction.UP)
            except MigrationError as exc:
                if on_progress is not None:
                    on_progress(entry.name, list(exc.applied))
                raise
            applied[entry.name] = versions
            if on_progress is not None:
                on_progress(entry.name, list(versions))
            logger.info("migration.store_done", applied=len(versions))
    return applied


__all__ = [
    "TRACKING_TABLE",
    "Direction",
    "MigrationAsset",
    "AppliedMigration",
    "MigrationEngine",
    "SqlMigrationEngine",
    "split_sql",
    "discover_migrations",
    "run_migrations",
]
