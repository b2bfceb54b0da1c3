"""
Test support utilities for release-spine tests.

Helpers that don't fit as pytest fixtures but are used across test files:
canned migration sets, tracking-table inspection, and a migration engine
that records the order migrations are applied in.
"""

from __future__ import annotations

import sqlite3

from release_spine.config import StoreConfig
from release_spine.connector import ConnectedStore
from release_spine.migrations import MigrationAsset, SqlMigrationEngine

TEST_SUBSYSTEMS = ["crypto", "sqlalchemy", "driver:sqlite"]

# Three migrations per store, as in the two-store release scenario
BILLING_MIGRATIONS = {
    1: "CREATE TABLE invoices (id INTEGER PRIMARY KEY, total INTEGER NOT NULL);",
    2: "ALTER TABLE invoices ADD COLUMN status TEXT NOT NULL DEFAULT 'open';",
    3: "CREATE INDEX ix_invoices_status ON invoices (status);",
}

ACCOUNTS_MIGRATIONS = {
    1: "CREATE TABLE accounts (id INTEGER PRIMARY KEY, email TEXT NOT NULL UNIQUE);",
    2: "INSERT INTO accounts (id, email) VALUES (1, 'admin@example.com');",
    3: (
        "CREATE TABLE sessions (\n"
        "    id INTEGER PRIMARY KEY,\n"
        "    account_id INTEGER NOT NULL REFERENCES accounts (id)\n"
        ");"
    ),
}

# Violates accounts.email NOT NULL
BROKEN_ACCOUNTS_V2 = "INSERT INTO accounts (id, email) VALUES (1, NULL);"


def db_path(store: StoreConfig) -> str:
    """Filesystem path of a ``sqlite:///`` store."""
    return store.url[len("sqlite:///"):]


def table_exists(store: StoreConfig, table: str) -> bool:
    conn = sqlite3.connect(db_path(store))
    try:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
        ).fetchone()
        return row is not None
    finally:
        conn.close()


def applied_versions(store: StoreConfig) -> list[int]:
    """Versions recorded in a store's tracking table (empty if no table)."""
    if not table_exists(store, "schema_migrations"):
        return []
    conn = sqlite3.connect(db_path(store))
    try:
        return [row[0] for row in conn.execute("SELECT version FROM schema_migrations ORDER BY version")]
    finally:
        conn.close()


def fetch_all(store: StoreConfig, sql: str) -> list[tuple]:
    conn = sqlite3.connect(db_path(store))
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


class RecordingEngine(SqlMigrationEngine):
    """SqlMigrationEngine that records ``(store, version)`` as each migration starts."""

    def __init__(self, events: list[tuple[str, object]] | None = None) -> None:
        super().__init__()
        self.events: list[tuple[str, object]] = events if events is not None else []

    def _apply_one(self, store: ConnectedStore, asset: MigrationAsset) -> None:
        self.events.append((store.name, asset.version))
        super()._apply_one(store, asset)
