"""
Shared pytest fixtures for release-spine tests.

This module provides:
- File-backed SQLite store factories with assets under tmp_path
- The two-store (billing, accounts) release configuration
- Logging cleanup between tests

Usage:
    def test_something(make_store, write_migrations):
        billing = make_store("billing")
        write_migrations(billing, {1: "CREATE TABLE t (id INTEGER);"})
"""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
import structlog

# Ensure release_spine is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from release_spine.config import ReleaseConfig, StoreConfig
from tests._support import ACCOUNTS_MIGRATIONS, BILLING_MIGRATIONS, TEST_SUBSYSTEMS, RecordingEngine


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without an explicit marker as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Cleanup Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """Undo configure_logging() so each test starts from structlog defaults."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture()
def priv_root(tmp_path: Path) -> Path:
    root = tmp_path / "priv"
    root.mkdir()
    return root


@pytest.fixture()
def make_store(tmp_path: Path, priv_root: Path) -> Callable[..., StoreConfig]:
    """Factory for a StoreConfig backed by a SQLite file in tmp_path."""

    def _make(name: str, *, url: str | None = None, app: str = "shop") -> StoreConfig:
        filename = name.lower().replace(".", "_") + ".db"
        return StoreConfig(
            name=name,
            url=url or f"sqlite:///{tmp_path / filename}",
            app=app,
            priv_root=priv_root,
        )

    return _make


@pytest.fixture()
def write_migrations() -> Callable[[StoreConfig, dict[int, str]], Path]:
    """Write ``{version: sql}`` as ``NNN_mN.sql`` files under the store's migrations path."""

    def _write(store: StoreConfig, migrations: dict[int, str]) -> Path:
        path = store.migrations_path
        path.mkdir(parents=True, exist_ok=True)
        for version, sql in migrations.items():
            (path / f"{version:03d}_m{version}.sql").write_text(sql, encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def two_stores(make_store, write_migrations) -> ReleaseConfig:
    """billing then accounts, three pending migrations each."""
    billing = make_store("billing")
    accounts = make_store("accounts")
    write_migrations(billing, BILLING_MIGRATIONS)
    write_migrations(accounts, ACCOUNTS_MIGRATIONS)
    return ReleaseConfig(stores=[billing, accounts], subsystems=TEST_SUBSYSTEMS)


@pytest.fixture()
def recording_engine() -> RecordingEngine:
    return RecordingEngine()
