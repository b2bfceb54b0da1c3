"""Seed runner: optional one-time data population per store.

Runs only after every store has migrated.  For each store, in configured
order, at most one seed asset is executed.  Where it comes from, in
precedence order:

1. a function registered for the store in a :class:`SeedRegistry`
2. ``<seeds_path>/seed.sql``, executed in one transaction
3. an executable ``<seeds_path>/seed``, run as a child process

Seed code found on disk is never evaluated in-process; executables get the
store's details through the environment instead::

    RELEASE_STORE         store name
    RELEASE_DATABASE_URL  store DSN
    RELEASE_PRIV_ROOT     store asset root

A store with no seed asset is skipped.  The first failing seed stops
seeding with :class:`~release_spine.errors.SeedError`; stores seeded before
it keep their data.  Seeds are not tracked between runs, so making them
idempotent is the seed author's job.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from sqlalchemy.engine import Connection

from release_spine.config import StoreConfig
from release_spine.connector import ConnectedStore
from release_spine.errors import SeedError
from release_spine.logging import LogContext, get_logger
from release_spine.migrations import split_sql

logger = get_logger(__name__)

SQL_SEED = "seed.sql"
EXECUTABLE_SEED = "seed"

SeedFunction = Callable[[Connection, StoreConfig], None]

_OUTPUT_TAIL = 2000


class SeedKind(str, Enum):
    FUNCTION = "function"
    SQL = "sql"
    EXECUTABLE = "executable"


class SeedRegistry:
    """Explicit table of in-process seed functions, keyed by store name.

    Example::

        seeds = SeedRegistry()

        @seeds.register("billing")
        def seed_billing(conn, store):
            conn.exec_driver_sql("INSERT INTO plans (code) VALUES ('free')")
    """

    def __init__(self, functions: Mapping[str, SeedFunction] | None = None) -> None:
        self._functions: dict[str, SeedFunction] = dict(functions or {})

    def register(self, store: str, fn: SeedFunction | None = None):
        def _register(func: SeedFunction) -> SeedFunction:
            if store in self._functions:
                raise ValueError(f"a seed function is already registered for store {store!r}")
            self._functions[store] = func
            return func

        if fn is not None:
            return _register(fn)
        return _register

    def get(self, store: str) -> SeedFunction | None:
        return self._functions.get(store)

    def __contains__(self, store: object) -> bool:
        return store in self._functions

    def __len__(self) -> int:
        return len(self._functions)


@dataclass(frozen=True)
class SeedAsset:
    """The one seed that will run for a store."""

    store: str
    kind: SeedKind
    path: Path | None = None
    function: SeedFunction | None = None

    @property
    def label(self) -> str:
        if self.path is not None:
            return str(self.path)
        return getattr(self.function, "__qualname__", repr(self.function))


def resolve_seed(store: StoreConfig, registry: SeedRegistry | None = None) -> SeedAsset | None:
    """Find *store*'s seed asset, or ``None`` when it has none."""
    if registry is not None:
        fn = registry.get(store.name)
        if fn is not None:
            return SeedAsset(store=store.name, kind=SeedKind.FUNCTION, function=fn)

    sql_path = store.seeds_path / SQL_SEED
    if sql_path.is_file():
        return SeedAsset(store=store.name, kind=SeedKind.SQL, path=sql_path)

    exe_path = store.seeds_path / EXECUTABLE_SEED
    if exe_path.is_file():
        if not os.access(exe_path, os.X_OK):
            raise SeedError(
                f"seed script {exe_path} for store {store.name!r} is not executable",
                store=store.name,
            )
        return SeedAsset(store=store.name, kind=SeedKind.EXECUTABLE, path=exe_path)

    return None


def _tail(output: str | None) -> str:
    if not output:
        return ""
    return output.strip()[-_OUTPUT_TAIL:]


def _run_function(entry: ConnectedStore, asset: SeedAsset) -> None:
    conn = entry.connection
    with conn.begin():
        asset.function(conn, entry.store)


def _run_sql(entry: ConnectedStore, asset: SeedAsset) -> None:
    conn = entry.connection
    statements = split_sql(asset.path.read_text(encoding="utf-8"))
    with conn.begin():
        for statement in statements:
            conn.exec_driver_sql(statement)


def _run_executable(entry: ConnectedStore, asset: SeedAsset, timeout: float | None) -> None:
    store = entry.store
    env = {
        **os.environ,
        "RELEASE_STORE": store.name,
        "RELEASE_DATABASE_URL": store.url,
        "RELEASE_PRIV_ROOT": str(store.priv_root),
    }
    proc = subprocess.run(
        [str(asset.path)],
        cwd=str(store.asset_root),
        env=env,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    if proc.stdout:
        logger.info("seed.output", output=_tail(proc.stdout))
    if proc.returncode != 0:
        raise SeedError(
            f"seed script for store {store.name!r} exited with status {proc.returncode}: "
            f"{_tail(proc.stderr) or 'no output'}",
            store=store.name,
        ).with_context(path=str(asset.path), returncode=proc.returncode)


def execute_seed(entry: ConnectedStore, asset: SeedAsset, *, timeout: float | None = None) -> None:
    """Execute *asset* once against *entry*.

    Raises:
        SeedError: Wrapping whatever the seed raised or reported.
    """
    try:
        if asset.kind is SeedKind.FUNCTION:
            _run_function(entry, asset)
        elif asset.kind is SeedKind.SQL:
            _run_sql(entry, asset)
        else:
            _run_executable(entry, asset, timeout)
    except SeedError:
        raise
    except subprocess.TimeoutExpired as exc:
        raise SeedError(
            f"seed script for store {entry.name!r} did not finish within {exc.timeout}s",
            store=entry.name,
            cause=exc,
        ).with_context(path=asset.label) from exc
    except Exception as exc:
        raise SeedError(
            f"seed for store {entry.name!r} failed: {exc}",
            store=entry.name,
            cause=exc,
        ).with_context(path=asset.label) from exc


def run_seeds(
    connected: Sequence[ConnectedStore],
    *,
    registry: SeedRegistry | None = None,
    timeout: float | None = None,
) -> list[str]:
    """Seed every store that has a seed asset, in configured order.

    Returns:
        Names of the stores whose seed ran.
    """
    seeded: list[str] = []
    for entry in connected:
        with LogContext(store=entry.name):
            asset = resolve_seed(entry.store, registry)
            if asset is None:
                logger.debug("seed.none_found", path=str(entry.store.seeds_path))
                continue
            logger.info(f"running seeds for {entry.name}", kind=asset.kind.value, seed=asset.label)
            try:
                execute_seed(entry, asset, timeout=timeout)
            except SeedError as exc:
                logger.error("seed.failed", error=exc.message, seeded_before=seeded)
                raise
            seeded.append(entry.name)
            logger.info("seed.done", kind=asset.kind.value)
    return seeded


__all__ = [
    "SeedKind",
    "SeedRegistry",
    "SeedAsset",
    "SeedFunction",
    "resolve_seed",
    "execute_seed",
    "run_seeds",
]
