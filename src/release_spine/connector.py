"""Store connector: one small SQLAlchemy pool per configured store.

Migrations run serially per store, so each pool is sized for migration
work rather than request traffic: ``pool_size`` connections (one by default)
and no overflow.  The connection checked out here is held until the process
shuts down and is the only one the migration and seed runners use.

Connecting is all-or-nothing.  If any store fails, the stores already opened
are closed again and :class:`~release_spine.errors.StoreConnectionError`
propagates, so no migration ever runs against a partial store set.

Tags:
    connection, pool, sqlalchemy, stores, release-spine

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.pool import QueuePool

from release_spine.config import ReleaseConfig, StoreConfig
from release_spine.errors import StoreConnectionError
from release_spine.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ConnectedStore:
    """A store together with its live pool and held connection."""

    store: StoreConfig
    engine: Engine
    connection: Connection

    @property
    def name(self) -> str:
        return self.store.name

    @property
    def safe_url(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)

    def close(self) -> None:
        self.connection.close()
        self.engine.dispose()


def _connect_args(backend: str, timeout: float) -> dict[str, Any]:
    if backend == "sqlite":
        return {"timeout": timeout, "check_same_thread": False}
    if backend in ("postgresql", "mysql", "mariadb"):
        return {"connect_timeout": max(1, int(timeout))}
    return {}


def create_store_engine(store: StoreConfig, *, pool_size: int = 1, timeout: float = 10.0) -> Engine:
    """Create the migration-sized engine for *store*.

    Parameters
    ----------
    store:
        Store whose ``url`` is passed to ``sqlalchemy.create_engine``.
    pool_size:
        Pool capacity; ``max_overflow`` is always 0.
    timeout:
        Seconds to wait for a connection from the server / file lock.
    """
    url = make_url(store.url)
    backend = url.get_backend_name()

    engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=0,
        pool_timeout=timeout,
        connect_args=_connect_args(backend, timeout),
    )

    if backend == "sqlite":

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            # pysqlite must not open transactions itself, or DDL escapes them
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_sqlite(conn: Connection) -> None:
            conn.exec_driver_sql("BEGIN")

    return engine


def connect_store(store: StoreConfig, *, pool_size: int = 1, timeout: float = 10.0) -> ConnectedStore:
    """Open *store*'s pool, check out a connection and verify it answers."""
    engine: Engine | None = None
    try:
        engine = create_store_engine(store, pool_size=pool_size, timeout=timeout)
        connection = engine.connect()
        try:
            connection.execute(text("SELECT 1"))
            # End the autobegun transaction so runners can begin their own
            connection.rollback()
        except Exception:
            connection.close()
            raise
    except Exception as exc:
        if engine is not None:
            engine.dispose()
        raise StoreConnectionError(
            f"cannot connect to store {store.name!r}: {exc}",
            store=store.name,
            cause=exc,
        ) from exc

    connected = ConnectedStore(store=store, engine=engine, connection=connection)
    logger.info(
        "store.connected",
        store=store.name,
        url=connected.safe_url,
        pool_size=pool_size,
    )
    return connected


def connect_stores(config: ReleaseConfig) -> list[ConnectedStore]:
    """Connect every configured store, in order, or none at all.

    Raises:
        StoreConnectionError: Naming the first store that failed.  Stores
            opened before it are closed first.
    """
    connected: list[ConnectedStore] = []
    for store in config.stores:
        try:
            connected.append(
                connect_store(store, pool_size=config.pool_size, timeout=config.connect_timeout)
            )
        except StoreConnectionError:
            close_stores(connected)
            raise
    return connected


def close_stores(connected: Sequence[ConnectedStore]) -> None:
    """Release every held connection and dispose its pool, newest first."""
    for entry in reversed(connected):
        try:
            entry.close()
        except Exception as exc:
            logger.warning("store.close_failed", store=entry.name, error=str(exc))
        else:
            logger.debug("store.closed", store=entry.name)


__all__ = [
    "ConnectedStore",
    "create_store_engine",
    "connect_store",
    "connect_stores",
    "close_stores",
]
