"""Dependency starter: bring up the runtime subsystems a store connection needs.

A database connection is meaningless without its transport and crypto
layers, so before any store is touched the configured subsystems are
activated exactly once each, in declared order.  The first one that fails
aborts the run with :class:`~release_spine.errors.DependencyStartError`;
there is no partial-success mode and no retry.

Subsystems live in an explicit registry rather than being looked up by
module path at run time.  Built-ins:

==================  ===========================================================
Name                What starting it does
==================  ===========================================================
``crypto``          Loads ``ssl``/``hashlib`` and builds a default TLS context
``network``         Resolves the loopback host through the socket stack
``sqlalchemy``      Loads SQLAlchemy's engine and pool machinery
``driver:<name>``   Loads the SQLAlchemy dialect and DBAPI module for ``<name>``
==================  ===========================================================

Tags:
    dependencies, startup, subsystems, registry, release-spine

Doc-Types:
    api-reference
"""

from __future__ import annotations

import hashlib
import socket
import ssl
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from release_spine.errors import DependencyStartError
from release_spine.logging import get_logger

logger = get_logger(__name__)

Starter = Callable[[], None]

DRIVER_PREFIX = "driver:"

_REGISTRY: dict[str, Starter] = {}


def register_subsystem(name: str, starter: Starter | None = None):
    """Register *starter* under *name*.  Usable as a decorator.

    Example::

        @register_subsystem("vault")
        def _start_vault() -> None:
            ...
    """

    def _register(fn: Starter) -> Starter:
        _REGISTRY[name] = fn
        return fn

    if starter is not None:
        return _register(starter)
    return _register


def unregister_subsystem(name: str) -> None:
    _REGISTRY.pop(name, None)


def registered_subsystems() -> list[str]:
    return sorted(_REGISTRY)


@register_subsystem("crypto")
def _start_crypto() -> None:
    hashlib.sha256(b"release-spine").digest()
    ssl.create_default_context()


@register_subsystem("network")
def _start_network() -> None:
    socket.getaddrinfo("localhost", None)


@register_subsystem("sqlalchemy")
def _start_sqlalchemy() -> None:
    import sqlalchemy.pool  # noqa: F401
    from sqlalchemy.engine import create_engine  # noqa: F401


def _start_driver(dialect: str) -> None:
    from sqlalchemy.engine import URL

    # Loading the dialect class also imports its DBAPI module
    dialect_cls = URL.create(dialect).get_dialect()
    dialect_cls.import_dbapi()


def _resolve(name: str) -> Starter:
    if name in _REGISTRY:
        return _REGISTRY[name]
    if name.startswith(DRIVER_PREFIX) and len(name) > len(DRIVER_PREFIX):
        dialect = name[len(DRIVER_PREFIX):]
        return lambda: _start_driver(dialect)
    raise DependencyStartError(
        f"unknown subsystem {name!r} (registered: {', '.join(registered_subsystems())})",
        subsystem=name,
    )


@dataclass
class StartedSubsystems:
    """Names of the subsystems activated by :func:`start_dependencies`, in order."""

    names: list[str] = field(default_factory=list)

    def __contains__(self, name: object) -> bool:
        return name in self.names

    def __len__(self) -> int:
        return len(self.names)


def start_dependencies(subsystems: Iterable[str]) -> StartedSubsystems:
    """Start every subsystem in *subsystems*, once each, in order.

    A name listed twice is started at its first position only.  Every name is
    resolved before anything starts, so an unknown name fails the run without
    side effects.

    Raises:
        DependencyStartError: If a subsystem is unknown or fails to start.
    """
    ordered: list[str] = []
    for name in subsystems:
        if name not in ordered:
            ordered.append(name)

    starters = [(name, _resolve(name)) for name in ordered]

    started = StartedSubsystems()
    for name, starter in starters:
        logger.debug("subsystem.starting", subsystem=name)
        try:
            starter()
        except DependencyStartError:
            raise
        except Exception as exc:
            raise DependencyStartError(
                f"subsystem {name!r} failed to start: {exc}",
                subsystem=name,
                cause=exc,
            ) from exc
        started.names.append(name)
        logger.debug("subsystem.started", subsystem=name)
    return started


__all__ = [
    "StartedSubsystems",
    "register_subsystem",
    "unregister_subsystem",
    "registered_subsystems",
    "start_dependencies",
]
