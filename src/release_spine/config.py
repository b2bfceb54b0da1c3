"""Release configuration: the stores to migrate and the subsystems to start.

The whole task run is driven by one explicit value, :class:`ReleaseConfig`,
built once at process start and passed to every component.  Nothing is
discovered by reflection: each store names its owning application and asset
root directly.

Example configuration (``release.toml``)::

    subsystems = ["crypto", "network", "sqlalchemy", "driver:postgresql"]
    pool_size = 1

    [[stores]]
    name = "Billing.Repo"
    url = "postgresql://billing:${BILLING_DB_PASSWORD}@db/billing"
    app = "billing"
    priv_root = "priv"

    [[stores]]
    name = "accounts"
    url = "sqlite:///var/accounts.db"
    app = "accounts"

Asset layout per store::

    <priv_root>/<normalized_name>/migrations/001_create_invoices.sql
    <priv_root>/<normalized_name>/seeds/seed.sql   (or an executable ``seed``)

Tags:
    config, toml, pydantic, stores, release-spine

Doc-Types:
    api-reference
"""

from __future__ import annotations

import importlib.util
import os
import re
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from release_spine.dependencies import DRIVER_PREFIX
from release_spine.errors import ConfigError

DEFAULT_SUBSYSTEMS: tuple[str, ...] = ("crypto", "network", "sqlalchemy")

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_SEPARATORS = re.compile(r"[-\s]+")
_NORMALIZED = re.compile(r"^[a-z0-9_]+$")
_ENV_REF = re.compile(r"\$\{(?P<name>[A-Za-z_]\w*)\}")


def normalize_store_name(name: str) -> str:
    """Turn a store name into the directory name its assets live under.

    Only the last dotted segment is used, CamelCase is split into
    snake_case and dashes/spaces become underscores.

    >>> normalize_store_name("Billing.Repo")
    'repo'
    >>> normalize_store_name("AccountsStore")
    'accounts_store'
    """
    last = name.strip().rsplit(".", 1)[-1]
    snake = _SEPARATORS.sub("_", _CAMEL_BOUNDARY.sub("_", last)).lower()
    if not _NORMALIZED.match(snake):
        raise ValueError(f"store name {name!r} does not normalize to a directory name")
    return snake


def resolve_app_priv_root(app: str) -> Path:
    """Locate ``<package>/priv`` for an application without importing it.

    ``importlib.util.find_spec`` reads the package's location from the import
    system but does not execute the package, so the application is loaded
    without being started.
    """
    try:
        spec = importlib.util.find_spec(app)
    except (ImportError, ValueError) as exc:
        raise ValueError(f"application {app!r} cannot be located: {exc}") from exc
    if spec is None:
        raise ValueError(f"application {app!r} is not installed")
    if spec.submodule_search_locations:
        base = Path(next(iter(spec.submodule_search_locations)))
    elif spec.origin:
        base = Path(spec.origin).parent
    else:
        raise ValueError(f"application {app!r} has no filesystem location")
    return base / "priv"


def expand_env_refs(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Replace ``${NAME}`` references with environment values.

    Unlike :func:`os.path.expandvars`, an unset variable is an error rather
    than being left in the DSN verbatim.
    """
    env = os.environ if environ is None else environ

    def _sub(match: re.Match[str]) -> str:
        name = match.group("name")
        if name not in env:
            raise ConfigError(f"environment variable {name} is not set").with_context(
                variable=name
            )
        return env[name]

    return _ENV_REF.sub(_sub, value)


class StoreConfig(BaseModel):
    """One logical data store.

    Immutable for the lifetime of the process.  ``priv_root`` defaults to
    the owning application's ``priv`` directory.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Logical store name")
    url: str = Field(min_length=1, description="SQLAlchemy database URL (DSN)")
    app: str = Field(min_length=1, description="Owning application identifier")
    priv_root: Path = Field(description="Root directory holding the store's assets")

    @model_validator(mode="before")
    @classmethod
    def _default_priv_root(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("priv_root") and data.get("app"):
            data = {**data, "priv_root": resolve_app_priv_root(data["app"])}
        return data

    @field_validator("name")
    @classmethod
    def _name_normalizes(cls, value: str) -> str:
        normalize_store_name(value)
        return value

    @property
    def normalized_name(self) -> str:
        return normalize_store_name(self.name)

    @property
    def asset_root(self) -> Path:
        return self.priv_root / self.normalized_name

    @property
    def migrations_path(self) -> Path:
        """``<priv_root>/<normalized_name>/migrations``."""
        return self.asset_root / "migrations"

    @property
    def seeds_path(self) -> Path:
        """``<priv_root>/<normalized_name>/seeds``."""
        return self.asset_root / "seeds"

    @property
    def driver_name(self) -> str | None:
        """SQLAlchemy driver name of ``url`` (``sqlite``, ``postgresql+psycopg``).

        None when the URL does not parse; connecting reports that error.
        """
        try:
            return make_url(self.url).drivername
        except ArgumentError:
            return None

    def __repr__(self) -> str:
        # Never print the DSN, it usually carries credentials
        return f"StoreConfig(name={self.name!r}, app={self.app!r}, priv_root={str(self.priv_root)!r})"

    __str__ = __repr__


class ReleaseConfig(BaseModel):
    """Everything a task run needs, constructed once at process start."""

    model_config = ConfigDict(frozen=True)

    stores: list[StoreConfig] = Field(
        default_factory=list,
        description="Stores in migration order",
    )
    subsystems: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SUBSYSTEMS),
        description="Runtime subsystems to start, in order",
    )
    pool_size: int = Field(
        default=1,
        ge=1,
        description="Connections per store pool; migrations run serially so one is enough",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait when opening each store connection",
    )
    seed_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Upper bound in seconds for an executable seed script",
    )

    @field_validator("stores")
    @classmethod
    def _unique_stores(cls, stores: list[StoreConfig]) -> list[StoreConfig]:
        names: set[str] = set()
        roots: dict[Path, str] = {}
        for store in stores:
            if store.name in names:
                raise ValueError(f"store {store.name!r} is configured twice")
            names.add(store.name)
            root = store.asset_root.expanduser().resolve()
            if root in roots:
                raise ValueError(
                    f"stores {roots[root]!r} and {store.name!r} share the asset directory {str(root)!r}"
                )
            roots[root] = store.name
        return stores

    @property
    def required_subsystems(self) -> list[str]:
        """``subsystems`` plus a ``driver:<name>`` entry per store driver.

        Drivers are only added when ``subsystems`` names none itself, so an
        explicit driver list is started as written.
        """
        names = list(self.subsystems)
        if any(name.startswith(DRIVER_PREFIX) for name in names):
            return names
        for store in self.stores:
            driver = store.driver_name
            if driver and f"{DRIVER_PREFIX}{driver}" not in names:
                names.append(f"{DRIVER_PREFIX}{driver}")
        return names

    def store(self, name: str) -> StoreConfig:
        """Return the store called *name*."""
        for store in self.stores:
            if store.name == name:
                return store
        raise KeyError(name)

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        base_dir: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> ReleaseConfig:
        """Build a config from parsed TOML (or any plain mapping).

        Relative ``priv_root`` paths resolve against *base_dir*, and
        ``${VAR}`` references in store URLs expand from *environ*.
        """
        values = dict(data)
        stores = []
        for raw in values.get("stores", []):
            if not isinstance(raw, Mapping):
                raise ConfigError(f"store entries must be tables, got {type(raw).__name__}")
            entry = dict(raw)
            if isinstance(entry.get("url"), str):
                entry["url"] = expand_env_refs(entry["url"], environ)
            root = entry.get("priv_root")
            if root and base_dir is not None and not Path(root).is_absolute():
                entry["priv_root"] = base_dir / root
            stores.append(entry)
        values["stores"] = stores
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigError(f"invalid release configuration: {exc}", cause=exc) from exc

    @classmethod
    def from_toml(
        cls,
        path: Path | str,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> ReleaseConfig:
        """Load a config from a ``.toml`` file."""
        path = Path(path)
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigError(f"release configuration {path} not found", cause=exc).with_context(
                path=str(path)
            ) from exc
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"release configuration {path} is not valid TOML: {exc}", cause=exc).with_context(
                path=str(path)
            ) from exc
        try:
            return cls.from_mapping(data, base_dir=path.resolve().parent, environ=environ)
        except ConfigError as exc:
            raise exc.with_context(path=str(path))


__all__ = [
    "DEFAULT_SUBSYSTEMS",
    "StoreConfig",
    "ReleaseConfig",
    "normalize_store_name",
    "resolve_app_priv_root",
    "expand_env_refs",
]
