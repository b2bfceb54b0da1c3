"""Release Spine -- one-shot release task runner for application data stores.

Manifesto:
    Before a new release serves traffic, its stores must be on the schema it
    expects.  ``release_spine`` starts just enough of the runtime to reach the
    data layer, applies pending migrations store by store, optionally seeds
    data, and exits with a status the launcher can gate the release on.

Architecture::

    config.py          ReleaseConfig / StoreConfig (TOML, explicit, immutable)
    settings.py        ReleaseSettings (RELEASE_SPINE_* env vars)
    errors.py          ReleaseError hierarchy + exit codes
    logging.py         structlog configuration
    dependencies.py    Dependency starter (subsystem registry)
    connector.py       Store connector (SQLAlchemy, one small pool per store)
    migrations.py      SqlMigrationEngine + run_migrations
    seeds.py           SeedRegistry + run_seeds
    results.py         RunReport
    controller.py      ReleaseTask lifecycle (migrate / migrate-and-seed)
    cli/               Typer entry point

Tags:
    release, migrations, seeds, lifecycle, release-spine
"""

__version__ = "0.1.0"

from release_spine.config import ReleaseConfig, StoreConfig
from release_spine.controller import Operation, ReleaseTask, Stage, run_task
from release_spine.errors import (
    ConfigError,
    DependencyStartError,
    ExitCode,
    MigrationError,
    ReleaseError,
    SeedError,
    StoreConnectionError,
)
from release_spine.results import RunReport
from release_spine.seeds import SeedRegistry

__all__ = [
    "__version__",
    "ReleaseConfig",
    "StoreConfig",
    "Operation",
    "ReleaseTask",
    "Stage",
    "run_task",
    "RunReport",
    "SeedRegistry",
    "ReleaseError",
    "ConfigError",
    "DependencyStartError",
    "StoreConnectionError",
    "MigrationError",
    "SeedError",
    "ExitCode",
]
