"""Configuration management for jobpool.

This module provides a unified configuration system that supports:
- Configuration files in TOML format
- Environment variables
- Multiple configuration file locations (project, user, system)
- Type-safe configuration using Pydantic

Configuration Priority (highest to lowest):
1. Environment variables
2. Project configuration file (.jobpool/config.toml or jobpool.toml)
3. User configuration file (~/.config/jobpool/config.toml)
4. System configuration file (/etc/jobpool/config.toml)
5. Default values

Environment Variable Naming:
- Nested fields: JOBPOOL_<SECTION>__<FIELD> (e.g., JOBPOOL_POOL__PREFORK_SIZE)
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import platformdirs
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

if TYPE_CHECKING:
    from jobpool.infrastructure.workers.invocation import PythonModuleInvocation
    from jobpool.infrastructure.workers.pool import PoolConfig

logger = logging.getLogger(__name__)

APP_NAME = "jobpool"


class PoolSettings(BaseModel):
    """Worker pool configuration."""

    queue_name: str | None = Field(
        default=None,
        description="Queue all jobs of the pool belong to (None: each job names its queue)",
    )

    output_results: bool = Field(
        default=False,
        description="Forward worker stdout/stderr to the parent process",
    )

    async_mode: bool = Field(
        default=False,
        description="Do not buffer worker output for failure diagnostics",
    )

    prefork_size: int = Field(
        default=0,
        description="Number of idle workers to keep warm (negative values mean 0)",
    )

    command: str | None = Field(
        default=None,
        description="Worker command line (overrides worker_module)",
    )

    worker_module: str | None = Field(
        default=None,
        description="Python module run as worker with '<python> -m <module>'",
    )

    poll_interval: float = Field(
        default=0.01,
        gt=0,
        le=5,
        description="Seconds between checks whether a worker has exited",
    )

    @field_validator("prefork_size")
    @classmethod
    def clamp_prefork_size(cls, v: int) -> int:
        """Clamp negative sizes to 0."""
        return max(v, 0)

    def to_pool_config(self) -> "PoolConfig":
        from jobpool.infrastructure.workers.pool import PoolConfig

        return PoolConfig(
            queue_name=self.queue_name,
            output_results=self.output_results,
            async_mode=self.async_mode,
            prefork_size=self.prefork_size,
            command=self.command,
        )

    def worker_invocation(self) -> "PythonModuleInvocation | None":
        if not self.worker_module:
            return None
        from jobpool.infrastructure.workers.invocation import PythonModuleInvocation

        return PythonModuleInvocation(module=self.worker_module)


class PayloadStoreConfig(BaseModel):
    """Payload store configuration."""

    backend: str = Field(
        default="sqlite",
        description="Payload store backend: 'sqlite' or 'memory'",
    )

    db_path: str = Field(
        default="jobpool_payloads.db",
        description="Path to the SQLite payload database",
    )

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate backend name."""
        v_lower = v.lower()
        if v_lower not in ("sqlite", "memory"):
            raise ValueError(f"Payload store backend must be 'sqlite' or 'memory', got '{v}'")
        return v_lower


class LoggingConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    console_logging: bool = Field(
        default=False,
        description="Also log to the console (stderr)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}, got {v}")
        return v_upper


class JobPoolConfig(BaseSettings):
    """Main jobpool configuration.

    Loads from multiple sources in priority order: environment variables >
    project config > user config > system config > defaults.

    Environment Variables:
        - JOBPOOL_POOL__QUEUE_NAME: Queue name
        - JOBPOOL_POOL__PREFORK_SIZE: Number of idle workers
        - JOBPOOL_PAYLOAD_STORE__DB_PATH: Payload database path
        - JOBPOOL_LOGGING__LOG_LEVEL: Logging level
    """

    model_config = SettingsConfigDict(
        env_prefix="JOBPOOL_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    pool: PoolSettings = Field(
        default_factory=PoolSettings,
        description="Worker pool configuration",
    )

    payload_store: PayloadStoreConfig = Field(
        default_factory=PayloadStoreConfig,
        description="Payload store configuration",
    )

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize the sources and their priority for settings.

        Priority order (highest to lowest):
        1. Environment variables
        2. Project configuration file
        3. User configuration file
        4. System configuration file
        5. Init settings (programmatic)
        """
        config_files = find_config_files()

        # pydantic-settings gives sources on the left priority, so the TOML
        # sources are collected lowest first and reversed below
        toml_sources = []
        for location in ("system", "user", "project"):
            config_file = config_files[location]
            if config_file is None:
                continue
            try:
                toml_sources.append(TomlConfigSettingsSource(settings_cls, toml_file=config_file))
                logger.debug(f"Loaded {location} config: {config_file}")
            except Exception as e:
                logger.debug(f"Could not load {location} config: {e}")

        return (
            env_settings,
            *reversed(toml_sources),
            init_settings,
        )


def find_config_files() -> dict[str, Path | None]:
    """Find configuration files in standard locations.

    Returns:
        Dictionary with keys 'system', 'user', 'project', each containing
        a Path to the config file if it exists, or None otherwise.
    """
    config_files: dict[str, Path | None] = {
        "system": None,
        "user": None,
        "project": None,
    }

    system_config = Path("/etc") / APP_NAME / "config.toml"
    if system_config.exists():
        config_files["system"] = system_config

    user_config = Path(platformdirs.user_config_dir(APP_NAME, appauthor=False)) / "config.toml"
    if user_config.exists():
        config_files["user"] = user_config

    cwd = Path.cwd()
    for project_config in (cwd / f".{APP_NAME}" / "config.toml", cwd / f"{APP_NAME}.toml"):
        if project_config.exists():
            config_files["project"] = project_config
            break

    return config_files


def get_config_file_locations() -> dict[str, Path]:
    """Get the standard configuration file locations.

    Returns:
        Dictionary with keys 'system', 'user', 'project', each containing
        the Path where the config file should be located (may not exist).
    """
    return {
        "system": Path("/etc") / APP_NAME / "config.toml",
        "user": Path(platformdirs.user_config_dir(APP_NAME, appauthor=False)) / "config.toml",
        "project": Path.cwd() / f".{APP_NAME}" / "config.toml",
    }


# Lazily initialized on first access
_config: JobPoolConfig | None = None


def get_config(reload: bool = False) -> JobPoolConfig:
    """Get the global configuration instance.

    Args:
        reload: If True, reload the configuration from files and environment.
    """
    global _config

    if _config is None or reload:
        _config = JobPoolConfig()

    return _config


def create_example_config() -> str:
    """Create an example configuration file content."""
    return """# jobpool Configuration File
#
# Configuration files are loaded from (in priority order):
#   1. .jobpool/config.toml or jobpool.toml (project directory)
#   2. ~/.config/jobpool/config.toml (user directory)
#   3. /etc/jobpool/config.toml (system directory, Linux/Unix only)
#
# Environment variables override any setting (highest priority).
# Nested settings use double underscores: JOBPOOL_<SECTION>__<KEY>
#
# Examples:
#   JOBPOOL_POOL__PREFORK_SIZE=4
#   JOBPOOL_PAYLOAD_STORE__DB_PATH=/tmp/payloads.db
#   JOBPOOL_LOGGING__LOG_LEVEL=DEBUG

[pool]
# Queue all jobs belong to; leave unset to name the queue per job
# queue_name = "default"

# Forward worker stdout/stderr to the parent process
output_results = false

# Fire-and-forget mode: do not buffer worker output for failure diagnostics
async_mode = false

# Number of idle workers kept warm
prefork_size = 0

# Worker command line (takes precedence over worker_module)
# command = "python -m my_app.worker"

# Python module started with '<python> -m <module>'
# worker_module = "my_app.worker"

# Seconds between checks whether a worker has exited
poll_interval = 0.01

[payload_store]
# 'sqlite' (shared with worker processes) or 'memory'
backend = "sqlite"
db_path = "jobpool_payloads.db"

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
log_level = "INFO"

# Also log to the console
console_logging = false
"""


def write_example_config(location: str = "user") -> Path:
    """Write an example configuration file.

    Args:
        location: Where to write the config file ('user' or 'project')

    Returns:
        Path to the created configuration file
    """
    locations = get_config_file_locations()
    if location not in ("user", "project"):
        raise ValueError(f"Invalid location: {location}. Must be 'user' or 'project'")

    config_path = locations[location]
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(create_example_config(), encoding="utf-8")

    logger.info(f"Created example configuration file: {config_path}")
    return config_path
