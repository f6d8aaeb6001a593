"""
Convergent Settings - Configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Find project root (where .env file is located)
PROJECT_ROOT = Path(__file__).parent.parent


class ConvergentSettings(BaseSettings):
    """
    Convergent configuration settings.

    Settings are loaded from:
    1. Environment variables (highest priority)
    2. .env file in current directory
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="CONVERGENT_",  # All Convergent env vars must start with CONVERGENT_
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR) (env: CONVERGENT_LOG_LEVEL)",
    )

    # Target Configuration
    target: Literal["local", "install", "dryrun"] = Field(
        default="local",
        description="Where changes are applied: local, install or dryrun (env: CONVERGENT_TARGET)",
    )

    root_path: str = Field(
        default="/",
        description="Filesystem root tasks read from and write to (env: CONVERGENT_ROOT_PATH)",
    )

    install_dir: str = Field(
        default="install-payload",
        description="Staging directory for the install target (env: CONVERGENT_INSTALL_DIR)",
    )

    distribution: str | None = Field(
        default=None,
        description="Distribution ID overriding os-release detection, e.g. ubuntu (env: CONVERGENT_DISTRIBUTION)",
    )

    # Execution Configuration
    max_workers: int = Field(
        default=8,
        ge=1,
        description="Maximum number of independent tasks processed concurrently (env: CONVERGENT_MAX_WORKERS)",
    )

    command_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Timeout in seconds for each external command or file operation (env: CONVERGENT_COMMAND_TIMEOUT)",
    )


# Global settings instance
_settings: ConvergentSettings | None = None


def get_settings() -> ConvergentSettings:
    """
    Get the global settings instance.

    Creates the settings instance on first call, then returns cached instance.

    Returns:
        ConvergentSettings instance
    """
    global _settings
    if _settings is None:
        _settings = ConvergentSettings()
    return _settings


def reload_settings() -> ConvergentSettings:
    """
    Reload settings from environment/files.

    Useful for testing or when .env file changes.

    Returns:
        Fresh ConvergentSettings instance
    """
    global _settings
    _settings = ConvergentSettings()
    return _settings
