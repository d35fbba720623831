"""Conveyor configuration — reads from conveyor.toml, env vars, and CLI args."""

import logging
import os
import tomllib
from pathlib import Path
from typing import Dict, Any, List
from pydantic_settings import BaseSettings
from pydantic import Field

logger = logging.getLogger("conveyor.config")


class ConveyorSettings(BaseSettings):
    """Daemon and engine settings."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8410
    log_level: str = "info"

    # Database (SQLite by default for zero-setup)
    database_url: str = Field(
        default="sqlite+aiosqlite:///conveyor.db",
        alias="CONVEYOR_DATABASE_URL",
    )

    # Auth
    api_key: str = Field(default="conveyor_dev_key", alias="CONVEYOR_API_KEY")

    # Engine
    max_concurrent: int = 0  # stages per run, 0 = unlimited
    max_active_runs: int = 4
    run_timeout_seconds: float | None = None
    heartbeat_interval: float = 5.0
    heartbeat_timeout: float = 30.0
    cancel_grace_seconds: float = 5.0

    # Storage
    definitions_dir: str = Field(default="./pipelines", alias="CONVEYOR_DEFINITIONS_DIR")

    # Webhooks (loaded from conveyor.toml [[webhooks]] tables)
    webhooks: List[Dict[str, Any]] = Field(default_factory=list)

    # Adapter bindings (loaded from conveyor.toml [adapters] section)
    adapters: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    model_config = {"env_prefix": "CONVEYOR_", "env_file": ".env", "populate_by_name": True}

    def get_definitions_dir(self) -> Path:
        return Path(self.definitions_dir).expanduser()


class ClientSettings(BaseSettings):
    """CLI client settings."""

    host: str = Field(default="http://localhost:8410", alias="CONVEYOR_HOST")
    api_key: str = Field(default="conveyor_dev_key", alias="CONVEYOR_API_KEY")

    model_config = {"env_prefix": "CONVEYOR_"}


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}


def _load_toml_config() -> Dict[str, Any]:
    """Load configuration from conveyor.toml files.

    Searches for conveyor.toml in:
    1. CONVEYOR_HOME (~/.conveyor/conveyor.toml by default)
    2. Current directory (./conveyor.toml)

    Returns:
        Combined configuration dict from found files
    """
    config: Dict[str, Any] = {}

    conveyor_home = Path(os.environ.get("CONVEYOR_HOME", "~/.conveyor")).expanduser()
    global_config_path = conveyor_home / "conveyor.toml"
    if global_config_path.exists():
        config.update(_read_toml(global_config_path))

    # Project-specific config takes precedence
    local_config_path = Path("conveyor.toml")
    if local_config_path.exists():
        local_config = _read_toml(local_config_path)
        # Merge adapters per binding to avoid overwriting all
        if "adapters" in local_config:
            config.setdefault("adapters", {}).update(local_config["adapters"])
        for key, value in local_config.items():
            if key != "adapters":
                config[key] = value

    return config


def get_settings() -> ConveyorSettings:
    toml_config = _load_toml_config()
    # Environment variables win over conveyor.toml
    known = {
        k: v
        for k, v in toml_config.items()
        if k in ConveyorSettings.model_fields and f"CONVEYOR_{k.upper()}" not in os.environ
    }
    return ConveyorSettings(**known)


def get_client_settings() -> ClientSettings:
    return ClientSettings()
