"""Application configuration for docsync.

Every section is a pydantic model with a ``from_env`` constructor, so tests
can build configuration explicitly and deployments can rely on environment
variables.
"""

import os
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .database import DatabaseConfig


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class WatchMode(str, Enum):
    """Change-detection modes. Only the filesystem mode is implemented."""
    FS = "fs"
    DATABASE = "db"


class WatchConfig(BaseModel):
    """Options for the recurring scan."""
    interval_seconds: float = Field(default=60.0, description="Seconds between scan cycles (minimum 5)")
    root_path: str = Field(default_factory=os.getcwd, description="Root that source locators resolve against")
    mode: WatchMode = Field(default=WatchMode.FS, description="Change-detection mode")
    enabled: bool = Field(default=True, description="Start the watcher with the application")
    run_on_start: bool = Field(default=True, description="Run one cycle immediately when the watcher starts")

    @classmethod
    def from_env(cls) -> 'WatchConfig':
        return cls(
            interval_seconds=int(os.getenv('WATCH_INTERVAL_MS', '60000')) / 1000.0,
            root_path=os.getenv('WATCH_ROOT_PATH', os.getcwd()),
            mode=WatchMode(os.getenv('WATCH_MODE', 'fs').lower()),
            enabled=_env_flag('WATCH_ENABLED', True),
            run_on_start=_env_flag('WATCH_RUN_ON_START', True),
        )


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Root log level")
    use_json: bool = Field(default=False, description="Emit JSON lines on the console")
    log_file: Optional[str] = Field(default=None, description="Optional JSON log file")

    @classmethod
    def from_env(cls) -> 'LoggingConfig':
        return cls(
            level=os.getenv('LOG_LEVEL', 'INFO'),
            use_json=_env_flag('LOG_JSON', False),
            log_file=os.getenv('LOG_FILE') or None,
        )


class AppConfig(BaseModel):
    """Top-level configuration."""
    service_name: str = Field(default="docsync")
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> 'AppConfig':
        return cls(
            service_name=os.getenv('SERVICE_NAME', 'docsync'),
            database=DatabaseConfig.from_env(),
            watch=WatchConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )
