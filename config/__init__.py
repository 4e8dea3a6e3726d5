"""Configuration module for docsync.

Provides configuration for the database, the watcher and logging.
"""

from .database import (
    DatabaseConfig,
    build_engine,
    build_session_factory
)
from .settings import (
    AppConfig,
    LoggingConfig,
    WatchConfig,
    WatchMode
)

__all__ = [
    'AppConfig',
    'DatabaseConfig',
    'LoggingConfig',
    'WatchConfig',
    'WatchMode',
    'build_engine',
    'build_session_factory'
]
