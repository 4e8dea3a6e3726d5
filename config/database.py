"""Database configuration and engine factory for docsync.

SQLite is the default store; any SQLAlchemy URL is accepted through
``DATABASE_URL``.
"""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseModel):
    """Database configuration."""
    url: str = Field(default="sqlite:///docsync.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Log every SQL statement")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create configuration from environment variables."""
        url = os.getenv('DATABASE_URL')
        if not url:
            url = f"sqlite:///{os.getenv('SQLITE_PATH', 'docsync.db')}"
        return cls(
            url=url,
            echo=os.getenv('DB_ECHO', 'false').lower() in ('1', 'true', 'yes'),
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith('sqlite')

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and (self.url in ('sqlite://', 'sqlite:///:memory:') or ':memory:' in self.url)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def build_engine(config: Optional[DatabaseConfig] = None) -> Engine:
    """Create an engine for ``config``.

    SQLite connections are shared with executor threads, so the same-thread
    check is disabled; in-memory databases use a single static connection.
    """
    if config is None:
        config = DatabaseConfig.from_env()

    kwargs = {"echo": config.echo, "future": True}
    if config.is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        if config.is_memory:
            kwargs["poolclass"] = StaticPool

    engine = create_engine(config.url, **kwargs)
    if config.is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    logger.info(f"Database engine created: {engine.url.render_as_string(hide_password=True)}")
    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    """Sessions keep loaded attributes after commit so records can be built."""
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
