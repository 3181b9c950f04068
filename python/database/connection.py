"""
Engine and session handling for the score store

DatabaseSettings resolves where scores live (PostgreSQL in production,
SQLite for tests and local runs). DatabaseSessionProvider owns the engine
and hands out one short transaction per store operation.
"""

import os
import logging
from typing import Generator, Optional
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError
from tenacity import (
    Retrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from config_manager import DatabaseConfig
from database.models import Base

logger = logging.getLogger(__name__)


@dataclass
class DatabaseSettings:
    """Where the score store lives and how its pool behaves."""
    url: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    database: str = "sdnscore"
    user: str = "sdnscore_user"
    password: str = "sdnscore_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False
    connect_attempts: int = 3

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        """DATABASE_URL or the DB_* variables, with local defaults."""
        env = os.getenv
        return cls(
            url=env("DATABASE_URL"),
            host=env("DB_HOST", cls.host),
            port=int(env("DB_PORT", str(cls.port))),
            database=env("DB_NAME", cls.database),
            user=env("DB_USER", cls.user),
            password=env("DB_PASSWORD", cls.password),
            pool_size=int(env("DB_POOL_SIZE", str(cls.pool_size))),
            max_overflow=int(env("DB_MAX_OVERFLOW", str(cls.max_overflow))),
            pool_timeout=int(env("DB_POOL_TIMEOUT", str(cls.pool_timeout))),
            pool_recycle=int(env("DB_POOL_RECYCLE", str(cls.pool_recycle))),
            echo=env("DB_ECHO", "false").lower() == "true"
        )

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> 'DatabaseSettings':
        """Settings from the database section of config.yaml.

        DATABASE_URL in the environment still wins over the configured URL.
        """
        return cls(
            url=os.getenv("DATABASE_URL") or config.url,
            host=config.host,
            port=config.port,
            database=config.name,
            user=config.user,
            password=config.password,
            pool_size=config.pool_size,
            echo=config.echo
        )

    def get_url(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql+psycopg2://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    @property
    def backend(self) -> str:
        return make_url(self.get_url()).get_backend_name()

    def engine_options(self) -> dict:
        """Keyword arguments for create_engine; SQLite keeps its own pool."""
        options = {"echo": self.echo, "pool_pre_ping": True}
        if self.backend != "sqlite":
            options.update(
                pool_size=self.pool_size,
                max_overflow=self.max_overflow,
                pool_timeout=self.pool_timeout,
                pool_recycle=self.pool_recycle,
            )
        return options


class DatabaseSessionProvider:
    """
    Owns the engine and session factory for SqlAlchemyStore.

    Usage:
        provider = DatabaseSessionProvider(DatabaseSettings.from_env())
        provider.create_tables()
        with provider.session_scope() as session:
            ...
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    def init(self) -> None:
        """Connect (retrying while the database comes up) and build the session factory."""
        if self._session_factory is not None:
            return

        if self._engine is None:
            self._engine = self._connect()

        @event.listens_for(self._engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            logger.debug("New %s connection for the score store", self._settings.backend)

        # Rows are detached into domain objects after commit
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )
        logger.info("✓ Score store connected (%s)", self._settings.backend)

    def _connect(self) -> Engine:
        engine = create_engine(self._settings.get_url(), **self._settings.engine_options())
        for attempt in Retrying(
            stop=stop_after_attempt(max(1, self._settings.connect_attempts)),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(OperationalError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        ):
            with attempt:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
        return engine

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """One transaction: commit on success, roll back on any exception."""
        self.init()
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create any missing score store tables."""
        self.init()
        Base.metadata.create_all(self._engine)
        logger.info("✓ Score store tables ready")

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Score store engine disposed")
        self._session_factory = None


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """Provider over in-memory SQLite unless told otherwise."""
    provider = DatabaseSessionProvider(
        settings=settings or DatabaseSettings(url="sqlite://", connect_attempts=1),
        engine=engine
    )
    provider.init()
    return provider
