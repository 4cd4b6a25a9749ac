import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from config import Settings

logger = logging.getLogger(__name__)

_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "etimedout",
    "esocket",
    "failed to connect",
    "could not connect",
    "connection refused",
    "connection reset",
    "server closed the connection",
)


def is_retryable_connection_error(exc: BaseException) -> bool:
    """True for network / timeout failures, the only errors worth retrying."""
    if isinstance(exc, (TimeoutError, ConnectionError, PoolTimeoutError)):
        return True
    if isinstance(exc, (OperationalError, InterfaceError)):
        if exc.connection_invalidated:
            return True
        message = str(exc.orig if exc.orig is not None else exc).lower()
        return any(marker in message for marker in _RETRYABLE_MARKERS)
    return False


class Database:
    """Owns the engine and connection pool for the shared users table.

    Constructed once by the application root and passed to the services
    that need the store. Nothing connects until ``connect()`` is called.
    """

    def __init__(
        self,
        url: str,
        *,
        connect_timeout: int = 45,
        pool_size: int = 10,
        pool_timeout: int = 30,
        max_attempts: int = 4,
        backoff_seconds: float = 5.0,
        backoff_max_seconds: float = 20.0,
        echo: bool = False,
    ):
        self.url = url
        self.connect_timeout = connect_timeout
        self.pool_size = pool_size
        self.pool_timeout = pool_timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.echo = echo
        self._engine: Optional[Engine] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.DATABASE_URL,
            connect_timeout=settings.DB_CONNECT_TIMEOUT_SECONDS,
            pool_size=settings.DB_POOL_SIZE,
            pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
            max_attempts=settings.DB_CONNECT_MAX_ATTEMPTS,
            backoff_seconds=settings.DB_CONNECT_BACKOFF_SECONDS,
            backoff_max_seconds=settings.DB_CONNECT_BACKOFF_MAX_SECONDS,
        )

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not connected. Call connect() first.")
        return self._engine

    def _connect_args(self) -> dict:
        backend = make_url(self.url).get_backend_name()
        if backend in ("postgresql", "mysql", "mariadb"):
            return {"connect_timeout": self.connect_timeout}
        if backend == "mssql":
            return {"timeout": self.connect_timeout}
        return {}

    def _create_engine(self) -> Engine:
        if self.url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": self.connect_timeout}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every checkout sees an empty database
                return create_engine(
                    self.url, connect_args=connect_args, poolclass=StaticPool, echo=self.echo
                )
            return create_engine(self.url, connect_args=connect_args, echo=self.echo)

        return create_engine(
            self.url,
            connect_args=self._connect_args(),
            pool_pre_ping=True,
            pool_size=self.pool_size,
            pool_timeout=self.pool_timeout,
            echo=self.echo,
        )

    def _open(self) -> Engine:
        engine = self._create_engine()
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            engine.dispose()
            raise
        return engine

    def connect(self) -> Engine:
        """Open the pool, retrying only network / timeout failures."""
        if self._engine is not None:
            return self._engine

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(
                start=self.backoff_seconds,
                increment=self.backoff_seconds,
                max=self.backoff_max_seconds,
            ),
            retry=retry_if_exception(is_retryable_connection_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    logger.info(
                        "Connecting to database (attempt %d of %d)",
                        attempt.retry_state.attempt_number,
                        self.max_attempts,
                    )
                    self._engine = self._open()
        except Exception as exc:
            logger.error("Database connection failed: %s", exc)
            raise

        logger.info("Database connected")
        return self._engine

    def create_db_and_tables(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine, expire_on_commit=False) as session:
            yield session

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("Database connection closed")
