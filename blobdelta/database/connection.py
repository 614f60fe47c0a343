"""
Database Connection Module
Handles connection pooling and session management for the sync state and record stores.
"""

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from blobdelta.config_manager import ConfigManager
from blobdelta.utils.logger import get_logger

logger = get_logger(__name__)


class DatabaseConnection:
    """Manages a database engine with connection pooling."""

    def __init__(self, url: Optional[str] = None, **engine_options):
        """
        Initialize the engine.

        Args:
            url: SQLAlchemy URL. When omitted it is built from the
                 ``database`` section of the configuration.
            **engine_options: Extra keyword arguments for ``create_engine``.
        """
        self._engine: Engine = None
        self._session_factory = None
        self._initialize_engine(url, engine_options)

    def _initialize_engine(self, url: Optional[str], engine_options: dict) -> None:
        """Create SQLAlchemy engine with connection pooling."""
        db_config = {}
        if url is None:
            db_config = ConfigManager().get_database_config()
            url = db_config.get('url') or self._build_connection_url(db_config)

        options = dict(engine_options)
        options.setdefault('echo', os.getenv('SQL_ECHO', 'false').lower() == 'true')

        if url.startswith('sqlite'):
            # A single shared connection keeps in-memory databases alive across sessions
            if url in ('sqlite://', 'sqlite:///:memory:'):
                options.setdefault('poolclass', StaticPool)
            options.setdefault('connect_args', {'check_same_thread': False})
        else:
            options.setdefault('poolclass', QueuePool)
            options.setdefault('pool_size', db_config.get('pool_size', 5))
            options.setdefault('max_overflow', db_config.get('max_overflow', 10))
            options.setdefault('pool_timeout', db_config.get('pool_timeout', 30))
            options.setdefault('pool_pre_ping', True)

        logger.info(f"Initializing database connection to {self._redact(url)}")

        self._engine = create_engine(url, **options)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

        logger.info("Database engine initialized successfully")

    def _build_connection_url(self, db_config: dict) -> str:
        """Build PostgreSQL connection URL from config."""
        host = db_config.get('host', 'localhost')
        port = db_config.get('port', 5432)
        name = db_config.get('name', 'blob_delta_jobs')
        user = db_config.get('user', 'blobdelta')
        password = db_config.get('password') or ''

        return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}"

    @staticmethod
    def _redact(url: str) -> str:
        """Hide the password part of a URL for logging."""
        if '@' not in url or '://' not in url:
            return url
        scheme, rest = url.split('://', 1)
        credentials, location = rest.rsplit('@', 1)
        user = credentials.split(':', 1)[0]
        return f"{scheme}://{user}:***@{location}"

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        return self._engine

    def get_session(self) -> Session:
        """Create a new database session."""
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of operations.

        Usage:
            with db.session_scope() as session:
                session.query(...)
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    def check_connection(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            bool: True if connection is healthy, False otherwise.
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.debug("Database connection health check passed")
            return True
        except Exception as e:
            logger.error(f"Database connection health check failed: {e}")
            return False

    def create_schema(self) -> None:
        """Create the sync state tables if they do not exist."""
        from blobdelta.database.models import Base
        Base.metadata.create_all(self._engine)

    def dispose(self) -> None:
        """Dispose of the connection pool."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database connection pool disposed")


_default_db: Optional[DatabaseConnection] = None


def get_db() -> DatabaseConnection:
    """Get the process-wide database connection built from configuration."""
    global _default_db
    if _default_db is None:
        _default_db = DatabaseConnection()
    return _default_db
