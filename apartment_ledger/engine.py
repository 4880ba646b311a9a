"""
Database engine factory supporting PostgreSQL, MariaDB and SQLite.
Handles connection pooling and retry logic on startup.
"""

import time
import urllib.parse
import logging
from sqlalchemy import create_engine, exc
from sqlalchemy.exc import OperationalError
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig, DatabaseType
from .models import Base


logger = logging.getLogger(__name__)


def create_engine_from_config(
    db_config: DatabaseConfig,
    retries: int = 3,
    retry_delay: int = 5
) -> Engine:
    """
    Create SQLAlchemy engine from database configuration with retry logic.

    Supports:
    - PostgreSQL (postgresql+psycopg2)
    - MariaDB (mysql+pymysql)
    - SQLite (file or in-memory, used for tests and local tooling)

    Args:
        db_config: Database configuration
        retries: Number of connection retry attempts (default: 3)
        retry_delay: Delay between retries in seconds (default: 5)

    Returns:
        Engine: SQLAlchemy engine with connection pooling

    Raises:
        ValueError: If database type is unsupported
        OperationalError: If connection fails after retries
    """
    connection_url = _build_connection_string(db_config)
    engine_kwargs = _engine_kwargs(db_config)

    attempt = 0
    while attempt < retries:
        try:
            engine = create_engine(connection_url, echo=db_config.echo, **engine_kwargs)

            logger.info(
                f"SQLAlchemy engine created successfully: {db_config.db_type.value} "
                f"(host={db_config.host}, database={db_config.database})"
            )

            # Test connection
            with engine.connect():
                logger.debug(f"Connection test successful for {db_config.db_type.value}")

            return engine

        except OperationalError as oe:
            attempt += 1
            logger.error(
                f"Connection attempt {attempt}/{retries} failed for {db_config.db_type.value}: {oe}"
            )

            if attempt >= retries:
                logger.critical(
                    f"Max retries ({retries}) reached. Could not create SQLAlchemy engine."
                )
                raise

            logger.info(f"Retrying in {retry_delay} seconds...")
            time.sleep(retry_delay)

        except exc.SQLAlchemyError as e:
            logger.error(f"SQLAlchemy error occurred for {db_config.db_type.value}: {e}")
            raise

    raise OperationalError("Failed to create database engine", None, None)


def init_schema(engine: Engine) -> None:
    """Create all ledger tables that do not exist yet."""
    Base.metadata.create_all(engine)
    logger.info(f"Ledger schema ready ({len(Base.metadata.tables)} tables)")


def _is_memory_sqlite(db_config: DatabaseConfig) -> bool:
    return db_config.db_type == DatabaseType.SQLITE and db_config.database in ('', ':memory:')


def _engine_kwargs(db_config: DatabaseConfig) -> dict:
    if db_config.db_type == DatabaseType.SQLITE:
        if _is_memory_sqlite(db_config) and not db_config.url:
            # One shared connection so every session sees the same in-memory database
            return {
                'poolclass': StaticPool,
                'connect_args': {'check_same_thread': False},
            }
        return {}

    return {
        'pool_size': db_config.pool_size,
        'max_overflow': db_config.max_overflow,
        'pool_timeout': db_config.pool_timeout,
        'pool_recycle': db_config.pool_recycle,
        'pool_pre_ping': db_config.pool_pre_ping,
    }


def _build_connection_string(db_config: DatabaseConfig) -> str:
    """
    Build database-specific connection string.

    Args:
        db_config: Database configuration

    Returns:
        str: Connection string for SQLAlchemy

    Raises:
        ValueError: If database type is unsupported
    """
    if db_config.url:
        return db_config.url

    if db_config.db_type == DatabaseType.SQLITE:
        if _is_memory_sqlite(db_config):
            connection_url = "sqlite://"
        else:
            connection_url = f"sqlite:///{db_config.database}"
        logger.debug("SQLite connection string built")
        return connection_url

    # URL-encode credentials for special characters
    username = urllib.parse.quote_plus(db_config.username)
    password = urllib.parse.quote_plus(db_config.password)

    if db_config.db_type == DatabaseType.MARIADB:
        connection_url = (
            f"mysql+pymysql://{username}:{password}"
            f"@{db_config.host}:{db_config.port}/{db_config.database}"
        )
        logger.debug("MariaDB connection string built")

    elif db_config.db_type == DatabaseType.POSTGRESQL:
        connection_url = (
            f"postgresql+psycopg2://{username}:{password}"
            f"@{db_config.host}:{db_config.port}/{db_config.database}"
        )
        logger.debug("PostgreSQL connection string built")

    else:
        raise ValueError(
            f"Unsupported database type: {db_config.db_type}. "
            f"Supported types: {', '.join([t.value for t in DatabaseType])}"
        )

    return connection_url
