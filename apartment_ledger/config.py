"""
Configuration management for the ledger engine.
Handles .env-based configuration for the database and ledger policies,
with an optional YAML file for deployments that keep settings on disk.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from decouple import config as env_config


class DatabaseType(Enum):
    """Supported database types"""
    POSTGRESQL = "postgresql"
    MARIADB = "mariadb"
    SQLITE = "sqlite"


class BackfillPolicy(Enum):
    """
    How a late-joining apartment is charged for expenses already split.

    PRORATED: equal share of (splits + 1), scaled by occupied days in the
              expense month.
    FLAT:     equal share of (splits + 1), no day scaling.
    """
    PRORATED = "prorated"
    FLAT = "flat"


@dataclass
class DatabaseConfig:
    """
    Database connection configuration.
    Supports PostgreSQL, MariaDB and SQLite (file or in-memory).
    """
    db_type: DatabaseType
    host: str = ''
    port: int = 0
    database: str = ''
    username: str = ''
    password: str = ''
    url: Optional[str] = None  # Full SQLAlchemy URL, overrides the fields above

    # Connection pool settings
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True
    echo: bool = False

    def __repr__(self) -> str:
        """Safe representation without password"""
        return (f"DatabaseConfig(db_type={self.db_type.value}, host={self.host}, "
                f"database={self.database}, username={self.username})")


@dataclass
class LedgerConfig:
    """
    Main configuration for the ledger engine.
    Manages the database connection, backfill policy and audit logging.
    """
    database: DatabaseConfig = field(
        default_factory=lambda: DatabaseConfig(db_type=DatabaseType.SQLITE, database=':memory:')
    )
    backfill_policy: BackfillPolicy = BackfillPolicy.PRORATED
    audit_log_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'LedgerConfig':
        """
        Load configuration from environment variables (.env file).

        Returns:
            LedgerConfig: Configuration loaded from environment
        """
        db_type = DatabaseType(env_config('LEDGER_DB_TYPE', default='postgresql'))
        database = DatabaseConfig(
            db_type=db_type,
            url=env_config('LEDGER_DATABASE_URL', default=None),
            host=env_config('LEDGER_DB_HOST', default='localhost'),
            port=env_config('LEDGER_DB_PORT', default=_default_port(db_type), cast=int),
            database=env_config('LEDGER_DB_NAME', default='apartment_ledger'),
            username=env_config('LEDGER_DB_USERNAME', default=''),
            password=env_config('LEDGER_DB_PASSWORD', default=''),
            pool_size=env_config('LEDGER_DB_POOL_SIZE', default=5, cast=int),
            max_overflow=env_config('LEDGER_DB_MAX_OVERFLOW', default=10, cast=int),
            pool_timeout=env_config('LEDGER_DB_POOL_TIMEOUT', default=30, cast=int),
            echo=env_config('LEDGER_DB_ECHO', default=False, cast=bool),
        )

        return cls(
            database=database,
            backfill_policy=BackfillPolicy(env_config('LEDGER_BACKFILL_POLICY', default='prorated')),
            audit_log_dir=env_config('LEDGER_AUDIT_LOG_DIR', default=None),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'LedgerConfig':
        """
        Load configuration from a YAML file.

        Expected layout:
            database:
              type: postgresql
              host: db.internal
              name: apartment_ledger
              username: ledger
              password: ...
            ledger:
              backfill_policy: prorated
              audit_log_dir: /var/log/apartment-ledger

        Args:
            path: Path to the YAML file

        Returns:
            LedgerConfig: Configuration loaded from the file
        """
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        db_data: Dict[str, Any] = data.get('database') or {}
        ledger_data: Dict[str, Any] = data.get('ledger') or {}
        pool_data: Dict[str, Any] = db_data.get('pool') or {}

        db_type = DatabaseType(db_data.get('type', 'postgresql'))
        database = DatabaseConfig(
            db_type=db_type,
            url=db_data.get('url'),
            host=db_data.get('host', 'localhost'),
            port=int(db_data.get('port') or _default_port(db_type)),
            database=db_data.get('name', 'apartment_ledger'),
            username=db_data.get('username', ''),
            password=db_data.get('password', ''),
            pool_size=pool_data.get('size', 5),
            max_overflow=pool_data.get('max_overflow', 10),
            pool_timeout=pool_data.get('timeout', 30),
            echo=bool(db_data.get('echo', False)),
        )

        return cls(
            database=database,
            backfill_policy=BackfillPolicy(ledger_data.get('backfill_policy', 'prorated')),
            audit_log_dir=ledger_data.get('audit_log_dir'),
        )


def _default_port(db_type: DatabaseType) -> int:
    if db_type == DatabaseType.POSTGRESQL:
        return 5432
    if db_type == DatabaseType.MARIADB:
        return 3306
    return 0
