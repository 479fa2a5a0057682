"""
Configuration Management for the Persistence Core
Centralizes all configuration with environment variable support
"""
import os
from pathlib import Path
from typing import Optional
import logging
from urllib.parse import urlparse

from dotenv import load_dotenv

# Hydrate env vars from a local .env in the current working directory when present.
load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_MIGRATIONS_PATH = Path(__file__).resolve().parent / "migrations"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")


class DatabaseConfig:
    """Database configuration with secure defaults"""

    def __init__(self):
        # Try individual vars first
        self.host = os.getenv('DB_HOST', '')
        self.database = os.getenv('DB_NAME', '')
        self.user = os.getenv('DB_USER', '')
        self.password = os.getenv('DB_PASSWORD', '')
        self.port = _env_int('DB_PORT', 5432)
        self.ssl = os.getenv('DB_SSL', 'true').lower() not in ('false', '0', 'no')
        self.ssl_verify = os.getenv('DB_SSL_VERIFY', 'true').lower() not in ('false', '0', 'no')
        self.connect_timeout = _env_float('DB_CONNECT_TIMEOUT', 10.0)
        self.command_timeout = _env_float('DB_COMMAND_TIMEOUT', 30.0)

        # Fallback to DATABASE_URL if individual vars not set
        if not all([self.host, self.database, self.user, self.password]):
            database_url = os.getenv('DATABASE_URL', '')
            if database_url:
                try:
                    parsed = urlparse(database_url)
                    self.host = parsed.hostname or ''
                    self.database = parsed.path.lstrip('/') if parsed.path else ''
                    self.user = parsed.username or ''
                    self.password = parsed.password or ''
                    self.port = parsed.port or 5432
                    logger.info("Parsed DATABASE_URL: host=%s, db=%s", self.host, self.database)
                except ValueError as e:
                    logger.error("Failed to parse DATABASE_URL: %s", e)

    @property
    def is_complete(self) -> bool:
        return all([self.host, self.database, self.user, self.password])

    @property
    def connection_string(self) -> str:
        """Get PostgreSQL connection string"""
        if not self.is_complete:
            raise RuntimeError(
                "Database configuration is incomplete. "
                "Ensure DB_HOST, DB_NAME, DB_USER, and DB_PASSWORD are set."
            )
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def to_dict(self) -> dict:
        """Get config as dictionary (without password for logging)"""
        return {
            'host': self.host,
            'database': self.database,
            'user': self.user,
            'port': self.port,
            'password': '***REDACTED***',
            'ssl': self.ssl,
            'ssl_verify': self.ssl_verify,
        }


class PoolSettings:
    """Connection pool bounds and health-check tuning (pool.* options)"""

    def __init__(
        self,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
        idle_timeout_ms: Optional[int] = None,
        probe_attempts: Optional[int] = None,
        probe_retry_delay_ms: Optional[int] = None,
        high_utilization_threshold: Optional[float] = None,
    ):
        self.min_size = min_size if min_size is not None else _env_int('POOL_MIN', 2)
        self.max_size = max_size if max_size is not None else _env_int('POOL_MAX', 10)
        self.acquire_timeout_ms = (
            acquire_timeout_ms if acquire_timeout_ms is not None
            else _env_int('POOL_ACQUIRE_TIMEOUT_MS', 5000)
        )
        self.idle_timeout_ms = (
            idle_timeout_ms if idle_timeout_ms is not None
            else _env_int('POOL_IDLE_TIMEOUT_MS', 60000)
        )
        self.probe_attempts = (
            probe_attempts if probe_attempts is not None
            else _env_int('POOL_PROBE_ATTEMPTS', 3)
        )
        self.probe_retry_delay_ms = (
            probe_retry_delay_ms if probe_retry_delay_ms is not None
            else _env_int('POOL_PROBE_RETRY_DELAY_MS', 200)
        )
        self.high_utilization_threshold = (
            high_utilization_threshold if high_utilization_threshold is not None
            else _env_float('POOL_HIGH_UTILIZATION', 0.8)
        )

        if self.max_size < 1:
            raise RuntimeError(f"POOL_MAX must be at least 1, got {self.max_size}")
        if self.min_size < 0 or self.min_size > self.max_size:
            raise RuntimeError(
                f"POOL_MIN must be between 0 and POOL_MAX ({self.max_size}), got {self.min_size}"
            )
        if self.probe_attempts < 1:
            raise RuntimeError("POOL_PROBE_ATTEMPTS must be at least 1")
        if not 0.0 < self.high_utilization_threshold <= 1.0:
            raise RuntimeError("POOL_HIGH_UTILIZATION must be in (0, 1]")

    @property
    def acquire_timeout(self) -> float:
        return self.acquire_timeout_ms / 1000.0

    @property
    def idle_timeout(self) -> float:
        return self.idle_timeout_ms / 1000.0

    @property
    def probe_retry_delay(self) -> float:
        return self.probe_retry_delay_ms / 1000.0

    def to_dict(self) -> dict:
        return {
            'min': self.min_size,
            'max': self.max_size,
            'acquire_timeout_ms': self.acquire_timeout_ms,
            'idle_timeout_ms': self.idle_timeout_ms,
            'probe_attempts': self.probe_attempts,
            'probe_retry_delay_ms': self.probe_retry_delay_ms,
            'high_utilization_threshold': self.high_utilization_threshold,
        }


class AppConfig:
    """Main configuration"""

    def __init__(self):
        self.version = "1.0.0"
        self.service_name = "Clinic Records Persistence Core"
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.environment = os.getenv('ENVIRONMENT', 'production')
        self.slow_query_threshold_ms = _env_float('SLOW_QUERY_THRESHOLD_MS', 100.0)
        self.migrations_path = Path(os.getenv('MIGRATIONS_PATH', str(DEFAULT_MIGRATIONS_PATH)))
        self.database = DatabaseConfig()
        self.pool = PoolSettings()


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the service-wide logging format."""
    logging.basicConfig(
        level=getattr(logging, (level or config.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


config = AppConfig()
