"""
Configuration management for MDB_ENTITY.

The connection pool can always be constructed with direct parameters;
EngineConfig only gathers them from the environment for callers that
prefer twelve-factor style setup.
"""

import os
from urllib.parse import unquote, urlsplit

from .constants import (
    DEFAULT_DB_NAME,
    DEFAULT_MAX_POOL_SIZE,
    DEFAULT_MONGO_URI,
    DEFAULT_SOCKET_TIMEOUT,
)
from .exceptions import ConfigurationError


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class EngineConfig:
    """
    Connection pool configuration.

    Example:
        # Using environment variables
        config = EngineConfig()
        config.validate()
        pool = ConnectionPool(
            mongo_uri=config.mongo_uri,
            db_name=config.db_name,
            max_pool_size=config.max_pool_size,
            socket_timeout=config.socket_timeout,
        )

        # Or using direct parameters
        config = EngineConfig(mongo_uri="mongodb://localhost:27017/cars")
    """

    def __init__(
        self,
        mongo_uri: str | None = None,
        db_name: str | None = None,
        max_pool_size: int | None = None,
        socket_timeout: float | None = None,
        block_on_exhaustion: bool | None = None,
    ):
        """
        Initialize configuration.

        Args:
            mongo_uri: MongoDB connection URI (defaults to MONGO_URI, then
                MONGODB env var, then a localhost URI)
            db_name: Database name (defaults to DB_NAME env var, then the
                database named in the URI path)
            max_pool_size: Maximum live sessions (defaults to 128 or MONGO_MAX_POOL_SIZE)
            socket_timeout: Socket timeout in seconds (defaults to 30 or MONGO_SOCKET_TIMEOUT)
            block_on_exhaustion: Wait for a free lease instead of failing fast
                (defaults to true or MONGO_BLOCK_ON_EXHAUSTION)
        """
        self.mongo_uri = (
            mongo_uri or os.getenv("MONGO_URI") or os.getenv("MONGODB") or DEFAULT_MONGO_URI
        )
        self.db_name = db_name or os.getenv("DB_NAME") or database_from_uri(self.mongo_uri)
        try:
            self.max_pool_size = max_pool_size or int(
                os.getenv("MONGO_MAX_POOL_SIZE", str(DEFAULT_MAX_POOL_SIZE))
            )
            self.socket_timeout = socket_timeout or float(
                os.getenv("MONGO_SOCKET_TIMEOUT", str(DEFAULT_SOCKET_TIMEOUT))
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric pool setting: {e}") from e
        if block_on_exhaustion is None:
            block_on_exhaustion = _env_bool("MONGO_BLOCK_ON_EXHAUSTION", True)
        self.block_on_exhaustion = block_on_exhaustion

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigurationError: If required configuration is missing or invalid
        """
        if not self.mongo_uri:
            raise ConfigurationError(
                "mongo_uri is required (set MONGO_URI environment variable or pass directly)",
                config_key="mongo_uri",
            )

        if not self.db_name:
            raise ConfigurationError(
                "db_name is required (set DB_NAME environment variable or pass directly)",
                config_key="db_name",
            )

        if self.max_pool_size < 1:
            raise ConfigurationError(
                f"max_pool_size must be >= 1, got {self.max_pool_size}",
                config_key="max_pool_size",
                config_value=self.max_pool_size,
            )

        if self.socket_timeout <= 0:
            raise ConfigurationError(
                f"socket_timeout must be > 0, got {self.socket_timeout}",
                config_key="socket_timeout",
                config_value=self.socket_timeout,
            )

    def __repr__(self) -> str:
        return (
            f"EngineConfig(db_name={self.db_name!r}, max_pool_size={self.max_pool_size}, "
            f"socket_timeout={self.socket_timeout}, "
            f"block_on_exhaustion={self.block_on_exhaustion})"
        )


def database_from_uri(mongo_uri: str) -> str:
    """
    Return the database named in a MongoDB URI path, or the default.

    Malformed URIs fall back to the default here; the pool reports them
    when it actually connects.
    """
    try:
        path = urlsplit(mongo_uri).path
    except ValueError:
        return DEFAULT_DB_NAME
    return unquote(path.lstrip("/")) or DEFAULT_DB_NAME
