"""
MDB_ENTITY - Generic entity data access for MongoDB

Store, query and aggregate arbitrary typed entities through a pooled,
session-per-operation engine, without hand-written collection names or
query boilerplate.
"""

from .config import EngineConfig
# Core engine
from .core import EntityEngine, create_engine
# Database layer
from .database import ConnectionPool, PooledSession
# Entity mapping
from .entities import CollectionNamed, CollectionResolver, resolve_collection
from .exceptions import (ConfigurationError, DatabaseConnectionError,
                         DuplicateKeyError, InitializationError,
                         InvalidArgumentError, MongoEntityError,
                         NotFoundError, OperationError, PoolExhaustedError,
                         ResolutionError)

__version__ = "0.1.0"

__all__ = [
    # Core
    "EntityEngine",
    "create_engine",
    "EngineConfig",
    # Database
    "ConnectionPool",
    "PooledSession",
    # Entities
    "CollectionNamed",
    "CollectionResolver",
    "resolve_collection",
    # Errors
    "MongoEntityError",
    "NotFoundError",
    "DuplicateKeyError",
    "InvalidArgumentError",
    "ResolutionError",
    "DatabaseConnectionError",
    "PoolExhaustedError",
    "InitializationError",
    "OperationError",
    "ConfigurationError",
]
