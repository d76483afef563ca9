"""
Constants for MDB_ENTITY.

This module contains all shared constants used across the codebase to avoid
magic numbers and improve maintainability.
"""

from typing import Final

# ============================================================================
# CONNECTION POOL CONSTANTS
# ============================================================================

DEFAULT_MONGO_URI: Final[str] = "mongodb://127.0.0.1:27017/test"
"""Fallback MongoDB URI when neither MONGO_URI nor MONGODB is set."""

DEFAULT_DB_NAME: Final[str] = "test"
"""Database used when neither the URI path nor DB_NAME names one."""

DEFAULT_MAX_POOL_SIZE: Final[int] = 128
"""Default upper bound on concurrently live sessions."""

DEFAULT_SOCKET_TIMEOUT: Final[float] = 30.0
"""Default socket timeout in seconds (also bounds waiting for a free lease)."""

POOL_USAGE_WARNING_PERCENT: Final[float] = 80.0
"""Pool usage above which get_pool_metrics() logs a warning."""

APP_NAME: Final[str] = "MDB_ENTITY"
"""Application name reported to the MongoDB server."""

# ============================================================================
# QUERY CONSTANTS
# ============================================================================

DEFAULT_PAGE: Final[int] = 1
"""First page (pages are 1-indexed)."""

DEFAULT_PAGE_SIZE: Final[int] = 10
"""Default number of documents per page for find()."""

DESCENDING_PREFIX: Final[str] = "-"
"""Sort field prefix marking descending order."""

# ============================================================================
# RESOLUTION CONSTANTS
# ============================================================================

NAMING_METHOD: Final[str] = "collection_name"
"""Name of the optional method an entity class uses to name its collection."""

MAX_COLLECTION_NAME_LENGTH: Final[int] = 255
"""Maximum length for MongoDB collection names."""

# ============================================================================
# ERROR CODES
# ============================================================================

DUPLICATE_KEY_CODES: Final[frozenset[int]] = frozenset({11000, 11001, 12582})
"""Server error codes reported for unique index violations."""

INDEX_CONFLICT_CODES: Final[frozenset[int]] = frozenset({85, 86, 197})
"""IndexOptionsConflict, IndexKeySpecsConflict, InvalidIndexSpecificationOption."""

# ============================================================================
# METRICS CONSTANTS
# ============================================================================

MAX_METRICS: Final[int] = 10000
"""Maximum number of distinct metric keys kept before LRU eviction."""
