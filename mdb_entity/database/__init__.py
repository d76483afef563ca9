"""
Database layer.

Provides the session-leasing connection pool and driver error
classification.
"""

from .connection import ConnectionPool, PooledSession
from .errors import classify_error, summarize_write_errors, translate_errors

__all__ = [
    # Connection pooling
    "ConnectionPool",
    "PooledSession",
    # Error classification
    "classify_error",
    "translate_errors",
    "summarize_write_errors",
]
