"""
Custom exceptions for MDB_ENTITY.

Every error that leaves the engine is one of these types, so callers can
pattern-match on a small, stable vocabulary instead of raw driver errors.
"""

from typing import Any, Dict, List, Optional


class MongoEntityError(RuntimeError):
    """
    Base exception for MDB_ENTITY errors.

    Attributes:
        message: Error message
        context: Optional dictionary with additional context (operation,
                 collection, etc.)
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            context: Optional dictionary with additional context information
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (context: {context_str})"
        return self.message


class NotFoundError(MongoEntityError):
    """
    Raised when an operation expecting at least one match finds none.

    This is an expected outcome for find_one, update_one and remove_one,
    not an operational failure.
    """

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        filter: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if collection:
            context["collection"] = collection
        if filter is not None:
            context["filter"] = filter
        super().__init__(message, context=context)
        self.collection = collection
        self.filter = filter


class DuplicateKeyError(MongoEntityError):
    """Raised when an insert or upsert violates a unique constraint."""


class InvalidArgumentError(MongoEntityError, ValueError):
    """Raised when caller-supplied pagination, filters or updates are malformed."""


class ResolutionError(MongoEntityError, TypeError):
    """
    Raised when no collection name can be resolved for a value.

    Attributes:
        value_type: Name of the offending type (if available)
    """

    def __init__(
        self,
        message: str,
        value_type: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if value_type:
            context["value_type"] = value_type
        super().__init__(message, context=context)
        self.value_type = value_type


class DatabaseConnectionError(MongoEntityError, ConnectionError):
    """
    Raised on transport failures, timeouts, or use of an uninitialized pool.
    """


class PoolExhaustedError(DatabaseConnectionError):
    """
    Raised when no session lease becomes available in time.

    Attributes:
        max_pool_size: Configured upper bound on live sessions
        timeout: Seconds waited before giving up (None for fail-fast pools)
    """

    def __init__(
        self,
        message: str,
        max_pool_size: Optional[int] = None,
        timeout: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if max_pool_size is not None:
            context["max_pool_size"] = max_pool_size
        if timeout is not None:
            context["timeout"] = timeout
        super().__init__(message, context=context)
        self.max_pool_size = max_pool_size
        self.timeout = timeout


class InitializationError(DatabaseConnectionError):
    """
    Raised when the connection pool cannot be established.

    Attributes:
        message: Error message
        mongo_uri: MongoDB connection URI (if available)
        db_name: Database name (if available)
        context: Additional context information
    """

    def __init__(
        self,
        message: str,
        mongo_uri: Optional[str] = None,
        db_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Initialize the initialization error.

        Args:
            message: Error message
            mongo_uri: MongoDB connection URI (if available)
            db_name: Database name (if available)
            context: Additional context information
        """
        context = context or {}
        if mongo_uri:
            context["mongo_uri"] = mongo_uri
        if db_name:
            context["db_name"] = db_name
        super().__init__(message, context=context)
        self.mongo_uri = mongo_uri
        self.db_name = db_name


class OperationError(MongoEntityError):
    """
    Catch-all for backend failures.

    Attributes:
        failures: Individual write failures for batch operations
    """

    def __init__(
        self,
        message: str,
        failures: Optional[List[Dict[str, Any]]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if failures:
            context["failure_count"] = len(failures)
        super().__init__(message, context=context)
        self.failures = failures or []


class ConfigurationError(MongoEntityError):
    """
    Raised when configuration is invalid or missing.

    Attributes:
        message: Error message
        config_key: Configuration key that caused the error (if available)
        config_value: Configuration value that caused the error (if available)
        context: Additional context information
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if config_key:
            context["config_key"] = config_key
        if config_value is not None:
            context["config_value"] = config_value
        super().__init__(message, context=context)
        self.config_key = config_key
        self.config_value = config_value
