"""
Unit tests for custom exceptions.

Tests exception hierarchy and error messages.
"""

from mdb_entity.exceptions import (
    ConfigurationError,
    DatabaseConnectionError,
    DuplicateKeyError,
    InitializationError,
    InvalidArgumentError,
    MongoEntityError,
    NotFoundError,
    OperationError,
    PoolExhaustedError,
    ResolutionError,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    def test_base_error_is_runtime_error(self):
        error = MongoEntityError("test error")
        assert isinstance(error, RuntimeError)

    def test_taxonomy_shares_base(self):
        for cls in (
            NotFoundError,
            DuplicateKeyError,
            InvalidArgumentError,
            ResolutionError,
            DatabaseConnectionError,
            PoolExhaustedError,
            InitializationError,
            OperationError,
            ConfigurationError,
        ):
            assert issubclass(cls, MongoEntityError), cls

    def test_connection_errors_are_builtin_connection_errors(self):
        """Transport failures can be caught as builtin ConnectionError."""
        assert isinstance(DatabaseConnectionError("down"), ConnectionError)
        assert isinstance(PoolExhaustedError("full"), DatabaseConnectionError)
        assert isinstance(InitializationError("no server"), DatabaseConnectionError)

    def test_invalid_argument_is_value_error(self):
        assert isinstance(InvalidArgumentError("page must be >= 1"), ValueError)

    def test_resolution_error_is_type_error(self):
        assert isinstance(ResolutionError("int is not an entity"), TypeError)

    def test_not_found_is_not_operation_error(self):
        """A zero-match outcome must be distinguishable from a real failure."""
        assert not issubclass(NotFoundError, OperationError)
        assert not issubclass(OperationError, NotFoundError)


class TestExceptionMessages:
    """Test exception message formatting."""

    def test_message_without_context(self):
        message = "Something went wrong"
        error = MongoEntityError(message)
        assert str(error) == message
        assert error.message == message
        assert error.context == {}

    def test_message_with_context(self):
        error = MongoEntityError("Something went wrong", context={"collection": "car"})
        assert "context:" in str(error)
        assert "collection=car" in str(error)

    def test_not_found_carries_collection_and_filter(self):
        error = NotFoundError("No car", "car", {"carId": 42})
        assert error.collection == "car"
        assert error.filter == {"carId": 42}
        assert error.context["collection"] == "car"

    def test_pool_exhausted_context(self):
        error = PoolExhaustedError("full", max_pool_size=4, timeout=0.5)
        assert error.max_pool_size == 4
        assert error.timeout == 0.5
        assert error.context == {"max_pool_size": 4, "timeout": 0.5}

    def test_initialization_error_with_context(self):
        error = InitializationError(
            "Connection failed", mongo_uri="mongodb://localhost:27017", db_name="test_db"
        )
        assert error.mongo_uri == "mongodb://localhost:27017"
        assert error.db_name == "test_db"
        assert "mongo_uri" in error.context
        assert "db_name" in error.context

    def test_operation_error_failures(self):
        failures = [{"index": 0, "code": 11000, "message": "dup"}]
        error = OperationError("1 write(s) failed", failures=failures)
        assert error.failures == failures
        assert error.context["failure_count"] == 1

    def test_operation_error_defaults_to_no_failures(self):
        assert OperationError("boom").failures == []

    def test_resolution_error_value_type(self):
        error = ResolutionError("not an entity", value_type="int")
        assert error.value_type == "int"
        assert "value_type=int" in str(error)

    def test_configuration_error_context(self):
        error = ConfigurationError("bad", config_key="max_pool_size", config_value=0)
        assert error.context == {"config_key": "max_pool_size", "config_value": 0}
