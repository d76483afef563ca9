"""
Driver error classification.

Maps pymongo/bson exceptions onto the MDB_ENTITY taxonomy so callers never
handle raw driver errors. Nothing here retries; retry policy belongs to the
application.

Usage:
    from mdb_entity.database.errors import translate_errors

    with translate_errors("insert", collection="car"):
        await collection.insert_one(doc)
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from bson.errors import InvalidDocument
from pymongo.errors import (
    AutoReconnect,
    BulkWriteError,
    ConnectionFailure,
    DuplicateKeyError as PyMongoDuplicateKeyError,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WaitQueueTimeoutError,
)

from ..constants import DUPLICATE_KEY_CODES
from ..exceptions import (
    DatabaseConnectionError,
    DuplicateKeyError,
    MongoEntityError,
    OperationError,
    PoolExhaustedError,
)

logger = logging.getLogger(__name__)


def summarize_write_errors(exc: BulkWriteError) -> list[dict[str, Any]]:
    """
    Flatten a BulkWriteError into one entry per failed write.

    Each entry carries the batch index, server error code and message.
    """
    details = exc.details or {}
    failures = [
        {
            "index": err.get("index"),
            "code": err.get("code"),
            "message": err.get("errmsg", ""),
        }
        for err in details.get("writeErrors", [])
    ]
    for err in details.get("writeConcernErrors", []):
        failures.append(
            {"index": None, "code": err.get("code"), "message": err.get("errmsg", "")}
        )
    return failures


def classify_error(
    exc: BaseException,
    operation: str,
    collection: str | None = None,
) -> MongoEntityError:
    """
    Return the MDB_ENTITY error corresponding to a driver exception.

    Already-classified errors are returned unchanged. The caller is expected
    to raise the result ``from exc``.

    Args:
        exc: Exception raised by motor/pymongo/bson
        operation: Engine operation name, recorded in the error context
        collection: Target collection, recorded in the error context
    """
    if isinstance(exc, MongoEntityError):
        return exc

    context: dict[str, Any] = {"operation": operation, "error_type": type(exc).__name__}
    if collection:
        context["collection"] = collection

    if isinstance(exc, PyMongoDuplicateKeyError):
        details = getattr(exc, "details", None) or {}
        if details.get("keyValue"):
            context["key"] = details["keyValue"]
        return DuplicateKeyError(f"Duplicate key in {operation}: {exc}", context=context)

    if isinstance(exc, BulkWriteError):
        failures = summarize_write_errors(exc)
        duplicate_count = sum(1 for f in failures if f["code"] in DUPLICATE_KEY_CODES)
        if duplicate_count:
            context["duplicate_count"] = duplicate_count
        inserted = (exc.details or {}).get("nInserted")
        if inserted is not None:
            context["inserted"] = inserted
        return OperationError(
            f"{len(failures)} write(s) failed in {operation}",
            failures=failures,
            context=context,
        )

    if isinstance(exc, WaitQueueTimeoutError):
        return PoolExhaustedError(
            f"Driver connection pool exhausted in {operation}: {exc}", context=context
        )

    if isinstance(
        exc, (ConnectionFailure, ServerSelectionTimeoutError, NetworkTimeout, AutoReconnect)
    ):
        return DatabaseConnectionError(
            f"Connection failure in {operation}: {exc}", context=context
        )

    code = getattr(exc, "code", None)
    if code in DUPLICATE_KEY_CODES:
        return DuplicateKeyError(f"Duplicate key in {operation}: {exc}", context=context)
    if code is not None:
        context["code"] = code
    return OperationError(f"{operation} failed: {exc}", context=context)


@contextmanager
def translate_errors(operation: str, collection: str | None = None) -> Iterator[None]:
    """
    Re-raise driver exceptions raised in the block as MDB_ENTITY errors.

    Exceptions that are neither driver errors nor MDB_ENTITY errors
    propagate untouched.
    """
    try:
        yield
    except MongoEntityError:
        raise
    except (PyMongoError, InvalidDocument) as e:
        classified = classify_error(e, operation, collection)
        logger.debug(
            f"{operation} on {collection or '<none>'} failed: "
            f"{type(e).__name__} -> {type(classified).__name__}"
        )
        raise classified from e
