"""
Connection pool and session leases for MDB_ENTITY.

A ConnectionPool owns one AsyncIOMotorClient (the master connection) and
hands out PooledSession leases. Each lease wraps its own driver session, so
concurrent operations never share a command-execution context. The number
of live leases is bounded by ``max_pool_size``; the driver's socket pool is
sized to the same bound.

This module is part of MDB_ENTITY.

Usage:
    from mdb_entity.database import ConnectionPool

    pool = ConnectionPool("mongodb://localhost:27017/cars", max_pool_size=16)
    await pool.initialize()

    async with pool.lease() as lease:
        await lease.collection("car").insert_one(doc, session=lease.session)

    await pool.shutdown()
"""

import asyncio
import itertools
import logging
import threading
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorCollection,
    AsyncIOMotorDatabase,
)
from pymongo.errors import (
    ConfigurationError as PyMongoConfigurationError,
    ConnectionFailure,
    InvalidOperation,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from ..config import database_from_uri
from ..constants import (
    APP_NAME,
    DEFAULT_MAX_POOL_SIZE,
    DEFAULT_SOCKET_TIMEOUT,
    POOL_USAGE_WARNING_PERCENT,
)
from ..exceptions import DatabaseConnectionError, InitializationError, PoolExhaustedError
from ..observability import get_logger as get_contextual_logger
from ..observability import record_operation
from .errors import translate_errors

logger = logging.getLogger(__name__)
contextual_logger = get_contextual_logger(__name__)

_lease_ids = itertools.count(1)


class PooledSession:
    """
    A lease on the pool: one driver session, used for one operation.

    Leases are created by ConnectionPool.acquire() and must be handed back
    through ConnectionPool.release() (or used via ``async with pool.lease()``).
    """

    def __init__(
        self,
        pool: "ConnectionPool",
        session: AsyncIOMotorClientSession,
        database: AsyncIOMotorDatabase,
    ) -> None:
        self.lease_id = next(_lease_ids)
        self.acquired_at = time.monotonic()
        self._pool = pool
        self._session = session
        self._database = database
        self._released = False

    @property
    def session(self) -> AsyncIOMotorClientSession:
        """Driver session; pass it as ``session=`` to every driver call."""
        if self._released:
            raise DatabaseConnectionError(
                "Session lease already released", context={"lease_id": self.lease_id}
            )
        return self._session

    @property
    def database(self) -> AsyncIOMotorDatabase:
        return self._database

    @property
    def client(self) -> AsyncIOMotorClient:
        return self._database.client

    @property
    def released(self) -> bool:
        return self._released

    def collection(self, name: str) -> AsyncIOMotorCollection:
        return self._database[name]

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"<PooledSession #{self.lease_id} db={self._pool.db_name!r} {state}>"


class ConnectionPool:
    """
    Owns the master MongoDB client and bounds concurrently live sessions.

    The pool is an explicit value: construct one per logical database and
    inject it into an EntityEngine. Live-lease bookkeeping is guarded by a
    lock so the count never exceeds ``max_pool_size``.
    """

    def __init__(
        self,
        mongo_uri: str,
        db_name: str | None = None,
        max_pool_size: int = DEFAULT_MAX_POOL_SIZE,
        socket_timeout: float = DEFAULT_SOCKET_TIMEOUT,
        block_on_exhaustion: bool = True,
    ) -> None:
        """
        Initialize the connection pool (no I/O until initialize()).

        Args:
            mongo_uri: MongoDB connection URI
            db_name: Database name (defaults to the database in the URI path)
            max_pool_size: Upper bound on concurrently live sessions
            socket_timeout: Socket timeout in seconds; also bounds how long
                acquire() waits for a free lease
            block_on_exhaustion: Wait for a free lease when saturated instead
                of raising PoolExhaustedError immediately
        """
        if max_pool_size < 1:
            raise ValueError(f"max_pool_size must be >= 1, got {max_pool_size}")
        if socket_timeout <= 0:
            raise ValueError(f"socket_timeout must be > 0, got {socket_timeout}")

        self.mongo_uri = mongo_uri
        self.db_name = db_name or database_from_uri(mongo_uri)
        self.max_pool_size = max_pool_size
        self.socket_timeout = socket_timeout
        self.block_on_exhaustion = block_on_exhaustion

        self._mongo_client: AsyncIOMotorClient | None = None
        self._mongo_db: AsyncIOMotorDatabase | None = None
        self._initialized: bool = False

        self._lock = threading.Lock()
        self._slots = asyncio.Semaphore(max_pool_size)
        self._live_sessions = 0
        self._peak_sessions = 0
        self._total_acquired = 0

    async def initialize(self) -> None:
        """
        Connect to MongoDB and verify the connection with a ping.

        Calling this on an already initialized pool is a no-op.

        Raises:
            InitializationError: If the URI is malformed or the server unreachable
        """
        start_time = time.time()

        if self._initialized:
            logger.warning("ConnectionPool already initialized. Skipping re-initialization.")
            return

        contextual_logger.info(
            "Initializing MongoDB connection pool",
            extra={
                "db_name": self.db_name,
                "max_pool_size": self.max_pool_size,
                "socket_timeout": self.socket_timeout,
            },
        )

        timeout_ms = int(self.socket_timeout * 1000)
        client: AsyncIOMotorClient | None = None
        try:
            client = AsyncIOMotorClient(
                self.mongo_uri,
                appname=APP_NAME,
                maxPoolSize=self.max_pool_size,
                socketTimeoutMS=timeout_ms,
                connectTimeoutMS=timeout_ms,
                serverSelectionTimeoutMS=timeout_ms,
                waitQueueTimeoutMS=timeout_ms,
            )
            await client.admin.command("ping")
        except (
            PyMongoConfigurationError,
            ConnectionFailure,
            ServerSelectionTimeoutError,
            OperationFailure,
            TypeError,
            ValueError,
        ) as e:
            if client is not None:
                client.close()
            duration_ms = (time.time() - start_time) * 1000
            record_operation("pool.initialize", duration_ms, success=False)
            contextual_logger.critical(
                "MongoDB connection failed",
                extra={
                    "error_type": type(e).__name__,
                    "error": str(e),
                    "duration_ms": round(duration_ms, 2),
                },
                exc_info=True,
            )
            raise InitializationError(
                f"Failed to connect to MongoDB: {e}",
                mongo_uri=self.mongo_uri,
                db_name=self.db_name,
                context={
                    "error_type": type(e).__name__,
                    "max_pool_size": self.max_pool_size,
                },
            ) from e

        self._mongo_client = client
        self._mongo_db = client[self.db_name]
        self._initialized = True

        duration_ms = (time.time() - start_time) * 1000
        record_operation("pool.initialize", duration_ms, success=True)
        contextual_logger.info(
            "MongoDB connection pool initialized",
            extra={
                "db_name": self.db_name,
                "max_pool_size": self.max_pool_size,
                "duration_ms": round(duration_ms, 2),
            },
        )

    async def shutdown(self) -> None:
        """
        Close the master client. Idempotent; leases still live become unusable.
        """
        if not self._initialized:
            return

        contextual_logger.info("Shutting down MongoDB connection pool...")
        if self._live_sessions:
            logger.warning(f"Closing pool with {self._live_sessions} live session lease(s)")

        if self._mongo_client is not None:
            try:
                self._mongo_client.close()
            except (InvalidOperation, RuntimeError) as e:
                logger.warning(f"Error closing MongoDB client: {e}")

        self._initialized = False
        self._mongo_client = None
        self._mongo_db = None
        contextual_logger.info("MongoDB connection pool closed")

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def client(self) -> AsyncIOMotorClient:
        """
        Get the master MongoDB client.

        Raises:
            DatabaseConnectionError: If the pool is not initialized
        """
        self._require_initialized()
        return self._mongo_client

    @property
    def database(self) -> AsyncIOMotorDatabase:
        """
        Get the pool's database.

        Raises:
            DatabaseConnectionError: If the pool is not initialized
        """
        self._require_initialized()
        return self._mongo_db

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise DatabaseConnectionError(
                "ConnectionPool not initialized. Call initialize() first.",
                context={"db_name": self.db_name},
            )

    async def _reserve_slot(self) -> None:
        if not self.block_on_exhaustion and self._slots.locked():
            raise PoolExhaustedError(
                "No session lease available", max_pool_size=self.max_pool_size
            )
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self.socket_timeout)
        except asyncio.TimeoutError as e:
            raise PoolExhaustedError(
                f"Timed out after {self.socket_timeout}s waiting for a session lease",
                max_pool_size=self.max_pool_size,
                timeout=self.socket_timeout,
            ) from e

        with self._lock:
            self._live_sessions += 1
            self._total_acquired += 1
            self._peak_sessions = max(self._peak_sessions, self._live_sessions)

    def _free_slot(self) -> None:
        with self._lock:
            self._live_sessions -= 1
        self._slots.release()

    async def acquire(self) -> PooledSession:
        """
        Lease an isolated session.

        Raises:
            DatabaseConnectionError: If the pool is not initialized or the
                driver cannot start a session
            PoolExhaustedError: If no lease frees up within socket_timeout
                (or immediately, for fail-fast pools)
        """
        self._require_initialized()
        start_time = time.time()
        try:
            await self._reserve_slot()
        except PoolExhaustedError:
            record_operation("pool.acquire", (time.time() - start_time) * 1000, success=False)
            contextual_logger.warning(
                "Session pool exhausted",
                extra={"max_pool_size": self.max_pool_size, "live": self._live_sessions},
            )
            raise

        try:
            with translate_errors("pool.acquire"):
                self._require_initialized()
                session = await self._mongo_client.start_session()
        except BaseException:
            self._free_slot()
            raise

        lease = PooledSession(self, session, self._mongo_db)
        record_operation("pool.acquire", (time.time() - start_time) * 1000, success=True)
        logger.debug(f"Acquired {lease!r} ({self._live_sessions}/{self.max_pool_size} live)")
        return lease

    async def release(self, lease: PooledSession) -> None:
        """
        Return a lease to the pool. Releasing the same lease twice is a no-op.
        """
        with self._lock:
            if lease._released:
                logger.warning(f"{lease!r} released more than once; ignoring")
                return
            lease._released = True

        try:
            await lease._session.end_session()
        except (PyMongoError, RuntimeError) as e:
            logger.warning(f"Error ending session for {lease!r}: {e}")
        finally:
            self._free_slot()
            held_ms = (time.monotonic() - lease.acquired_at) * 1000
            logger.debug(f"Released {lease!r} after {held_ms:.2f}ms")

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[PooledSession]:
        """Acquire a lease for the duration of the block; always released."""
        lease = await self.acquire()
        try:
            yield lease
        finally:
            await self.release(lease)

    async def drop(self, db_name: str | None = None) -> None:
        """
        Drop a database (all of its collections). Destructive; used by tests
        and maintenance paths.

        Args:
            db_name: Database to drop (defaults to the pool's database)
        """
        target = db_name or self.db_name
        async with self.lease() as lease:
            with translate_errors("drop_database"):
                await lease.client.drop_database(target, session=lease.session)
        contextual_logger.warning("Dropped database", extra={"db_name": target})

    async def ping(self) -> bool:
        """
        Verify that the server is reachable.

        Returns:
            True if the server answered, False otherwise
        """
        if not self._initialized:
            logger.warning("ConnectionPool not initialized - cannot ping")
            return False
        try:
            await self._mongo_client.admin.command("ping")
            return True
        except (ConnectionFailure, ServerSelectionTimeoutError, OperationFailure) as e:
            logger.exception(f"MongoDB ping failed: {e}")
            return False

    def get_pool_metrics(self) -> dict[str, Any]:
        """
        Get lease bookkeeping for monitoring.

        Returns:
            Dictionary with max_pool_size, live_sessions, available_sessions,
            peak_sessions, total_acquired and pool_usage_percent
        """
        with self._lock:
            live = self._live_sessions
            metrics: dict[str, Any] = {
                "status": "connected" if self._initialized else "not_initialized",
                "db_name": self.db_name,
                "max_pool_size": self.max_pool_size,
                "live_sessions": live,
                "available_sessions": self.max_pool_size - live,
                "peak_sessions": self._peak_sessions,
                "total_acquired": self._total_acquired,
            }

        usage_percent = (live / self.max_pool_size) * 100
        metrics["pool_usage_percent"] = round(usage_percent, 2)
        if usage_percent > POOL_USAGE_WARNING_PERCENT:
            logger.warning(
                f"MongoDB session pool usage is HIGH: {usage_percent:.1f}% "
                f"({live}/{self.max_pool_size}). Consider increasing max_pool_size."
            )
        return metrics
