"""
Generic entity engine for MongoDB.

EntityEngine runs CRUD and aggregate operations for arbitrary entity types.
Each operation resolves exactly one collection from its entity argument,
borrows one session lease from the ConnectionPool for its own duration,
and surfaces failures as MDB_ENTITY exceptions.

This module is part of MDB_ENTITY.

Usage:
    pool = ConnectionPool("mongodb://localhost:27017/garage", max_pool_size=32)
    await pool.initialize()
    engine = EntityEngine(pool)

    await engine.insert(Car(car_id=42, name="X", price=100))
    car = await engine.find_one(Car, {"car_id": 42})
    page = await engine.find(Car, {}, page=1, page_size=10, sort=["-created"])
"""

import inspect
import logging
import threading
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError as PyMongoDuplicateKeyError

from ..config import EngineConfig
from ..constants import (
    DEFAULT_PAGE,
    DEFAULT_PAGE_SIZE,
    DESCENDING_PREFIX,
    INDEX_CONFLICT_CODES,
)
from ..database.connection import ConnectionPool, PooledSession
from ..database.errors import translate_errors
from ..entities import codec
from ..entities.resolver import CollectionResolver
from ..exceptions import (
    DuplicateKeyError,
    InvalidArgumentError,
    NotFoundError,
    OperationError,
)
from ..observability import get_logger as get_contextual_logger
from ..observability import (
    log_operation,
    reset_operation_context,
    set_operation_context,
    track_operation,
)

logger = logging.getLogger(__name__)
contextual_logger = get_contextual_logger(__name__)

T = TypeVar("T")

_CONTAINERS = (list, tuple, set, frozenset)


def _sort_spec(sort: Sequence[str] | str | None) -> list[tuple[str, int]]:
    """Translate ``["-created", "name"]`` into pymongo sort pairs."""
    if not sort:
        return []
    if isinstance(sort, str):
        sort = [sort]

    spec = []
    for entry in sort:
        if not isinstance(entry, str):
            raise InvalidArgumentError(f"Sort fields must be strings, got {entry!r}")
        direction = ASCENDING
        field = entry
        if entry.startswith(DESCENDING_PREFIX):
            direction = DESCENDING
            field = entry[len(DESCENDING_PREFIX) :]
        elif entry.startswith("+"):
            field = entry[1:]
        if not field:
            raise InvalidArgumentError(f"Empty sort field in {entry!r}")
        spec.append((field, direction))
    return spec


def _check_page(page: Any, page_size: Any) -> None:
    for label, value in (("page", page), ("page_size", page_size)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidArgumentError(
                f"{label} must be an integer, got {value!r}", context={label: value}
            )
        if value < 1:
            raise InvalidArgumentError(
                f"{label} must be >= 1, got {value}", context={label: value}
            )


def _check_filter(filter: Any) -> dict[str, Any]:
    if filter is None:
        return {}
    if not isinstance(filter, Mapping):
        raise InvalidArgumentError(f"Filter must be a mapping, got {type(filter).__name__}")
    return dict(filter)


def _check_update(update: Any) -> Any:
    if isinstance(update, Mapping):
        if not update:
            raise InvalidArgumentError("Update document is empty")
        if not all(isinstance(k, str) and k.startswith("$") for k in update):
            raise InvalidArgumentError(
                "Update document must only contain update operators ($set, $inc, ...)",
                context={"keys": list(update)},
            )
        return update
    if isinstance(update, list) and update and all(isinstance(s, Mapping) for s in update):
        return update
    raise InvalidArgumentError(
        f"Update must be an operator document or pipeline, got {type(update).__name__}"
    )


def _equality_keys(filter: Mapping[str, Any]) -> list[str]:
    """Top-level fields a filter matches by plain equality, except ``_id``."""
    keys = []
    for key, value in filter.items():
        if key.startswith("$") or key == "_id":
            continue
        if isinstance(value, Mapping) and any(str(k).startswith("$") for k in value):
            continue
        keys.append(key)
    return keys


class EntityEngine:
    """
    CRUD engine over a ConnectionPool.

    Targets for read operations may be an entity class (a new instance is
    returned), an entity instance (populated in place and returned), or for
    multi-document reads a typed alias such as ``list[Car]`` or an existing
    list (cleared and refilled in place).
    """

    def __init__(
        self,
        pool: ConnectionPool,
        resolver: CollectionResolver | None = None,
    ) -> None:
        """
        Args:
            pool: Connection pool providing session leases
            resolver: Collection resolver (defaults to a snake_case resolver)
        """
        self._pool = pool
        self._resolver = resolver or CollectionResolver()
        self._unique_indexes: set[tuple[str, tuple[str, ...]]] = set()
        self._index_lock = threading.Lock()

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def resolver(self) -> CollectionResolver:
        return self._resolver

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _operation(
        self, operation: str, collection: str | None
    ) -> AsyncIterator[PooledSession]:
        """Borrow a lease for one operation; driver errors are classified."""
        token = set_operation_context(
            operation, collection=collection, db_name=self._pool.db_name
        )
        tags = {"collection": collection} if collection else {}
        start_time = time.perf_counter()
        success = False
        try:
            with track_operation(f"engine.{operation}", **tags):
                async with self._pool.lease() as lease:
                    with translate_errors(operation, collection):
                        yield lease
            success = True
        finally:
            log_operation(
                contextual_logger,
                operation,
                success=success,
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )
            reset_operation_context(token)

    def _entity_class(self, target: Any, operation: str) -> tuple[type, Any]:
        """Split a single-document target into (class, instance or None)."""
        if isinstance(target, _CONTAINERS):
            raise InvalidArgumentError(
                f"{operation} expects an entity class or instance, not a "
                f"{type(target).__name__}"
            )
        cls = self._resolver.element_type(target)
        return cls, (target if isinstance(target, cls) else None)

    def _encode(self, entity: Any, operation: str) -> dict[str, Any]:
        try:
            return codec.to_document(entity)
        except TypeError as e:
            raise InvalidArgumentError(
                f"{operation}: {e}", context={"entity_type": type(entity).__name__}
            ) from e

    def _decode(
        self, cls: type[T], doc: Mapping[str, Any], collection: str, instance: T | None = None
    ) -> T:
        try:
            if instance is not None:
                return codec.populate(instance, doc)
            return codec.from_document(cls, doc)
        except (TypeError, ValueError) as e:
            raise OperationError(
                f"Cannot decode document from {collection!r} into {cls.__name__}: {e}",
                context={"collection": collection, "entity_type": cls.__name__},
            ) from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, entity: Any) -> None:
        """
        Insert one entity. The caller's identifier field is stored as-is.

        Raises:
            DuplicateKeyError: If a unique key already exists
            OperationError: On any other backend failure
        """
        name = self._resolver.resolve(entity)
        doc = self._encode(entity, "insert")
        async with self._operation("insert", name) as lease:
            await lease.collection(name).insert_one(doc, session=lease.session)

    async def insert_many(self, entities: Sequence[Any]) -> int:
        """
        Insert a batch, one round trip per target collection.

        Entities may belong to different collections. Writes are unordered,
        so every document that can be inserted is; all failures are reported
        together in one OperationError (see ``failures``).

        Returns:
            Number of inserted documents
        """
        if not entities or isinstance(entities, (str, bytes, Mapping)):
            raise InvalidArgumentError("insert_many requires a non-empty sequence of entities")

        groups: dict[str, list[dict[str, Any]]] = {}
        for entity in entities:
            name = self._resolver.resolve(entity)
            groups.setdefault(name, []).append(self._encode(entity, "insert_many"))

        inserted = 0
        failures: list[dict[str, Any]] = []
        async with self._operation("insert_many", ",".join(groups)) as lease:
            for name, docs in groups.items():
                try:
                    with translate_errors("insert_many", name):
                        result = await lease.collection(name).insert_many(
                            docs, ordered=False, session=lease.session
                        )
                    inserted += len(result.inserted_ids)
                except (OperationError, DuplicateKeyError) as e:
                    inserted += e.context.get("inserted", 0)
                    entries = getattr(e, "failures", None) or [
                        {"index": None, "code": e.context.get("code"), "message": e.message}
                    ]
                    failures.extend({"collection": name, **entry} for entry in entries)

        if failures:
            raise OperationError(
                f"{len(failures)} of {len(entities)} document(s) failed to insert",
                failures=failures,
                context={"inserted": inserted, "collections": sorted(groups)},
            )
        return inserted

    async def update_one(self, target: T | type[T], filter: Mapping[str, Any], update: Any) -> T:
        """
        Apply an update to the first matching document and re-read it.

        The update and the re-read happen in one atomic command; the
        post-update document populates ``target`` when it is an instance,
        otherwise a new instance is returned.

        Raises:
            NotFoundError: If no document matches
            InvalidArgumentError: If ``update`` has no update operators
        """
        cls, instance = self._entity_class(target, "update_one")
        name = self._resolver.resolve_type(cls)
        query = _check_filter(filter)
        update = _check_update(update)

        async with self._operation("update_one", name) as lease:
            doc = await lease.collection(name).find_one_and_update(
                query,
                update,
                return_document=ReturnDocument.AFTER,
                session=lease.session,
            )
        if doc is None:
            raise NotFoundError(f"No {name} document matches update filter", name, query)
        return self._decode(cls, doc, name, instance)

    async def upsert_one(
        self, entity: Any, filter: Mapping[str, Any], ensure_unique: bool = True
    ) -> str:
        """
        Replace the first document matching ``filter`` with ``entity``, or
        insert it if none matches.

        The write is a single atomic replace-with-upsert. With
        ``ensure_unique`` a unique index on the filter's equality fields
        (``_id`` excluded) is created first, so concurrent upserts on the same
        key converge on one document; an upsert that loses the race is
        replayed as a replace.

        The index is permanent: after ``upsert_one(car, {"name": "X"})`` a
        later ``insert`` of another car named "X" raises DuplicateKeyError.
        Pass ``ensure_unique=False`` when the filter fields must stay
        non-unique. If the index cannot be built (the collection already
        holds duplicates, or a conflicting index exists) a warning is logged
        and the upsert proceeds without it.

        Returns:
            "inserted" or "updated"

        Raises:
            InvalidArgumentError: If ``filter`` is empty
            DuplicateKeyError: If the entity collides with another unique key
        """
        name = self._resolver.resolve(entity)
        query = _check_filter(filter)
        if not query:
            raise InvalidArgumentError("upsert_one requires a non-empty filter")
        doc = self._encode(entity, "upsert_one")

        if ensure_unique:
            keys = _equality_keys(query)
            if keys:
                try:
                    await self.ensure_unique_index(entity, keys)
                except DuplicateKeyError as e:
                    contextual_logger.warning(
                        "Existing duplicates prevent a unique index; upserting without it",
                        extra={"collection": name, "keys": keys, "error": e.message},
                    )
                except OperationError as e:
                    if e.context.get("code") not in INDEX_CONFLICT_CODES:
                        raise
                    contextual_logger.warning(
                        "Conflicting index prevents a unique index; upserting without it",
                        extra={"collection": name, "keys": keys, "error": e.message},
                    )
            else:
                logger.debug(f"upsert_one on {name}: no equality keys to make unique")

        async with self._operation("upsert_one", name) as lease:
            collection = lease.collection(name)
            try:
                result = await collection.replace_one(
                    query, doc, upsert=True, session=lease.session
                )
            except PyMongoDuplicateKeyError:
                # A concurrent upsert inserted the matching document first.
                result = await collection.replace_one(query, doc, session=lease.session)
                if result.matched_count == 0:
                    raise DuplicateKeyError(
                        "upsert_one lost a race and no matching document remains",
                        context={"collection": name, "filter": query},
                    ) from None

        return "inserted" if result.upserted_id is not None else "updated"

    async def remove_one(self, target: Any, filter: Mapping[str, Any]) -> None:
        """
        Remove the first document matching ``filter``.

        Raises:
            NotFoundError: If no document matches
        """
        cls, _ = self._entity_class(target, "remove_one")
        name = self._resolver.resolve_type(cls)
        query = _check_filter(filter)

        async with self._operation("remove_one", name) as lease:
            result = await lease.collection(name).delete_one(query, session=lease.session)
        if result.deleted_count == 0:
            raise NotFoundError(f"No {name} document matches remove filter", name, query)

    async def ensure_unique_index(self, target: Any, keys: Sequence[str]) -> str | None:
        """
        Ensure a unique ascending index on ``keys`` for the target's collection.

        Index creation is idempotent on the server; successful keys are
        remembered so each (collection, keys) pair is created once.

        Returns:
            Index name, or None if it was already ensured
        """
        if not keys:
            raise InvalidArgumentError("ensure_unique_index requires at least one key")
        name = self._resolver.resolve(target)
        cache_key = (name, tuple(keys))
        with self._index_lock:
            if cache_key in self._unique_indexes:
                return None

        async with self._operation("ensure_unique_index", name) as lease:
            index_name = await lease.collection(name).create_index(
                [(key, ASCENDING) for key in keys], unique=True, session=lease.session
            )

        with self._index_lock:
            self._unique_indexes.add(cache_key)
        contextual_logger.info(
            "Ensured unique index",
            extra={"collection": name, "keys": list(keys), "index": index_name},
        )
        return index_name

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_one(self, target: T | type[T], filter: Mapping[str, Any] | None = None) -> T:
        """
        Load the first document matching ``filter``.

        Raises:
            NotFoundError: If no document matches
        """
        cls, instance = self._entity_class(target, "find_one")
        name = self._resolver.resolve_type(cls)
        query = _check_filter(filter)

        async with self._operation("find_one", name) as lease:
            doc = await lease.collection(name).find_one(query, session=lease.session)
        if doc is None:
            raise NotFoundError(f"No {name} document matches filter", name, query)
        return self._decode(cls, doc, name, instance)

    async def find(
        self,
        target: Any,
        filter: Mapping[str, Any] | None = None,
        page: int = DEFAULT_PAGE,
        page_size: int = DEFAULT_PAGE_SIZE,
        sort: Sequence[str] | str | None = None,
    ) -> list[Any]:
        """
        Load one page of matching documents.

        Args:
            target: Entity class, ``list[Entity]`` alias, or a list to fill
            filter: Query filter (all documents if None)
            page: 1-indexed page number
            page_size: Documents per page
            sort: Field names; a leading ``-`` sorts descending. Without a
                sort the server's natural order applies.

        Returns:
            The matching entities (empty list when nothing matches)

        Raises:
            InvalidArgumentError: If page or page_size is < 1
        """
        _check_page(page, page_size)
        sort_spec = _sort_spec(sort)
        cls = self._resolver.element_type(target)
        name = self._resolver.resolve_type(cls)
        query = _check_filter(filter)

        async with self._operation("find", name) as lease:
            cursor = lease.collection(name).find(query, session=lease.session)
            if sort_spec:
                cursor = cursor.sort(sort_spec)
            cursor = cursor.skip((page - 1) * page_size).limit(page_size)
            docs = await cursor.to_list(length=page_size)

        return self._fill(target, [self._decode(cls, doc, name) for doc in docs])

    async def count(self, target: Any, filter: Mapping[str, Any] | None = None) -> int:
        """Count matching documents; zero matches return 0."""
        name = self._resolver.resolve(target)
        query = _check_filter(filter)
        async with self._operation("count", name) as lease:
            return await lease.collection(name).count_documents(query, session=lease.session)

    async def aggregate(self, target: Any, pipeline: Sequence[Mapping[str, Any]]) -> list[Any]:
        """
        Run an aggregation pipeline on the target's collection.

        Stages are passed through untouched. Results keep pipeline order and
        are decoded into the target's element class, so ``$lookup`` output
        arrays decode into nested entity lists.
        """
        if isinstance(pipeline, (str, bytes, Mapping)) or not isinstance(pipeline, Sequence):
            raise InvalidArgumentError("Pipeline must be a sequence of stage documents")
        if not all(isinstance(stage, Mapping) for stage in pipeline):
            raise InvalidArgumentError("Every pipeline stage must be a mapping")

        cls = self._resolver.element_type(target)
        name = self._resolver.resolve_type(cls)

        async with self._operation("aggregate", name) as lease:
            cursor = lease.collection(name).aggregate(list(pipeline), session=lease.session)
            docs = await cursor.to_list(length=None)

        return self._fill(target, [self._decode(cls, doc, name) for doc in docs])

    @staticmethod
    def _fill(target: Any, results: list[Any]) -> list[Any]:
        if isinstance(target, list):
            target[:] = results
            return target
        return results

    # ------------------------------------------------------------------
    # Escape hatch and maintenance
    # ------------------------------------------------------------------

    async def execute(self, fn: Callable[[PooledSession], Awaitable[T] | T]) -> T:
        """
        Run ``fn`` with a borrowed lease and return its result.

        The lease is valid for the duration of ``fn`` and released afterwards
        whatever the outcome; driver errors raised by ``fn`` are classified.

        Example:
            async def owners_view(lease):
                cursor = lease.collection("car_owner").aggregate(
                    pipeline, session=lease.session
                )
                return await cursor.to_list(length=None)

            rows = await engine.execute(owners_view)
        """
        async with self._operation("execute", None) as lease:
            result = fn(lease)
            if inspect.isawaitable(result):
                result = await result
            return result

    async def drop_database(self) -> None:
        """Drop the pool's database. Destructive."""
        with track_operation("engine.drop_database"):
            await self._pool.drop()
        with self._index_lock:
            self._unique_indexes.clear()

    async def shutdown(self) -> None:
        await self._pool.shutdown()


async def create_engine(
    config: EngineConfig | None = None,
    resolver: CollectionResolver | None = None,
) -> EntityEngine:
    """
    Build, initialize and return an engine from configuration.

    Args:
        config: Pool configuration (defaults to EngineConfig() from environment)
        resolver: Optional custom collection resolver

    Raises:
        ConfigurationError: If the configuration is invalid
        InitializationError: If MongoDB cannot be reached
    """
    config = config or EngineConfig()
    config.validate()
    pool = ConnectionPool(
        mongo_uri=config.mongo_uri,
        db_name=config.db_name,
        max_pool_size=config.max_pool_size,
        socket_timeout=config.socket_timeout,
        block_on_exhaustion=config.block_on_exhaustion,
    )
    await pool.initialize()
    return EntityEngine(pool, resolver)
