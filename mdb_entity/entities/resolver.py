"""
Collection name resolution.

Maps an entity value or type to the collection that stores it. Every
supported shape (instance, class, list/tuple of instances, ``list[Car]``
style aliases, ``Optional[Car]``) unwraps to the same innermost element
class, and the name depends only on that class:

1. If the class exposes ``collection_name`` (method, classmethod,
   staticmethod or plain string), its result is used verbatim. Normal
   attribute lookup applies, so a subclass inherits its base's name unless
   it overrides it; ``collection_name = None`` opts back out.
2. Otherwise the class name is transformed (``CarOwner`` -> ``car_owner``).

Results are cached per class for the life of the resolver.
"""

import collections.abc
import inspect
import logging
import re
import threading
import types
import typing
from collections.abc import Callable
from typing import Any, Protocol, Union, runtime_checkable

from ..constants import MAX_COLLECTION_NAME_LENGTH, NAMING_METHOD
from ..exceptions import ResolutionError

logger = logging.getLogger(__name__)

_FIRST_CAP = re.compile(r"(.)([A-Z][a-z]+)")
_ALL_CAP = re.compile(r"([a-z0-9])([A-Z])")

_UNSUPPORTED_TYPES = (str, bytes, bytearray, int, float, complex, bool, dict, type(None))
_CONTAINER_TYPES = (list, tuple, set, frozenset)
_CONTAINER_ORIGINS = (
    list,
    tuple,
    set,
    frozenset,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Iterable,
    collections.abc.Collection,
    collections.abc.Set,
)
_MISSING = object()


@runtime_checkable
class CollectionNamed(Protocol):
    """Entities that name their own collection."""

    def collection_name(self) -> str: ...


def camel_to_snake(name: str) -> str:
    """Convert a class name to a snake_case collection name."""
    return _ALL_CAP.sub(r"\1_\2", _FIRST_CAP.sub(r"\1_\2", name)).lower()


class CollectionResolver:
    """
    Resolves and caches collection names for entity types.

    Example:
        resolver = CollectionResolver()
        resolver.resolve(Car)             # "car"
        resolver.resolve([car1, car2])    # "car"
        resolver.resolve(list[CarOwner])  # "car_owner"
    """

    def __init__(self, name_transform: Callable[[str], str] = camel_to_snake) -> None:
        """
        Args:
            name_transform: Turns a class name into a collection name when the
                class does not name itself (e.g. ``str.lower``)
        """
        self._name_transform = name_transform
        self._cache: dict[type, str] = {}
        self._lock = threading.Lock()

    def resolve(self, value: Any) -> str:
        """
        Resolve the collection for a value or type.

        Raises:
            ResolutionError: If the value is not an entity, an entity type,
                or a non-empty / typed container of them, or if a container
                mixes entities from different collections
        """
        if isinstance(value, _CONTAINER_TYPES):
            if not value:
                raise ResolutionError(
                    "Cannot resolve a collection from an empty container; "
                    "pass the entity type or a typed alias such as list[Car]",
                    value_type=type(value).__name__,
                )
            names = {self.resolve(item) for item in value}
            if len(names) > 1:
                raise ResolutionError(
                    f"Container mixes entities from collections {sorted(names)}",
                    value_type=type(value).__name__,
                )
            return names.pop()

        return self.resolve_type(self.element_type(value))

    def element_type(self, value: Any) -> type:
        """
        Unwrap a value or type to its innermost entity class.

        For containers the first element decides.
        """
        if value is None:
            raise ResolutionError("Cannot resolve a collection from None", value_type="NoneType")

        origin = typing.get_origin(value)
        if origin is not None:
            return self._unwrap_alias(value, origin)

        if isinstance(value, type):
            if issubclass(value, _UNSUPPORTED_TYPES) or issubclass(value, _CONTAINER_TYPES):
                raise ResolutionError(
                    f"{value.__name__} is not an entity type", value_type=value.__name__
                )
            return value

        if isinstance(value, _CONTAINER_TYPES):
            if not value:
                raise ResolutionError(
                    "Cannot resolve a collection from an empty container",
                    value_type=type(value).__name__,
                )
            return self.element_type(next(iter(value)))

        if isinstance(value, _UNSUPPORTED_TYPES):
            raise ResolutionError(
                f"{type(value).__name__} value is not an entity",
                value_type=type(value).__name__,
            )

        return type(value)

    def _unwrap_alias(self, alias: Any, origin: Any) -> type:
        args = [a for a in typing.get_args(alias) if a is not type(None) and a is not Ellipsis]

        if origin in (Union, types.UnionType):
            if len(args) != 1:
                raise ResolutionError(
                    f"Ambiguous union {alias!r}; expected exactly one entity type",
                    value_type=repr(alias),
                )
            return self.element_type(args[0])

        if origin in _CONTAINER_ORIGINS:
            if not args:
                raise ResolutionError(f"{alias!r} has no element type", value_type=repr(alias))
            return self.element_type(args[0])

        raise ResolutionError(f"Unsupported type alias {alias!r}", value_type=repr(alias))

    def resolve_type(self, cls: type) -> str:
        """Resolve (and cache) the collection name for an entity class."""
        cached = self._cache.get(cls)
        if cached is not None:
            return cached

        name = self._declared_name(cls)
        if name is None:
            name = self._name_transform(cls.__name__)
        _validate_name(name, cls)

        with self._lock:
            self._cache.setdefault(cls, name)
        logger.debug(f"Resolved collection {name!r} for {cls.__qualname__}")
        return name

    def _declared_name(self, cls: type) -> str | None:
        attr = inspect.getattr_static(cls, NAMING_METHOD, _MISSING)
        if attr is _MISSING or attr is None:
            return None

        if isinstance(attr, str):
            return attr
        if isinstance(attr, (classmethod, staticmethod)):
            return getattr(cls, NAMING_METHOD)()
        if callable(attr):
            try:
                blank = cls.__new__(cls)
            except TypeError as e:
                raise ResolutionError(
                    f"Cannot instantiate {cls.__name__} to call {NAMING_METHOD}()",
                    value_type=cls.__name__,
                ) from e
            return attr(blank)

        raise ResolutionError(
            f"{cls.__name__}.{NAMING_METHOD} must be a method or string",
            value_type=cls.__name__,
        )

    def cache_info(self) -> int:
        """Number of classes with a cached collection name."""
        with self._lock:
            return len(self._cache)


def _validate_name(name: Any, cls: type) -> None:
    if not isinstance(name, str) or not name:
        raise ResolutionError(
            f"{cls.__name__} resolved to an invalid collection name {name!r}",
            value_type=cls.__name__,
        )
    if len(name) > MAX_COLLECTION_NAME_LENGTH or "$" in name or "\x00" in name:
        raise ResolutionError(
            f"{name!r} is not a valid MongoDB collection name", value_type=cls.__name__
        )


_default_resolver = CollectionResolver()


def resolve_collection(value: Any) -> str:
    """Resolve a collection name with the process-wide default resolver."""
    return _default_resolver.resolve(value)
