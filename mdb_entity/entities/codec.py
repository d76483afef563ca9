"""
Entity <-> document conversion.

Entities need no base class. Supported shapes:

- pydantic models (``model_dump(by_alias=True)`` / ``model_validate``)
- dataclasses, including nested dataclasses and ``list[...]`` fields;
  ``field(metadata={"bson": "carId"})`` renames the stored key and
  ``metadata={"omitempty": True}`` skips empty values when writing
- classes exposing ``to_dict()`` / ``from_dict()``
- plain classes (public instance attributes)

The engine never generates identifiers. The server-side ``_id`` is dropped
on decode unless the entity declares a field stored under ``_id``.
"""

import dataclasses
import types
import typing
from collections.abc import Mapping
from typing import Any, TypeVar, Union

from pydantic import BaseModel

T = TypeVar("T")

_SEQUENCE_ORIGINS = (list, tuple, set, frozenset)


def _is_model_class(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, BaseModel)


def _is_dataclass_class(tp: Any) -> bool:
    return isinstance(tp, type) and dataclasses.is_dataclass(tp)


def _field_key(f: dataclasses.Field) -> str:
    return f.metadata.get("bson", f.name)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, bytes, list, tuple, dict, set)):
        return len(value) == 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0
    return value is False


def encode_value(value: Any) -> Any:
    """Convert a value (possibly an entity) into BSON-ready Python data."""
    if isinstance(value, BaseModel) or (
        dataclasses.is_dataclass(value) and not isinstance(value, type)
    ):
        return to_document(value)
    if isinstance(value, Mapping):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [encode_value(v) for v in value]
    return value


def to_document(entity: Any) -> dict[str, Any]:
    """
    Serialize an entity to a document.

    Raises:
        TypeError: If the value cannot be represented as a document
    """
    if isinstance(entity, BaseModel):
        return entity.model_dump(by_alias=True)

    if dataclasses.is_dataclass(entity) and not isinstance(entity, type):
        doc: dict[str, Any] = {}
        for f in dataclasses.fields(entity):
            value = getattr(entity, f.name)
            if f.metadata.get("omitempty") and _is_empty(value):
                continue
            doc[_field_key(f)] = encode_value(value)
        return doc

    if isinstance(entity, Mapping):
        return {k: encode_value(v) for k, v in entity.items()}

    to_dict = getattr(entity, "to_dict", None)
    if callable(to_dict):
        return encode_value(to_dict())

    if hasattr(entity, "__dict__") and not isinstance(entity, type):
        return {
            k: encode_value(v) for k, v in vars(entity).items() if not k.startswith("_")
        }

    raise TypeError(f"Cannot convert {type(entity).__name__} to a document")


def _decode_value(tp: Any, value: Any) -> Any:
    if value is None or tp is Any:
        return value

    if _is_model_class(tp) or _is_dataclass_class(tp):
        return from_document(tp, value) if isinstance(value, Mapping) else value

    origin = typing.get_origin(tp)
    args = typing.get_args(tp)

    if origin in (Union, types.UnionType):
        for arg in args:
            if arg is type(None):
                continue
            if (_is_model_class(arg) or _is_dataclass_class(arg)) and isinstance(value, Mapping):
                return from_document(arg, value)
            if typing.get_origin(arg) in _SEQUENCE_ORIGINS and isinstance(value, list):
                return _decode_value(arg, value)
        return value

    if origin in _SEQUENCE_ORIGINS and isinstance(value, list):
        elem = args[0] if args else Any
        items = [_decode_value(elem, v) for v in value]
        return items if origin is list else origin(items)

    if origin is dict and isinstance(value, Mapping) and len(args) == 2:
        return {k: _decode_value(args[1], v) for k, v in value.items()}

    return value


def _decode_dataclass(cls: type[T], doc: Mapping[str, Any]) -> T:
    hints = typing.get_type_hints(cls)
    kwargs: dict[str, Any] = {}
    deferred: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        key = _field_key(f)
        if key in doc:
            value = _decode_value(hints.get(f.name, Any), doc[key])
        elif (
            f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
        ):
            # Absent required fields decode as None, like a zero value.
            value = None
        else:
            continue
        if f.init:
            kwargs[f.name] = value
        else:
            deferred[f.name] = value

    instance = cls(**kwargs)
    for name, value in deferred.items():
        object.__setattr__(instance, name, value)
    return instance


def from_document(cls: type[T], doc: Mapping[str, Any]) -> T:
    """
    Build an instance of ``cls`` from a stored document.

    Raises:
        TypeError: If ``cls`` cannot be built from a document
    """
    if _is_model_class(cls):
        return cls.model_validate(dict(doc))

    if _is_dataclass_class(cls):
        return _decode_dataclass(cls, doc)

    from_dict = getattr(cls, "from_dict", None)
    if callable(from_dict):
        return from_dict(dict(doc))

    if not isinstance(cls, type):
        raise TypeError(f"Cannot build {cls!r} from a document")

    instance = cls.__new__(cls)
    instance.__dict__.update({k: v for k, v in doc.items() if k != "_id"})
    return instance


def populate(instance: T, doc: Mapping[str, Any]) -> T:
    """
    Overwrite ``instance`` in place with the values of ``doc`` and return it.
    """
    fresh = from_document(type(instance), doc)

    if isinstance(instance, BaseModel):
        for name in type(instance).model_fields:
            setattr(instance, name, getattr(fresh, name))
    elif dataclasses.is_dataclass(instance):
        for f in dataclasses.fields(instance):
            object.__setattr__(instance, f.name, getattr(fresh, f.name))
    else:
        instance.__dict__.update(vars(fresh))
    return instance
