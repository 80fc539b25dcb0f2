"""Document helpers: JSON to BSON conversion, row decoding, dotted paths and projection."""

from __future__ import annotations

import copy
from collections.abc import Mapping, MutableMapping
from typing import Any

import bson
from bson.errors import BSONError
from bson.int64 import Int64
from bson.objectid import ObjectId

_I32_MIN = -(2**31)
_I32_MAX = 2**31 - 1
_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1


def json_to_bson(value: Any) -> Any:
    """Convert a decoded JSON value into BSON-ready Python values.

    Integers that fit in 32 bits stay plain ints, larger ones that fit in
    64 bits become ``Int64`` and anything wider becomes a float.
    """
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        if _I32_MIN <= value <= _I32_MAX:
            return int(value)
        if _I64_MIN <= value <= _I64_MAX:
            return Int64(value)
        return float(value)
    if isinstance(value, float):
        return value
    if isinstance(value, (list, tuple)):
        return [json_to_bson(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): json_to_bson(item) for key, item in value.items()}
    raise TypeError(f"not a JSON value: {type(value).__name__}")


def to_doc_from_json(value: Any) -> dict:
    """Convert a JSON value to a document; non-objects give an empty document."""
    converted = json_to_bson(value)
    return converted if isinstance(converted, dict) else {}


def decode_row_document(bson_bytes: bytes | None, json_value: Any) -> dict:
    """Decode a stored row, preferring the BSON column and falling back to JSON."""
    if bson_bytes is not None:
        try:
            return bson.decode(bytes(bson_bytes))
        except (BSONError, ValueError, TypeError, IndexError):
            pass
    return to_doc_from_json(json_value)


def id_bytes_from_bson(value: Any) -> bytes | None:
    """Return the storage key for an ``_id`` value, or None if it has none."""
    if isinstance(value, ObjectId):
        return value.binary
    if isinstance(value, str):
        return value.encode("utf-8")
    return None


def get_path(doc: Mapping, path: str) -> Any:
    """Return the value at a dotted path.

    Raises KeyError when a segment is absent or a non-document is traversed.
    """
    current: Any = doc
    for segment in path.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            raise KeyError(path)
        current = current[segment]
    return current


def set_path(doc: MutableMapping, path: str, value: Any) -> None:
    """Set a value at a dotted path, creating or replacing intermediate documents."""
    *parents, last = path.split(".")
    current = doc
    for segment in parents:
        child = current.get(segment)
        if not isinstance(child, MutableMapping):
            child = {}
            current[segment] = child
        current = child
    current[last] = value


def remove_path(doc: MutableMapping, path: str) -> None:
    """Remove the value at a dotted path; missing paths are left alone."""
    *parents, last = path.split(".")
    current = doc
    for segment in parents:
        child = current.get(segment)
        if not isinstance(child, MutableMapping):
            return
        current = child
    current.pop(last, None)


def _as_int32(value: Any) -> int | None:
    if isinstance(value, bool) or isinstance(value, Int64) or not isinstance(value, int):
        return None
    return value


def _flag(value: Any) -> bool | None:
    """Interpret a projection value as on/off; None when it is neither."""
    number = _as_int32(value)
    if number is not None:
        return number != 0
    if isinstance(value, bool):
        return value
    return None


def project_document(doc: Mapping, projection: Mapping) -> dict:
    """Apply an inclusion or exclusion projection with dotted paths to a document."""
    include_id = True
    include_mode = False
    for key, value in projection.items():
        flag = _flag(value)
        if key == "_id":
            if flag is False:
                include_id = False
        elif flag is True:
            include_mode = True

    if include_mode:
        out: dict = {}
        if include_id and "_id" in doc:
            out["_id"] = copy.deepcopy(doc["_id"])
        for key, value in projection.items():
            if key == "_id" or _flag(value) is not True:
                continue
            try:
                found = get_path(doc, key)
            except KeyError:
                continue
            set_path(out, key, copy.deepcopy(found))
        return out

    out = copy.deepcopy(dict(doc))
    for key, value in projection.items():
        if key == "_id":
            continue
        if _flag(value) is False:
            remove_path(out, key)
    if not include_id:
        out.pop("_id", None)
    return out