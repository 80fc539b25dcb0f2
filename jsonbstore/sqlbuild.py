"""SQL and JSONPath builders for filters, sorts and projections over JSONB documents."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Union

_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1

_COMPARISONS = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}
_ELEM_MATCH_OPS = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<=", "$eq": "=="}

_NUMERIC_RE = r"^[+-]?[0-9]+(\.[0-9]+)?$"


@dataclass(frozen=True)
class RawWhere:
    """A WHERE condition given as literal SQL."""

    sql: str


@dataclass(frozen=True)
class ContainmentWhere:
    """A WHERE condition expressed as JSONB containment (``doc @> value``)."""

    value: dict


WhereSpec = Union[RawWhere, ContainmentWhere]


def schema_name(db: str) -> str:
    """Return the Postgres schema that holds a database's collections."""
    return f"mdb_{db}"


def q_ident(ident: str) -> str:
    """Quote a Postgres identifier."""
    escaped = ident.replace('"', '""')
    return f'"{escaped}"'


def escape_single(text: str) -> str:
    """Escape text for use inside a single-quoted SQL literal."""
    return text.replace("\\", "\\\\").replace("'", "''")


def jsonpath_path(key: str) -> str:
    """Build a ``$."a"."b"`` JSONPath for a dotted field key."""
    segments = (segment.replace('"', '\\"') for segment in key.split("."))
    return "$" + "".join(f'."{segment}"' for segment in segments)


def _bson_int(value: Any) -> int | None:
    """Return the value as an int when it is a 32- or 64-bit BSON integer."""
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    number = int(value)
    if _I64_MIN <= number <= _I64_MAX:
        return number
    return None


def _format_double(value: float) -> str:
    """Format a double as a plain decimal without exponent or trailing zeros."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def json_literal_from_bson(value: Any) -> str | None:
    """Render a scalar BSON value as a JSONPath literal, or None if unsupported."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    number = _bson_int(value)
    if number is not None:
        return str(number)
    if isinstance(value, float):
        return _format_double(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    return None


def json_value_from_bson(value: Any) -> Any:
    """Convert a scalar BSON value to a JSON value.

    Raises TypeError for unsupported types and ValueError for non-finite doubles.
    """
    if value is None or isinstance(value, (bool, str)):
        return value
    number = _bson_int(value)
    if number is not None:
        return number
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("non-finite number has no JSON form")
        return value
    raise TypeError(f"no JSON scalar for {type(value).__name__}")


def _op_clauses(ops: Mapping, attr: str) -> list[str]:
    clauses = []
    for op, val in ops.items():
        sql_op = _ELEM_MATCH_OPS.get(op)
        literal = json_literal_from_bson(val)
        if sql_op is None or literal is None:
            continue
        clauses.append(f"{attr} {sql_op} {literal}")
    return clauses


def build_elem_match_pred(path: str, elem_match: Mapping) -> str | None:
    """Build the JSONPath predicate applied to each array element by ``$elemMatch``.

    ``path`` is accepted for symmetry with the caller and not used.
    """
    if all(key.startswith("$") for key in elem_match):
        clauses = _op_clauses(elem_match, "@")
    else:
        clauses = []
        for key, val in elem_match.items():
            attr = '@."{}"'.format(key.replace('"', '\\"'))
            if isinstance(val, Mapping):
                clauses.extend(_op_clauses(val, attr))
            else:
                literal = json_literal_from_bson(val)
                if literal is not None:
                    clauses.append(f"{attr} == {literal}")
    return " && ".join(clauses) if clauses else None


def _scalar_or_array(escaped_path: str, predicate: str) -> str:
    direct = f"jsonb_path_exists(doc, '{escaped_path} ? ({predicate} )')"
    in_array = f"jsonb_path_exists(doc, '{escaped_path}[*] ? ({predicate} )')"
    return f"({direct} OR {in_array})"


def _operator_clause(op: str, val: Any, path: str) -> str | None:
    escaped = escape_single(path)
    if op == "$elemMatch":
        if isinstance(val, Mapping):
            pred = build_elem_match_pred(path, val)
            if pred is not None:
                return f"jsonb_path_exists(doc, '{escaped}[*] ? ({pred} )')"
        return None
    if op == "$exists":
        if val is True:
            return f"jsonb_path_exists(doc, '{escaped}')"
        return f"NOT jsonb_path_exists(doc, '{escaped}')"
    if op == "$in":
        if not isinstance(val, list):
            return None
        preds = [f"@ == {lit}" for lit in map(json_literal_from_bson, val) if lit is not None]
        if not preds:
            return "FALSE"
        return _scalar_or_array(escaped, " || ".join(preds))
    if op in _COMPARISONS:
        literal = json_literal_from_bson(val)
        if literal is None:
            return None
        return _scalar_or_array(escaped, f"@ {_COMPARISONS[op]} {literal}")
    if op == "$eq":
        literal = json_literal_from_bson(val)
        if literal is None:
            return None
        return _scalar_or_array(escaped, f"@ == {literal}")
    return None


def build_where_from_filter(filter_doc: Mapping) -> str:
    """Translate a filter document into a SQL condition over the ``doc`` column.

    Supports equality, ``$eq``, ``$gt``, ``$gte``, ``$lt``, ``$lte``, ``$in``,
    ``$exists`` and ``$elemMatch`` on dotted paths, matching array members too.
    ``_id`` is skipped; unsupported parts are ignored.
    """
    clauses: list[str] = []
    for key, value in filter_doc.items():
        if key == "_id":
            continue
        path = jsonpath_path(key)
        if isinstance(value, Mapping):
            for op, val in value.items():
                clause = _operator_clause(op, val, path)
                if clause is not None:
                    clauses.append(clause)
        else:
            literal = json_literal_from_bson(value)
            if literal is not None:
                clauses.append(_scalar_or_array(escape_single(path), f"@ == {literal}"))
    return " AND ".join(clauses) if clauses else "TRUE"


def build_where_spec(filter_doc: Mapping) -> WhereSpec:
    """Choose JSONB containment for simple top-level equality filters, raw SQL otherwise."""
    contained: dict = {}
    for key, value in filter_doc.items():
        if key == "_id":
            continue
        if "." in key:
            return RawWhere(build_where_from_filter(filter_doc))
        if isinstance(value, Mapping):
            if len(value) != 1 or "$eq" not in value:
                return RawWhere(build_where_from_filter(filter_doc))
            value = value["$eq"]
        try:
            contained[key] = json_value_from_bson(value)
        except (TypeError, ValueError):
            return RawWhere(build_where_from_filter(filter_doc))
    if not contained:
        return RawWhere(build_where_from_filter(filter_doc))
    return ContainmentWhere(contained)


def _wrap_i32(number: int) -> int:
    number &= 0xFFFFFFFF
    return number - 2**32 if number >= 2**31 else number


def _sort_direction(value: Any) -> int:
    if isinstance(value, bool):
        return 1
    if isinstance(value, int):
        return _wrap_i32(int(value))
    if isinstance(value, float):
        return -1 if value < 0.0 else 1
    return 1


def build_order_by(sort: Mapping | None) -> str:
    """Build an ORDER BY clause; numeric-looking values sort before text, ``id`` breaks ties."""
    parts: list[str] = []
    has_id = False
    for key, value in (sort or {}).items():
        order = "DESC" if _sort_direction(value) < 0 else "ASC"
        if key == "_id":
            has_id = True
            parts.append(f"id {order}")
            continue
        field = escape_single(key)
        numeric = f"(doc->>'{field}') ~ '{_NUMERIC_RE}'"
        parts.append(f"(CASE WHEN {numeric} THEN 0 ELSE 1 END) ASC")
        parts.append(
            f"(CASE WHEN {numeric} THEN (doc->>'{field}')::double precision END) {order}"
        )
        parts.append(f"(doc->>'{field}') {order}")
    if not has_id:
        parts.append("id ASC")
    return "ORDER BY " + ", ".join(parts)


def _projection_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and -(2**31) <= int(value) <= 2**31 - 1:
        return int(value) != 0
    return False


def projection_pushdown_sql(projection: Mapping | None) -> str | None:
    """Build a ``jsonb_build_object`` expression for simple top-level inclusions.

    Returns None when the projection must be applied in Python instead.
    """
    if not projection:
        return None
    include_fields: list[str] = []
    include_id = True
    for key, value in projection.items():
        if key == "_id":
            if value is False or (
                not isinstance(value, bool) and isinstance(value, int) and int(value) == 0
            ):
                include_id = False
            continue
        if not _projection_flag(value) or "." in key:
            return None
        include_fields.append(key)
    if not include_fields and include_id:
        return None
    elems = ["'_id', doc->'_id'"] if include_id else []
    for field in include_fields:
        escaped = escape_single(field)
        elems.append(f"'{escaped}', doc->'{escaped}'")
    if not elems:
        return None
    return "jsonb_build_object(" + ", ".join(elems) + ")"