import pytest
from bson.int64 import Int64
from bson.objectid import ObjectId

from jsonbstore.sqlbuild import (
    ContainmentWhere,
    RawWhere,
    build_elem_match_pred,
    build_order_by,
    build_where_from_filter,
    build_where_spec,
    escape_single,
    json_literal_from_bson,
    json_value_from_bson,
    jsonpath_path,
    projection_pushdown_sql,
    q_ident,
    schema_name,
)

NUM_RE = r"^[+-]?[0-9]+(\.[0-9]+)?$"


def test_schema_name():
    assert schema_name("test") == "mdb_test"


def test_q_ident_escapes_quotes():
    assert q_ident("users") == '"users"'
    assert q_ident('a"b') == '"a""b"'


def test_escape_single():
    assert escape_single("it's\\") == "it''s\\\\"


def test_jsonpath_path_dotted_and_quoted():
    assert jsonpath_path("age") == '$."age"'
    assert jsonpath_path("a.b") == '$."a"."b"'
    assert jsonpath_path('a"b.c') == '$."a\\"b"."c"'


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, "null"),
        (True, "true"),
        (False, "false"),
        (25, "25"),
        (Int64(5), "5"),
        (2.5, "2.5"),
        (3.0, "3"),
        (1e20, "100000000000000000000"),
        ("a", '"a"'),
        ('a"b', '"a\\"b"'),
    ],
)
def test_json_literal_from_bson(value, expected):
    assert json_literal_from_bson(value) == expected


def test_json_literal_unsupported():
    assert json_literal_from_bson(ObjectId()) is None
    assert json_literal_from_bson([1, 2]) is None


def test_json_value_from_bson():
    assert json_value_from_bson(Int64(7)) == 7
    assert json_value_from_bson("x") == "x"
    assert json_value_from_bson(None) is None
    with pytest.raises(TypeError):
        json_value_from_bson([1])
    with pytest.raises(ValueError):
        json_value_from_bson(float("nan"))


def test_filter_gt():
    expected = (
        "(jsonb_path_exists(doc, '$.\"age\" ? (@ > 25 )') OR "
        "jsonb_path_exists(doc, '$.\"age\"[*] ? (@ > 25 )'))"
    )
    assert build_where_from_filter({"age": {"$gt": 25}}) == expected
    assert build_where_spec({"age": {"$gt": 25}}) == RawWhere(expected)


def test_filter_in():
    expected = (
        "(jsonb_path_exists(doc, '$.\"name\" ? (@ == \"a\" || @ == \"c\" )') OR "
        "jsonb_path_exists(doc, '$.\"name\"[*] ? (@ == \"a\" || @ == \"c\" )'))"
    )
    assert build_where_from_filter({"name": {"$in": ["a", "c"]}}) == expected


def test_filter_in_without_literals_is_false():
    assert build_where_from_filter({"name": {"$in": [ObjectId()]}}) == "FALSE"


def test_filter_in_not_array_is_ignored():
    assert build_where_from_filter({"name": {"$in": "a"}}) == "TRUE"


def test_filter_exists():
    assert build_where_from_filter({"age": {"$exists": False}}) == (
        "NOT jsonb_path_exists(doc, '$.\"age\"')"
    )
    assert build_where_from_filter({"a.c": {"$exists": True}}) == (
        "jsonb_path_exists(doc, '$.\"a\".\"c\"')"
    )


def test_elem_match_scalar():
    assert build_elem_match_pred('$."arr"', {"$gt": 6}) == "@ > 6"
    assert build_where_from_filter({"arr": {"$elemMatch": {"$gt": 6}}}) == (
        "jsonb_path_exists(doc, '$.\"arr\"[*] ? (@ > 6 )')"
    )


def test_elem_match_subdocument():
    assert build_elem_match_pred('$."arr"', {"x": {"$gt": 2}}) == '@."x" > 2'
    assert build_elem_match_pred('$."arr"', {"x": 2}) == '@."x" == 2'
    assert build_elem_match_pred('$."arr"', {"x": 1, "y": {"$lte": 3}}) == (
        '@."x" == 1 && @."y" <= 3'
    )


def test_elem_match_unsupported_gives_none():
    assert build_elem_match_pred('$."arr"', {"$regex": "a"}) is None
    assert build_where_from_filter({"arr": {"$elemMatch": {"$regex": "a"}}}) == "TRUE"


def test_nested_equality_is_raw():
    expected = (
        "(jsonb_path_exists(doc, '$.\"a\".\"b\" ? (@ == 5 )') OR "
        "jsonb_path_exists(doc, '$.\"a\".\"b\"[*] ? (@ == 5 )'))"
    )
    assert build_where_spec({"a.b": 5}) == RawWhere(expected)


def test_nested_in():
    expected = (
        "(jsonb_path_exists(doc, '$.\"a\".\"b\" ? (@ == 9 || @ == 10 )') OR "
        "jsonb_path_exists(doc, '$.\"a\".\"b\"[*] ? (@ == 9 || @ == 10 )'))"
    )
    assert build_where_from_filter({"a.b": {"$in": [9, 10]}}) == expected


def test_clauses_joined_with_and():
    result = build_where_from_filter({"a": {"$exists": True}, "b": {"$exists": False}})
    assert result == (
        "jsonb_path_exists(doc, '$.\"a\"') AND NOT jsonb_path_exists(doc, '$.\"b\"')"
    )


def test_id_is_skipped():
    assert build_where_from_filter({"_id": "x"}) == "TRUE"
    assert build_where_spec({"_id": "x"}) == RawWhere("TRUE")


def test_containment_for_equality():
    assert build_where_spec({"tags": "x"}) == ContainmentWhere({"tags": "x"})
    assert build_where_spec({"g": "x", "n": {"$eq": 3}, "_id": "a"}) == ContainmentWhere(
        {"g": "x", "n": 3}
    )


def test_containment_falls_back_for_arrays_and_operators():
    assert build_where_spec({"tags": ["x"]}) == RawWhere("TRUE")
    assert build_where_spec({"n": {"$eq": 1, "$gt": 0}}) == RawWhere(
        "(jsonb_path_exists(doc, '$.\"n\" ? (@ == 1 )') OR "
        "jsonb_path_exists(doc, '$.\"n\"[*] ? (@ == 1 )')) AND "
        "(jsonb_path_exists(doc, '$.\"n\" ? (@ > 0 )') OR "
        "jsonb_path_exists(doc, '$.\"n\"[*] ? (@ > 0 )'))"
    )
    assert build_where_spec({"n": {"$eq": ObjectId()}}) == RawWhere("TRUE")


def test_order_by_default():
    assert build_order_by(None) == "ORDER BY id ASC"
    assert build_order_by({}) == "ORDER BY id ASC"


def test_order_by_id_desc():
    assert build_order_by({"_id": -1}) == "ORDER BY id DESC"


def test_order_by_numeric_heuristic():
    numeric = f"(doc->>'n') ~ '{NUM_RE}'"
    expected = (
        f"ORDER BY (CASE WHEN {numeric} THEN 0 ELSE 1 END) ASC, "
        f"(CASE WHEN {numeric} THEN (doc->>'n')::double precision END) ASC, "
        "(doc->>'n') ASC, id ASC"
    )
    assert build_order_by({"n": 1}) == expected


def test_order_by_descending_double():
    result = build_order_by({"s": -1.0})
    assert result.endswith("(doc->>'s') DESC, id ASC")
    assert "double precision END) DESC" in result


def test_projection_pushdown_include():
    assert projection_pushdown_sql({"name": 1}) == (
        "jsonb_build_object('_id', doc->'_id', 'name', doc->'name')"
    )


def test_projection_pushdown_exclude_id():
    assert projection_pushdown_sql({"name": 1, "_id": 0}) == (
        "jsonb_build_object('name', doc->'name')"
    )


@pytest.mark.parametrize(
    "projection",
    [None, {}, {"a.b": 1}, {"a": 0}, {"_id": 0}, {"_id": 1}, {"a": 1.0}],
)
def test_projection_pushdown_not_possible(projection):
    assert projection_pushdown_sql(projection) is None