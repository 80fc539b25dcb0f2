# jsonbstore

jsonbstore keeps document-database style collections in PostgreSQL.
Each database becomes a schema named `mdb_<db>`, each collection a table
`mdb_<db>.<coll>` with three columns: the document key `id` (`bytea`),
the document as `jsonb` (`doc`) and its BSON encoding (`doc_bson`).
A metadata schema, `mdb_meta`, records the known databases, collections
and indexes. Reads prefer the BSON column and fall back to the JSON one.

Filter documents such as `{"age": {"$gt": 25}}` are turned into SQL.
Filters made only of top-level equality (plain values or `{"$eq": v}`
with a null, boolean, integer, finite double or string) become a JSONB
containment test, `doc @> $1::jsonb`. Everything else becomes
`jsonb_path_exists` predicates, supporting dotted paths, array
membership, `$eq`, `$gt`, `$gte`, `$lt`, `$lte`, `$in`, `$exists` and
`$elemMatch`. The `_id` key is left out of these conditions; unsupported
operators and values are ignored.

## Installation

```
pip install jsonbstore
```

The only runtime dependency is `pymongo`, used for its `bson` package.

## Modules

- `jsonbstore.documents`: document helpers that need no database.
  `json_to_bson` and `to_doc_from_json` convert decoded JSON to BSON-ready
  values (integers outside 32 bits become `Int64`, wider ones floats);
  `decode_row_document` decodes a stored row; `id_bytes_from_bson` gives
  the storage key of an `ObjectId` or string `_id`; `get_path` (raises
  `KeyError` when the path is missing), `set_path` and `remove_path` work
  on dotted paths; `project_document` applies inclusion or exclusion
  projections, dotted paths included.
- `jsonbstore.sqlbuild`: SQL text builders. `schema_name`, `q_ident`,
  `escape_single`, `jsonpath_path`, `json_literal_from_bson`,
  `json_value_from_bson`, `build_elem_match_pred`,
  `build_where_from_filter`, `build_where_spec` (returns a `RawWhere` or a
  `ContainmentWhere`), `build_order_by` and `projection_pushdown_sql`.
- `jsonbstore.catalog`: `Catalog`, which bootstraps the metadata schema
  and manages databases, collections, indexes and counts. Failures raise
  `StoreError`.
- `jsonbstore.store`: `PgStore`, a `Catalog` that also inserts, finds,
  updates and deletes documents, with variants (`*_tx`) that run inside
  a transaction the caller holds.

## Building SQL without a database

```python
from jsonbstore.sqlbuild import (
    ContainmentWhere, RawWhere, build_order_by, build_where_spec,
    q_ident, schema_name,
)

schema_name("test")          # 'mdb_test'
q_ident('odd"name')          # '"odd""name"'
build_order_by(None)         # 'ORDER BY id ASC'

build_where_spec({"name": "Alice"})     # ContainmentWhere(value={'name': 'Alice'})
build_where_spec({"age": {"$gt": 25}})  # RawWhere(sql=...jsonb_path_exists...)
```

`build_order_by` sorts values that look numeric before other values,
numerically, then by text, and always ends with `id` unless `_id` is one
of the sort keys.

## Projecting documents

```python
from jsonbstore.documents import project_document

doc = {"_id": 1, "a": {"b": 5, "c": 7}, "name": "x"}
project_document(doc, {"a.b": 1, "name": 1, "_id": 0})
# {'a': {'b': 5}, 'name': 'x'}
project_document(doc, {"a.c": 0})
# {'_id': 1, 'a': {'b': 5}, 'name': 'x'}
```

## Working with PostgreSQL

`Catalog` and `PgStore` are created from a connection pool and its
connection string: `PgStore(pool, dsn)`. The string is kept as the `dsn`
property. The pool is any object whose `acquire()` returns an async
context manager yielding a client with these coroutines:

- `batch_execute(sql)`: run one or more statements;
- `execute(sql, *params)`: run a statement and return the rows affected;
- `query(sql, *params)`: run a query and return a list of row tuples.

Parameters use `$1`-style placeholders; JSON parameters are passed as
JSON text, and `jsonb` results may come back decoded or as JSON text.
A transaction object given to the `*_tx` methods offers the same
`execute` and `query`.

```python
from jsonbstore.store import PgStore

async def demo(pool, dsn):
    store = PgStore(pool, dsn)
    await store.bootstrap()
    await store.ensure_collection("test", "users")
    docs = await store.find_docs(
        "test", "users",
        {"age": {"$gte": 18}},      # filter
        {"name": 1},                # sort
        {"name": 1, "_id": 0},      # projection
        100,                        # limit
    )
```

`ensure_database` and `ensure_collection` remember what they created and
skip the work on later calls. `find_simple_docs`, `find_by_id_docs`,
`find_docs`, `count_docs` and `find_one_for_update_sorted_tx` treat a
missing schema or table as empty; the other operations raise
`StoreError` for it. `find_one_for_update` and `delete_one_by_filter`
look a document up directly by key when the filter's `_id` is an
`ObjectId` or a string.

## What it does not do

jsonbstore includes no PostgreSQL driver and no connection pool: the
caller supplies a pool with the interface above. It has no command-line
tool and no network server speaking a document-database protocol; it is
a library to be called from Python code.