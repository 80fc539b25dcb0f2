"""Document storage in Postgres: inserts, finds, updates and deletes over JSONB tables.

Each collection is a table ``mdb_<db>.<coll>`` holding the document's key
(``id``), its BSON encoding (``doc_bson``) and its JSON form (``doc``).
Reads prefer the BSON column and fall back to the JSON one.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

import bson
from bson import json_util
from bson.json_util import RELAXED_JSON_OPTIONS

from .catalog import Catalog, StoreError
from .documents import (
    decode_row_document,
    id_bytes_from_bson,
    project_document,
    to_doc_from_json,
)
from .sqlbuild import (
    ContainmentWhere,
    RawWhere,
    build_order_by,
    build_where_from_filter,
    build_where_spec,
    projection_pushdown_sql,
    q_ident,
    schema_name,
)

logger = logging.getLogger(__name__)

_MISSING = "does not exist"


def _table(db: str, coll: str) -> str:
    return f"{q_ident(schema_name(db))}.{q_ident(coll)}"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _json_param(value: Any) -> str:
    """Serialise a value as JSON text for a jsonb parameter."""
    return json_util.dumps(value, json_options=RELAXED_JSON_OPTIONS)


def _json_result(value: Any) -> Any:
    """Accept a jsonb column either already decoded or as JSON text."""
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json_util.loads(value) if value else None
    return value


def _decode_row(row: Any, offset: int) -> dict:
    return decode_row_document(row[offset], _json_result(row[offset + 1]))


def _encode_document(doc: Mapping) -> tuple[bytes, str]:
    try:
        return bson.encode(doc), _json_param(doc)
    except Exception as exc:
        raise StoreError(str(exc)) from exc


@contextmanager
def _tx_errors() -> Iterator[None]:
    try:
        yield
    except StoreError:
        raise
    except Exception as exc:
        raise StoreError(str(exc)) from exc


async def _query_or_empty(client: Any, sql: str, *params: Any) -> list | None:
    """Run a query; return None when the schema or table is missing."""
    try:
        return await client.query(sql, *params)
    except Exception as exc:
        if _MISSING in str(exc):
            return None
        raise


class PgStore(Catalog):
    """Postgres-backed document store."""

    async def insert_one(
        self, db: str, coll: str, doc_id: bytes, bson_bytes: bytes, json_value: Any
    ) -> int:
        """Insert a document unless its id exists; return the rows inserted."""
        await self.ensure_collection(db, coll)
        sql = (
            f"INSERT INTO {_table(db, coll)} (id, doc_bson, doc) VALUES ($1, $2, $3) "
            "ON CONFLICT (id) DO NOTHING"
        )
        started = time.perf_counter()
        async with self.get_client() as client:
            count = await client.execute(
                sql, bytes(doc_id), bytes(bson_bytes), _json_param(json_value)
            )
        logger.debug("op=insert_one db=%s coll=%s elapsed_ms=%d", db, coll, _elapsed_ms(started))
        return int(count)

    async def find_simple_docs(self, db: str, coll: str, limit: int) -> list[dict]:
        """Return up to ``limit`` documents in id order."""
        sql = f"SELECT doc_bson, doc FROM {_table(db, coll)} ORDER BY id ASC LIMIT $1"
        started = time.perf_counter()
        async with self.get_client() as client:
            rows = await _query_or_empty(client, sql, int(limit))
        if rows is None:
            return []
        docs = [_decode_row(row, 0) for row in rows]
        logger.debug(
            "op=find_simple_docs db=%s coll=%s elapsed_ms=%d", db, coll, _elapsed_ms(started)
        )
        return docs

    async def find_by_id_docs(
        self, db: str, coll: str, doc_id: bytes, limit: int
    ) -> list[dict]:
        """Return the documents stored under an id."""
        sql = f"SELECT doc_bson, doc FROM {_table(db, coll)} WHERE id = $1 LIMIT $2"
        started = time.perf_counter()
        async with self.get_client() as client:
            rows = await _query_or_empty(client, sql, bytes(doc_id), int(limit))
        if rows is None:
            return []
        docs = [_decode_row(row, 0) for row in rows]
        logger.debug(
            "op=find_by_id_docs db=%s coll=%s elapsed_ms=%d", db, coll, _elapsed_ms(started)
        )
        return docs

    async def find_with_top_level_filter(
        self, db: str, coll: str, filter_doc: Mapping, limit: int
    ) -> list[dict]:
        """Find documents matching a filter, in id order.

        Supports equality, comparisons, ``$in``, ``$exists`` and ``$elemMatch``
        on dotted paths, with array membership.
        """
        table = _table(db, coll)
        spec = build_where_spec(filter_doc)
        started = time.perf_counter()
        async with self.get_client() as client:
            if isinstance(spec, ContainmentWhere):
                sql = (
                    f"SELECT doc_bson, doc FROM {table} WHERE doc @> $1::jsonb "
                    "ORDER BY id ASC LIMIT $2"
                )
                rows = await client.query(sql, _json_param(spec.value), int(limit))
            else:
                sql = (
                    f"SELECT doc_bson, doc FROM {table} WHERE {spec.sql} "
                    f"ORDER BY id ASC LIMIT {int(limit)}"
                )
                rows = await client.query(sql)
        docs = [_decode_row(row, 0) for row in rows]
        logger.debug(
            "op=find_with_top_level_filter db=%s coll=%s elapsed_ms=%d",
            db, coll, _elapsed_ms(started),
        )
        return docs

    async def find_docs(
        self,
        db: str,
        coll: str,
        filter_doc: Mapping | None,
        sort: Mapping | None,
        projection: Mapping | None,
        limit: int,
    ) -> list[dict]:
        """Find documents with optional filter, sort and projection.

        Simple top-level inclusions are projected in SQL; other projections are
        applied to each decoded document. A missing collection gives no documents.
        """
        table = _table(db, coll)
        spec = build_where_spec(filter_doc) if filter_doc is not None else None
        order_sql = build_order_by(sort)
        proj_sql = projection_pushdown_sql(projection)
        select = f"{proj_sql} AS doc" if proj_sql is not None else "doc_bson, doc"
        limit = int(limit)

        if isinstance(spec, ContainmentWhere):
            sql = f"SELECT {select} FROM {table} WHERE doc @> $1::jsonb {order_sql} LIMIT $2"
            params: tuple = (_json_param(spec.value), limit)
        elif isinstance(spec, RawWhere):
            sql = f"SELECT {select} FROM {table} WHERE {spec.sql} {order_sql} LIMIT {limit}"
            params = ()
        else:
            sql = f"SELECT {select} FROM {table} WHERE TRUE {order_sql} LIMIT {limit}"
            params = ()

        started = time.perf_counter()
        async with self.get_client() as client:
            rows = await _query_or_empty(client, sql, *params)
        if rows is None:
            return []

        if proj_sql is not None:
            docs = [to_doc_from_json(_json_result(row[0])) for row in rows]
            op = "find_docs_pushdown"
        else:
            docs = [_decode_row(row, 0) for row in rows]
            if projection is not None:
                docs = [project_document(doc, projection) for doc in docs]
            op = "find_docs"
        logger.debug("op=%s db=%s coll=%s elapsed_ms=%d", op, db, coll, _elapsed_ms(started))
        return docs

    async def find_by_subdoc(
        self, db: str, coll: str, subdoc: Any, limit: int
    ) -> list[dict]:
        """Find documents that contain a JSON sub-document."""
        sql = (
            f"SELECT doc_bson, doc FROM {_table(db, coll)} WHERE doc @> $1::jsonb "
            "ORDER BY id ASC LIMIT $2"
        )
        started = time.perf_counter()
        async with self.get_client() as client:
            rows = await client.query(sql, _json_param(subdoc), int(limit))
        docs = [_decode_row(row, 0) for row in rows]
        logger.debug(
            "op=find_by_subdoc db=%s coll=%s elapsed_ms=%d", db, coll, _elapsed_ms(started)
        )
        return docs

    async def find_one_for_update(
        self, db: str, coll: str, filter_doc: Mapping
    ) -> tuple[bytes, dict] | None:
        """Return the first matching ``(id, document)``, or None."""
        table = _table(db, coll)
        id_bytes = id_bytes_from_bson(filter_doc.get("_id"))
        if id_bytes is not None:
            sql = f"SELECT id, doc_bson, doc FROM {table} WHERE id = $1 LIMIT 1"
            async with self.get_client() as client:
                rows = await client.query(sql, id_bytes)
            if not rows:
                return None
            return bytes(rows[0][0]), _decode_row(rows[0], 1)

        spec = build_where_spec(filter_doc)
        started = time.perf_counter()
        async with self.get_client() as client:
            if isinstance(spec, ContainmentWhere):
                sql = (
                    f"SELECT id, doc_bson, doc FROM {table} WHERE doc @> $1::jsonb "
                    "ORDER BY id ASC LIMIT 1"
                )
                rows = await client.query(sql, _json_param(spec.value))
            else:
                sql = (
                    f"SELECT id, doc_bson, doc FROM {table} WHERE {spec.sql} "
                    "ORDER BY id ASC LIMIT 1"
                )
                rows = await client.query(sql)
        if not rows:
            return None
        result = bytes(rows[0][0]), _decode_row(rows[0], 1)
        logger.debug(
            "op=find_one_for_update db=%s coll=%s elapsed_ms=%d", db, coll, _elapsed_ms(started)
        )
        return result

    async def update_doc_by_id(
        self, db: str, coll: str, doc_id: bytes, new_doc: Mapping
    ) -> int:
        """Overwrite a document by id in both columns; return the rows updated."""
        sql = f"UPDATE {_table(db, coll)} SET doc_bson = $1, doc = $2 WHERE id = $3"
        bson_bytes, json_text = _encode_document(new_doc)
        started = time.perf_counter()
        async with self.get_client() as client:
            count = await client.execute(sql, bson_bytes, json_text, bytes(doc_id))
        logger.debug(
            "op=update_doc_by_id db=%s coll=%s elapsed_ms=%d", db, coll, _elapsed_ms(started)
        )
        return int(count)

    async def delete_one_by_filter(self, db: str, coll: str, filter_doc: Mapping) -> int:
        """Delete the first matching document; return 0 or 1."""
        table = _table(db, coll)
        delete_sql = f"DELETE FROM {table} WHERE id = $1"
        id_bytes = id_bytes_from_bson(filter_doc.get("_id"))
        if id_bytes is not None:
            async with self.get_client() as client:
                return int(await client.execute(delete_sql, id_bytes))

        spec = build_where_spec(filter_doc)
        started = time.perf_counter()
        async with self.get_client() as client:
            if isinstance(spec, ContainmentWhere):
                select_sql = (
                    f"SELECT id FROM {table} WHERE doc @> $1::jsonb ORDER BY id ASC LIMIT 1"
                )
                rows = await client.query(select_sql, _json_param(spec.value))
            else:
                select_sql = f"SELECT id FROM {table} WHERE {spec.sql} ORDER BY id ASC LIMIT 1"
                rows = await client.query(select_sql)
            if not rows:
                return 0
            count = await client.execute(delete_sql, bytes(rows[0][0]))
        logger.debug(
            "op=delete_one_by_filter db=%s coll=%s elapsed_ms=%d", db, coll, _elapsed_ms(started)
        )
        return int(count)

    async def delete_many_by_filter(self, db: str, coll: str, filter_doc: Mapping) -> int:
        """Delete every matching document; return the rows deleted."""
        table = _table(db, coll)
        spec = build_where_spec(filter_doc)
        started = time.perf_counter()
        async with self.get_client() as client:
            if isinstance(spec, ContainmentWhere):
                count = await client.execute(
                    f"DELETE FROM {table} WHERE doc @> $1::jsonb", _json_param(spec.value)
                )
            else:
                count = await client.execute(f"DELETE FROM {table} WHERE {spec.sql}")
        logger.debug(
            "op=delete_many_by_filter db=%s coll=%s elapsed_ms=%d", db, coll, _elapsed_ms(started)
        )
        return int(count)

    async def find_one_for_update_sorted_tx(
        self,
        tx: Any,
        db: str,
        coll: str,
        filter_doc: Mapping,
        sort: Mapping | None,
    ) -> tuple[bytes, dict] | None:
        """Within a transaction, lock and return the first matching row in sort order."""
        sql = (
            f"SELECT id, doc_bson, doc FROM {_table(db, coll)} "
            f"WHERE {build_where_from_filter(filter_doc)} {build_order_by(sort)} "
            "LIMIT 1 FOR UPDATE"
        )
        with _tx_errors():
            rows = await _query_or_empty(tx, sql)
        if not rows:
            return None
        return bytes(rows[0][0]), _decode_row(rows[0], 1)

    async def update_doc_by_id_tx(
        self, tx: Any, db: str, coll: str, doc_id: bytes, new_doc: Mapping
    ) -> int:
        """Within a transaction, overwrite a document by id."""
        sql = f"UPDATE {_table(db, coll)} SET doc_bson = $1, doc = $2 WHERE id = $3"
        bson_bytes, json_text = _encode_document(new_doc)
        with _tx_errors():
            return int(await tx.execute(sql, bson_bytes, json_text, bytes(doc_id)))

    async def insert_one_tx(
        self,
        tx: Any,
        db: str,
        coll: str,
        doc_id: bytes,
        bson_bytes: bytes,
        json_value: Any,
    ) -> int:
        """Within a transaction, insert a document unless its id exists."""
        sql = (
            f"INSERT INTO {_table(db, coll)} (id, doc_bson, doc) VALUES ($1, $2, $3) "
            "ON CONFLICT (id) DO NOTHING"
        )
        with _tx_errors():
            return int(
                await tx.execute(sql, bytes(doc_id), bytes(bson_bytes), _json_param(json_value))
            )

    async def delete_by_id_tx(self, tx: Any, db: str, coll: str, doc_id: bytes) -> int:
        """Within a transaction, delete a document by id."""
        sql = f"DELETE FROM {_table(db, coll)} WHERE id = $1"
        with _tx_errors():
            return int(await tx.execute(sql, bytes(doc_id)))