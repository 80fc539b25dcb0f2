"""Catalog of databases, collections and indexes kept in Postgres metadata tables.

The catalog talks to Postgres through an injected connection pool. The pool's
``acquire()`` returns an async context manager that yields a client with:

* ``await client.batch_execute(sql)``: run one or more statements;
* ``await client.execute(sql, *params)``: run a statement, return rows affected;
* ``await client.query(sql, *params)``: run a query, return a list of row tuples.

Parameters use ``$1``-style placeholders. JSON parameters are passed as JSON text.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from typing import Any, Protocol

from .sqlbuild import build_where_from_filter, q_ident, schema_name

logger = logging.getLogger(__name__)

_BOOTSTRAP_SQL = """
CREATE SCHEMA IF NOT EXISTS mdb_meta;
CREATE TABLE IF NOT EXISTS mdb_meta.databases (
    db TEXT PRIMARY KEY
);
CREATE TABLE IF NOT EXISTS mdb_meta.collections (
    db TEXT NOT NULL,
    coll TEXT NOT NULL,
    PRIMARY KEY (db, coll)
);
CREATE TABLE IF NOT EXISTS mdb_meta.indexes (
    db TEXT NOT NULL,
    coll TEXT NOT NULL,
    name TEXT NOT NULL,
    spec JSONB NOT NULL,
    sql TEXT,
    PRIMARY KEY (db, coll, name)
);
"""

_UPSERT_INDEX_SQL = (
    "INSERT INTO mdb_meta.indexes(db, coll, name, spec, sql) VALUES ($1,$2,$3,$4,$5) "
    "ON CONFLICT (db, coll, name) DO UPDATE SET spec = EXCLUDED.spec, sql = EXCLUDED.sql"
)


class StoreError(Exception):
    """Raised when a storage operation fails."""


class _Client(Protocol):
    async def batch_execute(self, sql: str) -> None: ...

    async def execute(self, sql: str, *params: Any) -> int: ...

    async def query(self, sql: str, *params: Any) -> list: ...


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _table(db: str, coll: str) -> str:
    return f"{q_ident(schema_name(db))}.{q_ident(coll)}"


def _index_expr(field: str) -> str:
    escaped = field.replace('"', '""')
    return f"((doc->>'{escaped}'))"


class Catalog:
    """Schema and metadata management for databases, collections and indexes."""

    def __init__(self, pool: Any, dsn: str) -> None:
        self._pool = pool
        self._dsn = dsn
        self._known_databases: set[str] = set()
        self._known_collections: set[tuple[str, str]] = set()

    @property
    def dsn(self) -> str:
        """The connection string this catalog was created with."""
        return self._dsn

    @asynccontextmanager
    async def get_client(self) -> AsyncIterator[_Client]:
        """Borrow a client from the pool; any failure surfaces as StoreError."""
        try:
            async with self._pool.acquire() as client:
                yield client
        except StoreError:
            raise
        except Exception as exc:
            raise StoreError(str(exc)) from exc

    async def bootstrap(self) -> None:
        """Create the metadata schema and tables if they are missing."""
        async with self.get_client() as client:
            await client.batch_execute(_BOOTSTRAP_SQL)

    async def list_databases(self) -> list[str]:
        """Return the known database names in order."""
        async with self.get_client() as client:
            rows = await client.query("SELECT db FROM mdb_meta.databases ORDER BY db")
        return [row[0] for row in rows]

    async def list_collections(self, db: str) -> list[str]:
        """Return the collection names of a database in order."""
        async with self.get_client() as client:
            rows = await client.query(
                "SELECT coll FROM mdb_meta.collections WHERE db = $1 ORDER BY coll", db
            )
        return [row[0] for row in rows]

    async def ensure_database(self, db: str) -> None:
        """Create the database's schema and record it, unless already known."""
        if db in self._known_databases:
            return
        started = time.perf_counter()
        async with self.get_client() as client:
            await client.batch_execute(
                f"CREATE SCHEMA IF NOT EXISTS {q_ident(schema_name(db))}"
            )
            await client.execute(
                "INSERT INTO mdb_meta.databases(db) VALUES($1) ON CONFLICT (db) DO NOTHING",
                db,
            )
        self._known_databases.add(db)
        logger.debug("op=ensure_database db=%s elapsed_ms=%d", db, _elapsed_ms(started))

    async def ensure_collection(self, db: str, coll: str) -> None:
        """Create the collection's table and GIN index and record it, unless already known."""
        if (db, coll) in self._known_collections:
            return
        await self.ensure_database(db)
        started = time.perf_counter()
        table = _table(db, coll)
        index = q_ident(f"idx_{coll}_doc_gin")
        ddl = (
            f"CREATE TABLE IF NOT EXISTS {table} "
            "(id bytea PRIMARY KEY, doc jsonb NOT NULL, doc_bson bytea NOT NULL);\n"
            f"CREATE INDEX IF NOT EXISTS {index} ON {table} USING GIN (doc jsonb_path_ops)"
        )
        async with self.get_client() as client:
            await client.batch_execute(ddl)
            await client.execute(
                "INSERT INTO mdb_meta.collections(db, coll) VALUES($1,$2) "
                "ON CONFLICT (db, coll) DO NOTHING",
                db,
                coll,
            )
        self._known_collections.add((db, coll))
        logger.debug(
            "op=ensure_collection db=%s coll=%s elapsed_ms=%d", db, coll, _elapsed_ms(started)
        )

    async def drop_collection(self, db: str, coll: str) -> None:
        """Drop the collection's table and remove it from the metadata."""
        async with self.get_client() as client:
            await client.batch_execute(f"DROP TABLE IF EXISTS {_table(db, coll)}")
            await client.execute(
                "DELETE FROM mdb_meta.collections WHERE db = $1 AND coll = $2", db, coll
            )
        self._known_collections.discard((db, coll))

    async def drop_database(self, db: str) -> None:
        """Drop the database's schema with everything in it and remove its metadata."""
        async with self.get_client() as client:
            await client.batch_execute(
                f"DROP SCHEMA IF EXISTS {q_ident(schema_name(db))} CASCADE"
            )
            await client.execute("DELETE FROM mdb_meta.collections WHERE db = $1", db)
            await client.execute("DELETE FROM mdb_meta.databases WHERE db = $1", db)
        self._known_databases.discard(db)
        self._known_collections = {key for key in self._known_collections if key[0] != db}

    async def _create_index(self, db: str, coll: str, name: str, ddl: str, spec: Any) -> None:
        async with self.get_client() as client:
            await client.batch_execute(ddl)
            await client.execute(_UPSERT_INDEX_SQL, db, coll, name, json.dumps(spec), ddl)

    async def create_index_single_field(
        self, db: str, coll: str, name: str, field: str, order: int, spec: Any
    ) -> None:
        """Create a btree expression index on one field's text value and record it.

        ``order`` is accepted for the index spec's sake; a single-field btree
        serves both directions.
        """
        await self.ensure_collection(db, coll)
        started = time.perf_counter()
        ddl = (
            f"CREATE INDEX IF NOT EXISTS {q_ident(name)} ON {_table(db, coll)} "
            f"USING btree {_index_expr(field)}"
        )
        await self._create_index(db, coll, name, ddl, spec)
        logger.debug(
            "op=create_index_single db=%s coll=%s name=%s elapsed_ms=%d",
            db, coll, name, _elapsed_ms(started),
        )

    async def create_index_compound(
        self,
        db: str,
        coll: str,
        name: str,
        fields: Iterable[tuple[str, int]],
        spec: Any,
    ) -> None:
        """Create a btree expression index over several fields and record it."""
        await self.ensure_collection(db, coll)
        started = time.perf_counter()
        elems = ", ".join(
            f"{_index_expr(field)} {'DESC' if order < 0 else 'ASC'}" for field, order in fields
        )
        ddl = (
            f"CREATE INDEX IF NOT EXISTS {q_ident(name)} ON {_table(db, coll)} "
            f"USING btree ({elems})"
        )
        await self._create_index(db, coll, name, ddl, spec)
        logger.debug(
            "op=create_index_compound db=%s coll=%s name=%s elapsed_ms=%d",
            db, coll, name, _elapsed_ms(started),
        )

    async def drop_index(self, db: str, coll: str, name: str) -> bool:
        """Drop an index; return True if its metadata entry existed."""
        ddl = f"DROP INDEX IF EXISTS {q_ident(schema_name(db))}.{q_ident(name)}"
        async with self.get_client() as client:
            await client.batch_execute(ddl)
            removed = await client.execute(
                "DELETE FROM mdb_meta.indexes WHERE db=$1 AND coll=$2 AND name=$3",
                db,
                coll,
                name,
            )
        return removed > 0

    async def list_index_names(self, db: str, coll: str) -> list[str]:
        """Return the names of the recorded indexes of a collection."""
        async with self.get_client() as client:
            rows = await client.query(
                "SELECT name FROM mdb_meta.indexes WHERE db=$1 AND coll=$2", db, coll
            )
        return [row[0] for row in rows]

    async def count_docs(self, db: str, coll: str, filter_doc: Mapping | None) -> int:
        """Count matching documents; a missing collection counts as empty."""
        where_sql = build_where_from_filter(filter_doc) if filter_doc is not None else "TRUE"
        sql = f"SELECT COUNT(*) FROM {_table(db, coll)} WHERE {where_sql}"
        started = time.perf_counter()
        async with self.get_client() as client:
            try:
                rows = await client.query(sql)
            except Exception as exc:
                if "does not exist" in str(exc):
                    return 0
                raise
        count = int(rows[0][0])
        logger.debug("op=count_docs db=%s coll=%s elapsed_ms=%d", db, coll, _elapsed_ms(started))
        return count