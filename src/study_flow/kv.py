"""Durable local key/value storage (SQLite file or Postgres DSN)."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import sqlite3
from typing import Any, Protocol

import psycopg


class KeyValueStoreError(RuntimeError):
    """Raised when key/value storage operations fail."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def list_keys(self, prefix: str = "") -> list[str]: ...


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


class SqlKeyValueStore:
    """String values keyed within a namespace; one table shared by all namespaces."""

    def __init__(self, *, locator: str, namespace: str = "default") -> None:
        self.locator = locator
        self.namespace = str(namespace or "").strip()
        if not self.namespace:
            raise KeyValueStoreError("namespace is required")
        self.backend = "postgres" if is_postgres_dsn(locator) else "sqlite"
        if self.backend == "sqlite":
            path = Path(_sqlite_path(locator))
            path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def get(self, key: str) -> str | None:
        with self._connect() as conn:
            row = _query_one(
                conn,
                self.backend,
                "SELECT value_text FROM study_flow_kv WHERE namespace = {p1} AND entry_key = {p2}",
                (self.namespace, _require_key(key)),
            )
        if row is None:
            return None
        return str(row[0])

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise KeyValueStoreError("value must be a string")
        with self._connect() as conn:
            _execute(
                conn,
                self.backend,
                """
                INSERT INTO study_flow_kv (namespace, entry_key, value_text, updated_at_utc)
                VALUES ({p1}, {p2}, {p3}, {p4})
                ON CONFLICT (namespace, entry_key) DO UPDATE SET
                    value_text = excluded.value_text,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (self.namespace, _require_key(key), value, _utc_now()),
            )

    def delete(self, key: str) -> None:
        with self._connect() as conn:
            _execute(
                conn,
                self.backend,
                "DELETE FROM study_flow_kv WHERE namespace = {p1} AND entry_key = {p2}",
                (self.namespace, _require_key(key)),
            )

    def list_keys(self, prefix: str = "") -> list[str]:
        pattern = _escape_like(prefix or "") + "%"
        with self._connect() as conn:
            rows = _query_all(
                conn,
                self.backend,
                """
                SELECT entry_key FROM study_flow_kv
                WHERE namespace = {p1} AND entry_key LIKE {p2} ESCAPE '!'
                ORDER BY entry_key
                """,
                (self.namespace, pattern),
            )
        return [str(row[0]) for row in rows]

    def _init_schema(self) -> None:
        with self._connect() as conn:
            _execute_script(
                conn,
                self.backend,
                """
                CREATE TABLE IF NOT EXISTS study_flow_kv (
                    namespace TEXT NOT NULL,
                    entry_key TEXT NOT NULL,
                    value_text TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    PRIMARY KEY (namespace, entry_key)
                );
                """,
            )

    def _connect(self) -> Any:
        if self.backend == "sqlite":
            conn = sqlite3.connect(_sqlite_path(self.locator))
            conn.row_factory = sqlite3.Row
            return conn
        return psycopg.connect(self.locator)


def build_kv_store(locator: str, *, namespace: str = "default") -> SqlKeyValueStore:
    text = str(locator or "").strip()
    if not text:
        raise KeyValueStoreError("store locator is required")
    return SqlKeyValueStore(locator=text, namespace=namespace)


def _require_key(key: str) -> str:
    text = str(key or "").strip()
    if not text:
        raise KeyValueStoreError("key is required")
    return text


def _escape_like(value: str) -> str:
    return value.replace("!", "!!").replace("%", "!%").replace("_", "!_")


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _sqlite_path(locator: str) -> str:
    if locator.startswith("sqlite:///"):
        return locator[len("sqlite:///") :]
    if locator.startswith("sqlite://"):
        return locator[len("sqlite://") :]
    return locator


def _render_sql(sql: str, backend: str) -> str:
    rendered = sql
    for idx in range(1, 5):
        placeholder = "%s" if backend == "postgres" else "?"
        rendered = rendered.replace(f"{{p{idx}}}", placeholder)
    return rendered


def _query_one(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> Any:
    rendered = _render_sql(sql, backend)
    cur = conn.execute(rendered, params) if backend == "sqlite" else conn.cursor().execute(rendered, params)
    return cur.fetchone()


def _query_all(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> list[Any]:
    rendered = _render_sql(sql, backend)
    cur = conn.execute(rendered, params) if backend == "sqlite" else conn.cursor().execute(rendered, params)
    return list(cur.fetchall())


def _execute(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> None:
    rendered = _render_sql(sql, backend)
    if backend == "sqlite":
        conn.execute(rendered, params)
    else:
        conn.cursor().execute(rendered, params)


def _execute_script(conn: Any, backend: str, sql: str) -> None:
    if backend == "sqlite":
        conn.executescript(sql)
    else:
        statements = [item.strip() for item in sql.split(";") if item.strip()]
        cur = conn.cursor()
        for statement in statements:
            cur.execute(statement)
