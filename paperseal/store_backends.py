from __future__ import annotations

import json
import logging
import os
import sqlite3
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from paperseal.config import env_int, true_stack_required
from paperseal.db.postgres import PostgresTxRunner
from paperseal.scopes import ScopeRef
from paperseal.store import (
    KEY_COLUMNS,
    PAPER_COLUMNS,
    QUESTION_COLUMNS,
    SECTION_COLUMNS,
    InMemoryCounterStore,
    check_columns,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

_TABLE_COLUMNS = {"papers": PAPER_COLUMNS, "sections": SECTION_COLUMNS, "questions": QUESTION_COLUMNS}
_BOOL_COLUMNS = {"has_sections", "is_selected"}


@dataclass(frozen=True)
class SqlDialect:
    name: str
    placeholder: str
    row_lock: str
    json_param: str
    bool_type: str
    json_type: str
    real_type: str

    def render(self, sql: str) -> str:
        if self.placeholder == "%s":
            return sql
        return sql.replace("%s", self.placeholder)


SQLITE_DIALECT = SqlDialect(
    name="sqlite",
    placeholder="?",
    row_lock="",
    json_param="%s",
    bool_type="INTEGER",
    json_type="TEXT",
    real_type="REAL",
)
POSTGRES_DIALECT = SqlDialect(
    name="postgres",
    placeholder="%s",
    row_lock=" FOR UPDATE",
    json_param="%s::jsonb",
    bool_type="BOOLEAN",
    json_type="JSONB",
    real_type="DOUBLE PRECISION",
)


def schema_statements(dialect: SqlDialect) -> list[str]:
    return [
        f"""
        CREATE TABLE IF NOT EXISTS papers (
          paper_id TEXT PRIMARY KEY,
          institute_id TEXT NOT NULL,
          title TEXT NOT NULL,
          has_sections {dialect.bool_type} NOT NULL,
          target_count INTEGER NOT NULL,
          selected_count INTEGER NOT NULL DEFAULT 0,
          status TEXT NOT NULL,
          artifact_url TEXT,
          answer_key_url TEXT,
          finalized_at TEXT,
          finalize_attempt_id TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          CHECK (selected_count >= 0 AND selected_count <= target_count)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS sections (
          section_id TEXT PRIMARY KEY,
          paper_id TEXT NOT NULL REFERENCES papers (paper_id),
          section_name TEXT NOT NULL,
          section_order INTEGER NOT NULL,
          question_count INTEGER NOT NULL,
          marks_per_question {dialect.real_type} NOT NULL,
          selected_count INTEGER NOT NULL DEFAULT 0,
          status TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          CHECK (selected_count >= 0 AND selected_count <= question_count)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS questions (
          question_id TEXT PRIMARY KEY,
          paper_id TEXT NOT NULL REFERENCES papers (paper_id),
          section_id TEXT REFERENCES sections (section_id),
          question_order INTEGER NOT NULL,
          is_selected {dialect.bool_type} NOT NULL,
          content {dialect.json_type} NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_sections_paper ON sections (paper_id)",
        "CREATE INDEX IF NOT EXISTS idx_questions_paper ON questions (paper_id)",
        "CREATE INDEX IF NOT EXISTS idx_questions_section ON questions (section_id)",
    ]


class SqlCounterTx:
    """Counter-store primitives as SQL against one open DB-API connection."""

    def __init__(self, conn: Any, *, dialect: SqlDialect) -> None:
        self._conn = conn
        self._dialect = dialect

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> tuple[list[Any], int]:
        cur = self._conn.cursor()
        try:
            cur.execute(self._dialect.render(sql), params)
            rows = list(cur.fetchall()) if cur.description is not None else []
            return rows, int(cur.rowcount)
        finally:
            cur.close()

    def _select(self, table: str, where: str, params: tuple[Any, ...], *, order_by: str = "", lock: bool = False):
        columns = _TABLE_COLUMNS[table]
        sql = f"SELECT {', '.join(columns)} FROM {table} WHERE {where}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        if lock:
            sql += self._dialect.row_lock
        rows, _ = self._execute(sql, params)
        return [self._decode(table, row) for row in rows]

    def _decode(self, table: str, row: Any) -> dict[str, Any]:
        item = dict(zip(_TABLE_COLUMNS[table], row, strict=True))
        for column in _BOOL_COLUMNS:
            if column in item:
                item[column] = bool(item[column])
        if "selected_count" in item:
            item["selected_count"] = int(item["selected_count"])
        if table == "questions":
            content = item.get("content")
            if isinstance(content, str | bytes):
                content = json.loads(content)
            item["content"] = content if isinstance(content, dict) else {}
        return item

    def _param(self, column: str, value: Any) -> Any:
        if column == "content":
            return json.dumps(value if isinstance(value, dict) else {}, ensure_ascii=True, sort_keys=True)
        if column in _BOOL_COLUMNS:
            return bool(value)
        return value

    def _placeholder(self, column: str) -> str:
        return self._dialect.json_param if column == "content" else "%s"

    def _one(self, table: str, key: str, *, for_update: bool) -> dict[str, Any] | None:
        rows = self._select(table, f"{KEY_COLUMNS[table]} = %s", (key,), lock=for_update)
        return rows[0] if rows else None

    def _insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        columns = _TABLE_COLUMNS[table]
        placeholders = ", ".join(self._placeholder(column) for column in columns)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        self._execute(sql, tuple(self._param(column, row.get(column)) for column in columns))
        return dict(row)

    def _update(
        self,
        table: str,
        key: str,
        *,
        changes: dict[str, Any],
        expect: dict[str, Any] | None,
    ) -> bool:
        check_columns(table, changes)
        if not changes:
            return False
        assignments = ", ".join(f"{column} = {self._placeholder(column)}" for column in changes)
        params: list[Any] = [self._param(column, value) for column, value in changes.items()]
        where = [f"{KEY_COLUMNS[table]} = %s"]
        params.append(key)
        for column, expected in (expect or {}).items():
            if column not in _TABLE_COLUMNS[table]:
                raise ValueError(f"unknown column on {table}: {column}")
            if expected is None:
                where.append(f"{column} IS NULL")
            else:
                where.append(f"{column} = %s")
                params.append(self._param(column, expected))
        sql = f"UPDATE {table} SET {assignments} WHERE {' AND '.join(where)}"
        _, rowcount = self._execute(sql, tuple(params))
        return rowcount == 1

    def _scope_where(self, scope: ScopeRef) -> tuple[str, tuple[Any, ...]]:
        if scope.kind == "section":
            return "section_id = %s", (scope.scope_id,)
        return "paper_id = %s AND section_id IS NULL", (scope.paper_id,)

    def get_paper(self, paper_id: str, *, for_update: bool = False) -> dict[str, Any] | None:
        return self._one("papers", paper_id, for_update=for_update)

    def get_section(self, section_id: str, *, for_update: bool = False) -> dict[str, Any] | None:
        return self._one("sections", section_id, for_update=for_update)

    def get_question(self, question_id: str, *, for_update: bool = False) -> dict[str, Any] | None:
        return self._one("questions", question_id, for_update=for_update)

    def list_papers(self, *, institute_id: str | None = None) -> list[dict[str, Any]]:
        if institute_id is None:
            return self._select("papers", "1 = 1", (), order_by="created_at, paper_id")
        return self._select("papers", "institute_id = %s", (institute_id,), order_by="created_at, paper_id")

    def list_sections(self, paper_id: str) -> list[dict[str, Any]]:
        return self._select("sections", "paper_id = %s", (paper_id,), order_by="section_order, section_id")

    def list_paper_questions(self, paper_id: str) -> list[dict[str, Any]]:
        return self._select("questions", "paper_id = %s", (paper_id,), order_by="question_order, question_id")

    def list_scope_questions(self, scope: ScopeRef) -> list[dict[str, Any]]:
        where, params = self._scope_where(scope)
        return self._select("questions", where, params, order_by="question_order, question_id")

    def insert_paper(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("papers", row)

    def insert_section(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("sections", row)

    def insert_question(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("questions", row)

    def update_paper(self, paper_id: str, *, changes: dict[str, Any], expect: dict[str, Any] | None = None) -> bool:
        return self._update("papers", paper_id, changes=changes, expect=expect)

    def update_section(
        self,
        section_id: str,
        *,
        changes: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> bool:
        return self._update("sections", section_id, changes=changes, expect=expect)

    def update_question(
        self,
        question_id: str,
        *,
        changes: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> bool:
        return self._update("questions", question_id, changes=changes, expect=expect)

    def increment_selected(self, scope: ScopeRef) -> bool:
        key_column = KEY_COLUMNS[scope.table]
        sql = f"""
            UPDATE {scope.table}
            SET selected_count = selected_count + 1, updated_at = %s
            WHERE {key_column} = %s AND selected_count < {scope.target_column}
        """
        _, rowcount = self._execute(sql, (utcnow_iso(), scope.scope_id))
        return rowcount == 1

    def decrement_selected(self, scope: ScopeRef) -> bool:
        key_column = KEY_COLUMNS[scope.table]
        sql = f"""
            UPDATE {scope.table}
            SET selected_count = selected_count - 1, updated_at = %s
            WHERE {key_column} = %s AND selected_count > 0
        """
        _, rowcount = self._execute(sql, (utcnow_iso(), scope.scope_id))
        return rowcount == 1

    def set_target(self, scope: ScopeRef, *, target: int) -> bool:
        key_column = KEY_COLUMNS[scope.table]
        sql = f"""
            UPDATE {scope.table}
            SET {scope.target_column} = %s, updated_at = %s
            WHERE {key_column} = %s AND selected_count <= %s
        """
        _, rowcount = self._execute(sql, (int(target), utcnow_iso(), scope.scope_id, int(target)))
        return rowcount == 1

    def count_selected_flags(self, scope: ScopeRef) -> int:
        where, params = self._scope_where(scope)
        rows, _ = self._execute(f"SELECT COUNT(*) FROM questions WHERE {where} AND is_selected = %s", (*params, True))
        return int(rows[0][0]) if rows else 0

    def truncate(self) -> None:
        for table in ("questions", "sections", "papers"):
            self._execute(f"DELETE FROM {table}")


class SqliteCounterStore:
    """Durable single-node counter store; each transaction takes the write lock up front."""

    backend_name = "sqlite"

    def __init__(self, db_path: str, *, busy_timeout_s: float = 30.0) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout_s = busy_timeout_s
        self._initialize_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=self._busy_timeout_s,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _initialize_database(self) -> None:
        conn = self._connect()
        try:
            for statement in schema_statements(SQLITE_DIALECT):
                conn.execute(statement)
        finally:
            conn.close()

    def run_in_tx(self, *, fn: Callable[[SqlCounterTx], Any]) -> Any:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = fn(SqlCounterTx(conn, dialect=SQLITE_DIALECT))
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result
        finally:
            conn.close()

    def reset(self) -> None:
        self.run_in_tx(fn=lambda tx: tx.truncate())


class PostgresCounterStore:
    """Counter store on PostgreSQL; reads taken with ``for_update`` hold row locks until commit."""

    backend_name = "postgres"

    def __init__(self, *, tx_runner: PostgresTxRunner, initialize_schema: bool = True) -> None:
        self._tx_runner = tx_runner
        if initialize_schema:
            self._tx_runner.run_in_tx(fn=self._create_schema)

    @staticmethod
    def _create_schema(conn: Any) -> None:
        with conn.cursor() as cur:
            for statement in schema_statements(POSTGRES_DIALECT):
                cur.execute(statement)

    def run_in_tx(self, *, fn: Callable[[SqlCounterTx], Any]) -> Any:
        return self._tx_runner.run_in_tx(fn=lambda conn: fn(SqlCounterTx(conn, dialect=POSTGRES_DIALECT)))

    def reset(self) -> None:
        self.run_in_tx(fn=lambda tx: tx.truncate())


CounterStore = InMemoryCounterStore | SqliteCounterStore | PostgresCounterStore


def create_counter_store_from_env(environ: Mapping[str, str] | None = None) -> CounterStore:
    env = os.environ if environ is None else environ
    backend = env.get("PAPERSEAL_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("PAPERSEAL_STORE_BACKEND must be postgres when PAPERSEAL_REQUIRE_TRUESTACK=true")
    if backend == "sqlite":
        db_path = env.get("PAPERSEAL_STORE_SQLITE_PATH", ".local/paperseal.sqlite3")
        logger.info("counter_store_selected backend=sqlite path=%s", db_path)
        return SqliteCounterStore(db_path)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when PAPERSEAL_STORE_BACKEND=postgres")
        lock_timeout_ms = env_int(env, "POSTGRES_LOCK_TIMEOUT_MS", default=5000, minimum=0)
        logger.info("counter_store_selected backend=postgres")
        return PostgresCounterStore(tx_runner=PostgresTxRunner(dsn, lock_timeout_ms=lock_timeout_ms))
    return InMemoryCounterStore()
