"""
Persistent store for folio.

Two backends share one query surface:

• ``SqliteDatabase``   – the embedded file store (``sqlite:///path`` or a bare path)
• ``PostgresDatabase`` – the relational server (``postgresql://…``)

``open_store(url)`` picks the backend once; ``Store.open()`` then hands out
one connection-backed ``Database`` per request.
"""

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psycopg
from psycopg.rows import dict_row

WORK_TYPES = ("web", "game", "design", "uxd")
TABLES_IN_ORDER = ("users", "work_items", "guestbook")


class StoreError(Exception):
    """Any failure talking to the backing database."""


@dataclass(frozen=True)
class Result:
    """Outcome of a store call that a view renders either way."""

    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


################################################################################
# Databases
################################################################################
class Database:
    """
    Thin wrapper around one DB-API connection.

    Queries are written once with ``?`` placeholders; subclasses translate
    them and say which driver errors count as ``StoreError``.
    Every write commits on its own – there are no multi-statement transactions.
    """

    placeholder = "?"
    driver_errors: tuple[type[Exception], ...] = ()
    schema = ""

    def __init__(self, conn):
        self.conn = conn

    # ── plumbing ────────────────────────────────────────────────────────
    def _sql(self, sql: str) -> str:
        if self.placeholder == "?":
            return sql
        return sql.replace("?", self.placeholder)

    def _run(self, sql: str, params: tuple = ()):
        try:
            cur = self.conn.cursor()
            cur.execute(self._sql(sql), params)
            return cur
        except self.driver_errors as exc:
            self._rollback()
            raise StoreError(str(exc)) from exc

    def _rollback(self) -> None:
        try:
            self.conn.rollback()
        except self.driver_errors:
            pass

    def _one(self, sql: str, params: tuple = ()) -> dict | None:
        row = self._run(sql, params).fetchone()
        return self._row(row) if row is not None else None

    def _all(self, sql: str, params: tuple = ()) -> list[dict]:
        return [self._row(r) for r in self._run(sql, params).fetchall()]

    def _write(self, sql: str, params: tuple = ()) -> int:
        cur = self._run(sql, params)
        self._commit()
        return cur.rowcount

    def _commit(self) -> None:
        try:
            self.conn.commit()
        except self.driver_errors as exc:
            raise StoreError(str(exc)) from exc

    def _insert(self, sql: str, params: tuple) -> int:
        cur = self._run(sql + " RETURNING id", params)
        new_id = self._row(cur.fetchone())["id"]
        self._commit()
        return new_id

    def _row(self, row) -> dict:
        out = dict(row)
        for key in ("created_at", "expire"):
            if key in out:
                out[key] = self.from_ts(out[key])
        if "is_admin" in out:
            out["is_admin"] = bool(out["is_admin"])
        return out

    def to_ts(self, dt: datetime):
        return dt

    def from_ts(self, value):
        return value

    def close(self) -> None:
        self.conn.close()

    def init_schema(self) -> None:
        try:
            with self.conn.cursor() as cur:
                for stmt in self.schema.split(";"):
                    if stmt.strip():
                        cur.execute(stmt)
            self.conn.commit()
        except self.driver_errors as exc:
            self._rollback()
            raise StoreError(str(exc)) from exc

    # ── users ───────────────────────────────────────────────────────────
    def add_user(self, username: str, password_hash: str, *, is_admin=False) -> int:
        return self._insert(
            "INSERT INTO users (username, password_hash, is_admin) VALUES (?,?,?)",
            (username, password_hash, is_admin),
        )

    def find_user(self, username: str) -> dict | None:
        return self._one("SELECT * FROM users WHERE username=?", (username,))

    def set_admin(self, username: str, is_admin: bool) -> bool:
        """Flip the role flag; returns False when no such user exists."""
        return (
            self._write(
                "UPDATE users SET is_admin=? WHERE username=?", (is_admin, username)
            )
            > 0
        )

    # ── guestbook ───────────────────────────────────────────────────────
    def add_comment(self, name, email, comment, *, created_at: datetime) -> int:
        return self._insert(
            "INSERT INTO guestbook (name, email, comment, created_at) VALUES (?,?,?,?)",
            (name, email, comment, self.to_ts(created_at)),
        )

    def list_comments(self, *, newest_first: bool = False) -> list[dict]:
        order = "DESC" if newest_first else "ASC"
        return self._all(f"SELECT * FROM guestbook ORDER BY created_at {order}, id {order}")

    def get_comment(self, gid: int) -> dict | None:
        return self._one("SELECT * FROM guestbook WHERE id=?", (gid,))

    def update_comment(self, gid: int, comment: str) -> int:
        return self._write("UPDATE guestbook SET comment=? WHERE id=?", (comment, gid))

    def delete_comment(self, gid: int) -> int:
        return self._write("DELETE FROM guestbook WHERE id=?", (gid,))

    # ── work items ──────────────────────────────────────────────────────
    def add_work(self, name, description, type_, image_url) -> int:
        return self._insert(
            "INSERT INTO work_items (name, description, type, image_url) VALUES (?,?,?,?)",
            (name, description, type_, image_url),
        )

    def list_work(self) -> list[dict]:
        return self._all("SELECT * FROM work_items ORDER BY id")

    def get_work(self, wid: int) -> dict | None:
        return self._one("SELECT * FROM work_items WHERE id=?", (wid,))

    def update_work(self, wid: int, name, description, type_, image_url) -> int:
        return self._write(
            "UPDATE work_items SET name=?, description=?, type=?, image_url=? WHERE id=?",
            (name, description, type_, image_url, wid),
        )

    def delete_work(self, wid: int) -> int:
        return self._write("DELETE FROM work_items WHERE id=?", (wid,))

    def count(self, table: str) -> int:
        if table not in TABLES_IN_ORDER + ("session",):
            raise ValueError(f"unknown table: {table}")
        return self._one(f"SELECT COUNT(*) AS n FROM {table}")["n"]

    # ── sessions ────────────────────────────────────────────────────────
    def load_session(self, sid: str, *, now: datetime) -> dict | None:
        row = self._one(
            "SELECT sess FROM session WHERE sid=? AND expire > ?",
            (sid, self.to_ts(now)),
        )
        if row is None:
            return None
        sess = row["sess"]
        return json.loads(sess) if isinstance(sess, str) else sess

    def save_session(self, sid: str, data: dict, *, expire: datetime) -> None:
        self._write(
            "INSERT INTO session (sid, sess, expire) VALUES (?,?,?) "
            "ON CONFLICT(sid) DO UPDATE SET sess=excluded.sess, expire=excluded.expire",
            (sid, json.dumps(data), self.to_ts(expire)),
        )

    def delete_session(self, sid: str) -> None:
        self._write("DELETE FROM session WHERE sid=?", (sid,))

    def purge_sessions(self, *, now: datetime) -> int:
        return self._write("DELETE FROM session WHERE expire <= ?", (self.to_ts(now),))

    # ── bulk copy (copy-db) ─────────────────────────────────────────────
    def dump(self, table: str) -> list[dict]:
        if table not in TABLES_IN_ORDER:
            raise ValueError(f"unknown table: {table}")
        return self._all(f"SELECT * FROM {table} ORDER BY id")

    def load(self, table: str, rows: list[dict]) -> int:
        """Insert *rows* keeping their ids; returns the number written."""
        if table not in TABLES_IN_ORDER:
            raise ValueError(f"unknown table: {table}")
        for r in rows:
            cols = list(r)
            params = tuple(
                self.to_ts(r[c]) if c == "created_at" else r[c] for c in cols
            )
            self._run(
                f"INSERT INTO {table} ({', '.join(cols)}) "
                f"VALUES ({', '.join('?' * len(cols))})",
                params,
            )
        self._commit()
        self._after_load(table)
        return len(rows)

    def _after_load(self, table: str) -> None:
        pass


class SqliteDatabase(Database):
    driver_errors = (sqlite3.Error,)
    schema = """
        CREATE TABLE IF NOT EXISTS users (
            id            INTEGER PRIMARY KEY,
            username      TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            is_admin      INTEGER NOT NULL DEFAULT 0
        );
        CREATE TABLE IF NOT EXISTS work_items (
            id          INTEGER PRIMARY KEY,
            name        TEXT NOT NULL,
            description TEXT NOT NULL,
            type        TEXT NOT NULL,
            image_url   TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS guestbook (
            id         INTEGER PRIMARY KEY,
            name       TEXT NOT NULL,
            email      TEXT NOT NULL,
            comment    TEXT NOT NULL,
            created_at TEXT NOT NULL        -- ISO-8601, UTC
        );
        CREATE TABLE IF NOT EXISTS session (
            sid    TEXT PRIMARY KEY,
            sess   TEXT NOT NULL,
            expire TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_session_expire ON session (expire)
    """

    def init_schema(self) -> None:
        # sqlite3 cursors are not context managers
        try:
            self.conn.executescript(self.schema)
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def _insert(self, sql: str, params: tuple) -> int:
        cur = self._run(sql, params)
        self._commit()
        return cur.lastrowid

    # ISO strings in one zone sort the same way the instants do
    def to_ts(self, dt: datetime):
        return dt.astimezone(timezone.utc).isoformat()

    def from_ts(self, value):
        return datetime.fromisoformat(value) if isinstance(value, str) else value


class PostgresDatabase(Database):
    placeholder = "%s"
    driver_errors = (psycopg.Error,)
    schema = """
        CREATE TABLE IF NOT EXISTS users (
            id            SERIAL PRIMARY KEY,
            username      TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            is_admin      BOOLEAN NOT NULL DEFAULT FALSE
        );
        CREATE TABLE IF NOT EXISTS work_items (
            id          SERIAL PRIMARY KEY,
            name        TEXT NOT NULL,
            description TEXT NOT NULL,
            type        TEXT NOT NULL,
            image_url   TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS guestbook (
            id         SERIAL PRIMARY KEY,
            name       TEXT NOT NULL,
            email      TEXT NOT NULL,
            comment    TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL
        );
        CREATE TABLE IF NOT EXISTS "session" (
            sid    VARCHAR PRIMARY KEY,
            sess   JSON NOT NULL,
            expire TIMESTAMPTZ NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_session_expire ON "session" (expire)
    """

    def _after_load(self, table: str) -> None:
        # ids were copied verbatim, so move the SERIAL past them
        self._run(
            f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), "
            f"COALESCE((SELECT MAX(id) FROM {table}), 0) + 1, false)"
        )
        self._commit()


################################################################################
# Store – knows *where* the data lives
################################################################################
class Store:
    backend = ""

    def __init__(self, url: str):
        self.url = url

    def open(self) -> Database:
        raise NotImplementedError

    def init(self) -> None:
        db = self.open()
        try:
            db.init_schema()
        finally:
            db.close()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.backend}>"


class SqliteStore(Store):
    backend = "sqlite"

    def __init__(self, url: str):
        super().__init__(url)
        path = url.removeprefix("sqlite:///") if url.startswith("sqlite:") else url
        self.path = Path(path)

    def open(self) -> SqliteDatabase:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path)
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(str(exc)) from exc
        conn.row_factory = sqlite3.Row
        return SqliteDatabase(conn)


class PostgresStore(Store):
    backend = "postgres"

    def open(self) -> PostgresDatabase:
        try:
            conn = psycopg.connect(self.url, row_factory=dict_row)
        except psycopg.Error as exc:
            raise StoreError(str(exc)) from exc
        return PostgresDatabase(conn)


def open_store(url: str | Path) -> Store:
    """Pick a backend from *url*: ``postgres(ql)://`` or anything file-ish."""
    url = str(url)
    if url.startswith(("postgres://", "postgresql://")):
        return PostgresStore(url)
    return SqliteStore(url)


def copy_store(src: Store, dst: Store) -> dict[str, int]:
    """Copy every record table from *src* to an initialised *dst*, keeping ids."""
    dst.init()
    copied = {}
    s, d = src.open(), dst.open()
    try:
        for table in TABLES_IN_ORDER:
            copied[table] = d.load(table, s.dump(table))
    finally:
        s.close()
        d.close()
    return copied
