"""
tests/test_store.py
"""
from __future__ import annotations

import datetime as _dt
import os
import uuid
from contextlib import closing

import pytest

from folio.store import (
    PostgresDatabase,
    PostgresStore,
    Result,
    SqliteStore,
    StoreError,
    copy_store,
    open_store,
)

UTC = _dt.timezone.utc
NOW = _dt.datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def store(tmp_path):
    s = open_store(f"sqlite:///{tmp_path / 'store.sqlite3'}")
    s.init()
    return s


# ───────────────────────── backend selection ──────────────────────────
@pytest.mark.parametrize(
    "url,kind",
    [
        ("postgresql://me@localhost/folio", PostgresStore),
        ("postgres://me@localhost/folio", PostgresStore),
        ("sqlite:///data/folio.sqlite3", SqliteStore),
        ("folio.sqlite3", SqliteStore),
    ],
)
def test_open_store_picks_backend(url, kind):
    assert type(open_store(url)) is kind  # nothing is opened yet


def test_sqlite_url_becomes_a_path(tmp_path):
    s = open_store(f"sqlite:///{tmp_path}/x.sqlite3")
    assert s.path == tmp_path / "x.sqlite3"


def test_postgres_placeholders():
    pg = PostgresDatabase(conn=None)
    assert pg._sql("SELECT * FROM users WHERE username=? AND id=?") == (
        "SELECT * FROM users WHERE username=%s AND id=%s"
    )


def test_result():
    assert Result([1]).ok
    assert not Result(error="boom").ok


# ───────────────────────── records ────────────────────────────────────
def test_timestamps_come_back_aware(store):
    with closing(store.open()) as db:
        gid = db.add_comment("n", "e", "c", created_at=NOW)
        assert db.get_comment(gid)["created_at"] == NOW


def test_unique_username(store):
    with closing(store.open()) as db:
        db.add_user("alice", "h")
        with pytest.raises(StoreError):
            db.add_user("alice", "h2")
        # connection still usable afterwards
        assert db.find_user("alice")["password_hash"] == "h"


def test_set_admin(store):
    with closing(store.open()) as db:
        db.add_user("alice", "h")
        assert db.set_admin("alice", True) is True
        assert db.find_user("alice")["is_admin"] is True
        assert db.set_admin("nobody", True) is False


def test_ids_are_stable(store):
    with closing(store.open()) as db:
        a = db.add_work("a", "", "web", "")
        b = db.add_work("b", "", "web", "")
        db.delete_work(a)
        assert db.get_work(b)["name"] == "b"
        assert db.delete_work(a) == 0


def test_count_rejects_unknown_table(store):
    with closing(store.open()) as db, pytest.raises(ValueError):
        db.count("users; DROP TABLE users")


# ───────────────────────── sessions ───────────────────────────────────
def test_session_round_trip_and_expiry(store):
    later = NOW + _dt.timedelta(hours=1)
    with closing(store.open()) as db:
        db.save_session("sid1", {"logged_in": True, "name": "a"}, expire=later)
        assert db.load_session("sid1", now=NOW) == {"logged_in": True, "name": "a"}

        # upsert replaces payload
        db.save_session("sid1", {"logged_in": False}, expire=later)
        assert db.load_session("sid1", now=NOW) == {"logged_in": False}

        # expired rows are invisible, then purged
        assert db.load_session("sid1", now=later) is None
        assert db.purge_sessions(now=later) == 1
        assert db.count("session") == 0


def test_delete_session(store):
    with closing(store.open()) as db:
        db.save_session("sid", {"x": 1}, expire=NOW + _dt.timedelta(days=1))
        db.delete_session("sid")
        assert db.load_session("sid", now=NOW) is None


# ───────────────────────── copy ───────────────────────────────────────
def test_copy_store_keeps_ids(store, tmp_path):
    with closing(store.open()) as db:
        db.add_user("boss", "h", is_admin=True)
        db.add_work("a", "d", "web", "u")
        keep = db.add_work("b", "d", "uxd", "u")
        db.delete_work(keep - 1)
        db.add_comment("n", "e", "c", created_at=NOW)

    dst = open_store(tmp_path / "copy.sqlite3")
    copied = copy_store(store, dst)
    assert copied == {"users": 1, "work_items": 1, "guestbook": 1}

    with closing(dst.open()) as db:
        assert db.get_work(keep)["type"] == "uxd"
        assert db.find_user("boss")["is_admin"] is True
        assert db.list_comments()[0]["created_at"] == NOW


def test_open_failure_is_a_store_error(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    with pytest.raises(StoreError):
        open_store(blocker / "sub" / "db.sqlite3").open()


# ───────────────────────── live PostgreSQL ────────────────────────────
PG_URL = os.environ.get("DATABASE_URL", "")


@pytest.mark.skipif(
    not PG_URL.startswith(("postgres://", "postgresql://")),
    reason="DATABASE_URL does not point at PostgreSQL",
)
def test_postgres_round_trip():
    s = open_store(PG_URL)
    s.init()
    tag = uuid.uuid4().hex[:12]
    later = NOW + _dt.timedelta(hours=1)

    with closing(s.open()) as db:
        uid = db.add_user(f"pg-{tag}", "h")
        gid = db.add_comment("n", "e", f"c-{tag}", created_at=NOW)
        try:
            assert isinstance(uid, int) and isinstance(gid, int)
            assert db.find_user(f"pg-{tag}")["is_admin"] is False
            assert db.get_comment(gid)["created_at"] == NOW

            db.save_session(tag, {"name": "a"}, expire=later)
            db.save_session(tag, {"name": "b"}, expire=later)  # upsert
            assert db.load_session(tag, now=NOW) == {"name": "b"}
            assert db.load_session(tag, now=later) is None
            assert db.purge_sessions(now=later) >= 1
            assert db.load_session(tag, now=NOW) is None
        finally:
            db.delete_session(tag)
            db.delete_comment(gid)
            db._write("DELETE FROM users WHERE id=?", (uid,))
