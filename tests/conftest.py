"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from contextlib import closing
from pathlib import Path
from typing import Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient
from werkzeug.security import generate_password_hash

import folio.site as site
from folio.site import create_app

FAST_HASH = "pbkdf2:sha256:1000"


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """A fresh SQLite file per test."""
    return tmp_path / "test.sqlite3"


@pytest.fixture
def app(db_path: Path) -> Flask:
    return create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "DATABASE": str(db_path),
            "PASSWORD_HASH_METHOD": FAST_HASH,  # keep hashing cheap
            "TIMEZONE": "UTC",
        }
    )


@pytest.fixture
def client(app: Flask) -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        yield client


@pytest.fixture
def db(app: Flask):
    """A connection of its own, independent of any request."""
    with closing(app.extensions["folio.store"].open()) as conn:
        yield conn


@pytest.fixture(autouse=True)
def _fast_clock(monkeypatch):
    """
    Every guestbook stamp is one minute after the previous one, so
    ordering tests never need time.sleep().
    """
    counter = itertools.count()
    base = _dt.datetime(2024, 1, 9, 14, 5, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(minutes=next(counter))

    monkeypatch.setattr(site, "utc_now", _fake_now)


@pytest.fixture
def make_user(db):
    """Insert a user straight into the store; returns the new id."""

    def _make(username: str, password: str = "pw", *, is_admin: bool = False) -> int:
        return db.add_user(
            username,
            generate_password_hash(password, method=FAST_HASH),
            is_admin=is_admin,
        )

    return _make
