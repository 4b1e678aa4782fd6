"""
Server-side sessions kept in the store's ``session`` table.

The browser only ever holds an opaque, signed session id; the payload
(``logged_in``, ``name``, ``is_admin``, ``csrf``) stays on the server and
expires after ``PERMANENT_SESSION_LIFETIME``.
"""

import secrets
from contextlib import closing

from flask.sessions import SessionInterface, SessionMixin
from itsdangerous import BadSignature, Signer
from werkzeug.datastructures import CallbackDict

from folio.store import StoreError, utc_now

SID_BYTES = 32


def _new_sid() -> str:
    return secrets.token_urlsafe(SID_BYTES)


class StoreSession(CallbackDict, SessionMixin):
    def __init__(self, initial=None, *, sid: str, new: bool = False):
        def on_update(self):
            self.modified = True
            self.accessed = True

        super().__init__(initial, on_update)
        self.sid = sid
        self.new = new
        self.stale_sid = None
        self.modified = False
        self.accessed = False

    def regenerate(self) -> None:
        """Move the payload to a fresh sid; the old row goes on save."""
        if not self.new and self.stale_sid is None:
            self.stale_sid = self.sid
        self.sid = _new_sid()
        self.modified = True


class StoreSessionInterface(SessionInterface):
    """Look sessions up by signed sid; write them back only when they change."""

    salt = "folio-session"

    def __init__(self, store):
        self.store = store

    def _signer(self, app) -> Signer | None:
        if not app.secret_key:
            return None
        return Signer(app.secret_key, salt=self.salt)

    def open_session(self, app, request):
        signer = self._signer(app)
        if signer is None:
            return None  # Flask falls back to a null session and complains on write

        cookie = request.cookies.get(self.get_cookie_name(app))
        if not cookie:
            return StoreSession(sid=_new_sid(), new=True)
        try:
            sid = signer.unsign(cookie).decode()
        except BadSignature:
            app.logger.info("Rejected session cookie with a bad signature")
            return StoreSession(sid=_new_sid(), new=True)

        try:
            with closing(self.store.open()) as db:
                data = db.load_session(sid, now=utc_now())
        except StoreError:
            app.logger.exception("Could not load session")
            data = None

        if data is None:
            return StoreSession(sid=_new_sid(), new=True)
        return StoreSession(data, sid=sid)

    def save_session(self, app, session, response):
        name = self.get_cookie_name(app)
        domain = self.get_cookie_domain(app)
        path = self.get_cookie_path(app)

        # ── emptied (logout) → drop row + cookie ─────────────────────────
        if not session:
            if session.modified:
                stale = [s for s in (session.stale_sid, session.sid) if s]
                if not session.new or session.stale_sid:
                    self._write(
                        app, lambda db: [db.delete_session(s) for s in stale]
                    )
                response.delete_cookie(name, domain=domain, path=path)
            return

        if not self.should_set_cookie(app, session):
            return

        now = utc_now()
        expire = now + app.permanent_session_lifetime
        fresh = session.new or session.stale_sid is not None

        def _persist(db):
            if session.stale_sid is not None:
                db.delete_session(session.stale_sid)
            db.save_session(session.sid, dict(session), expire=expire)
            # a brand-new sid is a good moment to sweep out the dead ones
            if fresh:
                db.purge_sessions(now=now)

        self._write(app, _persist)
        session.stale_sid = None
        session.new = False
        response.set_cookie(
            name,
            self._signer(app).sign(session.sid).decode(),
            expires=self.get_expiration_time(app, session),
            httponly=self.get_cookie_httponly(app),
            domain=domain,
            path=path,
            secure=self.get_cookie_secure(app),
            samesite=self.get_cookie_samesite(app),
        )

    def _write(self, app, op) -> None:
        try:
            with closing(self.store.open()) as db:
                op(db)
        except StoreError:
            app.logger.exception("Could not persist session")
