#!/usr/bin/env python3
"""
A small portfolio site: guestbook, work items, accounts.
"""

import os
import secrets
from contextlib import closing
from datetime import timedelta
from functools import lru_cache, wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from zoneinfo import ZoneInfo, available_timezones

import click
from flask import (
    Blueprint,
    Flask,
    abort,
    current_app,
    g,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash

from folio.sessions import StoreSessionInterface
from folio.store import (
    WORK_TYPES,
    Result,
    StoreError,
    copy_store,
    open_store,
    utc_now,
)

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "folio.sqlite3"
SECRET_FILE = ROOT / ".secret_key"
TZ_DFLT = "Europe/Stockholm"
SESSION_DAYS = int(os.environ.get("SESSION_DAYS", "7"))

try:
    __version__ = version("folio")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"

bp = Blueprint("site", __name__, cli_group=None)


def _secret_key() -> str:
    """Reuse the key on disk so sessions survive a restart."""
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    SECRET_FILE.write_text(key)
    return key


################################################################################
# App factory
################################################################################
def create_app(config: dict | None = None, store=None) -> Flask:
    """
    Build the app.

    Settings come from the defaults below, then ``FOLIO_*`` environment
    variables, then *config*.  Pass *store* to hand in a ready-made store
    instead of opening ``DATABASE``.
    """
    app = Flask(__name__)
    app.url_map.strict_slashes = False
    app.config.update(
        DATABASE=os.environ.get("DATABASE_URL") or str(DB_FILE),
        SITE_NAME="folio",
        TIMEZONE=TZ_DFLT,
        PASSWORD_HASH_METHOD="scrypt",
        PERMANENT_SESSION_LIFETIME=timedelta(days=SESSION_DAYS),
        SESSION_COOKIE_NAME="folio_session",
        SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
        SESSION_COOKIE_HTTPONLY=True,
        CSRF_ENABLED=True,
        LOG_LEVEL="INFO",
    )
    app.config.from_prefixed_env("FOLIO")
    if config:
        app.config.update(config)
    if not app.config.get("SECRET_KEY"):
        app.config["SECRET_KEY"] = _secret_key()

    app.logger.setLevel(app.config["LOG_LEVEL"])

    store = store or open_store(app.config["DATABASE"])
    app.extensions["folio.store"] = store
    app.session_interface = StoreSessionInterface(store)
    app.teardown_appcontext(close_db)
    app.register_blueprint(bp)
    app.jinja_env.globals["version"] = __version__

    try:
        store.init()
    except StoreError:
        app.logger.exception("Could not create tables on %r", store)
    else:
        app.logger.info("Tables ready on %r", store)
    return app


###############################################################################
# Database helpers
###############################################################################
def get_store():
    return current_app.extensions["folio.store"]


def get_db():
    """One connection per app context, opened on first use."""
    if "db" not in g:
        g.db = get_store().open()
    return g.db


def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def fetch(op, what: str) -> Result:
    """Run a read for a list page; failures become an error ``Result``."""
    try:
        return Result(op(get_db()))
    except StoreError as exc:
        current_app.logger.exception("Could not load %s", what)
        return Result(error=str(exc))


def hash_password(password: str) -> str:
    return generate_password_hash(
        password, method=current_app.config["PASSWORD_HASH_METHOD"]
    )


###############################################################################
# Template helpers
###############################################################################
@lru_cache(maxsize=1)
def _zones() -> frozenset[str]:
    return frozenset(available_timezones())


def tz_name() -> str:
    tz = current_app.config.get("TIMEZONE", TZ_DFLT)
    return tz if tz in _zones() else TZ_DFLT


@bp.app_template_filter("gbdate")
def gbdate_filter(dt) -> str:
    """Guestbook stamp as D/M/YYYY H:MM in the site's time zone."""
    if not dt:
        return ""
    local = dt.astimezone(ZoneInfo(tz_name()))
    return f"{local.day}/{local.month}/{local.year} {local.hour}:{local.minute:02d}"


def _csrf_token() -> str:
    """One token per login (rotates when the session does)."""
    return session.get("csrf", "")


@bp.app_context_processor
def session_context() -> dict:
    """Who is looking – handed to every template."""
    return {
        "is_logged_in": bool(session.get("logged_in")),
        "name": session.get("name"),
        "is_admin": bool(session.get("is_admin")),
        "csrf_token": _csrf_token,
        "site_name": current_app.config["SITE_NAME"],
    }


###############################################################################
# Authentication
###############################################################################
def is_admin_session() -> bool:
    return bool(session.get("logged_in") and session.get("is_admin"))


def admin_required(view):
    """Send anyone but a logged-in admin to the login page, untouched."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if not is_admin_session():
            current_app.logger.info(
                "Refused %s %s for non-admin session", request.method, request.path
            )
            return redirect(url_for("site.login"))
        return view(*args, **kwargs)

    return wrapped


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@bp.before_app_request
def csrf_protect():
    if not current_app.config.get("CSRF_ENABLED", True):
        return
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ anonymous ⇒ allow (login, register, guestbook)
    if not session.get("logged_in"):
        return

    # ➌ logged in ⇒ the form must echo the session token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@bp.after_app_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


@bp.route("/register", methods=["GET", "POST"])
def register():
    if request.method == "GET":
        return render_template_string(TEMPL_REGISTER, title="Register")

    username = request.form.get("username", "")
    password = request.form.get("password", "")
    try:
        get_db().add_user(username, hash_password(password))
    except StoreError:
        current_app.logger.exception("Register error for %r", username)
        return redirect(url_for("site.register"))

    current_app.logger.info("User registered: %s", username)
    return redirect(url_for("site.login"))


@bp.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "GET":
        return render_template_string(TEMPL_LOGIN, title="Login")

    username = request.form.get("username", "")
    password = request.form.get("password", "")
    try:
        user = get_db().find_user(username)
    except StoreError:
        current_app.logger.exception("Login error")
        return redirect(url_for("site.login"))

    if user is None:
        current_app.logger.info("Login for unknown user %r", username)
        return redirect(url_for("site.login"))
    if not check_password_hash(user["password_hash"], password):
        current_app.logger.info("Incorrect password for %r", username)
        return redirect(url_for("site.login"))

    session.clear()
    session.regenerate()  # never keep a sid handed out before login
    session.permanent = True
    session["logged_in"] = True
    session["name"] = user["username"]
    session["is_admin"] = user["is_admin"]
    session["csrf"] = secrets.token_hex(16)
    current_app.logger.info("Welcome back: %s", user["username"])
    return redirect(url_for("site.index"))


@bp.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("site.index"))


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title ~ ' · ' if title }}{{ site_name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}body{font-size:1.8rem;line-height:1.618;max-width:38em;margin:auto;color:#c9c9c9;background-color:#222;padding:13px}h1,h2,h3{line-height:1.1;font-weight:700;margin-top:3rem;margin-bottom:1.5rem}a{color:#fff}a:hover{color:#c9c9c9}img{height:auto;max-width:100%}textarea{width:100%}textarea,select,input{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background-color:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box}button{padding:5px 10px;background:#fff;color:#222;border:1px solid #fff;border-radius:1px;cursor:pointer}label{display:block;margin-bottom:.5rem;font-weight:600}.muted{color:#888;font-size:.8em}.card{border-left:3px solid #4a4a4a;padding-left:1rem;margin-bottom:1.5rem}
</style>
<body>
<header style="display:flex;justify-content:space-between;align-items:baseline;">
    <h1 style="margin:0;"><a href="{{ url_for('site.index') }}" style="text-decoration:none;">{{ site_name }}</a></h1>
    <nav aria-label="Main">
        <a href="{{ url_for('site.index') }}">Home</a>&nbsp;
        <a href="{{ url_for('site.work') }}">Work</a>&nbsp;
        <a href="{{ url_for('site.contact') }}">Contact</a>&nbsp;
        {% if is_logged_in %}
            {% if is_admin %}<a href="{{ url_for('site.new_work') }}">New project</a>&nbsp;{% endif %}
            <span class="muted">{{ name }}</span>
            <a href="{{ url_for('site.logout') }}">Logout</a>
        {% else %}
            <a href="{{ url_for('site.login') }}">Login</a>&nbsp;
            <a href="{{ url_for('site.register') }}">Register</a>
        {% endif %}
    </nav>
</header>
<main role="main">
"""

TEMPL_EPILOG = """
</main>
<footer class="muted" style="margin-top:2em;padding-top:1em;border-top:1px solid #444;">
    {{ site_name }} <span>v{{ version }}</span>
</footer>
</body>
</html>
"""


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


def csrf_field() -> str:
    return """
    {% if csrf_token() %}
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}"""


TEMPL_LOGIN = wrap("""
<hr>
<h2>Login</h2>
<form method="post" action="{{ url_for('site.login') }}">""" + csrf_field() + """
    <label for="username">Username</label>
    <input id="username" name="username" autocomplete="username">
    <label for="password">Password</label>
    <input id="password" name="password" type="password" autocomplete="current-password">
    <div><button type="submit">Sign in</button></div>
</form>
<p class="muted">No account? <a href="{{ url_for('site.register') }}">Register</a>.</p>
""")

TEMPL_REGISTER = wrap("""
<hr>
<h2>Register</h2>
<form method="post" action="{{ url_for('site.register') }}">""" + csrf_field() + """
    <label for="username">Username</label>
    <input id="username" name="username" autocomplete="username">
    <label for="password">Password</label>
    <input id="password" name="password" type="password" autocomplete="new-password">
    <div><button type="submit">Create account</button></div>
</form>
""")


###############################################################################
# Guestbook
###############################################################################
@bp.route("/")
def index():
    comments = fetch(lambda db: db.list_comments(), "guestbook")
    return render_template_string(TEMPL_HOME, comments=comments, title=None)


@bp.route("/submit-comment", methods=["POST"])
def submit_comment():
    form = request.form
    try:
        db = get_db()
        db.add_comment(
            form.get("name", ""),
            form.get("email", ""),
            form.get("comment", ""),
            created_at=utc_now(),
        )
        # newest first here, unlike the plain home page
        comments = db.list_comments(newest_first=True)
    except StoreError:
        current_app.logger.exception("Guestbook error")
        return redirect(url_for("site.index"))
    return render_template_string(TEMPL_HOME, comments=Result(comments), title=None)


# Edit + delete are open to anyone who knows the id.
@bp.route("/edit/<int:gid>", methods=["GET", "POST"])
def edit_comment(gid):
    try:
        db = get_db()
        if request.method == "POST":
            db.update_comment(gid, request.form.get("comment", ""))
            return redirect(url_for("site.index"))
        entry = db.get_comment(gid)
    except StoreError:
        current_app.logger.exception("Edit error for comment %s", gid)
        return redirect(url_for("site.index"))

    if entry is None:
        return redirect(url_for("site.index"))
    return render_template_string(TEMPL_EDIT_COMMENT, c=entry, title="Edit comment")


@bp.route("/delete/<int:gid>")
def delete_comment(gid):
    try:
        get_db().delete_comment(gid)
    except StoreError:
        current_app.logger.exception("Delete error for comment %s", gid)
    return redirect(url_for("site.index"))


TEMPL_HOME = wrap("""
<hr>
<h2>Guestbook</h2>
<form method="post" action="{{ url_for('site.submit_comment') }}">""" + csrf_field() + """
    <label for="g-name">Name</label>
    <input id="g-name" name="name">
    <label for="g-email">Email</label>
    <input id="g-email" name="email" type="email">
    <label for="g-comment">Comment</label>
    <textarea id="g-comment" name="comment" rows="3"></textarea>
    <div><button type="submit">Sign the guestbook</button></div>
</form>

{% if comments.ok %}
    {% for c in comments.value %}
    <article class="card comment">
        <strong>{{ c['name'] }}</strong>
        <span class="muted">{{ c['created_at']|gbdate }}</span>
        <p>{{ c['comment'] }}</p>
        <small>
            <a href="{{ url_for('site.edit_comment', gid=c['id']) }}">Edit</a>
            <a href="{{ url_for('site.delete_comment', gid=c['id']) }}">Delete</a>
        </small>
    </article>
    {% else %}
    <p class="muted">No comments yet.</p>
    {% endfor %}
{% else %}
    <p class="muted" role="alert">The guestbook is unavailable right now.</p>
{% endif %}
""")

TEMPL_EDIT_COMMENT = wrap("""
<hr>
<h2>Edit comment</h2>
<p class="muted">{{ c['name'] }} · {{ c['created_at']|gbdate }}</p>
<form method="post">""" + csrf_field() + """
    <textarea name="comment" rows="4">{{ c['comment'] }}</textarea>
    <div>
        <button type="submit">Save</button>
        <a href="{{ url_for('site.index') }}" style="margin-left:1rem;">Cancel</a>
    </div>
</form>
""")


###############################################################################
# Work items
###############################################################################
def _work_form() -> tuple:
    form = request.form
    return (
        form.get("wname", ""),
        form.get("wdesc", ""),
        form.get("wtype", ""),
        form.get("wimg", ""),
    )


def type_flags(item_type: str | None) -> dict[str, bool]:
    return {t: item_type == t for t in WORK_TYPES}


@bp.route("/work")
def work():
    items = fetch(lambda db: db.list_work(), "work items")
    return render_template_string(TEMPL_WORK, work=items, title="Work")


@bp.route("/work/<int:wid>")
def work_detail(wid):
    try:
        item = get_db().get_work(wid)
    except StoreError:
        current_app.logger.exception("Could not load work item %s", wid)
        item = None
    if item is None:
        return redirect(url_for("site.work"))
    return render_template_string(TEMPL_WORK_DETAIL, wi=item, title=item["name"])


@bp.route("/newp", methods=["GET", "POST"])
@admin_required
def new_work():
    if request.method == "GET":
        return render_template_string(
            TEMPL_WORK_FORM,
            item=None,
            type_flags=type_flags(None),
            work_types=WORK_TYPES,
            title="New project",
        )

    try:
        wid = get_db().add_work(*_work_form())
    except StoreError:
        current_app.logger.exception("Could not create work item")
        return redirect(url_for("site.new_work"))
    current_app.logger.info("Work item %s created by %s", wid, session.get("name"))
    return redirect(url_for("site.work"))


@bp.route("/work/edit/<int:wid>", methods=["GET", "POST"])
@admin_required
def edit_work(wid):
    try:
        db = get_db()
        if request.method == "POST":
            db.update_work(wid, *_work_form())
            return redirect(url_for("site.work"))
        item = db.get_work(wid)
    except StoreError:
        current_app.logger.exception("Edit error for work item %s", wid)
        return redirect(url_for("site.work"))

    if item is None:
        return redirect(url_for("site.work"))
    return render_template_string(
        TEMPL_WORK_FORM,
        item=item,
        type_flags=type_flags(item["type"]),
        work_types=WORK_TYPES,
        title="Edit project",
    )


@bp.route("/work/delete/<int:wid>")
@admin_required
def delete_work(wid):
    try:
        get_db().delete_work(wid)
    except StoreError:
        current_app.logger.exception("Delete error for work item %s", wid)
    return redirect(url_for("site.work"))


TEMPL_WORK = wrap("""
<hr>
<h2>Work</h2>
{% if is_admin %}
    <p><a href="{{ url_for('site.new_work') }}">+ New project</a></p>
{% endif %}
{% if work.ok %}
    {% for wi in work.value %}
    <article class="card work-item">
        <h3><a href="{{ url_for('site.work_detail', wid=wi['id']) }}">{{ wi['name'] }}</a></h3>
        <span class="muted">{{ wi['type'] }}</span>
        {% if wi['image_url'] %}<img src="{{ wi['image_url'] }}" alt="{{ wi['name'] }}">{% endif %}
        {% if is_admin %}
        <small>
            <a href="{{ url_for('site.edit_work', wid=wi['id']) }}">Edit</a>
            <a href="{{ url_for('site.delete_work', wid=wi['id']) }}">Delete</a>
        </small>
        {% endif %}
    </article>
    {% else %}
    <p class="muted">Nothing here yet.</p>
    {% endfor %}
{% else %}
    <p class="muted" role="alert">Could not load the projects right now.</p>
{% endif %}
""")

TEMPL_WORK_DETAIL = wrap("""
<hr>
<article class="work-item">
    <h2>{{ wi['name'] }}</h2>
    <span class="muted">{{ wi['type'] }}</span>
    {% if wi['image_url'] %}<p><img src="{{ wi['image_url'] }}" alt="{{ wi['name'] }}"></p>{% endif %}
    <p>{{ wi['description'] }}</p>
</article>
<p><a href="{{ url_for('site.work') }}">← All projects</a></p>
""")

TEMPL_WORK_FORM = wrap("""
<hr>
<h2>{{ title }}</h2>
<form method="post"
      action="{{ url_for('site.edit_work', wid=item['id']) if item else url_for('site.new_work') }}">""" + csrf_field() + """
    <label for="wname">Name</label>
    <input id="wname" name="wname" value="{{ item['name'] if item }}">
    <label for="wdesc">Description</label>
    <textarea id="wdesc" name="wdesc" rows="5">{{ item['description'] if item }}</textarea>
    <label for="wtype">Type</label>
    <select id="wtype" name="wtype">
        {% for t in work_types %}
        <option value="{{ t }}"{% if type_flags[t] %} selected{% endif %}>{{ t }}</option>
        {% endfor %}
    </select>
    <label for="wimg">Image URL</label>
    <input id="wimg" name="wimg" value="{{ item['image_url'] if item }}">
    <div>
        <button type="submit">Save</button>
        <a href="{{ url_for('site.work') }}" style="margin-left:1rem;">Cancel</a>
    </div>
</form>
""")


###############################################################################
# Static pages
###############################################################################
@bp.route("/contact")
def contact():
    return render_template_string(TEMPL_CONTACT, title="Contact")


TEMPL_CONTACT = wrap("""
<hr>
<h2>Contact</h2>
<p>Say hello in the <a href="{{ url_for('site.index') }}">guestbook</a>,
   or browse the <a href="{{ url_for('site.work') }}">work</a> for something to talk about.</p>
""")


###############################################################################
# Error pages
###############################################################################
@bp.app_errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title="Not found"), 404


@bp.app_errorhandler(500)
def internal_error(exc):
    """Flask has already logged the traceback by the time we get here."""
    return render_template_string(TEMPL_500, title="Error"), 500


TEMPL_404 = wrap("""
<hr>
<h2 style="margin-top:0">Page not found</h2>
<p>The URL you asked for doesn’t exist.
   <a href="{{ url_for('site.index') }}">Back to the front page</a>.</p>
""")

TEMPL_500 = wrap("""
<hr>
<h2 style="margin-top:0">Internal Server Error</h2>
<p>Our fault, not yours. Please try again in a minute.</p>
""")


###############################################################################
# CLI
###############################################################################
@bp.cli.command("init")
def cli_init():
    """Create the tables (no-op if they are already there)."""
    try:
        get_store().init()
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho("✅  Database ready.", fg="green")


@bp.cli.command("create-admin")
@click.option("--username", prompt=True, help="Login name of the new admin")
@click.password_option()
def cli_create_admin(username: str, password: str):
    """Create an account that may edit the work items."""
    try:
        get_db().add_user(username.strip(), hash_password(password), is_admin=True)
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho(f"\n✅  Admin {username.strip()} created.", fg="green")


def _set_admin(username: str, flag: bool) -> None:
    try:
        found = get_db().set_admin(username, flag)
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    if not found:
        raise click.ClickException(f"No such user: {username}")


@bp.cli.command("promote")
@click.argument("username")
def cli_promote(username: str):
    """Grant admin rights to an existing user."""
    _set_admin(username, True)
    click.echo(f"{username} is now an admin (takes effect at next login).")


@bp.cli.command("demote")
@click.argument("username")
def cli_demote(username: str):
    """Take admin rights away again."""
    _set_admin(username, False)
    click.echo(f"{username} is no longer an admin (takes effect at next login).")


@bp.cli.command("purge-sessions")
def cli_purge_sessions():
    """Delete expired sessions."""
    try:
        with closing(get_store().open()) as db:
            n = db.purge_sessions(now=utc_now())
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Removed {n} expired session(s).")


@bp.cli.command("copy-db")
@click.argument("src")
@click.argument("dst")
def cli_copy_db(src: str, dst: str):
    """Copy users, work items and guestbook from SRC to DST (store URLs)."""
    try:
        copied = copy_store(open_store(src), open_store(dst))
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    for table, n in copied.items():
        click.echo(f"  {table:<10} {n:>6} rows")
    click.secho("✅  copy finished", fg="green")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    create_app().run(debug=True)
