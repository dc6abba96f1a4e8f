"""The web application: ingestion endpoints and the dashboard."""

from __future__ import annotations

import argparse
import html
import logging
import os
import secrets
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from urllib.parse import quote, urlencode

from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    g,
    jsonify,
    redirect,
    request,
    session,
)

from lightsentry.accounts import AccountError, login, register
from lightsentry.db import AppState, open_database, project_name
from lightsentry.errors import AppError, NotFound
from lightsentry.ingest import handle_envelope, handle_store
from lightsentry.issues import IssueDetail, IssueList, issue_detail, list_issues
from lightsentry.logs import (
    HISTOGRAM_HEIGHT,
    LogPage,
    LogsView,
    fetch_logs,
    list_logs,
    total_pages,
)
from lightsentry.performance import (
    PerfDisplay,
    TransactionDetail,
    list_transaction_groups,
    transaction_detail,
)
from lightsentry.projects import Project, create_project, list_projects
from lightsentry.retention import start_retention_thread

logger = logging.getLogger(__name__)

USER_ID_KEY = "user_id"
_EXTENSION = "lightsentry"
DEFAULT_LISTEN_ADDR = "0.0.0.0:3000"

FAVICON = (
    "<svg xmlns='http://www.w3.org/2000/svg' viewBox='0 0 32 32'>"
    "<rect width='32' height='32' rx='6' fill='#18181b'/>"
    "<circle cx='16' cy='16' r='7' fill='none' stroke='#fafafa' stroke-width='2'/>"
    "<circle cx='16' cy='16' r='2' fill='#fafafa'/></svg>"
)

bp = Blueprint("lightsentry", __name__)


# --- plumbing -------------------------------------------------------------


def _state() -> AppState:
    return current_app.extensions[_EXTENSION]


def _db() -> sqlite3.Connection:
    if "db" not in g:
        g.db = _state().connect()
    return g.db


def _close_db(_exc: BaseException | None = None) -> None:
    conn = g.pop("db", None)
    if conn is not None:
        conn.close()


def _see(location: str):
    return redirect(location, code=303)


def _current_user() -> uuid.UUID | None:
    raw = session.get(USER_ID_KEY)
    if not isinstance(raw, str):
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def _sign_in(user_id: str) -> None:
    session.clear()
    session[USER_ID_KEY] = user_id
    session.permanent = True


def _project_id(raw: str) -> str:
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        abort(400)


def _query() -> dict[str, str]:
    return dict(request.args.items(multi=True))


def _page_arg() -> int:
    raw = request.args.get("page")
    if raw is None:
        return 1
    try:
        return int(raw)
    except ValueError:
        abort(400)


# --- HTML -----------------------------------------------------------------


def _esc(value) -> str:
    return html.escape("" if value is None else str(value))


def _link(href: str, text) -> str:
    return f'<a href="{_esc(href)}">{_esc(text)}</a>'


def _when(moment: datetime | None) -> str:
    return moment.strftime("%Y-%m-%d %H:%M:%S") if moment is not None else "—"


def _ms(value: float | None) -> str:
    return f"{value:.1f} ms" if value is not None else "—"


def _document(title: str, body: str) -> str:
    return (
        "<!doctype html><html><head><meta charset='utf-8'>"
        f"<title>{_esc(title)}</title><link rel='icon' href='/favicon.svg'></head>"
        f"<body>{body}</body></html>"
    )


def _table(headers: list[str], rows: list[list[str]]) -> str:
    head = "".join(f"<th>{_esc(h)}</th>" for h in headers)
    body = "".join(
        "<tr>" + "".join(f"<td>{cell}</td>" for cell in row) + "</tr>" for row in rows
    )
    return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


def _nav(project_id: str, name: str, active: str) -> str:
    tabs = []
    for tab in ("issues", "performance", "logs"):
        label = tab.capitalize()
        tabs.append(f"<strong>{label}</strong>" if tab == active else _link(f"/{project_id}/{tab}", label))
    return (
        f"<nav>{_link('/projects', 'Projects')} / {_esc(name)} — {' | '.join(tabs)}</nav>"
    )


def _auth_page(title: str, action: str, error: str | None, extra: str = "") -> str:
    message = f"<p class='error'>{_esc(error)}</p>" if error else ""
    form = (
        f"<form method='post' action='{action}'>"
        "<label>Email <input type='email' name='email' required></label> "
        "<label>Password <input type='password' name='password' required></label> "
        f"<button type='submit'>{_esc(title)}</button></form>"
    )
    return _document(title, f"<h1>{_esc(title)}</h1>{message}{form}{extra}")


def _login_page(error: str | None = None) -> str:
    extra = f"<p>{_link('/register', 'Create an account')}</p>" if _state().registration_enabled else ""
    return _auth_page("Log in", "/login", error, extra)


def _register_page(error: str | None = None) -> str:
    return _auth_page("Register", "/register", error, f"<p>{_link('/login', 'Log in')}</p>")


def _render_projects(projects: list[Project], host: str) -> str:
    rows = [
        [
            _link(f"/{p.id}/issues", p.name),
            f"<code>{_esc(f'http://{p.dsn_public}@{host}/{p.id}')}</code>",
            _esc(_when(p.created_at)),
        ]
        for p in projects
    ]
    body = (
        "<h1>Projects</h1>"
        f"<p>{_link('/projects/new', 'New project')}</p>"
        + _table(["Name", "DSN", "Created"], rows)
        + "<form method='post' action='/logout'><button type='submit'>Log out</button></form>"
    )
    return _document("Projects", body)


def _render_new_project() -> str:
    body = (
        "<h1>New project</h1><form method='post' action='/projects'>"
        "<label>Name <input name='name' required></label> "
        "<button type='submit'>Create</button></form>"
    )
    return _document("New project", body)


def _render_issues(view: IssueList) -> str:
    pid = view.project_id
    filters = " | ".join(
        _link(f"/{pid}/issues?{urlencode({'sort': view.sort, 'status': status})}", f"{status} ({count})")
        for status, count in (
            ("all", len(view.issues) if view.status_filter == "all" else view.count_active + view.count_stale + view.count_resolved),
            ("active", view.count_active),
            ("stale", view.count_stale),
            ("resolved", view.count_resolved),
        )
    )
    rows = [
        [
            _link(f"/{pid}/issues/{quote(issue.fingerprint, safe='')}", issue.title),
            _esc(issue.level),
            _esc(issue.count),
            _esc(issue.last_seen_relative),
            _esc(issue.request_path or ""),
            _esc(issue.status),
        ]
        for issue in view.issues
    ]
    body = (
        _nav(pid, view.project_name, "issues")
        + f"<p>{filters}</p>"
        + _table(["Title", "Level", "Events", "Last seen", "Path", "Status"], rows)
    )
    return _document(f"Issues — {view.project_name}", body)


def _render_issue_detail(view: IssueDetail) -> str:
    issue = view.issue
    frames = [[_esc(f.filename), _esc(f.lineno), _esc(f.function)] for f in view.frames]
    events = [
        [
            _esc(e.event_id),
            _esc(e.message),
            _esc(" ".join(filter(None, (e.request_method(), e.request_url())))),
            _esc(_when(e.received_at)),
        ]
        for e in view.events
    ]
    body = (
        _nav(view.project_id, view.project_name, "issues")
        + f"<h1>{_esc(issue.title)}</h1>"
        + f"<p>{_esc(issue.level)} · {_esc(issue.count)} events · last seen "
        + f"{_esc(issue.last_seen_relative)} · {_esc(issue.status)}</p>"
        + "<h2>Stack trace</h2>"
        + _table(["File", "Line", "Function"], frames)
        + "<h2>Recent events</h2>"
        + _table(["Event", "Message", "Request", "Received"], events)
    )
    return _document(issue.title, body)


def _render_performance(pid: str, name: str, groups: list[PerfDisplay], sort: str, direction: str) -> str:
    def header(column: str, label: str) -> str:
        flip = "asc" if sort == column and direction != "asc" else "desc"
        return _link(f"/{pid}/performance?{urlencode({'sort': column, 'dir': flip})}", label)

    heads = [("name", "Name"), ("count", "Count"), ("p50", "p50"), ("p95", "p95"), ("last_seen", "Last seen")]
    rows = [
        [
            _link(f"/{pid}/performance/{quote(g_.name, safe='')}", g_.name),
            _esc(g_.count),
            _esc(_ms(g_.p50)),
            _esc(_ms(g_.p95)),
            _esc(_when(g_.last_seen)),
        ]
        for g_ in groups
    ]
    head_html = "".join(f"<th>{header(c, label)}</th>" for c, label in heads)
    body_html = "".join("<tr>" + "".join(f"<td>{c}</td>" for c in row) + "</tr>" for row in rows)
    table = f"<table><thead><tr>{head_html}</tr></thead><tbody>{body_html}</tbody></table>"
    return _document(f"Performance — {name}", _nav(pid, name, "performance") + table)


def _render_transaction(view: TransactionDetail) -> str:
    spans = [[_esc(s.op), _esc(s.description), _esc(_ms(s.duration_ms))] for s in view.spans]
    txns = [
        [_esc(t.event_id), _esc(_ms(t.duration_ms)), _esc(t.status), _esc(_when(t.received_at))]
        for t in view.transactions
    ]
    body = (
        _nav(view.project_id, view.project_name, "performance")
        + f"<h1>{_esc(view.name)}</h1><h2>Spans</h2>"
        + _table(["Operation", "Description", "Duration"], spans)
        + "<h2>Recent transactions</h2>"
        + _table(["Event", "Duration", "Status", "Received"], txns)
    )
    return _document(view.name, body)


def _render_log_page(view: LogPage) -> str:
    rows = [
        [_esc(_when(row.received_at)), _esc(row.level), _esc(row.message)] for row in view.logs
    ]
    links = []
    for target, label in ((view.page - 1, "Newer"), (view.page + 1, "Older")):
        if 1 <= target <= view.total_pages:
            params = {"page": target}
            if view.current_level:
                params["level"] = view.current_level
            if view.current_search:
                params["search"] = view.current_search
            links.append(_link(f"/{view.project_id}/logs?{urlencode(params)}", label))
    pager = (
        f"<p>Page {view.page} of {view.total_pages} · {view.total_count} logs "
        + " ".join(links)
        + "</p>"
    )
    return (
        "<div id='log-stream'>"
        + _table(["Received", "Level", "Message"], rows)
        + pager
        + "</div>"
    )


def _render_logs(view: LogsView) -> str:
    page = view.page
    bars = "".join(
        f"<rect x='{bar.x}' y='{HISTOGRAM_HEIGHT - bar.bar_height}' width='12' "
        f"height='{bar.bar_height}'><title>{_esc(bar.label)}: {bar.count}</title></rect>"
        for bar in view.histogram
    )
    chart = (
        f"<svg width='{view.chart_width}' height='{HISTOGRAM_HEIGHT}'>{bars}</svg>"
        f"<p>{_esc(view.first_label)} – {_esc(view.last_label)} (max {view.max_count}/min)</p>"
    )
    form = (
        f"<form method='get' action='/{page.project_id}/logs'>"
        f"<input name='level' placeholder='level' value='{_esc(page.current_level or '')}'> "
        f"<input name='search' placeholder='search' value='{_esc(page.current_search)}'> "
        "<button type='submit'>Filter</button></form>"
    )
    body = _nav(page.project_id, view.project_name, "logs") + chart + form + _render_log_page(page)
    return _document(f"Logs — {view.project_name}", body)


# --- routes ---------------------------------------------------------------


@bp.get("/favicon.svg")
def favicon():
    return Response(
        FAVICON,
        content_type="image/svg+xml",
        headers={"Cache-Control": "public, max-age=86400"},
    )


@bp.get("/health")
def health():
    return "ok"


@bp.get("/")
def index():
    return _see("/projects")


@bp.post("/api/<project_id>/store/")
def store(project_id: str):
    _project_id(project_id)
    result = handle_store(_db(), dict(request.headers), _query(), request.get_data())
    return jsonify(result)


@bp.post("/api/<project_id>/envelope/")
def envelope(project_id: str):
    _project_id(project_id)
    result = handle_envelope(_db(), dict(request.headers), _query(), request.get_data())
    return jsonify(result)


@bp.route("/login", methods=["GET", "POST"])
def login_view():
    if request.method == "GET":
        return _login_page()
    try:
        user_id = login(_db(), request.form["email"], request.form["password"])
    except AccountError as exc:
        return _login_page(str(exc))
    _sign_in(user_id)
    return _see("/projects")


@bp.route("/register", methods=["GET", "POST"])
def register_view():
    state = _state()
    if not state.registration_enabled:
        return _see("/login")
    if request.method == "GET":
        return _register_page()
    try:
        user_id = register(
            _db(), request.form["email"], request.form["password"], state.registration_enabled
        )
    except AccountError as exc:
        return _register_page(str(exc))
    _sign_in(user_id)
    return _see("/projects")


@bp.post("/logout")
def logout():
    session.clear()
    return _see("/login")


@bp.route("/projects", methods=["GET", "POST"])
def projects_view():
    if _current_user() is None:
        return _see("/login")
    conn = _db()
    if request.method == "POST":
        try:
            create_project(conn, request.form["name"])
        except sqlite3.Error as exc:
            logger.error("Could not create project: %s", exc)
        return _see("/projects")
    host = os.environ.get("PUBLIC_HOST", "localhost:3000")
    return _render_projects(list_projects(conn), host)


@bp.get("/projects/new")
def new_project():
    if _current_user() is None:
        return _see("/login")
    return _render_new_project()


@bp.get("/<project_id>/issues")
def issues_view(project_id: str):
    pid = _project_id(project_id)
    if _current_user() is None:
        return _see("/login")
    view = list_issues(_db(), pid, request.args.get("sort"), request.args.get("status"))
    return _render_issues(view)


@bp.get("/<project_id>/issues/<fingerprint>")
def issue_view(project_id: str, fingerprint: str):
    pid = _project_id(project_id)
    if _current_user() is None:
        return _see("/login")
    try:
        view = issue_detail(_db(), pid, fingerprint)
    except NotFound:
        return "Issue not found", 404
    return _render_issue_detail(view)


@bp.get("/<project_id>/performance")
def performance_view(project_id: str):
    pid = _project_id(project_id)
    if _current_user() is None:
        return _see("/login")
    sort = request.args.get("sort", "p95")
    direction = request.args.get("dir", "desc")
    conn = _db()
    groups = list_transaction_groups(conn, pid, sort, direction)
    return _render_performance(pid, project_name(conn, pid), groups, sort, direction)


@bp.get("/<project_id>/performance/<name>")
def transaction_view(project_id: str, name: str):
    pid = _project_id(project_id)
    if _current_user() is None:
        return _see("/login")
    return _render_transaction(transaction_detail(_db(), pid, name))


@bp.get("/<project_id>/logs")
def logs_view(project_id: str):
    pid = _project_id(project_id)
    if _current_user() is None:
        return _see("/login")
    view = list_logs(
        _db(), pid, request.args.get("level"), request.args.get("search"), _page_arg()
    )
    return _render_logs(view)


@bp.get("/<project_id>/logs/stream")
def logs_stream(project_id: str):
    pid = _project_id(project_id)
    if _current_user() is None:
        return "", 401
    level = request.args.get("level") or None
    search = request.args.get("search") or None
    page = max(_page_arg(), 1)
    logs, total = fetch_logs(_db(), pid, level, search, page)
    view = LogPage(
        project_id=pid,
        logs=logs,
        current_level=level,
        current_search=search or "",
        page=page,
        total_pages=total_pages(total),
        total_count=total,
    )
    return _render_log_page(view)


# --- application ----------------------------------------------------------


def _app_error(exc: AppError):
    return exc.response()


def create_app(state: AppState) -> Flask:
    """Build the web application around the given state."""
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=os.environ.get("SECRET_KEY") or secrets.token_hex(32),
        SESSION_COOKIE_SECURE=False,
        PERMANENT_SESSION_LIFETIME=timedelta(days=365),
        SESSION_REFRESH_EACH_REQUEST=True,
    )
    app.extensions[_EXTENSION] = state
    app.register_blueprint(bp)
    app.register_error_handler(AppError, _app_error)
    app.teardown_appcontext(_close_db)
    return app


def _load_dotenv(path: Path) -> None:
    """Set variables from a .env file without overriding the environment."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.removeprefix("export ").partition("=")
        if not sep:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        os.environ.setdefault(key.strip(), value)


def main(argv: list[str] | None = None) -> int:
    """Run the server using settings from the environment."""
    parser = argparse.ArgumentParser(
        prog="lightsentry",
        description="Run the error tracking server. Settings come from the environment: "
        "DATABASE_URL, LISTEN_ADDR, REGISTRATION_ENABLED, RETENTION_DAYS, PUBLIC_HOST.",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    _load_dotenv(Path(".env"))
    database = os.environ.get("DATABASE_URL")
    if database is None:
        raise SystemExit("DATABASE_URL must be set")
    database = database.removeprefix("sqlite://")
    open_database(database).close()

    registration_enabled = os.environ.get("REGISTRATION_ENABLED") in ("true", "1")
    state = AppState(database=database, registration_enabled=registration_enabled)
    start_retention_thread(state.connect)

    app = create_app(state)
    addr = os.environ.get("LISTEN_ADDR", DEFAULT_LISTEN_ADDR)
    host, _, port = addr.rpartition(":")
    logger.info("Listening on %s", addr)
    app.run(host=host or "0.0.0.0", port=int(port), threaded=True)
    return 0