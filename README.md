# lightsentry

A small, self-hosted collector for errors, performance transactions and logs.
Point any Sentry SDK at it and browse what arrives in a plain web dashboard,
or query it from an assistant through the bundled MCP server. Everything is
stored in a single SQLite database.

## Installing

```
pip install lightsentry
```

To run the test suite as well:

```
pip install "lightsentry[test]"
pytest
```

## Configuration

Both commands read their settings from the environment. A `.env` file in the
current directory is read first; its values never override variables that are
already set.

- `DATABASE_URL` (required) – path of the SQLite database file; a leading
  `sqlite://` is stripped. The file and its tables are created if missing.
- `LISTEN_ADDR` – `host:port` to listen on (default `0.0.0.0:3000`).
- `REGISTRATION_ENABLED` – `true` or `1` to allow new accounts to register.
- `RETENTION_DAYS` – how many days of error events, transactions and logs to
  keep (default 30). Expired rows are purged by a background thread once an
  hour.
- `PUBLIC_HOST` – host shown in the DSNs on the projects page
  (default `localhost:3000`).
- `SECRET_KEY` – key used to sign session cookies. If it is not set, a random
  key is chosen at start-up, so everyone is logged out when the server restarts.

## Running the server

```
light-sentry
```

This starts the web application. It serves:

- `/health` – a liveness check that answers `ok`
- `/favicon.svg` – the dashboard icon
- `/api/<project_id>/store/` – the legacy single-event endpoint
- `/api/<project_id>/envelope/` – the envelope endpoint used by current SDKs
- `/login`, `/register`, `/logout` – dashboard accounts
- `/projects`, `/projects/new` – your projects and their DSN keys
- `/<project_id>/issues` – errors grouped into issues, sortable by last seen
  or event count and filterable by status
- `/<project_id>/issues/<fingerprint>` – one issue with its stack trace and
  its 20 most recent events
- `/<project_id>/performance` – transaction groups with count, p50/p95
  latency and last seen, sortable by any of these
- `/<project_id>/performance/<name>` – recent transactions of one name and
  the spans of the newest
- `/<project_id>/logs` – log messages, 50 per page, with level and text
  filters and a per-minute histogram of the last hour
- `/<project_id>/logs/stream` – just the log table for the current filters

Create a project in the dashboard and use its public key in your SDK's DSN;
events then start arriving. Ingestion accepts credentials from an
`X-Sentry-Auth` header, an `Authorization: Sentry ...` header, the
`sentry_key` query parameter, or (for envelopes only) the `dsn` in the
envelope header. Gzip and deflate bodies are decompressed, and gzip bodies
are recognised even when no `Content-Encoding` is sent. Envelope items of
type `event`, `transaction` and `log` are stored; other item types are
skipped.

Passwords are stored as salted scrypt hashes, and a password must be at least
8 bytes long.

## The MCP server

```
light-sentry-mcp
```

This speaks JSON-RPC 2.0 (MCP protocol version `2024-11-05`) over standard
input and output, one message per line, with its own logging on standard
error. It offers these tools:

- `list_projects`
- `list_issues` (project id, optional limit)
- `get_issue_detail` (project id, fingerprint) – includes the 10 most recent
  events with their stack traces
- `list_transactions` (project id, optional limit) – slowest p95 first
- `list_logs` (project id, optional level, search text and limit)
- `search_errors` (project id, query, optional limit)

Limits default to 50 and are capped at 200. Every tool answers with
pretty-printed JSON text. The same tools can be called directly from Python
through `lightsentry.mcp.LightSentryTools`, and `lightsentry.mcp.McpServer`
handles single decoded messages with `handle()` or a whole stream with
`serve()`.

## Using the pieces as a library

The ingestion helpers work on plain Python values:

```python
from lightsentry.sentry_auth import SentryAuth
from lightsentry.envelope import parse_envelope
from lightsentry.fingerprint import compute_fingerprint
from lightsentry.events import extract_title

auth = SentryAuth.from_header(
    "Sentry sentry_version=7, sentry_client=sentry.python/1.0, sentry_key=abc123"
)
print(auth.public_key)  # abc123

envelope = parse_envelope(
    '{"event_id":"abc123"}\n{"type":"event"}\n'
    '{"exception":{"values":[{"type":"ValueError","value":"bad"}]}}'
)
event = envelope.items[0].payload
print(extract_title(event))         # ValueError: bad
print(compute_fingerprint(event))   # a SHA-256 hex digest
```

The storage and query functions take a `sqlite3` connection opened with
`lightsentry.db.open_database`: `lightsentry.ingest` stores events,
transactions and logs, `lightsentry.issues`, `lightsentry.performance` and
`lightsentry.logs` read them back, `lightsentry.projects` and
`lightsentry.accounts` manage projects and users, and
`lightsentry.retention.purge_expired` deletes old rows.
`lightsentry.app.create_app` builds the Flask application around an
`AppState`.

Events with the same exception type, value and innermost in-app frame share a
fingerprint and are shown as one issue; events without an exception are
grouped by message. Issues last seen within 7 days are *active*, within 30
days *stale*, and older ones *resolved*.

## Limits

- Storage is SQLite only; there is no support for other database servers.
- The dashboard is plain server-rendered HTML with no styling or scripting.
- Text search in logs and errors uses SQLite's `LIKE`, which ignores case only
  for ASCII letters.
- Projects cannot be renamed or deleted from the dashboard, and there is no
  per-user access control: every logged-in user sees every project.