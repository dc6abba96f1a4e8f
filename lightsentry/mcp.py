"""Model Context Protocol server exposing stored issues, transactions and logs.

The server speaks JSON-RPC 2.0 over line-delimited standard input and output.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sqlite3
import sys
import uuid
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from lightsentry.app import _load_dotenv
from lightsentry.db import open_database, parse_db_time
from lightsentry.performance import percentile_cont

logger = logging.getLogger(__name__)

SERVER_NAME = "light-sentry-mcp"
SERVER_VERSION = "0.1.0"
PROTOCOL_VERSION = "2024-11-05"
INSTRUCTIONS = (
    "Light Sentry MCP server. Browse projects, issues (grouped errors), "
    "performance transactions, and logs from your Light Sentry instance."
)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
RECENT_EVENTS = 10


class McpError(Exception):
    """A JSON-RPC error returned to the client."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def invalid_params(cls, message: str, data: Any = None) -> McpError:
        return cls(cls.INVALID_PARAMS, message, data)

    @classmethod
    def internal_error(cls, message: str, data: Any = None) -> McpError:
        return cls(cls.INTERNAL_ERROR, message, data)

    @classmethod
    def method_not_found(cls, method: str) -> McpError:
        return cls(cls.METHOD_NOT_FOUND, f"Method not found: {method}")

    def to_dict(self) -> dict[str, Any]:
        """The error object of a JSON-RPC response."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


def parse_project_id(value: str) -> str:
    """Validate a project UUID and return it in canonical form."""
    try:
        return str(uuid.UUID(value))
    except (ValueError, TypeError, AttributeError) as exc:
        raise McpError.invalid_params(f"Invalid project_id: {exc}") from exc


def _rfc3339(text: str | None) -> str | None:
    if text is None:
        return None
    moment = parse_db_time(text)
    if moment.microsecond == 0:
        spec = "seconds"
    elif moment.microsecond % 1000 == 0:
        spec = "milliseconds"
    else:
        spec = "microseconds"
    return moment.isoformat(timespec=spec)


def _json_column(text: Any) -> Any:
    if not isinstance(text, (str, bytes)):
        return text
    try:
        return json.loads(text)
    except ValueError:
        return None


def _pretty(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


def _limit(limit: int | None) -> int:
    value = min(DEFAULT_LIMIT if limit is None else limit, MAX_LIMIT)
    if value < 0:
        raise McpError.internal_error("DB error: LIMIT must not be negative")
    return value


class LightSentryTools:
    """The tools offered by the server, each returning pretty-printed JSON text."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def _fetch(self, sql: str, params: tuple = ()) -> list:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise McpError.internal_error(f"DB error: {exc}") from exc

    def list_projects(self) -> str:
        """All projects with their id, name and public DSN key, newest first."""
        rows = self._fetch(
            "SELECT id, name, dsn_public, created_at FROM projects "
            "ORDER BY created_at DESC, rowid DESC"
        )
        return _pretty(
            [
                {
                    "id": row[0],
                    "name": row[1],
                    "dsn_public": row[2],
                    "created_at": _rfc3339(row[3]),
                }
                for row in rows
            ]
        )

    def list_issues(self, project_id: str, limit: int | None = None) -> str:
        """Issues of a project, most recently seen first."""
        pid = parse_project_id(project_id)
        rows = self._fetch(
            "SELECT fingerprint, MAX(title), MAX(level), COUNT(*), "
            "MAX(received_at) AS last_seen FROM error_events WHERE project_id = ? "
            "GROUP BY fingerprint ORDER BY last_seen DESC LIMIT ?",
            (pid, _limit(limit)),
        )
        return _pretty([self._issue(row) for row in rows])

    @staticmethod
    def _issue(row: Any) -> dict[str, Any]:
        return {
            "fingerprint": row[0],
            "title": row[1] if row[1] is not None else "(unknown)",
            "level": row[2] if row[2] is not None else "error",
            "count": row[3] if row[3] is not None else 0,
            "last_seen": _rfc3339(row[4]),
        }

    def get_issue_detail(self, project_id: str, fingerprint: str) -> str:
        """Summary of one issue with its most recent events."""
        pid = parse_project_id(project_id)
        summary = self._fetch(
            "SELECT fingerprint, MAX(title), MAX(level), COUNT(*), MAX(received_at) "
            "FROM error_events WHERE project_id = ? AND fingerprint = ? "
            "GROUP BY fingerprint",
            (pid, fingerprint),
        )
        if not summary:
            raise McpError.invalid_params(f"Issue not found: {fingerprint}")
        events = self._fetch(
            "SELECT event_id, message, stack_trace, received_at FROM error_events "
            "WHERE project_id = ? AND fingerprint = ? "
            f"ORDER BY received_at DESC, id DESC LIMIT {RECENT_EVENTS}",
            (pid, fingerprint),
        )
        detail = self._issue(summary[0])
        detail["recent_events"] = [
            {
                "event_id": row[0],
                "message": row[1],
                "stack_trace": _json_column(row[2]),
                "received_at": _rfc3339(row[3]),
            }
            for row in events
        ]
        return _pretty(detail)

    def list_transactions(self, project_id: str, limit: int | None = None) -> str:
        """Transaction groups with p50 and p95 latency, slowest p95 first."""
        pid = parse_project_id(project_id)
        count = _limit(limit)
        rows = self._fetch(
            "SELECT name, duration_ms, received_at FROM transactions WHERE project_id = ?",
            (pid,),
        )
        durations: dict[str, list[float]] = defaultdict(list)
        latest: dict[str, str] = {}
        for name, duration, received_at in rows:
            if duration is not None:
                durations[name].append(duration)
            else:
                durations.setdefault(name, [])
            if name not in latest or received_at > latest[name]:
                latest[name] = received_at

        groups = [
            {
                "name": name,
                "count": sum(1 for row in rows if row[0] == name),
                "p50_ms": percentile_cont(values, 0.5),
                "p95_ms": percentile_cont(values, 0.95),
                "last_seen": _rfc3339(latest[name]),
            }
            for name, values in durations.items()
        ]
        groups.sort(key=lambda g: (g["p95_ms"] is not None, g["p95_ms"] or 0.0), reverse=True)
        return _pretty(groups[:count])

    def list_logs(
        self,
        project_id: str,
        level: str | None = None,
        search: str | None = None,
        limit: int | None = None,
    ) -> str:
        """Recent logs, optionally by level and case-insensitive message search."""
        pid = parse_project_id(project_id)
        clauses = ["project_id = ?"]
        params: list[Any] = [pid]
        if level:
            clauses.append("level = ?")
            params.append(level)
        if search:
            clauses.append("message LIKE '%' || ? || '%'")
            params.append(search)
        params.append(_limit(limit))
        rows = self._fetch(
            "SELECT level, message, received_at, context FROM logs "
            f"WHERE {' AND '.join(clauses)} ORDER BY received_at DESC, id DESC LIMIT ?",
            tuple(params),
        )
        return _pretty(
            [
                {
                    "level": row[0],
                    "message": row[1],
                    "received_at": _rfc3339(row[2]),
                    "context": _json_column(row[3]),
                }
                for row in rows
            ]
        )

    def search_errors(self, project_id: str, query: str, limit: int | None = None) -> str:
        """Error events whose message contains ``query``, ignoring case."""
        pid = parse_project_id(project_id)
        rows = self._fetch(
            "SELECT event_id, fingerprint, title, message, level, received_at "
            "FROM error_events WHERE project_id = ? AND message LIKE '%' || ? || '%' "
            "ORDER BY received_at DESC, id DESC LIMIT ?",
            (pid, query, _limit(limit)),
        )
        return _pretty(
            [
                {
                    "event_id": row[0],
                    "fingerprint": row[1],
                    "title": row[2],
                    "message": row[3],
                    "level": row[4],
                    "received_at": _rfc3339(row[5]),
                }
                for row in rows
            ]
        )


# --- argument handling ------------------------------------------------------


def _bad_argument(message: str) -> McpError:
    return McpError.invalid_params(f"failed to deserialize parameters: {message}")


def _required_str(args: Mapping[str, Any], name: str) -> str:
    if name not in args:
        raise _bad_argument(f"missing field `{name}`")
    value = args[name]
    if not isinstance(value, str):
        raise _bad_argument(f"`{name}` must be a string")
    return value


def _optional_str(args: Mapping[str, Any], name: str) -> str | None:
    value = args.get(name)
    if value is not None and not isinstance(value, str):
        raise _bad_argument(f"`{name}` must be a string")
    return value


def _optional_int(args: Mapping[str, Any], name: str) -> int | None:
    value = args.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise _bad_argument(f"`{name}` must be an integer")
    return value


_PROJECT_ID = {"type": "string", "description": "UUID of the project"}


def _limit_schema(text: str) -> dict[str, Any]:
    return {"type": ["integer", "null"], "format": "int64", "description": text}


def _schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


@dataclass(frozen=True)
class _Tool:
    name: str
    description: str
    input_schema: dict[str, Any]
    run: Callable[[LightSentryTools, Mapping[str, Any]], str]

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


_TOOLS = (
    _Tool(
        "list_projects",
        "List all projects with their id, name, and DSN",
        {"type": "object", "properties": {}},
        lambda tools, args: tools.list_projects(),
    ),
    _Tool(
        "list_issues",
        "List issues (grouped errors) for a project, ordered by most recent",
        _schema(
            {
                "project_id": _PROJECT_ID,
                "limit": _limit_schema("Maximum number of issues to return (default 50)"),
            },
            ["project_id"],
        ),
        lambda tools, args: tools.list_issues(
            _required_str(args, "project_id"), _optional_int(args, "limit")
        ),
    ),
    _Tool(
        "get_issue_detail",
        "Get issue detail: summary + recent events with stack traces",
        _schema(
            {
                "project_id": _PROJECT_ID,
                "fingerprint": {"type": "string", "description": "Issue fingerprint (group key)"},
            },
            ["project_id", "fingerprint"],
        ),
        lambda tools, args: tools.get_issue_detail(
            _required_str(args, "project_id"), _required_str(args, "fingerprint")
        ),
    ),
    _Tool(
        "list_transactions",
        "List transaction groups with p50/p95 latency percentiles",
        _schema(
            {
                "project_id": _PROJECT_ID,
                "limit": _limit_schema(
                    "Maximum number of transaction groups to return (default 50)"
                ),
            },
            ["project_id"],
        ),
        lambda tools, args: tools.list_transactions(
            _required_str(args, "project_id"), _optional_int(args, "limit")
        ),
    ),
    _Tool(
        "list_logs",
        "List recent logs with optional level and search filtering",
        _schema(
            {
                "project_id": _PROJECT_ID,
                "level": {
                    "type": ["string", "null"],
                    "description": "Filter by log level (e.g. info, warning, error)",
                },
                "search": {
                    "type": ["string", "null"],
                    "description": "Search string to filter log messages (case-insensitive)",
                },
                "limit": _limit_schema("Maximum number of logs to return (default 50)"),
            },
            ["project_id"],
        ),
        lambda tools, args: tools.list_logs(
            _required_str(args, "project_id"),
            _optional_str(args, "level"),
            _optional_str(args, "search"),
            _optional_int(args, "limit"),
        ),
    ),
    _Tool(
        "search_errors",
        "Full-text search across error messages",
        _schema(
            {
                "project_id": _PROJECT_ID,
                "query": {
                    "type": "string",
                    "description": "Search query to match against error messages "
                    "(case-insensitive)",
                },
                "limit": _limit_schema("Maximum number of results to return (default 50)"),
            },
            ["project_id", "query"],
        ),
        lambda tools, args: tools.search_errors(
            _required_str(args, "project_id"),
            _required_str(args, "query"),
            _optional_int(args, "limit"),
        ),
    ),
)


# --- JSON-RPC server ----------------------------------------------------------


class McpServer:
    """Dispatches JSON-RPC requests to the tools."""

    def __init__(self, tools: LightSentryTools) -> None:
        self.tools = tools
        self._registry = {tool.name: tool for tool in _TOOLS}

    @staticmethod
    def _info() -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "instructions": INSTRUCTIONS,
        }

    def _call_tool(self, params: Any) -> dict[str, Any]:
        if not isinstance(params, dict) or not isinstance(params.get("name"), str):
            raise McpError.invalid_params("tools/call requires a tool name")
        tool = self._registry.get(params["name"])
        if tool is None:
            raise McpError.invalid_params("tool not found")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise _bad_argument("arguments must be an object")
        text = tool.run(self.tools, arguments)
        return {"content": [{"type": "text", "text": text}], "isError": False}

    def _dispatch(self, method: str, params: Any) -> Any:
        if method == "initialize":
            return self._info()
        if method == "ping":
            return {}
        if method == "tools/list":
            return {"tools": [tool.describe() for tool in self._registry.values()]}
        if method == "tools/call":
            return self._call_tool(params)
        raise McpError.method_not_found(method)

    def handle(self, message: Any) -> dict[str, Any] | None:
        """Answer one decoded message; None for notifications and client responses."""
        if not isinstance(message, dict):
            return _error(None, McpError(McpError.INVALID_REQUEST, "Invalid request"))
        request_id = message.get("id")
        method = message.get("method")
        if method is None and ("result" in message or "error" in message):
            return None
        if message.get("jsonrpc") != "2.0" or not isinstance(method, str):
            return _error(request_id, McpError(McpError.INVALID_REQUEST, "Invalid request"))
        if "id" not in message:
            logger.debug("Notification %s", method)
            return None
        try:
            result = self._dispatch(method, message.get("params"))
        except McpError as exc:
            return _error(request_id, exc)
        except Exception as exc:  # noqa: BLE001 - reported to the client
            logger.exception("Tool failure")
            return _error(request_id, McpError.internal_error(str(exc)))
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def serve(self, stdin: TextIO, stdout: TextIO) -> None:
        """Read one JSON message per line and write one response per line."""
        for line in stdin:
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except ValueError as exc:
                response: dict[str, Any] | None = _error(
                    None, McpError(McpError.PARSE_ERROR, f"Parse error: {exc}")
                )
            else:
                response = self.handle(message)
            if response is not None:
                stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
                stdout.flush()


def _error(request_id: Any, error: McpError) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": error.to_dict()}


def main(argv: list[str] | None = None) -> int:
    """Serve the tools over standard input and output."""
    parser = argparse.ArgumentParser(
        prog="lightsentry-mcp",
        description="MCP server over stdio. The database comes from DATABASE_URL.",
    )
    parser.parse_args(argv)
    # Logs go to stderr so stdout carries only protocol messages.
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    _load_dotenv(Path(".env"))
    database = os.environ.get("DATABASE_URL")
    if database is None:
        raise SystemExit("DATABASE_URL must be set")
    conn = open_database(database.removeprefix("sqlite://"))
    logger.info("Light Sentry MCP server starting")
    try:
        McpServer(LightSentryTools(conn)).serve(sys.stdin, sys.stdout)
    finally:
        conn.close()
    return 0