import io
import json
from datetime import datetime, timedelta, timezone

import pytest

from lightsentry.db import open_database, timestamp_text
from lightsentry.mcp import (
    PROTOCOL_VERSION,
    SERVER_NAME,
    LightSentryTools,
    McpError,
    McpServer,
    parse_project_id,
)
from lightsentry.projects import create_project

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def conn():
    connection = open_database(":memory:")
    yield connection
    connection.close()


@pytest.fixture
def project(conn):
    return create_project(conn, "demo")


@pytest.fixture
def tools(conn):
    return LightSentryTools(conn)


def add_event(conn, pid, fingerprint, when, event_id="e", message="m", stack_trace=None):
    conn.execute(
        "INSERT INTO error_events (project_id, event_id, fingerprint, level, title, message,"
        " stack_trace, context, received_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            pid,
            event_id,
            fingerprint,
            "error",
            f"title {fingerprint}",
            message,
            None if stack_trace is None else json.dumps(stack_trace),
            "{}",
            timestamp_text(when),
        ),
    )
    conn.commit()


def add_transaction(conn, pid, name, duration, when):
    conn.execute(
        "INSERT INTO transactions (project_id, event_id, trace_id, name, duration_ms, status,"
        " spans, context, received_at) VALUES (?, 'e', 't', ?, ?, 'ok', NULL, '{}', ?)",
        (pid, name, duration, timestamp_text(when)),
    )
    conn.commit()


def add_log(conn, pid, level, message, when):
    conn.execute(
        "INSERT INTO logs (project_id, level, message, context, received_at)"
        " VALUES (?, ?, ?, ?, ?)",
        (pid, level, message, json.dumps({"k": message}), timestamp_text(when)),
    )
    conn.commit()


def test_parse_project_id_canonical(project):
    assert parse_project_id(project.id.upper()) == project.id


def test_parse_project_id_invalid():
    with pytest.raises(McpError) as info:
        parse_project_id("nope")
    assert info.value.code == McpError.INVALID_PARAMS
    assert info.value.message.startswith("Invalid project_id")


def test_list_projects(tools, conn, project):
    data = json.loads(tools.list_projects())
    assert [p["id"] for p in data] == [project.id]
    assert data[0]["name"] == "demo"
    assert data[0]["dsn_public"] == project.dsn_public
    assert list(data[0]) == ["id", "name", "dsn_public", "created_at"]


def test_list_issues_groups_and_orders(tools, conn, project):
    add_event(conn, project.id, "a", T0)
    add_event(conn, project.id, "a", T0 + timedelta(hours=1))
    add_event(conn, project.id, "b", T0 + timedelta(hours=2))
    data = json.loads(tools.list_issues(project.id))
    assert [i["fingerprint"] for i in data] == ["b", "a"]
    assert data[1]["count"] == 2
    assert data[1]["title"] == "title a"
    assert data[1]["last_seen"] == (T0 + timedelta(hours=1)).isoformat()


def test_list_issues_default_limit_and_cap(tools, conn, project):
    for n in range(205):
        add_event(conn, project.id, f"fp{n}", T0 + timedelta(seconds=n))
    assert len(json.loads(tools.list_issues(project.id))) == 50
    assert len(json.loads(tools.list_issues(project.id, 1000))) == 200
    assert len(json.loads(tools.list_issues(project.id, 3))) == 3


def test_list_issues_other_project_isolated(tools, conn, project):
    other = create_project(conn, "other")
    add_event(conn, other.id, "x", T0)
    assert json.loads(tools.list_issues(project.id)) == []


def test_get_issue_detail(tools, conn, project):
    trace = [{"type": "ValueError", "value": "bad"}]
    for n in range(12):
        add_event(conn, project.id, "fp", T0 + timedelta(minutes=n), f"e{n}", stack_trace=trace)
    detail = json.loads(tools.get_issue_detail(project.id, "fp"))
    assert detail["count"] == 12
    assert len(detail["recent_events"]) == 10
    assert detail["recent_events"][0]["event_id"] == "e11"
    assert detail["recent_events"][0]["stack_trace"] == trace


def test_get_issue_detail_missing(tools, project):
    with pytest.raises(McpError) as info:
        tools.get_issue_detail(project.id, "ghost")
    assert info.value.code == McpError.INVALID_PARAMS
    assert info.value.message == "Issue not found: ghost"


def test_list_transactions(tools, conn, project):
    for n, duration in enumerate([100.0, 200.0, 300.0]):
        add_transaction(conn, project.id, "slow", duration, T0 + timedelta(minutes=n))
    for n, duration in enumerate([1.0, 2.0]):
        add_transaction(conn, project.id, "fast", duration, T0 + timedelta(minutes=n))
    data = json.loads(tools.list_transactions(project.id))
    assert [t["name"] for t in data] == ["slow", "fast"]
    assert data[0]["count"] == 3
    assert data[0]["p50_ms"] == 200.0
    assert data[0]["p50_ms"] <= data[0]["p95_ms"] <= 300.0


def test_list_logs_filters(tools, conn, project):
    add_log(conn, project.id, "info", "Hello World", T0)
    add_log(conn, project.id, "error", "hello again", T0 + timedelta(minutes=1))
    add_log(conn, project.id, "info", "other", T0 + timedelta(minutes=2))
    everything = json.loads(tools.list_logs(project.id, "", ""))
    assert [row["message"] for row in everything] == ["other", "hello again", "Hello World"]
    assert everything[0]["context"] == {"k": "other"}
    infos = json.loads(tools.list_logs(project.id, level="info"))
    assert {row["message"] for row in infos} == {"Hello World", "other"}
    found = json.loads(tools.list_logs(project.id, search="HELLO"))
    assert {row["message"] for row in found} == {"Hello World", "hello again"}


def test_search_errors(tools, conn, project):
    add_event(conn, project.id, "a", T0, "e1", message="Disk full")
    add_event(conn, project.id, "b", T0 + timedelta(minutes=1), "e2", message="disk quota")
    add_event(conn, project.id, "c", T0 + timedelta(minutes=2), "e3", message="network")
    data = json.loads(tools.search_errors(project.id, "DISK"))
    assert [row["event_id"] for row in data] == ["e2", "e1"]
    assert data[0]["fingerprint"] == "b"


def test_negative_limit_is_an_error(tools, project):
    with pytest.raises(McpError) as info:
        tools.list_issues(project.id, -1)
    assert info.value.code == McpError.INTERNAL_ERROR


def test_initialize(tools):
    response = McpServer(tools).handle(
        {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}
    )
    assert response["id"] == 1
    assert response["result"]["protocolVersion"] == PROTOCOL_VERSION
    assert response["result"]["serverInfo"]["name"] == SERVER_NAME


def test_tools_list(tools):
    response = McpServer(tools).handle({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
    names = {tool["name"] for tool in response["result"]["tools"]}
    assert names == {
        "list_projects",
        "list_issues",
        "get_issue_detail",
        "list_transactions",
        "list_logs",
        "search_errors",
    }


def test_tools_call_returns_text(tools, conn, project):
    add_event(conn, project.id, "a", T0)
    response = McpServer(tools).handle(
        {
            "jsonrpc": "2.0",
            "id": 3,
            "method": "tools/call",
            "params": {"name": "list_issues", "arguments": {"project_id": project.id}},
        }
    )
    content = response["result"]["content"]
    assert content[0]["type"] == "text"
    assert json.loads(content[0]["text"])[0]["fingerprint"] == "a"
    assert response["result"]["isError"] is False


def test_tools_call_bad_project_id(tools):
    response = McpServer(tools).handle(
        {
            "jsonrpc": "2.0",
            "id": 4,
            "method": "tools/call",
            "params": {"name": "list_issues", "arguments": {"project_id": "nope"}},
        }
    )
    assert response["error"]["code"] == McpError.INVALID_PARAMS


def test_tools_call_missing_argument(tools):
    response = McpServer(tools).handle(
        {
            "jsonrpc": "2.0",
            "id": 5,
            "method": "tools/call",
            "params": {"name": "search_errors", "arguments": {}},
        }
    )
    assert response["error"]["code"] == McpError.INVALID_PARAMS


def test_unknown_method_and_notification(tools):
    server = McpServer(tools)
    response = server.handle({"jsonrpc": "2.0", "id": 6, "method": "bogus"})
    assert response["error"]["code"] == McpError.METHOD_NOT_FOUND
    assert server.handle({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None


def test_serve_lines(tools):
    stdin = io.StringIO(
        '{"jsonrpc":"2.0","id":1,"method":"ping"}\n'
        "not json\n"
        '{"jsonrpc":"2.0","method":"notifications/initialized"}\n'
    )
    stdout = io.StringIO()
    McpServer(tools).serve(stdin, stdout)
    lines = [json.loads(line) for line in stdout.getvalue().splitlines()]
    assert len(lines) == 2
    assert lines[0] == {"jsonrpc": "2.0", "id": 1, "result": {}}
    assert lines[1]["error"]["code"] == McpError.PARSE_ERROR
    assert lines[1]["id"] is None