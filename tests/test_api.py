"""HTTP surface: runs, SSE events, approvals, tools and ops endpoints."""
from __future__ import annotations

import json

import httpx
import pytest

from agent_runtime.agent.transport import HttpTransport
from agent_runtime.config import load_settings
from agent_runtime.deps import set_dependencies
from agent_runtime.services.agent_service import AgentService


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _mock_chat(request: httpx.Request) -> httpx.Response:
    chunks = [
        {"choices": [{"delta": {"content": "Hi from "}, "finish_reason": None}]},
        {"choices": [{"delta": {"content": "mock"}, "finish_reason": "stop"}]},
    ]
    body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"
    return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})


@pytest.fixture
def api_client(isolated_client):
    transport = HttpTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(_mock_chat)))
    settings = load_settings()
    set_dependencies(AgentService.from_settings(settings, transport=transport), settings)
    isolated_client.headers["X-Runtime-Token"] = settings.runtime_token
    yield isolated_client


def _run_body(request_id: str = "run-api", **overrides) -> dict:
    body = {
        "request_id": request_id,
        "message": "hello",
        "model": {"id": "mock-model"},
        "provider": {"id": "mock", "base_url": "https://llm.test/v1", "api_key": "sk-test"},
        "max_iterations": 3,
    }
    body.update(overrides)
    return body


def _parse_sse(text: str) -> list[dict]:
    events = []
    for block in text.replace("\r\n", "\n").split("\n\n"):
        fields = {}
        for line in block.split("\n"):
            if ":" in line and not line.startswith(":"):
                key, _, value = line.partition(":")
                fields[key] = value.lstrip(" ")
        if "data" in fields:
            events.append(fields)
    return events


# ─── runs ─────────────────────────────────────────────────────────────────────

def test_run_streams_events_over_sse(api_client):
    created = api_client.post("/v1/runs", json=_run_body())
    assert created.status_code == 202
    assert created.json() == {"request_id": "run-api"}

    response = api_client.get("/v1/runs/run-api/events")
    assert response.status_code == 200
    events = _parse_sse(response.text)

    assert [e["event"] for e in events] == [
        "thinking",
        "iteration_start",
        "text_delta",
        "text_delta",
        "iteration_complete",
        "agent_complete",
    ]
    assert [int(e["id"]) for e in events] == list(range(1, len(events) + 1))
    final = json.loads(events[-1]["data"])
    assert final["type"] == "agent_complete"
    assert final["data"]["content"] == "Hi from mock"
    assert final["data"]["usage"] is None

    aborted = api_client.post("/v1/runs/run-api/abort")
    assert aborted.status_code == 200
    assert aborted.json() == {"request_id": "run-api", "aborted": False}


def test_run_validation_errors(api_client):
    response = api_client.post("/v1/runs", json=_run_body(max_iterations=0))

    assert response.status_code == 422
    payload = response.json()["error"]
    assert payload["code"] == "E_SCHEMA_INVALID"
    assert payload["trace_id"] == response.headers["X-Trace-Id"]


def test_unknown_run_is_not_found(api_client):
    abort = api_client.post("/v1/runs/ghost/abort")
    events = api_client.get("/v1/runs/ghost/events")

    assert abort.status_code == 404
    assert abort.json()["error"]["code"] == "E_RUN_NOT_FOUND"
    assert events.status_code == 404


def test_list_runs_is_empty_when_idle(api_client):
    assert api_client.get("/v1/runs").json() == {"runs": []}


# ─── approvals ────────────────────────────────────────────────────────────────

def test_unknown_approval_is_not_found(api_client):
    tool = api_client.post("/v1/approvals/tool/nope", json={"approved": True})
    path = api_client.post("/v1/approvals/path/nope", json={"approved": False})

    assert tool.status_code == 404
    assert tool.json()["error"]["code"] == "E_APPROVAL_NOT_FOUND"
    assert path.status_code == 404


def test_approval_requires_decision(api_client):
    response = api_client.post("/v1/approvals/tool/any", json={})
    assert response.status_code == 422


# ─── tools ────────────────────────────────────────────────────────────────────

def test_list_tools_by_mode(api_client):
    all_tools = api_client.get("/v1/tools").json()["tools"]
    planner = api_client.get("/v1/tools", params={"mode": "planner"}).json()["tools"]

    assert len(all_tools) == 11
    assert {t["name"] for t in planner} == {
        "read_file", "list_directory", "search_files", "get_git_diff", "list_code_definitions",
    }
    assert all("input_schema" in t for t in all_tools)


def test_execute_tool_directly(api_client, workspace):
    (workspace / "notes.txt").write_text("remember the milk")

    ok = api_client.post(
        "/v1/tools/read_file/execute",
        json={"arguments": {"path": "notes.txt"}, "workspace_root": str(workspace)},
    )
    missing = api_client.post("/v1/tools/nope/execute", json={"arguments": {}})

    assert ok.status_code == 200
    assert ok.json()["success"] is True
    assert ok.json()["output"] == "remember the milk"
    assert missing.json()["success"] is False
    assert missing.json()["output"] == "Tool not found: nope"


# ─── ops ──────────────────────────────────────────────────────────────────────

def test_health_and_metrics(api_client):
    health = api_client.get("/v1/health", headers={"X-Trace-Id": "trace-abc"})
    metrics = api_client.get("/v1/metrics").json()

    assert health.status_code == 200
    assert health.json()["ok"] is True
    assert health.json()["active_runs"] == 0
    assert health.headers["X-Trace-Id"] == "trace-abc"
    assert "runs_total" in metrics
    assert "approvals_pending" in metrics


# ─── runtime token ────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    ("method", "path", "body"),
    [
        ("post", "/v1/runs", _run_body("run-no-token")),
        ("post", "/v1/tools/execute_command/execute", {"arguments": {"command": "echo hi"}}),
        ("post", "/v1/approvals/tool/any", {"approved": True}),
        ("post", "/v1/runs/any/abort", None),
        ("get", "/v1/runs", None),
    ],
)
def test_privileged_routes_require_runtime_token(api_client, method, path, body):
    kwargs = {"json": body} if body is not None else {}
    response = getattr(api_client, method)(path, headers={"X-Runtime-Token": "wrong"}, **kwargs)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "E_AUTH"


def test_tool_catalogue_and_health_stay_open(api_client):
    anonymous = {"X-Runtime-Token": ""}

    assert api_client.get("/v1/tools", headers=anonymous).status_code == 200
    assert api_client.get("/v1/health", headers=anonymous).status_code == 200


def test_execute_tool_defaults_to_configured_workspace(api_client, workspace):
    (workspace / "todo.txt").write_text("ship it")

    response = api_client.post("/v1/tools/read_file/execute", json={"arguments": {"path": "todo.txt"}})

    assert response.json()["success"] is True
    assert response.json()["output"] == "ship it"
