from __future__ import annotations

import importlib

import pytest
from fastapi.testclient import TestClient

import agent_runtime.main as main_module

RUNTIME_TOKEN = "test-runtime-token"


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "workspace"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def isolated_client(workspace, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AGENT_RUNTIME_WORKSPACE_ROOT", str(workspace))
    monkeypatch.setenv("AGENT_RUNTIME_APPROVAL_MODE", "ask")
    monkeypatch.setenv("AGENT_RUNTIME_TOKEN", RUNTIME_TOKEN)
    module = importlib.reload(main_module)
    with TestClient(module.app) as client:
        yield client
