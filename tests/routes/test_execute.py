"""Tests for the HTTP routes."""

from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from session_runner import runner as runner_module
from session_runner.config import settings
from session_runner.engine.fetcher import PackageFetcher
from session_runner.main import app
from session_runner.runner import SessionRunner


@pytest.fixture
def client(base_dir: Path):
    test_runner = SessionRunner(
        fetcher=PackageFetcher(host="registry.test"),
        base_dir=base_dir,
        executor_options={"bootstrap": None, "meta": None, "required": []},
    )
    with patch.object(runner_module, "runner", test_runner), \
            patch.object(settings, "BASE_DIR", base_dir), \
            patch.object(settings, "API_KEY", ""):
        with TestClient(app) as c:
            yield c


def test_health(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_run_script(client: TestClient, base_dir: Path) -> None:
    r = client.post("/api/run/script", json={"script": "return 40 + 2"})
    assert r.status_code == 200
    body = r.json()
    assert body["outputs"] == ["42"]
    assert body["failed"] is False
    assert list(base_dir.iterdir()) == []


def test_run_script_failure_is_200(client: TestClient) -> None:
    r = client.post("/api/run/script", json={"script": "raise ValueError('boom')", "environment": {"A": "1"}})
    assert r.status_code == 200
    body = r.json()
    assert body["failed"] is True
    assert body["error_messages"] == ["ValueError: boom"]


def test_run_file(client: TestClient, tmp_path: Path) -> None:
    script = tmp_path / "job.py"
    script.write_text("return 'from file'\n")
    r = client.post("/api/run/file", json={"path": str(script)})
    assert r.status_code == 200
    assert r.json()["outputs"] == ["from file"]


def test_api_key_required_when_configured(client: TestClient) -> None:
    with patch.object(settings, "API_KEY", "secret"):
        assert client.post("/api/run/script", json={"script": "return 1"}).status_code == 401
        r = client.post("/api/run/script", json={"script": "return 1"}, headers={"X-API-Key": "secret"})
        assert r.status_code == 200
        assert r.json()["outputs"] == ["1"]
