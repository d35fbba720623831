"""Tests for the conveyor CLI."""

import json

import httpx
import pytest
from typer.testing import CliRunner

from conveyor import __version__
from conveyor.cli import main as cli
from tests.fakes import RELEASE_TOML


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def release_file(tmp_path):
    path = tmp_path / "release.toml"
    path.write_text(RELEASE_TOML)
    return path


@pytest.fixture
def daemon(monkeypatch):
    """Routes CLI requests to a scripted handler; returns the request log."""
    requests = []
    routes = {}

    def handler(request):
        requests.append(request)
        reply = routes.get((request.method, request.url.path))
        if reply is None:
            return httpx.Response(404, json={"detail": "Run 'x' not found"})
        return httpx.Response(200, json=reply)

    monkeypatch.setattr(
        cli, "_client", lambda: httpx.Client(base_url="http://daemon", transport=httpx.MockTransport(handler))
    )
    return routes, requests


RUN = {
    "id": "3f2a9c1e-0000-4000-8000-000000000000",
    "definition_name": "release",
    "definition_version": "abc",
    "status": "rolled_back",
    "rollback_outcome": "complete",
    "trigger": {"commit": "abc123", "definition": "release", "params": {}},
    "duration_ms": 1200,
    "stages": [
        {"name": "build", "status": "rolled_back", "attempts": 1, "artifact": "img-1",
         "last_error": None, "skip_reason": None, "rollback_error": None},
        {"name": "deploy", "status": "failed", "attempts": 2, "artifact": None,
         "last_error": {"type": "DeployError", "message": "rollout stuck"}, "skip_reason": None,
         "rollback_error": None},
    ],
}


class TestValidate:
    def test_valid(self, runner, release_file):
        result = runner.invoke(cli.app, ["validate", str(release_file)])
        assert result.exit_code == 0
        assert "release" in result.output
        assert "configure" in result.output
        assert "Depth" in result.output

    def test_json(self, runner, release_file):
        result = runner.invoke(cli.app, ["validate", str(release_file), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["order"] == ["provision", "build", "push", "deploy", "configure"]

    def test_cycle(self, runner, tmp_path):
        path = tmp_path / "cycle.yaml"
        path.write_text(
            "name: p\nstages:\n"
            "  - {name: a, kind: build, depends_on: [b]}\n"
            "  - {name: b, kind: build, depends_on: [a]}\n"
        )
        result = runner.invoke(cli.app, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Cycle" in result.output

    def test_invalid(self, runner, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"name": "p", "stages": [{"name": "push", "kind": "push"}]}))
        result = runner.invoke(cli.app, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Invalid" in result.output

    def test_check_bindings(self, runner, release_file, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("CONVEYOR_HOME", str(tmp_path / "home"))
        (tmp_path / "conveyor.toml").write_text('[adapters.provision]\ntype = "http"\nendpoint = "http://x"\n')
        result = runner.invoke(cli.app, ["validate", str(release_file), "--check-bindings"])
        assert result.exit_code == 1
        assert "build" in result.output


class TestDaemonCommands:
    def test_version(self, runner):
        result = runner.invoke(cli.app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_trigger(self, runner, daemon):
        routes, requests = daemon
        routes[("POST", "/api/v1/runs")] = {**RUN, "status": "pending"}
        result = runner.invoke(cli.app, ["trigger", "release", "--commit", "abc123", "-p", '{"env": "prod"}'])
        assert result.exit_code == 0
        assert RUN["id"] in result.output
        assert json.loads(requests[0].content) == {
            "commit": "abc123", "definition": "release", "params": {"env": "prod"},
        }

    def test_trigger_wait_reports_failure(self, runner, daemon):
        routes, _ = daemon
        routes[("POST", "/api/v1/runs")] = {**RUN, "status": "pending"}
        routes[("GET", f"/api/v1/runs/{RUN['id']}")] = RUN
        result = runner.invoke(cli.app, ["trigger", "release", "-c", "abc123", "--wait", "--interval", "0"])
        assert result.exit_code == 1
        assert "rolled_back" in result.output
        assert "rollout stuck" in result.output

    def test_runs(self, runner, daemon):
        routes, requests = daemon
        routes[("GET", "/api/v1/runs")] = {"runs": [{
            "id": RUN["id"], "definition_name": "release", "commit": "abc123", "status": "succeeded",
            "rollback_outcome": "not_attempted", "created_at": "2026-01-01T00:00:00Z",
        }], "total": 1}
        result = runner.invoke(cli.app, ["runs", "--status", "succeeded"])
        assert result.exit_code == 0
        assert "release" in result.output
        assert requests[0].url.params["status"] == "succeeded"

    def test_show_unknown_run(self, runner, daemon):
        result = runner.invoke(cli.app, ["show", "x"])
        assert result.exit_code == 1
        assert "404" in result.output

    def test_cancel(self, runner, daemon):
        routes, _ = daemon
        routes[("POST", "/api/v1/runs/r1/cancel")] = {"run_id": "r1", "cancelled": True}
        result = runner.invoke(cli.app, ["cancel", "r1"])
        assert result.exit_code == 0
        assert "Cancelling" in result.output

    def test_daemon_down(self, runner, monkeypatch):
        def handler(request):
            raise httpx.ConnectError("refused")

        monkeypatch.setattr(
            cli, "_client", lambda: httpx.Client(base_url="http://daemon", transport=httpx.MockTransport(handler))
        )
        result = runner.invoke(cli.app, ["runs"])
        assert result.exit_code == 1
        assert "Cannot connect" in result.output
