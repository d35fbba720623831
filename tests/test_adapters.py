"""Tests for the adapter registry and the HTTP adapter."""

import asyncio
import json
import tomllib
from pathlib import Path

import httpx
import pytest

from conveyor.adapters.base import ArtifactRef, invoke
from conveyor.adapters.http import HttpAdapter
from conveyor.adapters.registry import AdapterRegistry
from conveyor.core.errors import BuildError, CancelledError, ConfigError, DeployError, LoadError, ProvisionError
from conveyor.pipeline.context import StageContext, TriggerEvent
from conveyor.pipeline.types import AdapterKind
from conveyor.pipeline.loader import load_definition
from tests.fakes import release_definition

EXAMPLES = Path(__file__).parent.parent / "examples"
TRIGGER = TriggerEvent(commit="abc123", definition="release")


def ctx(stage="build", **kwargs):
    return StageContext(run_id="run-1", stage=stage, trigger=TRIGGER, **kwargs)


def http_adapter(handler, **kwargs):
    return HttpAdapter("https://tools.example.com/api/", transport=httpx.MockTransport(handler), **kwargs)


class TestAdapterRegistry:
    def test_resolves_env_vars(self, monkeypatch):
        monkeypatch.setenv("TOOLS_URL", "https://tools.internal")
        monkeypatch.setenv("TOOLS_TOKEN", "s3cret")
        registry = AdapterRegistry({
            "build": {"type": "http", "endpoint": "${TOOLS_URL}/build", "credential": "${TOOLS_TOKEN}"},
        })
        adapter = registry.get("build")
        assert isinstance(adapter, HttpAdapter)
        assert adapter.endpoint == "https://tools.internal/build"

    def test_env_var_default(self, monkeypatch):
        monkeypatch.delenv("TOOLS_URL", raising=False)
        registry = AdapterRegistry({"build": {"type": "http", "endpoint": "${TOOLS_URL:-http://localhost:9000}"}})
        assert registry.get("build").endpoint == "http://localhost:9000"

    def test_missing_env_var(self, monkeypatch):
        monkeypatch.delenv("TOOLS_TOKEN", raising=False)
        with pytest.raises(ValueError, match="TOOLS_TOKEN"):
            AdapterRegistry({"build": {"type": "http", "endpoint": "http://x", "credential": "${TOOLS_TOKEN}"}})

    def test_credentials_are_redacted(self, monkeypatch, caplog):
        monkeypatch.setenv("TOOLS_TOKEN", "s3cret")
        registry = AdapterRegistry({"build": {"type": "http", "endpoint": "http://x", "credential": "${TOOLS_TOKEN}"}})
        with caplog.at_level("INFO", logger="conveyor.adapters"):
            registry.get("build")

        assert registry.list_bindings()["build"]["credential"] == "***"
        assert "s3cret" not in repr(registry._options["build"])
        assert "s3cret" not in caplog.text

    def test_missing_type(self):
        with pytest.raises(ValueError, match="missing required 'type'"):
            AdapterRegistry({"build": {"endpoint": "http://x"}})

    def test_unsupported_type(self):
        with pytest.raises(ValueError, match="Unsupported adapter type 'docker'"):
            AdapterRegistry({"build": {"type": "docker"}})

    def test_unknown_option(self):
        with pytest.raises(ValueError, match="Invalid options"):
            AdapterRegistry({"build": {"type": "http", "endpoint": "http://x", "retries": 3}})

    def test_http_requires_endpoint(self):
        registry = AdapterRegistry({"build": {"type": "http"}})
        with pytest.raises(ValueError, match="endpoint"):
            registry.get("build")

    def test_unknown_binding(self):
        with pytest.raises(KeyError):
            AdapterRegistry().get("build")

    def test_validate_reports_unbound_stage(self):
        registry = AdapterRegistry({"provision": {"type": "http", "endpoint": "http://x"}})
        with pytest.raises(LoadError, match="Stage 'build'"):
            registry.validate(release_definition())

    def test_one_http_binding_serves_every_kind(self):
        registry = AdapterRegistry({kind.value: {"type": "http", "endpoint": "http://x"} for kind in AdapterKind})
        registry.validate(release_definition())

    def test_example_config_binds_example_definitions(self, monkeypatch):
        for var in ("INFRA_TOKEN", "REGISTRY_TOKEN", "CLUSTER_TOKEN"):
            monkeypatch.setenv(var, "t")
        config = tomllib.loads((EXAMPLES / "conveyor.toml").read_text())
        registry = AdapterRegistry(config["adapters"])
        registry.validate(load_definition(EXAMPLES / "release.toml"))
        registry.validate(load_definition(EXAMPLES / "hotfix.yaml"))

    @pytest.mark.asyncio
    async def test_close(self):
        registry = AdapterRegistry({"build": {"type": "http", "endpoint": "http://x"}})
        adapter = registry.get("build")
        adapter._get_client()
        await registry.close()
        assert adapter._client is None


class TestHttpAdapter:
    @pytest.mark.asyncio
    async def test_build_posts_payload(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ref": "img-42", "digest": "sha256:abc"})

        adapter = http_adapter(handler, credential="tok")
        result = await adapter.build({"dockerfile": "Dockerfile"}, ctx(params={"dockerfile": "Dockerfile"}))

        assert result == ArtifactRef(ref="img-42", digest="sha256:abc")
        assert seen["url"] == "https://tools.example.com/api/build"
        assert seen["auth"] == "Bearer tok"
        assert seen["body"]["commit"] == "abc123"
        assert seen["body"]["spec"] == {"dockerfile": "Dockerfile"}
        await adapter.close()

    @pytest.mark.asyncio
    async def test_http_error_becomes_operation_error(self):
        adapter = http_adapter(lambda request: httpx.Response(503, text="registry unavailable"))

        with pytest.raises(BuildError, match="HTTP 503"):
            await adapter.push(ArtifactRef(ref="img-42"), ctx("push"))
        with pytest.raises(ProvisionError):
            await adapter.apply({}, ctx("provision"))

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(DeployError, match="ConnectError"):
            await http_adapter(handler).deploy(ArtifactRef(ref="img"), {}, ctx("deploy"))

    @pytest.mark.asyncio
    async def test_reply_without_ref(self):
        adapter = http_adapter(lambda request: httpx.Response(200, json={"ok": True}))
        with pytest.raises(BuildError, match="no 'ref'"):
            await adapter.build({}, ctx())

    @pytest.mark.asyncio
    async def test_rollout_not_ready(self):
        adapter = http_adapter(lambda request: httpx.Response(200, json={"ref": "rollout-1", "ready": False}))
        with pytest.raises(DeployError, match="not ready"):
            await adapter.deploy(ArtifactRef(ref="img"), {}, ctx("deploy"))

    @pytest.mark.asyncio
    async def test_configure_failed_hosts(self):
        adapter = http_adapter(lambda request: httpx.Response(200, json={"ref": "play-1", "failed_hosts": ["web-2"]}))
        with pytest.raises(ConfigError, match="web-2"):
            await adapter.configure(["web-1", "web-2"], {}, ctx("configure"))

    @pytest.mark.asyncio
    async def test_rollback_needs_no_ref(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={})

        await http_adapter(handler).rollback("untag", ctx("push"))
        assert paths == ["/api/rollback/untag"]

    @pytest.mark.asyncio
    async def test_cancel_stops_request(self):
        started = asyncio.Event()

        async def handler(request):
            started.set()
            await asyncio.sleep(10)
            return httpx.Response(200, json={"ref": "late"})

        cancel = asyncio.Event()
        call = asyncio.create_task(http_adapter(handler).build({}, ctx(cancel_event=cancel)))
        await started.wait()
        cancel.set()

        with pytest.raises(CancelledError):
            await asyncio.wait_for(call, timeout=1)

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        cancel = asyncio.Event()
        cancel.set()
        adapter = http_adapter(lambda request: httpx.Response(200, json={"ref": "x"}))
        with pytest.raises(CancelledError):
            await adapter.build({}, ctx(cancel_event=cancel))

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        active = 0
        peak = 0

        async def handler(request):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return httpx.Response(200, json={"ref": "ok"})

        adapter = http_adapter(handler, concurrency_limit=2)
        await asyncio.gather(*(adapter.build({}, ctx(f"b{i}")) for i in range(5)))
        assert peak == 2


class TestInvoke:
    @pytest.mark.asyncio
    async def test_deploy_prefers_explicit_artifact(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"ref": "rollout-1"})

        context = ctx(
            "deploy",
            params={"artifact": "registry/app:1.2"},
            artifacts={"push": "registry/app:abc"},
            upstream_kinds={"push": "push"},
        )
        assert await invoke(http_adapter(handler), AdapterKind.DEPLOY, context) == "rollout-1"
        assert bodies[0]["artifact"] == "registry/app:1.2"

    @pytest.mark.asyncio
    async def test_build_with_push(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={"ref": f"ref-{len(paths)}"})

        ref = await invoke(http_adapter(handler), AdapterKind.BUILD, ctx(params={"push": True}))
        assert paths == ["/api/build", "/api/push"]
        assert ref == "ref-2"
