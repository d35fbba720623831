"""Generic HTTP adapter — forwards stage calls to an external service."""

from __future__ import annotations
import asyncio
from typing import Any

import httpx

from conveyor.adapters.base import (
    ArtifactRef,
    Builder,
    ConfigReport,
    Configurator,
    Deployer,
    Provisioner,
    ResourceSet,
    RolloutStatus,
)
from conveyor.core.errors import AdapterError, BuildError, CancelledError, ConfigError, DeployError, ProvisionError
from conveyor.pipeline.context import StageContext
from conveyor.pipeline.types import AdapterKind


class HttpAdapter(Provisioner, Builder, Deployer, Configurator):
    """Implements every contract by POSTing JSON to `<endpoint>/<operation>`.

    The service replies with `{"ref": "...", ...}`. A non-2xx reply or a
    transport error becomes the operation's AdapterError. The credential, if
    any, is sent as a bearer token.
    """

    kinds = frozenset(AdapterKind)

    def __init__(
        self,
        endpoint: str,
        credential: str | None = None,
        timeout: float = 30,
        concurrency_limit: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self._credential = credential
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(concurrency_limit) if concurrency_limit else None
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self._credential:
                headers["Authorization"] = f"Bearer {self._credential}"
            self._client = httpx.AsyncClient(
                base_url=self.endpoint,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _call(
        self,
        path: str,
        body: dict,
        ctx: StageContext,
        error_class: type[AdapterError],
        require_ref: bool = True,
    ) -> dict:
        if ctx.cancelled:
            raise CancelledError(f"{path} cancelled before start")

        async def post() -> dict:
            if self._semaphore is None:
                return await self._post(path, body, error_class, require_ref)
            async with self._semaphore:
                return await self._post(path, body, error_class, require_ref)

        request = asyncio.ensure_future(post())
        cancel_wait = asyncio.ensure_future(ctx.wait_cancelled())
        try:
            await asyncio.wait({request, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            finished = request.done()
            if not finished:
                request.cancel()

        if not finished:
            raise CancelledError(f"{path} cancelled")
        return request.result()

    async def _post(self, path: str, body: dict, error_class: type[AdapterError], require_ref: bool) -> dict:
        try:
            resp = await self._get_client().post(path, json=body)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise error_class(f"{path} → HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise error_class(f"{path} → {type(e).__name__}: {e}") from e

        if not isinstance(data, dict) or (require_ref and not data.get("ref")):
            raise error_class(f"{path} → reply has no 'ref'")
        return data

    # ─── Contracts ───

    async def apply(self, plan: dict[str, Any], ctx: StageContext) -> ResourceSet:
        data = await self._call("/provision", {**ctx.to_payload(), "plan": plan}, ctx, ProvisionError)
        return ResourceSet(ref=data["ref"], resources=data.get("resources", {}))

    async def build(self, spec: dict[str, Any], ctx: StageContext) -> ArtifactRef:
        data = await self._call("/build", {**ctx.to_payload(), "spec": spec}, ctx, BuildError)
        return ArtifactRef(ref=data["ref"], digest=data.get("digest"))

    async def push(self, artifact: ArtifactRef, ctx: StageContext) -> ArtifactRef:
        data = await self._call("/push", {**ctx.to_payload(), "artifact": artifact.ref}, ctx, BuildError)
        return ArtifactRef(ref=data["ref"], digest=data.get("digest", artifact.digest))

    async def deploy(self, artifact: ArtifactRef, manifest: dict[str, Any], ctx: StageContext) -> RolloutStatus:
        body = {**ctx.to_payload(), "artifact": artifact.ref, "manifest": manifest}
        data = await self._call("/deploy", body, ctx, DeployError)
        if data.get("ready") is False:
            raise DeployError(f"Rollout {data['ref']} not ready")
        return RolloutStatus(ref=data["ref"], details=data.get("details", {}))

    async def configure(self, targets: list[str], playbook: dict[str, Any], ctx: StageContext) -> ConfigReport:
        body = {**ctx.to_payload(), "targets": targets, "playbook": playbook}
        data = await self._call("/configure", body, ctx, ConfigError)
        failed = tuple(data.get("failed_hosts", ()))
        if failed:
            raise ConfigError(f"Configuration failed on {', '.join(failed)}")
        return ConfigReport(ref=data["ref"], changed=data.get("changed", 0))

    async def rollback(self, action: str, ctx: StageContext) -> None:
        await self._call(f"/rollback/{action}", ctx.to_payload(), ctx, AdapterError, require_ref=False)
