"""Webhook notifications for run lifecycle events."""

from __future__ import annotations
import logging
from typing import Any

import httpx

from conveyor.notify.events import Event

logger = logging.getLogger("conveyor.webhooks")

DEFAULT_EVENTS = ["run.failed", "run.rolled_back"]


class WebhookNotifier:
    """Posts lifecycle events to registered URLs.

    Delivery is best-effort: a failing endpoint is logged and never affects
    the run. Each hook subscribes to event names, or "*" for all of them.
    """

    def __init__(self, webhooks: list[dict[str, Any]] | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self._webhooks: list[dict[str, Any]] = []
        self._transport = transport
        for hook in webhooks or []:
            self.register(hook["url"], hook.get("events"), hook.get("secret"))

    def register(self, url: str, events: list[str] | None = None, secret: str | None = None) -> None:
        self._webhooks.append({
            "url": url,
            "events": events or list(DEFAULT_EVENTS),
            "secret": secret,
        })
        logger.info(f"Registered webhook: {url} for events: {events or DEFAULT_EVENTS}")

    def list_webhooks(self) -> list[dict]:
        return [{"url": w["url"], "events": w["events"]} for w in self._webhooks]

    async def notify(self, event: Event) -> None:
        targets = [w for w in self._webhooks if event.name in w["events"] or "*" in w["events"]]
        if not targets:
            return

        payload = {"event": event.name, "payload": event.to_dict()}
        async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
            for webhook in targets:
                headers = {"Content-Type": "application/json"}
                if webhook.get("secret"):
                    headers["X-Conveyor-Secret"] = webhook["secret"]
                try:
                    resp = await client.post(webhook["url"], json=payload, headers=headers)
                    logger.info(f"Webhook fired: {webhook['url']} → {resp.status_code}")
                except httpx.HTTPError as e:
                    logger.error(f"Webhook failed: {webhook['url']} → {e}")
