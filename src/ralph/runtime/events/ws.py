"""Websocket pub/sub hub for streaming loop events to clients."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


CHANNELS = {"loop", "runs", "system"}

Backlog = Callable[[str], list[dict[str, Any]]]


@dataclass
class _WsClient:
    ws: WebSocket
    channels: set[str] = field(default_factory=set)
    plan_ids: set[str] = field(default_factory=set)

    def wants(self, channel: Optional[str], plan_id: str) -> bool:
        if channel == "system":
            return True
        if channel not in self.channels:
            return False
        return not self.plan_ids or plan_id in self.plan_ids


def _requested_plan_ids(message: dict[str, Any]) -> set[str]:
    values = list(message.get("plan_ids", []) or [])
    values.append(message.get("plan_id") or "")
    return {str(value).strip() for value in values if str(value).strip()}


class WebSocketHub:
    """Track websocket subscribers and route loop events by channel and plan.

    Clients send ``{"action": "subscribe", "channels": [...], "plan_id": ...}``.
    When a ``backlog`` callable is set, a client subscribing to the ``loop``
    channel for specific plans first receives those plans' buffered events
    marked with ``"replay": true``.
    """

    def __init__(self, backlog: Optional[Backlog] = None) -> None:
        self.backlog = backlog
        self._clients: dict[int, _WsClient] = {}
        self._counter = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register the event loop used for cross-thread publish scheduling."""
        with self._lock:
            self._loop = loop

    def _next_seq(self) -> int:
        with self._lock:
            self._counter += 1
            return self._counter

    async def _send(self, websocket: WebSocket, event: dict[str, Any]) -> None:
        await websocket.send_text(json.dumps({**event, "seq": self._next_seq()}, default=str))

    async def _reply(self, client: _WsClient, event_type: str, payload: dict[str, Any]) -> None:
        await self._send(client.ws, {"channel": "system", "type": event_type, "payload": payload})

    async def _replay(self, client: _WsClient, plan_ids: set[str]) -> None:
        if self.backlog is None or "loop" not in client.channels:
            return
        for plan_id in sorted(plan_ids):
            for payload in self.backlog(plan_id):
                event = {"channel": "loop", "type": payload.get("kind"), "plan_id": plan_id, "payload": payload, "replay": True}
                await self._send(client.ws, event)

    async def _handle_message(self, client: _WsClient, message: dict[str, Any]) -> None:
        action = message.get("action")
        if action == "ping":
            await self._reply(client, "pong", {})
            return
        if action not in ("subscribe", "unsubscribe"):
            await self._reply(client, "error", {"detail": f"unknown action: {action!r}"})
            return
        channels = {str(c) for c in message.get("channels", []) or []}
        plan_ids = _requested_plan_ids(message)
        if action == "subscribe":
            client.channels |= channels & CHANNELS
            client.plan_ids |= plan_ids
        else:
            client.channels -= channels
            client.plan_ids -= plan_ids
        state = {"channels": sorted(client.channels), "plan_ids": sorted(client.plan_ids)}
        await self._reply(client, f"{action}d", state)
        if action == "subscribe":
            await self._replay(client, plan_ids)

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one client connection until it disconnects."""
        # Background run threads publish through this loop.
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        client = _WsClient(ws=websocket)
        cid = id(websocket)
        self._clients[cid] = client
        try:
            await self._reply(client, "connected", {"channels": sorted(CHANNELS)})
            while True:
                try:
                    message = json.loads(await websocket.receive_text())
                except json.JSONDecodeError:
                    await self._reply(client, "error", {"detail": "invalid JSON"})
                    continue
                if isinstance(message, dict):
                    await self._handle_message(client, message)
        except Exception:
            logger.debug("WebSocket client loop terminated with exception", exc_info=True)
        finally:
            self._clients.pop(cid, None)

    async def publish(self, event: dict[str, Any]) -> None:
        """Send one event to every client whose channel and plan filters match."""
        plan_id = str(event.get("plan_id") or "").strip()
        stale: list[int] = []
        for cid, client in list(self._clients.items()):
            if not client.wants(event.get("channel"), plan_id):
                continue
            try:
                await self._send(client.ws, event)
            except Exception:
                stale.append(cid)
        for cid in stale:
            self._clients.pop(cid, None)

    def publish_sync(self, event: dict[str, Any]) -> None:
        """Schedule :meth:`publish` from a worker thread without blocking it."""
        with self._lock:
            loop = self._loop
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(self.publish(event), loop)
            return
        logger.debug("No running event loop; %s event for plan %s not broadcast", event.get("type"), event.get("plan_id"))
