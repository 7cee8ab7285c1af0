"""Websocket pub/sub hub for streaming lifecycle events to clients."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import WebSocket

from ..domain.models import EVENT_CHANNELS
from .bus import Subscription

logger = logging.getLogger(__name__)


CHANNELS = set(EVENT_CHANNELS) | {"system"}


def _system(kind: str, payload: dict[str, Any]) -> str:
    return json.dumps({"channel": "system", "type": kind, "payload": payload})


@dataclass
class _WsClient:
    ws: WebSocket
    channels: set[str] = field(default_factory=set)
    run_ids: set[str] = field(default_factory=set)

    def filters(self) -> dict[str, list[str]]:
        return {"channels": sorted(self.channels), "run_ids": sorted(self.run_ids)}

    def accepts(self, event: dict[str, Any]) -> bool:
        channel = event.get("channel")
        if channel == "system":
            return True
        if channel not in self.channels:
            return False
        return not self.run_ids or str(event.get("run_id") or "") in self.run_ids


class WebSocketHub:
    """Track websocket subscribers and route channel-scoped lifecycle events."""
    def __init__(self) -> None:
        self._clients: dict[int, _WsClient] = {}
        self._counter = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register the event loop used for cross-thread publish scheduling."""
        with self._lock:
            self._loop = loop

    def forward(self, subscription: Subscription) -> threading.Thread:
        """Pump a bus subscription into connected clients from a daemon thread."""
        def _pump() -> None:
            for record in subscription:
                self.publish_sync(record)

        thread = threading.Thread(target=_pump, daemon=True, name="ws-forwarder")
        thread.start()
        return thread

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one client connection and process subscribe/unsubscribe traffic."""
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        client = _WsClient(ws=websocket)
        cid = id(websocket)
        self._clients[cid] = client
        try:
            await websocket.send_text(_system("connected", {"channels": sorted(CHANNELS)}))
            while True:
                reply = self.handle_message(client, json.loads(await websocket.receive_text()))
                if reply is not None:
                    await websocket.send_text(reply)
        except Exception:
            logger.debug("WebSocket client loop terminated with exception", exc_info=True)
        finally:
            self._clients.pop(cid, None)

    @staticmethod
    def handle_message(client: _WsClient, message: dict[str, Any]) -> Optional[str]:
        """Apply one client control message and return the reply frame, if any.

        ``subscribe`` and ``unsubscribe`` take ``channels`` plus an optional
        ``run_id`` or ``run_ids`` filter; ``ping`` answers ``pong``.
        """
        action = message.get("action")
        if action == "ping":
            return _system("pong", {})
        if action not in ("subscribe", "unsubscribe"):
            return None
        channels = set(message.get("channels", []))
        run_ids = {str(run_id).strip() for run_id in message.get("run_ids", []) if str(run_id).strip()}
        single_run_id = str(message.get("run_id") or "").strip()
        if single_run_id:
            run_ids.add(single_run_id)
        if action == "subscribe":
            client.channels |= channels & CHANNELS
            client.run_ids |= run_ids
            return _system("subscribed", client.filters())
        client.channels -= channels
        client.run_ids -= run_ids
        return _system("unsubscribed", client.filters())

    async def publish(self, event: dict[str, Any]) -> None:
        """Send one event to all subscribers matching channel and run filters."""
        self._counter += 1
        payload = json.dumps({**event, "hub_seq": self._counter})
        stale: list[int] = []
        for cid, client in list(self._clients.items()):
            if not client.accepts(event):
                continue
            try:
                await client.ws.send_text(payload)
            except Exception:
                stale.append(cid)
        for cid in stale:
            self._clients.pop(cid, None)

    def publish_sync(self, event: dict[str, Any]) -> None:
        """Schedule async publish from sync code paths without blocking callers."""
        with self._lock:
            loop = self._loop
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(self.publish(event), loop)
            return
        logger.debug("No running event loop; dropping websocket copy of %s", event.get("type"))


hub = WebSocketHub()
