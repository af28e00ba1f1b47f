"""WebSocket fan-out of run progress events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from .sse import time_now_ms

LOGGER = logging.getLogger(__name__)


class WebSocketManager:
    """Keep one mailbox per connected client and broadcast events into all of them.

    ``publish`` is synchronous and must be called from the event loop that
    serves the connections; runs execute as tasks on that same loop. A client
    that falls more than ``max_pending`` events behind loses its oldest
    events.
    """

    def __init__(self, *, keepalive_s: float = 15.0, max_pending: int = 1000) -> None:
        self._keepalive = keepalive_s
        self._max_pending = max_pending
        self._mailboxes: Dict[WebSocket, asyncio.Queue[Dict[str, Any]]] = {}

    @property
    def connection_count(self) -> int:
        return len(self._mailboxes)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._mailboxes[websocket] = asyncio.Queue(maxsize=self._max_pending)
        LOGGER.debug("WebSocket client connected. Total connections: %d", len(self._mailboxes))

    def disconnect(self, websocket: WebSocket) -> None:
        self._mailboxes.pop(websocket, None)
        LOGGER.debug("WebSocket client disconnected. Total connections: %d", len(self._mailboxes))

    def publish(self, event: Dict[str, Any]) -> None:
        """Queue ``event`` for every connected client.

        Raises:
            ValueError: If event does not contain a 'type' field
        """
        if "type" not in event:
            raise ValueError("WebSocket events must include a 'type' field.")
        for mailbox in list(self._mailboxes.values()):
            if mailbox.full():
                mailbox.get_nowait()
                LOGGER.warning("WebSocket client is lagging; dropped oldest event")
            mailbox.put_nowait(event)

    async def send_events(self, websocket: WebSocket, initial_events: Optional[List[Dict[str, Any]]] = None) -> None:
        """Send ``initial_events``, then stream published events until the client leaves."""
        try:
            for event in initial_events or []:
                await self._send_event(websocket, event)

            mailbox = self._mailboxes.get(websocket)
            if mailbox is None:
                LOGGER.warning("No event queue found for WebSocket connection")
                return
            while True:
                try:
                    event = await asyncio.wait_for(mailbox.get(), timeout=self._keepalive)
                except asyncio.TimeoutError:
                    event = {"type": "ping", "payload": {"ts": time_now_ms()}}
                await self._send_event(websocket, event)
        except WebSocketDisconnect:
            LOGGER.debug("WebSocket client went away")
        finally:
            self.disconnect(websocket)

    @staticmethod
    async def _send_event(websocket: WebSocket, event: Dict[str, Any]) -> None:
        await websocket.send_json({"type": event.get("type", "message"), "payload": event.get("payload", {})})


__all__ = ["WebSocketManager"]
