"""Unit tests for the WebSocketManager utilities."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, cast

import pytest
from fastapi import WebSocket, WebSocketDisconnect

from model_kombat.webapp.websocket import WebSocketManager


class StubWebSocket:
    """Lightweight stand-in for FastAPI's WebSocket."""

    def __init__(self, fail_after: int = -1) -> None:
        self.accepted = False
        self.sent: List[Dict[str, Any]] = []
        self._fail_after = fail_after

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, message: Dict[str, Any]) -> None:
        if 0 <= self._fail_after <= len(self.sent):
            raise WebSocketDisconnect(code=1001)
        self.sent.append(message)


def test_websocket_manager_connect_send_and_keepalive() -> None:
    async def run() -> None:
        manager = WebSocketManager(keepalive_s=0.01)
        websocket = StubWebSocket()

        await manager.connect(cast(WebSocket, websocket))
        assert websocket.accepted
        assert manager.connection_count == 1

        sender = asyncio.create_task(
            manager.send_events(
                cast(WebSocket, websocket), initial_events=[{"type": "status", "payload": {"state": "idle"}}]
            )
        )

        await asyncio.sleep(0.005)
        assert websocket.sent[0] == {"type": "status", "payload": {"state": "idle"}}

        manager.publish({"type": "message", "payload": {"content": "hi"}})
        await asyncio.sleep(0.005)
        assert {"type": "message", "payload": {"content": "hi"}} in websocket.sent

        await asyncio.sleep(0.03)
        assert any(event["type"] == "ping" for event in websocket.sent)

        sender.cancel()
        with pytest.raises(asyncio.CancelledError):
            await sender
        assert manager.connection_count == 0

    asyncio.run(run())


def test_websocket_manager_disconnect_ends_send_loop() -> None:
    async def run() -> None:
        manager = WebSocketManager(keepalive_s=5)
        websocket = StubWebSocket(fail_after=1)
        await manager.connect(cast(WebSocket, websocket))

        await manager.send_events(
            cast(WebSocket, websocket),
            initial_events=[{"type": "status", "payload": {}}, {"type": "run_started", "payload": {}}],
        )

        assert websocket.sent == [{"type": "status", "payload": {}}]
        assert manager.connection_count == 0

    asyncio.run(run())


def test_websocket_manager_send_events_without_mailbox(caplog: pytest.LogCaptureFixture) -> None:
    async def run() -> None:
        manager = WebSocketManager()
        websocket = StubWebSocket()
        await manager.send_events(cast(WebSocket, websocket), initial_events=[{"type": "status"}])
        assert websocket.sent == [{"type": "status", "payload": {}}]

    with caplog.at_level("WARNING"):
        asyncio.run(run())
    assert "No event queue found" in caplog.text


def test_websocket_manager_publish_requires_type() -> None:
    with pytest.raises(ValueError, match="type"):
        WebSocketManager().publish({"payload": {}})


def test_websocket_manager_drops_oldest_event_for_lagging_client() -> None:
    async def run() -> List[Dict[str, Any]]:
        manager = WebSocketManager(max_pending=2)
        websocket = StubWebSocket()
        await manager.connect(cast(WebSocket, websocket))
        for index in range(3):
            manager.publish({"type": "tick", "payload": {"index": index}})
        mailbox = getattr(manager, "_mailboxes")[websocket]
        return [mailbox.get_nowait(), mailbox.get_nowait()]

    queued = asyncio.run(run())
    assert [event["payload"]["index"] for event in queued] == [1, 2]
