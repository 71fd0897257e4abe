from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

_LOGGER = logging.getLogger("knx_bridge.realtime")


class RealtimeHub:
    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.add(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)

    def notify(self, event_type: str, data: dict[str, Any]) -> None:
        # Safe from any thread; dropped until the server loop is attached.
        loop = self._loop
        if loop is None or loop.is_closed() or not self._clients:
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(event_type, data), loop)

    async def broadcast(self, event_type: str, data: dict[str, Any]) -> None:
        msg = json.dumps({"type": event_type, "data": data}, ensure_ascii=False)
        async with self._lock:
            clients = list(self._clients)
        if not clients:
            return

        dead: list[WebSocket] = []
        for ws in clients:
            try:
                await ws.send_text(msg)
            except Exception:
                _LOGGER.debug("Dropping websocket client after send failure")
                dead.append(ws)
        if dead:
            async with self._lock:
                for ws in dead:
                    self._clients.discard(ws)

    async def close_all(self) -> None:
        async with self._lock:
            clients = list(self._clients)
            self._clients.clear()
        for ws in clients:
            if ws.client_state == WebSocketState.DISCONNECTED:
                continue
            try:
                await ws.close()
            except RuntimeError:
                _LOGGER.debug("Websocket already closed")
