from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event, timed_step


class RealtimeConnection:
    """One speech-model websocket: JSON frames out, decoded JSON frames in."""

    def __init__(self, ws: Any, *, task_id: Optional[str] = None) -> None:
        self._ws = ws
        self._task_id = task_id
        self._closed = False
        self.messages_received = 0
        self.messages_sent = 0

    @property
    def is_open(self) -> bool:
        return not self._closed

    async def send(self, message: Dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            await self._ws.send(json.dumps(message))
            self.messages_sent += 1
        except ConnectionClosed:
            self._closed = True
            raise

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._ws.close()
        log_event(
            "realtime",
            "connection_closed",
            task_id=self._task_id,
            details={"messages_sent": self.messages_sent, "messages_received": self.messages_received},
        )

    async def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for raw in self._ws:
                if not isinstance(raw, str):
                    continue
                try:
                    payload = json.loads(raw)
                except ValueError:
                    log_event("realtime", "unparseable_message", task_id=self._task_id, status="warning")
                    continue
                if isinstance(payload, dict):
                    self.messages_received += 1
                    yield payload
        except ConnectionClosed as exc:
            log_event(
                "realtime",
                "connection_lost",
                task_id=self._task_id,
                status="warning",
                details={"code": getattr(exc, "code", None), "reason": str(exc)[:200]},
            )
        finally:
            self._closed = True


async def open_realtime_connection(task_id: str) -> RealtimeConnection:
    with timed_step("realtime", "connect", task_id=task_id, details={"url": settings.OPENAI_REALTIME_URL}):
        ws = await websockets.connect(
            settings.OPENAI_REALTIME_URL,
            additional_headers={
                "Authorization": f"Bearer {settings.OPENAI_API_KEY}",
                "OpenAI-Beta": "realtime=v1",
            },
        )
    return RealtimeConnection(ws, task_id=task_id)
