from __future__ import annotations

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event, timed_step
from onbehalf.services.storage import DataStore
from onbehalf.services.task_state import CALL_ACTIVE
from onbehalf.services.ws_manager import ConnectionManager


DEMO_TRANSCRIPT = (
    ("ASSISTANT", "Hello, this is an AI assistant calling on behalf of {principal}."),
    ("OTHER_PARTY", "Hi, how can I help you?"),
    ("ASSISTANT", "I'd like to make a reservation for two for tomorrow at 7 PM."),
    ("OTHER_PARTY", "Let me check availability... Yes, we have a table. May I have a name?"),
)


def get_routes(store: DataStore, hub: ConnectionManager):
    router = APIRouter(tags=["websocket"])

    async def _play_demo_transcript(websocket: WebSocket, task_id: str) -> None:
        for speaker, line in DEMO_TRANSCRIPT:
            await asyncio.sleep(settings.DEMO_TRANSCRIPT_INTERVAL_SECONDS)
            if websocket.application_state != WebSocketState.CONNECTED:
                return
            try:
                event = store.add_transcript_event(
                    task_id,
                    speaker,
                    line.format(principal=settings.ASSISTANT_PRINCIPAL_NAME),
                )
            except Exception as exc:
                log_event(
                    "ws",
                    "demo_transcript_failed",
                    task_id=task_id,
                    status="warning",
                    details={"error": f"{type(exc).__name__}: {exc}"},
                )
                return
            await hub.broadcast_transcript(task_id, event)

    @router.websocket("/ws/ui")
    async def ui_feed(websocket: WebSocket):
        task_id = (websocket.query_params.get("taskId") or "").strip()
        await websocket.accept()
        if not task_id:
            log_event("ws", "observer_missing_task_id", status="warning")
            await websocket.close(code=4000, reason="taskId required")
            return

        hub.register(task_id, websocket)
        demo: Optional[asyncio.Task[None]] = None
        messages_received = 0
        with timed_step("ws", "observer_session", task_id=task_id):
            try:
                task = store.get_task(task_id)
                if task is not None:
                    await websocket.send_text(json.dumps({"type": "status", "payload": {"status": task.status}}))
                    if settings.DEMO_TRANSCRIPT_ENABLED and task.status not in CALL_ACTIVE:
                        demo = asyncio.create_task(_play_demo_transcript(websocket, task_id))
                while True:
                    await websocket.receive_text()
                    messages_received += 1
            except WebSocketDisconnect:
                log_event(
                    "ws",
                    "consume_end",
                    task_id=task_id,
                    details={"messages_received": messages_received},
                )
            finally:
                if demo is not None:
                    demo.cancel()
                hub.unregister(task_id, websocket)

    return router
