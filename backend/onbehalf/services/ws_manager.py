from __future__ import annotations

import json
from typing import Any, Dict, Set

from starlette.websockets import WebSocketState

from onbehalf.core.telemetry import log_event, timed_step
from onbehalf.models.schemas import ObserverMessageType, OutcomeRecord, TaskStatus, TranscriptEventRecord


def _is_open(connection: Any) -> bool:
    state = getattr(connection, "application_state", WebSocketState.CONNECTED)
    client_state = getattr(connection, "client_state", WebSocketState.CONNECTED)
    return state == WebSocketState.CONNECTED and client_state == WebSocketState.CONNECTED


class ConnectionManager:
    """Per-task registry of live observer sockets.

    Process-local. Membership changes only through register/unregister; a
    broadcast never prunes the set, it just skips sockets that are closed.
    """

    def __init__(self) -> None:
        self._observers: Dict[str, Set[Any]] = {}

    def register(self, task_id: str, connection: Any) -> None:
        self._observers.setdefault(task_id, set()).add(connection)
        log_event(
            "websocket",
            "observer_registered",
            task_id=task_id,
            details={"peer_count": len(self._observers[task_id])},
        )

    def unregister(self, task_id: str, connection: Any) -> None:
        connections = self._observers.get(task_id)
        if connections is None:
            return
        connections.discard(connection)
        remaining = len(connections)
        if not connections:
            self._observers.pop(task_id, None)
        log_event(
            "websocket",
            "observer_unregistered",
            task_id=task_id,
            details={"remaining_peers": remaining},
        )

    def observer_count(self, task_id: str) -> int:
        return len(self._observers.get(task_id, ()))

    def has_task(self, task_id: str) -> bool:
        return task_id in self._observers

    async def broadcast(self, task_id: str, message: Dict[str, Any]) -> int:
        """Send ``message`` to every open observer of ``task_id``; returns deliveries."""
        connections = self._observers.get(task_id)
        if not connections:
            return 0

        payload = json.dumps(message, default=str)
        message_type = message.get("type", "unknown")
        delivered = 0
        skipped = 0
        failed = 0
        with timed_step(
            "websocket",
            "broadcast",
            task_id=task_id,
            details={"peer_count": len(connections), "message_type": message_type, "payload_bytes": len(payload)},
        ):
            for connection in list(connections):
                if not _is_open(connection):
                    skipped += 1
                    continue
                try:
                    await connection.send_text(payload)
                    delivered += 1
                except Exception as exc:
                    failed += 1
                    log_event(
                        "websocket",
                        "broadcast_send_failed",
                        task_id=task_id,
                        status="warning",
                        details={"message_type": message_type, "error": f"{type(exc).__name__}: {exc}"},
                    )
        if skipped or failed:
            log_event(
                "websocket",
                "broadcast_partial",
                task_id=task_id,
                status="warning",
                details={"skipped_closed": skipped, "failed": failed, "message_type": message_type},
            )
        return delivered

    async def _send(self, task_id: str, kind: ObserverMessageType, payload: Dict[str, Any]) -> int:
        return await self.broadcast(task_id, {"type": kind, "payload": payload})

    async def broadcast_status(self, task_id: str, status: TaskStatus, failure_reason: str | None = None) -> int:
        payload: Dict[str, Any] = {"status": status}
        if failure_reason:
            payload["failureReason"] = failure_reason
        return await self._send(task_id, "status", payload)

    async def broadcast_transcript(self, task_id: str, event: TranscriptEventRecord) -> int:
        return await self._send(task_id, "transcript", event.model_dump(mode="json", by_alias=True))

    async def broadcast_outcome(self, task_id: str, outcome: OutcomeRecord) -> int:
        return await self._send(task_id, "outcome", outcome.model_dump(mode="json", by_alias=True))
