from __future__ import annotations

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Request, Response, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event, timed_step
from onbehalf.services.media_relay import MediaRelaySession, OutcomeRunner, SpeechConnector
from onbehalf.services.storage import DataStore
from onbehalf.services.task_state import CALL_ACTIVE, TELEPHONY_FAILURE_STATUSES, apply_transition
from onbehalf.services.twilio_client import build_stream_twiml
from onbehalf.services.ws_manager import ConnectionManager


EMPTY_TWIML = "<Response></Response>"


def telephony_readiness() -> Dict[str, Any]:
    has_client = bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN)
    has_from = bool(settings.TWILIO_FROM_NUMBER)
    has_base_url = bool(settings.PUBLIC_BASE_URL)
    configured = has_client and has_from and has_base_url
    missing = [
        message
        for ok, message in (
            (has_client, "Set TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN"),
            (has_from, "Set TWILIO_FROM_NUMBER to your Twilio voice number"),
            (has_base_url, "Set PUBLIC_BASE_URL to the public https host of this server"),
        )
        if not ok
    ]
    return {
        "configured": configured,
        "twilio": has_client and has_from,
        "publicBaseUrl": has_base_url,
        "message": "Twilio is configured." if configured else ". ".join(missing),
    }


def get_routes(
    store: DataStore,
    hub: ConnectionManager,
    pipeline: OutcomeRunner,
    speech_connector: Optional[SpeechConnector] = None,
):
    router = APIRouter(tags=["twilio"])

    @router.api_route("/api/twiml/stream", methods=["GET", "POST"])
    async def twiml_stream(request: Request):
        task_id = (request.query_params.get("taskId") or "").strip()
        if not task_id:
            log_event("twilio", "twiml_missing_task_id", status="warning")
            return Response(content="taskId required", status_code=400, media_type="text/plain")
        with timed_step("twilio", "twiml_stream", task_id=task_id):
            return Response(content=build_stream_twiml(task_id), media_type="text/xml")

    async def _fail_task(task_id: str, call_status: str) -> None:
        await apply_transition(
            store,
            hub,
            task_id,
            "FAILED",
            expected=CALL_ACTIVE,
            failure_reason=call_status,
        )

    @router.post("/api/twilio/status")
    async def status_callback(request: Request, background_tasks: BackgroundTasks):
        form = await request.form()
        task_id = request.query_params.get("taskId") or form.get("taskId")
        call_status = form.get("CallStatus")
        log_event(
            "twilio",
            "status_callback",
            task_id=task_id,
            details={"call_sid": form.get("CallSid"), "call_status": call_status},
        )
        if task_id and call_status in TELEPHONY_FAILURE_STATUSES:
            background_tasks.add_task(_fail_task, str(task_id), str(call_status))
        return Response(content=EMPTY_TWIML, media_type="text/xml")

    @router.get("/api/twilio/status")
    async def twilio_status():
        return telephony_readiness()

    @router.websocket("/ws/twilio-media")
    async def twilio_media(websocket: WebSocket):
        await websocket.accept()

        async def send_to_twilio(message: Dict[str, Any]) -> None:
            if websocket.application_state == WebSocketState.CONNECTED:
                await websocket.send_text(json.dumps(message))

        async def close_twilio() -> None:
            if websocket.application_state == WebSocketState.CONNECTED:
                await websocket.close()

        session = MediaRelaySession(
            store,
            hub,
            pipeline,
            send_to_telephony=send_to_twilio,
            close_telephony=close_twilio,
            speech_connector=speech_connector,
        )
        events_received = 0
        with timed_step("twilio", "media_stream"):
            try:
                while not session.stopped:
                    raw = await websocket.receive_text()
                    events_received += 1
                    await session.handle_telephony_text(raw)
            except WebSocketDisconnect:
                log_event(
                    "twilio",
                    "media_stream_disconnect",
                    task_id=session.task_id,
                    details={"events_received": events_received},
                )
            finally:
                await session.handle_telephony_closed()

    return router
