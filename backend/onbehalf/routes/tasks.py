from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, BackgroundTasks, HTTPException

from onbehalf.core.telemetry import log_event, timed_step
from onbehalf.models.schemas import ActionResponse, TaskCreate, TaskRecord
from onbehalf.services.outcome_runner import OutcomePipeline
from onbehalf.services.storage import DataStore
from onbehalf.services.task_state import CALL_ACTIVE, CALL_STARTABLE, apply_transition, can_start_call
from onbehalf.services.twilio_client import TwilioClient
from onbehalf.services.ws_manager import ConnectionManager


def get_routes(
    store: DataStore,
    hub: ConnectionManager,
    pipeline: OutcomePipeline,
    twilio_client: TwilioClient,
):
    router = APIRouter(prefix="/api/tasks", tags=["tasks"])

    def _require_task(task_id: str) -> TaskRecord:
        task = store.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    def _task_payload(task: TaskRecord, *, with_transcript: bool = False) -> Dict[str, Any]:
        payload = task.model_dump(mode="json", by_alias=True)
        outcome = store.get_outcome_for_task(task.id)
        payload["outcome"] = outcome.model_dump(mode="json", by_alias=True) if outcome else None
        if with_transcript:
            payload["transcriptEvents"] = [
                event.model_dump(mode="json", by_alias=True)
                for event in store.list_transcript_events(task.id)
            ]
        return payload

    @router.post("")
    async def create_task(body: TaskCreate):
        with timed_step("api", "create_task"):
            task = store.create_task(
                context_name=body.context_name,
                context_phone=body.context_phone,
                context_notes=body.context_notes,
                instruction_text=body.instruction_text,
            )
            return task.model_dump(mode="json", by_alias=True)

    @router.get("")
    async def list_tasks() -> List[Dict[str, Any]]:
        with timed_step("api", "list_tasks"):
            return [_task_payload(task) for task in store.list_tasks()]

    @router.get("/{task_id}")
    async def get_task(task_id: str):
        with timed_step("api", "get_task", task_id=task_id):
            return _task_payload(_require_task(task_id), with_transcript=True)

    @router.post("/{task_id}/start-call", response_model=ActionResponse, response_model_exclude_none=True)
    async def start_call(task_id: str):
        with timed_step("api", "start_call", task_id=task_id):
            task = _require_task(task_id)
            if not can_start_call(task.status):
                raise HTTPException(status_code=409, detail=f"Task cannot start a call from {task.status}")

            if task.status != "DRAFT":
                # A retry starts a fresh attempt.
                store.delete_outcome_for_task(task_id)
                store.update_task(task_id, clear_call_sid=True, clear_outcome=True)

            updated = await apply_transition(store, hub, task_id, "CALLING", expected=CALL_STARTABLE)
            if updated is None:
                raise HTTPException(status_code=409, detail="Task state changed; retry")

            if not twilio_client.is_configured():
                log_event("api", "start_call_not_configured", task_id=task_id, status="warning")
                return ActionResponse(
                    ok=True,
                    configured=False,
                    message="Twilio not configured; set TWILIO_* and PUBLIC_BASE_URL",
                )

            try:
                call = await twilio_client.place_call(task.context_phone, task_id)
            except Exception as exc:
                reason = f"{type(exc).__name__}: {exc}"
                log_event("api", "start_call_failed", task_id=task_id, status="error", details={"error": reason})
                await apply_transition(store, hub, task_id, "FAILED", failure_reason=str(exc) or reason)
                raise HTTPException(status_code=502, detail="Failed to start call") from exc

            call_sid = str(call["sid"])
            store.update_task(task_id, call_sid=call_sid)
            return ActionResponse(ok=True, configured=True, callSid=call_sid)

    @router.post("/{task_id}/end-call", response_model=ActionResponse, response_model_exclude_none=True)
    async def end_call(task_id: str, background_tasks: BackgroundTasks):
        with timed_step("api", "end_call", task_id=task_id):
            task = _require_task(task_id)
            if task.call_sid and twilio_client.is_configured():
                try:
                    await twilio_client.end_call(task.call_sid)
                except Exception as exc:
                    log_event(
                        "api",
                        "end_call_hangup_failed",
                        task_id=task_id,
                        status="warning",
                        details={"call_sid": task.call_sid, "error": f"{type(exc).__name__}: {exc}"},
                    )

            if task.status not in CALL_ACTIVE:
                return ActionResponse(ok=True, message=f"Task already {task.status}")

            updated = await apply_transition(store, hub, task_id, "COMPLETED", expected=CALL_ACTIVE)
            if updated is not None:
                background_tasks.add_task(pipeline.run, task_id)
            return ActionResponse(ok=True, message="Call ended")

    @router.post("/{task_id}/save-calendar", response_model=ActionResponse, response_model_exclude_none=True)
    async def save_calendar(task_id: str):
        with timed_step("api", "save_calendar", task_id=task_id):
            task = _require_task(task_id)
            outcome = store.get_outcome_for_task(task_id)
            if outcome is None:
                raise HTTPException(status_code=400, detail="No outcome; complete a call first")
            if outcome.calendar_event_id:
                return ActionResponse(ok=True, calendarEventId=outcome.calendar_event_id)

            account = store.get_first_account()
            if not pipeline.calendar_ready(account):
                raise HTTPException(status_code=400, detail="Google not connected; sign in at /auth/google")

            try:
                event_id = await pipeline.save_to_calendar(task, outcome, account)
            except Exception as exc:
                log_event(
                    "api",
                    "save_calendar_failed",
                    task_id=task_id,
                    status="error",
                    details={"error": f"{type(exc).__name__}: {exc}"},
                )
                raise HTTPException(status_code=502, detail="Failed to save to calendar") from exc
            return ActionResponse(ok=True, calendarEventId=event_id)

    return router
