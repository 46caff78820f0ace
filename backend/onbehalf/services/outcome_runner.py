from __future__ import annotations

from typing import Any, Dict, Optional

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event, timed_step
from onbehalf.models.schemas import ExtractedFields, OutcomeRecord, TaskRecord
from onbehalf.services.google_workspace import (
    GoogleWorkspaceClient,
    build_calendar_event,
    build_summary_email,
)
from onbehalf.services.outcome_extraction import OutcomeExtractor
from onbehalf.services.storage import DataStore, OutcomeExistsError
from onbehalf.services.task_state import apply_transition
from onbehalf.services.ws_manager import ConnectionManager


SKIPPED_SUMMARY = "Call completed; extraction skipped (no API key)."
NO_TRANSCRIPT_SUMMARY = "No transcript."
FAILED_SUMMARY = "Extraction failed; review transcript."


def format_transcript(events) -> str:
    return "\n".join(f"[{event.speaker}] {event.text}" for event in events)


def needs_review(fields: ExtractedFields, threshold: Optional[float] = None) -> bool:
    limit = settings.OUTCOME_CONFIDENCE_THRESHOLD if threshold is None else threshold
    return bool(fields.needs_user_action) or fields.confidence < limit


class OutcomePipeline:
    """Turns a finished call into exactly one outcome plus optional follow-ups."""

    def __init__(
        self,
        store: DataStore,
        hub: ConnectionManager,
        *,
        extractor: Optional[OutcomeExtractor] = None,
        google: Optional[GoogleWorkspaceClient] = None,
    ) -> None:
        self._store = store
        self._hub = hub
        self._extractor = extractor or OutcomeExtractor()
        self._google = google or GoogleWorkspaceClient(store)

    async def run(self, task_id: str) -> Optional[OutcomeRecord]:
        """Never raises; failures degrade to a needs-review outcome or a log line."""
        try:
            with timed_step("outcome", "run_pipeline", task_id=task_id):
                return await self._run(task_id)
        except Exception as exc:
            log_event(
                "outcome",
                "pipeline_error",
                task_id=task_id,
                status="error",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            return None

    async def _run(self, task_id: str) -> Optional[OutcomeRecord]:
        existing = self._store.get_outcome_for_task(task_id)
        if existing is not None:
            log_event("outcome", "outcome_exists", task_id=task_id, status="warning", details={"outcome_id": existing.id})
            return existing

        if not self._extractor.configured:
            return await self._finish_for_review(task_id, SKIPPED_SUMMARY, {"needs_user_action": True})

        events = self._store.list_transcript_events(task_id)
        transcript_text = format_transcript(events)
        if not transcript_text.strip():
            return await self._finish_for_review(task_id, NO_TRANSCRIPT_SUMMARY, {"needs_user_action": True})

        try:
            result = await self._extractor.extract(transcript_text, task_id=task_id)
            summary_text = result.summary_text
            fields = result.fields
            review = needs_review(fields)
            extracted: Dict[str, Any] = fields.model_dump()
        except Exception as exc:
            log_event(
                "outcome",
                "extraction_failed",
                task_id=task_id,
                status="error",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            summary_text = FAILED_SUMMARY
            fields = ExtractedFields(needs_user_action=True, needs_user_action_reason="Extraction error")
            review = True
            extracted = {"needs_user_action": True, "needs_user_action_reason": "Extraction error"}

        outcome = await self._commit(task_id, summary_text, extracted, review)
        if outcome is None:
            return None

        task = self._store.get_task(task_id)
        account = self._store.get_first_account()
        calendar_created = False
        if task is not None and not review and fields.datetime_start:
            calendar_created = await self._auto_calendar(task, outcome, account)
        if task is not None:
            await self._send_summary_email(task, outcome, transcript_text, account, calendar_created)
        return self._store.get_outcome_for_task(task_id) or outcome

    async def _finish_for_review(self, task_id: str, summary_text: str, extracted: Dict[str, Any]) -> Optional[OutcomeRecord]:
        return await self._commit(task_id, summary_text, extracted, True)

    async def _commit(
        self,
        task_id: str,
        summary_text: str,
        extracted: Dict[str, Any],
        review: bool,
    ) -> Optional[OutcomeRecord]:
        try:
            outcome = self._store.create_outcome(
                task_id,
                summary_text=summary_text,
                extracted_fields=extracted,
                needs_user_action=review,
            )
        except OutcomeExistsError:
            log_event("outcome", "outcome_exists", task_id=task_id, status="warning")
            return self._store.get_outcome_for_task(task_id)

        await apply_transition(
            self._store,
            self._hub,
            task_id,
            "NEEDS_USER_ACTION" if review else "COMPLETED",
            outcome_id=outcome.id,
        )
        log_event(
            "outcome",
            "outcome_saved",
            task_id=task_id,
            details={"outcome_id": outcome.id, "needs_user_action": review, "summary": summary_text},
        )
        try:
            await self._hub.broadcast_outcome(task_id, outcome)
        except Exception as exc:
            log_event(
                "outcome",
                "outcome_broadcast_failed",
                task_id=task_id,
                status="warning",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
        return outcome

    def calendar_ready(self, account) -> bool:
        return self._google.has_credentials(account)

    async def save_to_calendar(self, task: TaskRecord, outcome: OutcomeRecord, account) -> str:
        """Create the event unless one exists; returns the stored event id."""
        if outcome.calendar_event_id:
            return outcome.calendar_event_id
        event_id = await self._google.create_calendar_event(account, build_calendar_event(task.context_name, outcome))
        if not self._store.set_outcome_calendar_event(outcome.id, event_id):
            current = self._store.get_outcome_for_task(task.id)
            if current is not None and current.calendar_event_id:
                return current.calendar_event_id
        return event_id

    async def _auto_calendar(self, task: TaskRecord, outcome: OutcomeRecord, account) -> bool:
        if not self._google.has_credentials(account):
            log_event("outcome", "calendar_skipped", task_id=task.id, details={"reason": "google_not_connected"})
            return False
        try:
            event_id = await self.save_to_calendar(task, outcome, account)
        except Exception as exc:
            log_event(
                "outcome",
                "calendar_create_failed",
                task_id=task.id,
                status="error",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            return False
        log_event("outcome", "calendar_created", task_id=task.id, details={"calendar_event_id": event_id})
        return True

    async def _send_summary_email(
        self,
        task: TaskRecord,
        outcome: OutcomeRecord,
        transcript_text: str,
        account,
        calendar_created: bool,
    ) -> None:
        if not self._google.has_credentials(account) or not account.email:
            return
        subject, body = build_summary_email(task, outcome, transcript_text, calendar_created=calendar_created)
        try:
            await self._google.send_email(account, account.email, subject, body)
        except Exception as exc:
            log_event(
                "outcome",
                "email_send_failed",
                task_id=task.id,
                status="error",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
