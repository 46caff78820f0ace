from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event, timed_step
from onbehalf.models.schemas import ExtractedFields
from onbehalf.services.llm_client import LLMClient
from onbehalf.services.prompt_builder import build_extraction_messages


DEFAULT_SUMMARY = "Call completed; review transcript for details."


@dataclass
class ExtractionResult:
    summary_text: str
    fields: ExtractedFields


def parse_extracted_fields(raw: str) -> ExtractedFields:
    """Parse model output; anything malformed becomes a forced review."""
    try:
        data: Any = json.loads(raw)
    except (TypeError, ValueError):
        return ExtractedFields(confidence=0.0, needs_user_action=True, needs_user_action_reason="Parse failed")
    if not isinstance(data, dict):
        return ExtractedFields(confidence=0.0, needs_user_action=True, needs_user_action_reason="Parse failed")
    try:
        return ExtractedFields.model_validate(data)
    except ValidationError as exc:
        invalid = sorted({str(error["loc"][0]) for error in exc.errors() if error.get("loc")})
        log_event(
            "extraction",
            "fields_invalid",
            status="warning",
            details={"fields": invalid, "error": str(exc)[:300]},
        )

    # Keep whatever validated; the bad fields are dropped and the result is forced into review.
    kept = {key: value for key, value in data.items() if key not in invalid}
    kept["needs_user_action"] = True
    kept["needs_user_action_reason"] = f"Invalid fields: {', '.join(invalid)}" if invalid else "Invalid fields"
    try:
        return ExtractedFields.model_validate(kept)
    except ValidationError:
        return ExtractedFields(confidence=0.0, needs_user_action=True, needs_user_action_reason="Invalid fields")


def build_summary(fields: ExtractedFields) -> str:
    parts = [fields.reservation_name, fields.datetime_start, fields.confirmation_number]
    return " · ".join(part for part in parts if part) or DEFAULT_SUMMARY


def local_now(timezone_name: Optional[str] = None) -> datetime:
    return datetime.now(ZoneInfo(timezone_name or settings.TIMEZONE))


class OutcomeExtractor:
    def __init__(self, llm: Optional[LLMClient] = None) -> None:
        self._llm = llm or LLMClient()

    @property
    def configured(self) -> bool:
        return self._llm.configured

    async def extract(
        self,
        transcript_text: str,
        *,
        task_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ExtractionResult:
        timezone_name = settings.TIMEZONE
        now = now or local_now(timezone_name)
        with timed_step("extraction", "extract_outcome", task_id=task_id, details={"transcript_chars": len(transcript_text)}):
            raw = await self._llm.complete_json(build_extraction_messages(transcript_text, now, timezone_name))
            fields = parse_extracted_fields(raw)
        return ExtractionResult(summary_text=build_summary(fields), fields=fields)
