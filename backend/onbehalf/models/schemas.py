from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


TaskStatus = Literal["DRAFT", "CALLING", "IN_PROGRESS", "COMPLETED", "FAILED", "NEEDS_USER_ACTION"]
TranscriptSpeaker = Literal["ASSISTANT", "OTHER_PARTY", "SYSTEM"]
ObserverMessageType = Literal["status", "transcript", "outcome"]


class TaskCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    context_name: str = Field(alias="contextName", min_length=1)
    context_phone: str = Field(alias="contextPhone", min_length=1)
    context_notes: Optional[str] = Field(default=None, alias="contextNotes")
    instruction_text: str = Field(alias="instructionText", min_length=1)

    @field_validator("context_name", "context_phone", "instruction_text")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class ExtractedFields(BaseModel):
    """Structured reservation details pulled out of a call transcript."""

    model_config = ConfigDict(extra="ignore")

    reservation_name: Optional[str] = None
    business_or_person: Optional[str] = None
    datetime_start: Optional[str] = None
    duration_minutes: Optional[int] = None
    party_size: Optional[int] = None
    confirmation_number: Optional[str] = None
    address: Optional[str] = None
    special_notes: Optional[str] = None
    confidence: float = 0.0
    needs_user_action: bool = False
    needs_user_action_reason: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        if value is None:
            return 0.0
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("confidence must be a number") from exc
        return min(1.0, max(0.0, number))

    @field_validator("needs_user_action", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return bool(value)


class OutcomeRecord(BaseModel):
    id: str
    task_id: str = Field(serialization_alias="taskId")
    summary_text: Optional[str] = Field(default=None, serialization_alias="summaryText")
    extracted_fields: Dict[str, Any] = Field(default_factory=dict, serialization_alias="extractedFields")
    calendar_event_id: Optional[str] = Field(default=None, serialization_alias="calendarEventId")
    needs_user_action: bool = Field(default=False, serialization_alias="needsUserAction")
    created_at: datetime = Field(serialization_alias="createdAt")


class TranscriptEventRecord(BaseModel):
    id: str
    task_id: str = Field(serialization_alias="taskId")
    ts: datetime
    speaker: TranscriptSpeaker
    text: str


class TaskRecord(BaseModel):
    id: str
    created_at: datetime = Field(serialization_alias="createdAt")
    context_name: str = Field(serialization_alias="contextName")
    context_phone: str = Field(serialization_alias="contextPhone")
    context_notes: Optional[str] = Field(default=None, serialization_alias="contextNotes")
    instruction_text: str = Field(serialization_alias="instructionText")
    status: TaskStatus
    call_sid: Optional[str] = Field(default=None, serialization_alias="twilioCallSid")
    outcome_id: Optional[str] = Field(default=None, serialization_alias="outcomeId")


class ConnectedAccount(BaseModel):
    id: str
    email: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def has_google_tokens(self) -> bool:
        return bool(self.access_token and self.refresh_token)


class ObserverMessage(BaseModel):
    type: ObserverMessageType
    payload: Dict[str, Any]


class ActionResponse(BaseModel):
    ok: bool
    message: Optional[str] = None
    configured: Optional[bool] = None
    callSid: Optional[str] = None
    calendarEventId: Optional[str] = None
