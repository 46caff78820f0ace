from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

import httpx
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event, timed_step
from onbehalf.models.schemas import ConnectedAccount, ExtractedFields, OutcomeRecord, TaskRecord
from onbehalf.services.storage import DataStore


GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/gmail.send",
]


def parse_start(value: Optional[str], timezone_name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(timezone_name))
    return parsed


def build_event_description(summary_text: Optional[str], fields: ExtractedFields) -> str:
    lines = [
        summary_text,
        fields.confirmation_number and f"Confirmation: {fields.confirmation_number}",
        fields.address and f"Address: {fields.address}",
        fields.special_notes and f"Notes: {fields.special_notes}",
    ]
    return "\n".join(line for line in lines if line)


def build_calendar_event(
    context_name: str,
    outcome: OutcomeRecord,
    *,
    timezone_name: Optional[str] = None,
    default_duration_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    timezone_name = timezone_name or settings.TIMEZONE
    duration_default = default_duration_minutes or settings.CALENDAR_DEFAULT_DURATION_MINUTES
    fields = ExtractedFields.model_validate(outcome.extracted_fields or {})

    start = parse_start(fields.datetime_start, timezone_name)
    minutes = duration_default
    if start is None:
        start = now or datetime.now(ZoneInfo(timezone_name))
    elif fields.duration_minutes is not None:
        minutes = fields.duration_minutes
    end = start + timedelta(minutes=minutes)

    return {
        "summary": f"Reservation: {context_name}",
        "description": build_event_description(outcome.summary_text, fields),
        "start": {"dateTime": start.isoformat(), "timeZone": timezone_name},
        "end": {"dateTime": end.isoformat(), "timeZone": timezone_name},
    }


def build_summary_email(
    task: TaskRecord,
    outcome: OutcomeRecord,
    transcript_text: str,
    *,
    calendar_created: bool,
) -> tuple[str, str]:
    fields = ExtractedFields.model_validate(outcome.extracted_fields or {})
    subject = f"Call summary: {task.context_name}"

    field_lines: List[str] = []
    labelled = [
        ("Reservation name", fields.reservation_name),
        ("Business/person", fields.business_or_person),
        ("Date/time", fields.datetime_start),
        ("Duration (minutes)", fields.duration_minutes),
        ("Party size", fields.party_size),
        ("Confirmation", fields.confirmation_number),
        ("Address", fields.address),
        ("Notes", fields.special_notes),
    ]
    for label, value in labelled:
        if value not in (None, ""):
            field_lines.append(f"- {label}: {value}")

    sections = [
        f"Recipient: {task.context_name} ({task.context_phone})",
        f"Notes: {task.context_notes}" if task.context_notes else None,
        f"Instruction: {task.instruction_text}",
        "",
        f"Summary: {outcome.summary_text or ''}",
    ]
    if field_lines:
        sections.extend(["", "Details:", *field_lines])
    if calendar_created:
        sections.extend(["", "A calendar event was created automatically."])
    if outcome.needs_user_action:
        reason = fields.needs_user_action_reason or "low confidence"
        sections.extend(["", f"Needs your review: {reason}"])
    sections.extend(["", "Transcript:", transcript_text or "(empty)"])
    return subject, "\n".join(line for line in sections if line is not None)


class GoogleWorkspaceClient:
    """Calendar inserts and Gmail sends on behalf of the connected account.

    The google client refreshes an expired access token on its own; when a
    ``store`` is given the refreshed token is written back to the account row.
    """

    def __init__(self, store: Optional[DataStore] = None) -> None:
        self._store = store

    def has_credentials(self, account: Optional[ConnectedAccount]) -> bool:
        return bool(account and account.has_google_tokens() and settings.google_configured())

    def _credentials(self, account: ConnectedAccount) -> Credentials:
        return Credentials(
            token=account.access_token,
            refresh_token=account.refresh_token,
            token_uri=settings.GOOGLE_TOKEN_URI,
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            scopes=GOOGLE_SCOPES,
        )

    def _persist_refreshed_token(self, account: ConnectedAccount, credentials: Credentials) -> None:
        if self._store is None or not credentials.token or credentials.token == account.access_token:
            return
        self._store.upsert_account(
            account.email,
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            token_expiry=credentials.expiry,
        )
        log_event("google", "token_refreshed", details={"email": account.email})

    async def create_calendar_event(self, account: ConnectedAccount, event: Dict[str, Any]) -> str:
        credentials = self._credentials(account)

        def _call() -> str:
            response = (
                build("calendar", "v3", credentials=credentials, cache_discovery=False)
                .events()
                .insert(calendarId=settings.GOOGLE_CALENDAR_ID, body=event, fields="id,htmlLink")
                .execute()
            )
            return str(response.get("id") or "")

        with timed_step("google", "create_calendar_event", details={"summary": event.get("summary")}):
            event_id = await asyncio.to_thread(_call)
        self._persist_refreshed_token(account, credentials)
        if not event_id:
            raise RuntimeError("calendar insert returned no event id")
        return event_id

    async def send_email(self, account: ConnectedAccount, to_email: str, subject: str, body: str) -> None:
        credentials = self._credentials(account)

        def _call() -> None:
            message = EmailMessage()
            message["To"] = to_email
            message["Subject"] = subject
            message.set_content(body)
            encoded = base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")
            (
                build("gmail", "v1", credentials=credentials, cache_discovery=False)
                .users()
                .messages()
                .send(userId="me", body={"raw": encoded})
                .execute()
            )

        with timed_step("google", "send_email", details={"subject": subject}):
            await asyncio.to_thread(_call)
        self._persist_refreshed_token(account, credentials)


class GoogleAuthError(RuntimeError):
    pass


class GoogleOAuthClient:
    """Authorization-code flow that connects the Google account used for follow-ups."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(settings.GOOGLE_CLIENT_ID)

    def authorization_url(self) -> str:
        query = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "redirect_uri": settings.GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{settings.GOOGLE_AUTH_URI}?{urlencode(query)}"

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Trade an authorization code for tokens and look up the account email."""
        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            with timed_step("google", "exchange_code"):
                token_resp = await client.post(
                    settings.GOOGLE_TOKEN_URI,
                    data={
                        "code": code,
                        "client_id": settings.GOOGLE_CLIENT_ID,
                        "client_secret": settings.GOOGLE_CLIENT_SECRET,
                        "redirect_uri": settings.GOOGLE_REDIRECT_URI,
                        "grant_type": "authorization_code",
                    },
                )
            if token_resp.status_code >= 400:
                raise GoogleAuthError(f"token exchange failed: {token_resp.status_code} {token_resp.text[:300]}")
            tokens = token_resp.json()
            access_token = tokens.get("access_token")
            if not access_token:
                raise GoogleAuthError("token exchange returned no access token")

            with timed_step("google", "userinfo"):
                user_resp = await client.get(
                    settings.GOOGLE_USERINFO_URI,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            if user_resp.status_code >= 400:
                raise GoogleAuthError(f"userinfo failed: {user_resp.status_code}")
            email = (user_resp.json() or {}).get("email")
            if not email:
                raise GoogleAuthError("userinfo returned no email")

        expires_in = int(tokens.get("expires_in") or 3600)
        return {
            "email": email,
            "access_token": access_token,
            "refresh_token": tokens.get("refresh_token"),
            "token_expiry": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        }
