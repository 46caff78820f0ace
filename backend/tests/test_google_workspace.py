from __future__ import annotations

import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

from onbehalf.core.config import settings
from onbehalf.services import google_workspace
from onbehalf.models.schemas import ConnectedAccount, OutcomeRecord
from onbehalf.services.google_workspace import (
    GoogleWorkspaceClient,
    build_calendar_event,
    build_summary_email,
    parse_start,
)


def _outcome(**fields) -> OutcomeRecord:
    return OutcomeRecord(
        id="out-1",
        task_id="task-1",
        summary_text="Rivera · AB12",
        extracted_fields=fields,
        needs_user_action=False,
        created_at=datetime(2026, 10, 19, tzinfo=ZoneInfo("UTC")),
    )


def test_parse_start_localizes_naive_values() -> None:
    parsed = parse_start("2026-10-20T19:00:00", "America/New_York")

    assert parsed.isoformat() == "2026-10-20T19:00:00-04:00"
    assert parse_start("next tuesday", "America/New_York") is None
    assert parse_start(None, "America/New_York") is None


def test_calendar_event_uses_extracted_start_and_duration() -> None:
    event = build_calendar_event(
        "Luigi's Trattoria",
        _outcome(
            datetime_start="2026-10-20T19:00:00-04:00",
            duration_minutes=60,
            confirmation_number="AB12",
            address="12 Main St",
        ),
        timezone_name="America/New_York",
    )

    assert event["summary"] == "Reservation: Luigi's Trattoria"
    assert event["start"] == {"dateTime": "2026-10-20T19:00:00-04:00", "timeZone": "America/New_York"}
    assert event["end"]["dateTime"] == "2026-10-20T20:00:00-04:00"
    assert event["description"].splitlines() == ["Rivera · AB12", "Confirmation: AB12", "Address: 12 Main St"]


def test_calendar_event_defaults_to_now_and_ninety_minutes() -> None:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=ZoneInfo("America/New_York"))

    event = build_calendar_event(
        "Dr. Patel",
        _outcome(),
        timezone_name="America/New_York",
        default_duration_minutes=90,
        now=now,
    )

    assert event["start"]["dateTime"] == "2026-10-19T12:00:00-04:00"
    assert event["end"]["dateTime"] == "2026-10-19T13:30:00-04:00"


def test_summary_email_lists_fields_and_transcript(make_task) -> None:
    task = make_task()
    outcome = _outcome(reservation_name="Rivera", party_size=2)

    subject, body = build_summary_email(task, outcome, "[ASSISTANT] Hello", calendar_created=True)

    assert subject == "Call summary: Luigi's Trattoria"
    assert "- Reservation name: Rivera" in body
    assert "- Party size: 2" in body
    assert "A calendar event was created automatically." in body
    assert body.endswith("Transcript:\n[ASSISTANT] Hello")


def test_credentials_require_tokens_and_client_config(monkeypatch) -> None:
    client = GoogleWorkspaceClient()
    account = ConnectedAccount(id="a1", email="me@example.com", access_token="t", refresh_token="r")

    assert client.has_credentials(account) is False

    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "client")
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_SECRET", "secret")

    assert client.has_credentials(account) is True
    assert client.has_credentials(None) is False
    assert client.has_credentials(account.model_copy(update={"refresh_token": None})) is False


def test_calendar_event_keeps_an_extracted_zero_duration() -> None:
    event = build_calendar_event(
        "Luigi's Trattoria",
        _outcome(datetime_start="2026-02-04T20:00:00-05:00", duration_minutes=0),
        timezone_name="America/New_York",
        default_duration_minutes=90,
    )

    assert event["end"]["dateTime"] == "2026-02-04T20:00:00-05:00"


class _RefreshingService:
    """Stands in for a discovery client whose request refreshes the access token."""

    def __init__(self, credentials) -> None:
        self._credentials = credentials

    def events(self):
        return self

    def insert(self, **kwargs):
        return self

    def execute(self):
        self._credentials.token = "ya29.fresh"
        self._credentials.expiry = datetime(2026, 10, 19, 18, 0)
        return {"id": "evt_refreshed"}


def test_refreshed_access_token_is_written_back(store, monkeypatch) -> None:
    monkeypatch.setattr(
        google_workspace,
        "build",
        lambda name, version, credentials, cache_discovery: _RefreshingService(credentials),
    )
    account = store.upsert_account("me@example.com", access_token="ya29.stale", refresh_token="1//refresh")
    client = GoogleWorkspaceClient(store)

    event_id = asyncio.run(client.create_calendar_event(account, {"summary": "Reservation: Luigi's"}))

    stored = store.get_first_account()
    assert event_id == "evt_refreshed"
    assert stored.access_token == "ya29.fresh"
    assert stored.refresh_token == "1//refresh"
    assert stored.token_expiry.replace(tzinfo=None) == datetime(2026, 10, 19, 18, 0)
