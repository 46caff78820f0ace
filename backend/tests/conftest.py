from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient


# Ensure `backend` package import works regardless of current working directory.
ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

# The module-level app in onbehalf.main opens its store at import time.
os.environ.setdefault("ONBEHALF_DATA_ROOT", tempfile.mkdtemp(prefix="onbehalf-tests-"))

from onbehalf.core.config import settings
from onbehalf.main import create_app
from onbehalf.models.schemas import TaskRecord
from onbehalf.services.outcome_runner import OutcomePipeline
from onbehalf.services.storage import DataStore
from onbehalf.services.ws_manager import ConnectionManager
from tests.fakes.fake_clients import (
    FakeExtractor,
    FakeGoogleWorkspace,
    FakeSpeechConnector,
    FakeTwilioClient,
)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_root = tmp_path / "data"
    monkeypatch.setattr(settings, "DATA_ROOT", data_root)
    monkeypatch.setattr(settings, "SQLITE_PATH", data_root / "onbehalf.db")
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")
    monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", "")
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "")
    monkeypatch.setattr(settings, "TWILIO_FROM_NUMBER", "")
    monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "")
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "")
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_SECRET", "")
    monkeypatch.setattr(settings, "GOOGLE_REDIRECT_URI", "http://testserver/auth/google/callback")
    monkeypatch.setattr(settings, "WEB_ORIGIN", "http://localhost:3000")
    monkeypatch.setattr(settings, "DEMO_TRANSCRIPT_ENABLED", False)
    monkeypatch.setattr(settings, "REALTIME_CONFIGURE_TIMEOUT_SECONDS", 0.0)
    monkeypatch.setattr(settings, "OUTCOME_CONFIDENCE_THRESHOLD", 0.7)
    monkeypatch.setattr(settings, "TIMEZONE", "America/New_York")
    return data_root


@pytest.fixture()
def store(isolated_settings: Path):
    data_store = DataStore(sqlite_path=isolated_settings / "onbehalf.db")
    yield data_store
    data_store.close()


@pytest.fixture()
def hub() -> ConnectionManager:
    return ConnectionManager()


@pytest.fixture()
def fake_twilio() -> FakeTwilioClient:
    return FakeTwilioClient(configured=False)


@pytest.fixture()
def fake_extractor() -> FakeExtractor:
    return FakeExtractor(
        {
            "reservation_name": "Rivera",
            "business_or_person": "Luigi's",
            "datetime_start": "2026-10-20T19:00:00-04:00",
            "party_size": 2,
            "confirmation_number": "AB12",
            "confidence": 0.9,
            "needs_user_action": False,
        }
    )


@pytest.fixture()
def fake_google() -> FakeGoogleWorkspace:
    return FakeGoogleWorkspace()


@pytest.fixture()
def speech_connector() -> FakeSpeechConnector:
    return FakeSpeechConnector()


@pytest.fixture()
def pipeline(store: DataStore, hub: ConnectionManager, fake_extractor: FakeExtractor, fake_google: FakeGoogleWorkspace):
    return OutcomePipeline(store, hub, extractor=fake_extractor, google=fake_google)


@pytest.fixture()
def make_task(store: DataStore) -> Callable[..., TaskRecord]:
    def _make(status: str = "DRAFT", **overrides: str) -> TaskRecord:
        fields = {
            "context_name": "Luigi's Trattoria",
            "context_phone": "+15550001111",
            "instruction_text": "Book a table for two tomorrow at 7pm under Rivera.",
            "context_notes": "Ask for a window seat",
        }
        fields.update(overrides)
        task = store.create_task(**fields)
        if status != "DRAFT":
            task = store.update_task(task.id, status=status)
        return task

    return _make


@pytest.fixture()
def app(
    isolated_settings: Path,
    store: DataStore,
    hub: ConnectionManager,
    pipeline: OutcomePipeline,
    fake_twilio: FakeTwilioClient,
    speech_connector: FakeSpeechConnector,
):
    return create_app(
        store=store,
        hub=hub,
        pipeline=pipeline,
        twilio_client=fake_twilio,
        speech_connector=speech_connector,
        data_root=isolated_settings,
    )


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client
