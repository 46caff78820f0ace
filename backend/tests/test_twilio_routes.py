from __future__ import annotations

import pytest
from starlette.websockets import WebSocketDisconnect

from onbehalf.core.config import settings
from tests.fakes.fake_clients import FakeObserver


def test_twiml_stream_connects_media_socket(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "https://calls.example.com")

    for method in (client.get, client.post):
        response = method("/api/twiml/stream", params={"taskId": "task-123"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/xml")
        body = response.text
        assert body.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        assert "<Connect>" in body
        assert '<Stream url="wss://calls.example.com/ws/twilio-media">' in body
        assert '<Parameter name="taskId" value="task-123" />' in body


def test_twiml_stream_requires_task_id(client) -> None:
    response = client.post("/api/twiml/stream")

    assert response.status_code == 400
    assert response.text == "taskId required"


def test_status_callback_failure_marks_task_failed(client, store, hub, make_task) -> None:
    task = make_task("CALLING")
    observer = FakeObserver()
    hub.register(task.id, observer)

    response = client.post(
        f"/api/twilio/status?taskId={task.id}",
        data={"CallSid": "CA123", "CallStatus": "busy"},
    )

    assert response.status_code == 200
    assert response.text == "<Response></Response>"
    assert store.get_task(task.id).status == "FAILED"
    assert observer.messages() == [{"type": "status", "payload": {"status": "FAILED", "failureReason": "busy"}}]


@pytest.mark.parametrize("call_status", ["ringing", "in-progress", "completed"])
def test_status_callback_ignores_non_failure_statuses(client, store, make_task, call_status) -> None:
    task = make_task("CALLING")

    response = client.post(
        f"/api/twilio/status?taskId={task.id}",
        data={"CallSid": "CA123", "CallStatus": call_status},
    )

    assert response.status_code == 200
    assert store.get_task(task.id).status == "CALLING"


def test_status_callback_without_task_id_still_acknowledges(client) -> None:
    response = client.post("/api/twilio/status", data={"CallStatus": "failed"})

    assert response.status_code == 200
    assert response.text == "<Response></Response>"


def test_telephony_readiness_lists_missing_settings(client, monkeypatch) -> None:
    body = client.get("/api/twilio/status").json()

    assert body["configured"] is False
    assert "TWILIO_ACCOUNT_SID" in body["message"]
    assert "PUBLIC_BASE_URL" in body["message"]

    monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "secret")
    monkeypatch.setattr(settings, "TWILIO_FROM_NUMBER", "+15550009999")
    monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "https://calls.example.com")

    body = client.get("/api/twilio/status").json()
    assert body == {
        "configured": True,
        "twilio": True,
        "publicBaseUrl": True,
        "message": "Twilio is configured.",
    }


@pytest.mark.ws
@pytest.mark.integration
def test_media_stream_runs_a_call_to_its_outcome(client, store, make_task, speech_connector, monkeypatch) -> None:
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
    task = make_task("CALLING")
    store.add_transcript_event(task.id, "OTHER_PARTY", "Booked under Rivera, confirmation AB12.")

    with client.websocket_connect("/ws/twilio-media") as media_ws:
        media_ws.send_json({"event": "connected", "protocol": "Call", "version": "1.0.0"})
        media_ws.send_json(
            {
                "event": "start",
                "streamSid": "MZ123",
                "start": {
                    "streamSid": "MZ123",
                    "callSid": "CA123",
                    "customParameters": {"taskId": task.id},
                },
            }
        )
        media_ws.send_json({"event": "media", "streamSid": "MZ123", "media": {"track": "inbound", "payload": "AAAA"}})
        media_ws.send_json({"event": "stop", "streamSid": "MZ123"})
        with pytest.raises(WebSocketDisconnect):
            media_ws.receive_text()

    stored = store.get_task(task.id)
    assert stored.call_sid == "CA123"
    assert stored.status == "COMPLETED"
    outcome = store.get_outcome_for_task(task.id)
    assert outcome is not None
    assert outcome.summary_text.startswith("Rivera")

    model = speech_connector.last
    assert model.sent_types() == ["session.update", "input_audio_buffer.append"]
    assert model.closed
