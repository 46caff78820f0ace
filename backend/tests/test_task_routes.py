from __future__ import annotations

import pytest

from tests.fakes.fake_clients import FakeObserver


def _create_task(client, **overrides) -> dict:
    payload = {
        "contextName": "Luigi's Trattoria",
        "contextPhone": "+15550001111",
        "contextNotes": "Ask for a window seat",
        "instructionText": "Book a table for two tomorrow at 7pm under Rivera.",
    }
    payload.update(overrides)
    response = client.post("/api/tasks", json=payload)
    assert response.status_code == 200
    return response.json()


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/api/health").json() == {"ok": True}


def test_create_and_fetch_task(client) -> None:
    created = _create_task(client)

    assert created["status"] == "DRAFT"
    assert created["contextName"] == "Luigi's Trattoria"
    assert created["twilioCallSid"] is None

    detail = client.get(f"/api/tasks/{created['id']}").json()
    assert detail["id"] == created["id"]
    assert detail["transcriptEvents"] == []
    assert detail["outcome"] is None

    listed = client.get("/api/tasks").json()
    assert [task["id"] for task in listed] == [created["id"]]


def test_create_task_requires_fields(client) -> None:
    response = client.post("/api/tasks", json={"contextName": "x", "contextPhone": "  "})
    assert response.status_code == 422


def test_unknown_task_is_404(client) -> None:
    assert client.get("/api/tasks/missing").status_code == 404
    assert client.post("/api/tasks/missing/start-call").status_code == 404


def test_start_call_without_telephony_moves_to_calling(client, hub, store, fake_twilio) -> None:
    task_id = _create_task(client)["id"]

    response = client.post(f"/api/tasks/{task_id}/start-call")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["configured"] is False
    assert "Twilio not configured" in body["message"]
    assert store.get_task(task_id).status == "CALLING"
    assert fake_twilio.calls == []


@pytest.mark.parametrize("status", ["CALLING", "IN_PROGRESS", "COMPLETED"])
def test_start_call_rejected_outside_idle_states(client, store, make_task, status) -> None:
    task = make_task(status)

    response = client.post(f"/api/tasks/{task.id}/start-call")

    assert response.status_code == 409
    assert store.get_task(task.id).status == status


def test_start_call_dials_when_configured(client, store, fake_twilio) -> None:
    fake_twilio.configured = True
    task_id = _create_task(client)["id"]

    body = client.post(f"/api/tasks/{task_id}/start-call").json()

    assert body == {"ok": True, "configured": True, "callSid": f"CA_fake_{task_id}"}
    assert fake_twilio.calls == [{"to_phone": "+15550001111", "task_id": task_id}]
    task = store.get_task(task_id)
    assert task.status == "CALLING"
    assert task.call_sid == f"CA_fake_{task_id}"


def test_start_call_dial_failure_marks_failed(client, store, hub, fake_twilio) -> None:
    fake_twilio.configured = True
    fake_twilio.fail_with = RuntimeError("invalid number")
    task_id = _create_task(client)["id"]
    observer = FakeObserver()
    hub.register(task_id, observer)

    response = client.post(f"/api/tasks/{task_id}/start-call")

    assert response.status_code == 502
    assert store.get_task(task_id).status == "FAILED"
    statuses = [m["payload"] for m in observer.messages() if m["type"] == "status"]
    assert statuses == [{"status": "CALLING"}, {"status": "FAILED", "failureReason": "invalid number"}]


def test_retry_discards_previous_outcome(client, store, make_task) -> None:
    task = make_task("COMPLETED")
    outcome = store.create_outcome(task.id, summary_text="old", extracted_fields={}, needs_user_action=True)
    store.update_task(task.id, status="NEEDS_USER_ACTION", outcome_id=outcome.id, call_sid="CA_old")

    response = client.post(f"/api/tasks/{task.id}/start-call")

    assert response.status_code == 200
    refreshed = store.get_task(task.id)
    assert refreshed.status == "CALLING"
    assert refreshed.outcome_id is None
    assert refreshed.call_sid is None
    assert store.get_outcome_for_task(task.id) is None


def test_end_call_completes_and_runs_pipeline(client, store, make_task, fake_twilio) -> None:
    task = make_task("IN_PROGRESS")
    store.update_task(task.id, call_sid="CA_live")
    store.add_transcript_event(task.id, "OTHER_PARTY", "Booked under Rivera, confirmation AB12.")
    fake_twilio.configured = True

    response = client.post(f"/api/tasks/{task.id}/end-call")

    assert response.status_code == 200
    assert fake_twilio.ended == ["CA_live"]
    outcome = store.get_outcome_for_task(task.id)
    assert outcome is not None
    assert store.get_task(task.id).status == "COMPLETED"

    detail = client.get(f"/api/tasks/{task.id}").json()
    assert detail["outcome"]["id"] == outcome.id
    assert detail["transcriptEvents"][0]["speaker"] == "OTHER_PARTY"


def test_end_call_leaves_idle_task_alone(client, store, make_task) -> None:
    task = make_task()

    response = client.post(f"/api/tasks/{task.id}/end-call")

    assert response.status_code == 200
    assert store.get_task(task.id).status == "DRAFT"
    assert store.get_outcome_for_task(task.id) is None


def test_save_calendar_requires_outcome(client, make_task) -> None:
    task = make_task("COMPLETED")

    assert client.post(f"/api/tasks/{task.id}/save-calendar").status_code == 400


def test_save_calendar_requires_google_account(client, store, make_task) -> None:
    task = make_task("NEEDS_USER_ACTION")
    store.create_outcome(task.id, summary_text="x", extracted_fields={}, needs_user_action=True)

    response = client.post(f"/api/tasks/{task.id}/save-calendar")

    assert response.status_code == 400
    assert "Google" in response.json()["detail"]


def test_save_calendar_is_idempotent(client, store, make_task, fake_google) -> None:
    task = make_task("NEEDS_USER_ACTION")
    store.create_outcome(
        task.id,
        summary_text="Rivera",
        extracted_fields={"datetime_start": "2026-10-20T19:00:00-04:00"},
        needs_user_action=True,
    )
    store.upsert_account("me@example.com", access_token="t", refresh_token="r")

    first = client.post(f"/api/tasks/{task.id}/save-calendar").json()
    second = client.post(f"/api/tasks/{task.id}/save-calendar").json()

    assert first == {"ok": True, "calendarEventId": "evt_1"}
    assert second == first
    assert len(fake_google.events) == 1
    assert store.get_outcome_for_task(task.id).calendar_event_id == "evt_1"
