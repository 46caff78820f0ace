from __future__ import annotations

import asyncio

import pytest

from onbehalf.services.ws_manager import ConnectionManager
from tests.fakes.fake_clients import FakeObserver


pytestmark = pytest.mark.unit


def test_broadcast_reaches_every_observer_of_the_task() -> None:
    hub = ConnectionManager()
    first, second, other = FakeObserver(), FakeObserver(), FakeObserver()
    hub.register("task-1", first)
    hub.register("task-1", second)
    hub.register("task-2", other)

    delivered = asyncio.run(hub.broadcast_status("task-1", "CALLING"))

    assert delivered == 2
    assert first.messages() == [{"type": "status", "payload": {"status": "CALLING"}}]
    assert second.messages() == first.messages()
    assert other.sent == []


def test_broadcast_without_observers_is_a_noop() -> None:
    hub = ConnectionManager()
    assert asyncio.run(hub.broadcast("nobody", {"type": "status", "payload": {}})) == 0
    assert not hub.has_task("nobody")


def test_closed_observers_are_skipped_but_stay_registered() -> None:
    hub = ConnectionManager()
    closed, live = FakeObserver(connected=False), FakeObserver()
    hub.register("task-1", closed)
    hub.register("task-1", live)

    delivered = asyncio.run(hub.broadcast_status("task-1", "IN_PROGRESS"))

    assert delivered == 1
    assert closed.sent == []
    assert hub.observer_count("task-1") == 2


def test_failed_send_does_not_block_other_observers() -> None:
    hub = ConnectionManager()
    broken, live = FakeObserver(fail=True), FakeObserver()
    hub.register("task-1", broken)
    hub.register("task-1", live)

    delivered = asyncio.run(hub.broadcast_status("task-1", "COMPLETED"))

    assert delivered == 1
    assert live.messages()[0]["payload"]["status"] == "COMPLETED"


def test_unregister_drops_empty_task_entries() -> None:
    hub = ConnectionManager()
    observer = FakeObserver()
    hub.register("task-1", observer)
    hub.unregister("task-1", observer)
    hub.unregister("task-1", observer)

    assert not hub.has_task("task-1")
    assert hub.observer_count("task-1") == 0
