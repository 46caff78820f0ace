"""Task lifecycle vocabulary and the persist-then-broadcast transition helper.

    DRAFT -> CALLING -> IN_PROGRESS -> COMPLETED -> NEEDS_USER_ACTION
                 \\            \\
                  +-> FAILED <-+
    FAILED / NEEDS_USER_ACTION -> CALLING   (retry)

COMPLETED -> COMPLETED is the pipeline confirming a confident outcome.
CALLING -> COMPLETED covers a user hanging up before the media stream starts.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from onbehalf.core.telemetry import log_event
from onbehalf.models.schemas import TaskRecord, TaskStatus
from onbehalf.services.storage import DataStore
from onbehalf.services.ws_manager import ConnectionManager


TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    "DRAFT": frozenset({"CALLING"}),
    "CALLING": frozenset({"IN_PROGRESS", "FAILED", "COMPLETED"}),
    "IN_PROGRESS": frozenset({"COMPLETED", "FAILED"}),
    "COMPLETED": frozenset({"COMPLETED", "NEEDS_USER_ACTION"}),
    "FAILED": frozenset({"CALLING"}),
    "NEEDS_USER_ACTION": frozenset({"CALLING"}),
}

CALL_STARTABLE: FrozenSet[TaskStatus] = frozenset({"DRAFT", "FAILED", "NEEDS_USER_ACTION"})
CALL_ACTIVE: FrozenSet[TaskStatus] = frozenset({"CALLING", "IN_PROGRESS"})
TELEPHONY_FAILURE_STATUSES = frozenset({"busy", "no-answer", "failed", "canceled"})


class InvalidTransitionError(ValueError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"cannot move task from {current} to {target}")
        self.current = current
        self.target = target


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: TaskStatus, target: TaskStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def can_start_call(status: TaskStatus) -> bool:
    return status in CALL_STARTABLE


async def apply_transition(
    store: DataStore,
    hub: ConnectionManager,
    task_id: str,
    target: TaskStatus,
    *,
    call_sid: Optional[str] = None,
    outcome_id: Optional[str] = None,
    expected: Optional[FrozenSet[TaskStatus]] = None,
    failure_reason: Optional[str] = None,
) -> Optional[TaskRecord]:
    """Move ``task_id`` to ``target``, persist it, then broadcast the status.

    Never raises. Returns the updated task, or None when the task is missing,
    the move is illegal (or the current status is not in ``expected``), or
    the write failed. Nothing is broadcast in those cases.
    """
    try:
        task = store.get_task(task_id)
        if task is None:
            log_event("task_state", "transition_unknown_task", task_id=task_id, status="warning", details={"target": target})
            return None
        if expected is not None and task.status not in expected:
            log_event(
                "task_state",
                "transition_skipped",
                task_id=task_id,
                details={"current": task.status, "target": target, "expected": sorted(expected)},
            )
            return None
        ensure_transition(task.status, target)
        updated = store.update_task(task_id, status=target, call_sid=call_sid, outcome_id=outcome_id)
    except InvalidTransitionError as exc:
        log_event(
            "task_state",
            "transition_rejected",
            task_id=task_id,
            status="warning",
            details={"current": exc.current, "target": exc.target},
        )
        return None
    except Exception as exc:
        log_event(
            "task_state",
            "transition_write_failed",
            task_id=task_id,
            status="error",
            details={"target": target, "error": f"{type(exc).__name__}: {exc}"},
        )
        return None

    if updated is None:
        return None

    log_event("task_state", "transition", task_id=task_id, details={"from": task.status, "to": target})
    try:
        await hub.broadcast_status(task_id, target, failure_reason)
    except Exception as exc:
        log_event(
            "task_state",
            "status_broadcast_failed",
            task_id=task_id,
            status="warning",
            details={"status": target, "error": f"{type(exc).__name__}: {exc}"},
        )
    return updated
