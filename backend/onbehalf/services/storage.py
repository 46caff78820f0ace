from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event, timed_step
from onbehalf.models.schemas import (
    ConnectedAccount,
    OutcomeRecord,
    TaskRecord,
    TaskStatus,
    TranscriptEventRecord,
    TranscriptSpeaker,
)


class OutcomeExistsError(RuntimeError):
    pass


_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    context_name TEXT NOT NULL,
    context_phone TEXT NOT NULL,
    context_notes TEXT,
    instruction_text TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'DRAFT',
    call_sid TEXT,
    outcome_id TEXT
);
CREATE TABLE IF NOT EXISTS transcript_events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    ts TEXT NOT NULL,
    speaker TEXT NOT NULL,
    text TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transcript_task_ts ON transcript_events(task_id, ts);
CREATE TABLE IF NOT EXISTS outcomes (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL UNIQUE REFERENCES tasks(id),
    summary_text TEXT,
    extracted_fields_json TEXT,
    calendar_event_id TEXT,
    needs_user_action INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    access_token TEXT,
    refresh_token TEXT,
    token_expiry TEXT,
    updated_at TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DataStore:
    """SQLite-backed task, transcript, outcome and account storage.

    Writes are single-row statements; no cross-record transactions. A task is
    only ever advanced by one media session at a time.
    """

    def __init__(self, sqlite_path: str | Path | None = None) -> None:
        self._path = Path(sqlite_path) if sqlite_path is not None else Path(settings.SQLITE_PATH)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
            return cursor

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ── Tasks ───────────────────────────────────────────────────────────────

    def create_task(
        self,
        *,
        context_name: str,
        context_phone: str,
        instruction_text: str,
        context_notes: Optional[str] = None,
    ) -> TaskRecord:
        task_id = str(uuid4())
        with timed_step("storage", "create_task", task_id=task_id, details={"context_phone": context_phone}):
            self._execute(
                "INSERT INTO tasks (id, created_at, context_name, context_phone, context_notes, instruction_text, status) "
                "VALUES (?, ?, ?, ?, ?, ?, 'DRAFT')",
                (task_id, _now(), context_name, context_phone, context_notes, instruction_text),
            )
        task = self.get_task(task_id)
        assert task is not None
        return task

    def get_task(self, task_id: str) -> Optional[TaskRecord]:
        with timed_step("storage", "get_task", task_id=task_id):
            rows = self._query("SELECT * FROM tasks WHERE id = ?", (task_id,))
            if not rows:
                return None
            return TaskRecord(**dict(rows[0]))

    def list_tasks(self) -> List[TaskRecord]:
        with timed_step("storage", "list_tasks"):
            rows = self._query("SELECT * FROM tasks ORDER BY created_at DESC")
            return [TaskRecord(**dict(row)) for row in rows]

    def update_task(
        self,
        task_id: str,
        *,
        status: Optional[TaskStatus] = None,
        call_sid: Optional[str] = None,
        outcome_id: Optional[str] = None,
        clear_call_sid: bool = False,
        clear_outcome: bool = False,
    ) -> Optional[TaskRecord]:
        updates: Dict[str, Any] = {}
        if status is not None:
            updates["status"] = status
        if clear_call_sid:
            updates["call_sid"] = None
        elif call_sid is not None:
            updates["call_sid"] = call_sid
        if clear_outcome:
            updates["outcome_id"] = None
        elif outcome_id is not None:
            updates["outcome_id"] = outcome_id

        with timed_step("storage", "update_task", task_id=task_id, details={k: v for k, v in updates.items()}):
            if updates:
                assignments = ", ".join(f"{column} = ?" for column in updates)
                cursor = self._execute(
                    f"UPDATE tasks SET {assignments} WHERE id = ?",
                    (*updates.values(), task_id),
                )
                if cursor.rowcount == 0:
                    return None
        return self.get_task(task_id)

    # ── Transcript events ───────────────────────────────────────────────────

    def add_transcript_event(self, task_id: str, speaker: TranscriptSpeaker, text: str) -> TranscriptEventRecord:
        event_id = str(uuid4())
        ts = _now()
        with timed_step("storage", "add_transcript_event", task_id=task_id, details={"speaker": speaker, "chars": len(text)}):
            self._execute(
                "INSERT INTO transcript_events (id, task_id, ts, speaker, text) VALUES (?, ?, ?, ?, ?)",
                (event_id, task_id, ts, speaker, text),
            )
        return TranscriptEventRecord(id=event_id, task_id=task_id, ts=ts, speaker=speaker, text=text)

    def list_transcript_events(self, task_id: str) -> List[TranscriptEventRecord]:
        with timed_step("storage", "list_transcript_events", task_id=task_id):
            rows = self._query(
                "SELECT id, task_id, ts, speaker, text FROM transcript_events WHERE task_id = ? ORDER BY ts ASC, seq ASC",
                (task_id,),
            )
            return [TranscriptEventRecord(**dict(row)) for row in rows]

    # ── Outcomes ────────────────────────────────────────────────────────────

    def create_outcome(
        self,
        task_id: str,
        *,
        summary_text: str,
        extracted_fields: Dict[str, Any],
        needs_user_action: bool,
    ) -> OutcomeRecord:
        outcome_id = str(uuid4())
        created_at = _now()
        with timed_step("storage", "create_outcome", task_id=task_id, details={"needs_user_action": needs_user_action}):
            try:
                self._execute(
                    "INSERT INTO outcomes (id, task_id, summary_text, extracted_fields_json, needs_user_action, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        outcome_id,
                        task_id,
                        summary_text,
                        json.dumps(extracted_fields, default=str),
                        int(needs_user_action),
                        created_at,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise OutcomeExistsError(f"task {task_id} already has an outcome") from exc
        return OutcomeRecord(
            id=outcome_id,
            task_id=task_id,
            summary_text=summary_text,
            extracted_fields=extracted_fields,
            needs_user_action=needs_user_action,
            created_at=created_at,
        )

    def get_outcome_for_task(self, task_id: str) -> Optional[OutcomeRecord]:
        with timed_step("storage", "get_outcome_for_task", task_id=task_id):
            rows = self._query("SELECT * FROM outcomes WHERE task_id = ?", (task_id,))
            if not rows:
                return None
            return self._decode_outcome(rows[0])

    def set_outcome_calendar_event(self, outcome_id: str, calendar_event_id: str) -> bool:
        """Attach a calendar event once. Returns False if one was already set."""
        with timed_step("storage", "set_outcome_calendar_event", details={"outcome_id": outcome_id}):
            cursor = self._execute(
                "UPDATE outcomes SET calendar_event_id = ? WHERE id = ? AND calendar_event_id IS NULL",
                (calendar_event_id, outcome_id),
            )
            return cursor.rowcount == 1

    def delete_outcome_for_task(self, task_id: str) -> bool:
        with timed_step("storage", "delete_outcome_for_task", task_id=task_id):
            cursor = self._execute("DELETE FROM outcomes WHERE task_id = ?", (task_id,))
            return cursor.rowcount > 0

    def _decode_outcome(self, row: sqlite3.Row) -> OutcomeRecord:
        data = dict(row)
        raw_fields = data.pop("extracted_fields_json", None)
        try:
            fields = json.loads(raw_fields) if raw_fields else {}
        except json.JSONDecodeError:
            fields = {}
        return OutcomeRecord(
            **data,
            extracted_fields=fields if isinstance(fields, dict) else {},
        )

    # ── Connected account ───────────────────────────────────────────────────

    def upsert_account(
        self,
        email: str,
        *,
        access_token: Optional[str],
        refresh_token: Optional[str],
        token_expiry: Optional[datetime] = None,
    ) -> ConnectedAccount:
        with timed_step("storage", "upsert_account"):
            self._execute(
                "INSERT INTO accounts (id, email, access_token, refresh_token, token_expiry, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(email) DO UPDATE SET access_token = excluded.access_token, "
                "refresh_token = COALESCE(excluded.refresh_token, accounts.refresh_token), "
                "token_expiry = excluded.token_expiry, updated_at = excluded.updated_at",
                (
                    str(uuid4()),
                    email,
                    access_token,
                    refresh_token,
                    token_expiry.isoformat() if token_expiry else None,
                    _now(),
                ),
            )
            rows = self._query("SELECT * FROM accounts WHERE email = ?", (email,))
            return ConnectedAccount(**dict(rows[0]))

    def get_first_account(self) -> Optional[ConnectedAccount]:
        with timed_step("storage", "get_first_account"):
            rows = self._query("SELECT * FROM accounts ORDER BY updated_at DESC")
            if not rows:
                return None
            if len(rows) > 1:
                log_event(
                    "storage",
                    "multiple_connected_accounts",
                    status="warning",
                    details={"count": len(rows), "using": rows[0]["email"]},
                )
            return ConnectedAccount(**dict(rows[0]))
