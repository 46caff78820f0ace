from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event, timed_step
from onbehalf.models.schemas import TranscriptSpeaker
from onbehalf.services.prompt_builder import build_session_update
from onbehalf.services.realtime_client import open_realtime_connection
from onbehalf.services.storage import DataStore
from onbehalf.services.task_state import apply_transition
from onbehalf.services.ws_manager import ConnectionManager


_IN_PROGRESS_ONLY = frozenset({"IN_PROGRESS"})
_INBOUND_TRACKS = {None, "inbound", "inbound_track"}


class SpeechConnection(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send(self, message: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self): ...


class OutcomeRunner(Protocol):
    async def run(self, task_id: str) -> Any: ...


SpeechConnector = Callable[[str], Awaitable[SpeechConnection]]
TelephonySender = Callable[[Dict[str, Any]], Awaitable[None]]
TelephonyCloser = Callable[[], Awaitable[None]]


def _extract_task_id(start_payload: Dict[str, Any]) -> Optional[str]:
    custom_parameters = start_payload.get("customParameters")
    if not isinstance(custom_parameters, dict):
        return None
    for key in ("taskId", "task_id", "TaskId"):
        value = custom_parameters.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class MediaRelaySession:
    """Bridges one Twilio media stream to one realtime speech-model socket.

    Telephony events arrive through ``handle_telephony_message`` and model
    events through ``handle_model_message``. The telephony side owns the call
    lifecycle; the model socket only carries audio and transcript content.
    """

    def __init__(
        self,
        store: DataStore,
        hub: ConnectionManager,
        pipeline: OutcomeRunner,
        *,
        send_to_telephony: TelephonySender,
        close_telephony: Optional[TelephonyCloser] = None,
        speech_connector: Optional[SpeechConnector] = None,
        configure_timeout_seconds: Optional[float] = None,
    ) -> None:
        self._store = store
        self._hub = hub
        self._pipeline = pipeline
        self._send_to_telephony = send_to_telephony
        self._close_telephony = close_telephony
        self._connect_speech = speech_connector or open_realtime_connection
        self._configure_timeout = (
            settings.REALTIME_CONFIGURE_TIMEOUT_SECONDS
            if configure_timeout_seconds is None
            else configure_timeout_seconds
        )

        self.task_id: Optional[str] = None
        self.stream_sid: Optional[str] = None
        self.call_sid: Optional[str] = None

        self._model: Optional[SpeechConnection] = None
        self._model_reader: Optional[asyncio.Task[None]] = None
        self._configure_watchdog: Optional[asyncio.Task[None]] = None
        self._configured = False
        self.stopped = False
        self._assistant_buffer = ""

        self._started_at = time.perf_counter()
        self._frames_forwarded = 0
        self._frames_dropped = 0
        self._audio_deltas_sent = 0
        self._transcript_events = 0

    @property
    def model_open(self) -> bool:
        return self._model is not None and self._model.is_open

    @property
    def configured(self) -> bool:
        return self._configured

    # ── Telephony side ─────────────────────────────────────────────────────

    async def handle_telephony_text(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            log_event("media_relay", "telephony_parse_error", task_id=self.task_id, status="warning")
            return
        if isinstance(message, dict):
            await self.handle_telephony_message(message)

    async def handle_telephony_message(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        handlers = {
            "connected": self._on_connected,
            "start": self._on_start,
            "media": self._on_media,
            "stop": self._on_stop,
        }
        handler = handlers.get(event)
        if handler is None:
            return
        try:
            await handler(message)
        except Exception as exc:
            log_event(
                "media_relay",
                "telephony_handler_error",
                task_id=self.task_id,
                status="error",
                details={"event": event, "error": f"{type(exc).__name__}: {exc}"},
            )

    async def handle_telephony_closed(self) -> None:
        await self._close_model()
        if self.task_id:
            await self._complete_call("telephony_closed")
        log_event(
            "media_relay",
            "session_closed",
            task_id=self.task_id,
            duration_ms=(time.perf_counter() - self._started_at) * 1000.0,
            details={
                "stream_sid": self.stream_sid,
                "call_sid": self.call_sid,
                "frames_forwarded": self._frames_forwarded,
                "frames_dropped": self._frames_dropped,
                "audio_deltas_sent": self._audio_deltas_sent,
                "transcript_events": self._transcript_events,
            },
        )

    async def _on_connected(self, _message: Dict[str, Any]) -> None:
        return None

    async def _on_start(self, message: Dict[str, Any]) -> None:
        start = message.get("start")
        start = start if isinstance(start, dict) else {}
        task_id = _extract_task_id(start)
        stream_sid = message.get("streamSid") or start.get("streamSid")
        call_sid = start.get("callSid")
        if not task_id or not stream_sid or not call_sid:
            log_event(
                "media_relay",
                "start_missing_identifiers",
                task_id=task_id,
                status="warning",
                details={"has_task_id": bool(task_id), "has_stream_sid": bool(stream_sid), "has_call_sid": bool(call_sid)},
            )
            return

        self.task_id = task_id
        self.stream_sid = stream_sid
        self.call_sid = call_sid

        updated = await apply_transition(self._store, self._hub, task_id, "IN_PROGRESS", call_sid=call_sid)
        if updated is None:
            log_event("media_relay", "start_rejected", task_id=task_id, status="warning", details={"call_sid": call_sid})
            return

        if not settings.OPENAI_API_KEY:
            log_event("media_relay", "speech_model_disabled", task_id=task_id, status="warning")
            return
        await self._open_model()

    async def _on_media(self, message: Dict[str, Any]) -> None:
        media = message.get("media") or {}
        payload = media.get("payload")
        inbound = media.get("track") in _INBOUND_TRACKS
        model = self._model
        if not payload or not inbound or model is None or not model.is_open:
            self._frames_dropped += 1
            return
        await model.send({"type": "input_audio_buffer.append", "audio": payload})
        self._frames_forwarded += 1
        log_event("media_relay", "audio_append", task_id=self.task_id, details={"frames": self._frames_forwarded})

    async def _on_stop(self, _message: Dict[str, Any]) -> None:
        self.stopped = True
        await self._close_model()
        if self.task_id:
            await self._complete_call("stop")
        if self._close_telephony is not None:
            try:
                await self._close_telephony()
            except Exception as exc:
                log_event(
                    "media_relay",
                    "telephony_close_failed",
                    task_id=self.task_id,
                    status="warning",
                    details={"error": f"{type(exc).__name__}: {exc}"},
                )

    async def _complete_call(self, reason: str) -> None:
        # Only the first of stop / close finds the task still IN_PROGRESS.
        updated = await apply_transition(
            self._store,
            self._hub,
            self.task_id,
            "COMPLETED",
            expected=_IN_PROGRESS_ONLY,
        )
        if updated is None:
            return
        log_event("media_relay", "call_completed", task_id=self.task_id, details={"reason": reason})
        await self._pipeline.run(self.task_id)

    async def _send_telephony(self, message: Dict[str, Any]) -> None:
        try:
            await self._send_to_telephony(message)
        except Exception as exc:
            log_event(
                "media_relay",
                "telephony_send_failed",
                task_id=self.task_id,
                status="warning",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )

    # ── Speech-model side ──────────────────────────────────────────────────

    async def _open_model(self) -> None:
        task = self._store.get_task(self.task_id)
        if task is None:
            return
        try:
            with timed_step("media_relay", "open_speech_model", task_id=self.task_id):
                connection = await self._connect_speech(self.task_id)
                self._model = connection
                await connection.send(build_session_update(task))
        except Exception as exc:
            log_event(
                "media_relay",
                "speech_model_connect_failed",
                task_id=self.task_id,
                status="error",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            await self._close_model()
            return

        self._model_reader = asyncio.create_task(self._pump_model(connection))
        if self._configure_timeout and self._configure_timeout > 0:
            self._configure_watchdog = asyncio.create_task(
                self._watch_configuration(connection, self._configure_timeout)
            )

    async def _pump_model(self, connection: SpeechConnection) -> None:
        try:
            async for message in connection:
                await self.handle_model_message(message)
        except Exception as exc:
            log_event(
                "media_relay",
                "speech_model_receive_error",
                task_id=self.task_id,
                status="error",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
        finally:
            await self.handle_model_closed(connection)

    async def _watch_configuration(self, connection: SpeechConnection, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self._configured or self._model is not connection:
            return
        log_event(
            "media_relay",
            "speech_model_configure_timeout",
            task_id=self.task_id,
            status="warning",
            details={"timeout_seconds": timeout},
        )
        await self._close_model()

    async def _close_model(self) -> None:
        if self._configure_watchdog is not None and self._configure_watchdog is not asyncio.current_task():
            self._configure_watchdog.cancel()
        self._configure_watchdog = None
        model, self._model = self._model, None
        if model is None or not model.is_open:
            return
        try:
            await model.close()
        except Exception as exc:
            log_event(
                "media_relay",
                "speech_model_close_failed",
                task_id=self.task_id,
                status="warning",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )

    async def handle_model_closed(self, connection: Optional[SpeechConnection] = None) -> None:
        if connection is None or self._model is connection:
            self._model = None
            log_event("media_relay", "speech_model_closed", task_id=self.task_id)

    async def handle_model_message(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        try:
            if message_type == "session.updated":
                await self._on_configured()
            elif message_type == "error":
                log_event(
                    "media_relay",
                    "speech_model_error",
                    task_id=self.task_id,
                    status="error",
                    details={"error": message.get("error") or message},
                )
            elif message_type == "response.audio.delta":
                await self._on_audio_delta(message)
            elif message_type == "response.audio_transcript.delta":
                delta = message.get("delta")
                if isinstance(delta, str):
                    self._assistant_buffer += delta
            elif message_type == "response.audio_transcript.done":
                full_text = message.get("transcript")
                text = full_text if isinstance(full_text, str) and full_text.strip() else self._assistant_buffer
                self._assistant_buffer = ""
                await self._record_transcript("ASSISTANT", text)
            elif message_type == "conversation.item.input_audio_transcription.completed":
                transcript = message.get("transcript")
                if isinstance(transcript, str):
                    await self._record_transcript("OTHER_PARTY", transcript)
        except Exception as exc:
            log_event(
                "media_relay",
                "speech_model_handler_error",
                task_id=self.task_id,
                status="error",
                details={"message_type": message_type, "error": f"{type(exc).__name__}: {exc}"},
            )

    async def _on_configured(self) -> None:
        if self._configured:
            return
        self._configured = True
        if self._configure_watchdog is not None:
            self._configure_watchdog.cancel()
            self._configure_watchdog = None
        log_event("media_relay", "speech_model_configured", task_id=self.task_id)
        if self._model is not None and self._model.is_open:
            await self._model.send({"type": "response.create"})

    async def _on_audio_delta(self, message: Dict[str, Any]) -> None:
        delta = message.get("delta")
        if not delta or not self.stream_sid:
            return
        await self._send_telephony({"event": "media", "streamSid": self.stream_sid, "media": {"payload": delta}})
        self._audio_deltas_sent += 1
        log_event("media_relay", "audio_delta", task_id=self.task_id, details={"deltas": self._audio_deltas_sent})

    async def _record_transcript(self, speaker: TranscriptSpeaker, text: str) -> None:
        text = text.strip()
        if not text or not self.task_id:
            return
        try:
            event = self._store.add_transcript_event(self.task_id, speaker, text)
        except Exception as exc:
            log_event(
                "media_relay",
                "transcript_persist_failed",
                task_id=self.task_id,
                status="error",
                details={"speaker": speaker, "error": f"{type(exc).__name__}: {exc}"},
            )
            return
        self._transcript_events += 1
        try:
            await self._hub.broadcast_transcript(self.task_id, event)
        except Exception as exc:
            log_event(
                "media_relay",
                "transcript_broadcast_failed",
                task_id=self.task_id,
                status="warning",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
