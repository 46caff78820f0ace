"""Prompts and realtime session configuration for outbound calls."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from onbehalf.core.config import settings
from onbehalf.models.schemas import TaskRecord


AUDIO_FORMAT = "g711_ulaw"
INPUT_TRANSCRIPTION_MODEL = "whisper-1"
VAD_THRESHOLD = 0.5
VAD_PREFIX_PADDING_MS = 300
VAD_SILENCE_DURATION_MS = 500


def build_persona(principal: str | None = None) -> str:
    principal = principal or settings.ASSISTANT_PRINCIPAL_NAME
    return (
        f"You are {principal}'s personal AI assistant making a phone call. This could be ANY type of call - "
        "reminders to friends/family, thank you messages, scheduling, or anything else.\n\n"
        f'When the call connects, start with: "Hello, this is an AI assistant calling on behalf of {principal}."\n\n'
        "Then IMMEDIATELY deliver the specific message or task described in the INSTRUCTION section below. "
        "Do exactly what the instruction says - nothing more, nothing less.\n\n"
        "Rules:\n"
        "- Be concise, polite, and friendly\n"
        "- Do NOT assume this is about reservations or appointments unless the instruction says so\n"
        "- Follow the INSTRUCTION exactly as written\n"
        '- Do not say "Sure" or acknowledge prompts - speak directly to the person'
    )


def build_task_prompt(task: TaskRecord) -> str:
    return (
        "\n---\n"
        f"CALL RECIPIENT: {task.context_name}\n"
        f"PHONE: {task.context_phone}\n"
        f"NOTES: {task.context_notes or 'None'}\n\n"
        "INSTRUCTION (do exactly this):\n"
        f"{task.instruction_text}\n"
        "---"
    )


def build_instructions(task: TaskRecord) -> str:
    return f"{build_persona()}\n\n{build_task_prompt(task)}"


def build_session_update(task: TaskRecord) -> Dict[str, Any]:
    return {
        "type": "session.update",
        "session": {
            "modalities": ["audio", "text"],
            "input_audio_format": AUDIO_FORMAT,
            "output_audio_format": AUDIO_FORMAT,
            "voice": settings.OPENAI_REALTIME_VOICE,
            "instructions": build_instructions(task),
            "turn_detection": {
                "type": "server_vad",
                "threshold": VAD_THRESHOLD,
                "prefix_padding_ms": VAD_PREFIX_PADDING_MS,
                "silence_duration_ms": VAD_SILENCE_DURATION_MS,
            },
            "input_audio_transcription": {"model": INPUT_TRANSCRIPTION_MODEL},
        },
    }


EXTRACTION_PROMPT = """You are extracting structured reservation/appointment details from a phone call transcript.
Return a single JSON object with these fields (use null for missing):
- reservation_name: string
- business_or_person: string
- datetime_start: string (ISO 8601 with UTC offset, resolved to an absolute date and time)
- duration_minutes: number
- party_size: number or null
- confirmation_number: string or null
- address: string or null
- special_notes: string or null
- confidence: number 0-1
- needs_user_action: boolean
- needs_user_action_reason: string or null (why user must confirm, e.g. "datetime ambiguous")
Return only valid JSON, no markdown or explanation."""


def build_extraction_messages(transcript_text: str, now: datetime, timezone_name: str) -> list[Dict[str, str]]:
    date_context = (
        f"Today is {now.strftime('%A, %Y-%m-%d')} and the local time is {now.strftime('%H:%M')} "
        f"in the {timezone_name} timezone (UTC offset {now.strftime('%z')}). "
        "Resolve relative dates such as 'tomorrow' or 'next Friday' against this date."
    )
    return [
        {"role": "system", "content": f"{EXTRACTION_PROMPT}\n\n{date_context}"},
        {"role": "user", "content": f"Transcript:\n\n{transcript_text}"},
    ]
