from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from onbehalf.services.prompt_builder import (
    build_extraction_messages,
    build_instructions,
    build_persona,
    build_session_update,
)


def test_persona_names_the_principal_and_opening_line() -> None:
    persona = build_persona("Raj")

    assert "You are Raj's personal AI assistant making a phone call." in persona
    assert '"Hello, this is an AI assistant calling on behalf of Raj."' in persona
    assert "Follow the INSTRUCTION exactly as written" in persona


def test_instructions_embed_task_context(make_task) -> None:
    task = make_task(context_notes=None)

    instructions = build_instructions(task)

    assert "CALL RECIPIENT: Luigi's Trattoria" in instructions
    assert "PHONE: +15550001111" in instructions
    assert "NOTES: None" in instructions
    assert instructions.rstrip().endswith(f"{task.instruction_text}\n---")


def test_session_update_configures_telephony_audio(make_task) -> None:
    message = build_session_update(make_task())

    assert message["type"] == "session.update"
    session = message["session"]
    assert session["modalities"] == ["audio", "text"]
    assert session["input_audio_format"] == session["output_audio_format"] == "g711_ulaw"
    assert session["turn_detection"] == {
        "type": "server_vad",
        "threshold": 0.5,
        "prefix_padding_ms": 300,
        "silence_duration_ms": 500,
    }
    assert session["input_audio_transcription"] == {"model": "whisper-1"}


def test_extraction_messages_carry_local_date() -> None:
    now = datetime(2026, 10, 19, 9, 5, tzinfo=ZoneInfo("America/New_York"))

    system, user = build_extraction_messages("[ASSISTANT] Hello", now, "America/New_York")

    assert system["role"] == "system"
    assert "Today is Monday, 2026-10-19" in system["content"]
    assert "-0400" in system["content"]
    assert user == {"role": "user", "content": "Transcript:\n\n[ASSISTANT] Hello"}
