from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


_ENV_PATH = Path(__file__).resolve().parents[3] / ".env"
if _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH)
else:  # fallback when launched from inside backend/
    load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or default).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    DATA_ROOT = Path(os.getenv("ONBEHALF_DATA_ROOT", "data"))
    SQLITE_PATH = Path(os.getenv("SQLITE_PATH", "")) if os.getenv("SQLITE_PATH") else DATA_ROOT / "onbehalf.db"

    APP_HOST = os.getenv("HOST", "0.0.0.0")
    APP_PORT = int(os.getenv("PORT", "4000"))

    ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.getenv(
            "ALLOWED_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        ).split(",")
        if origin.strip()
    ]
    WEB_ORIGIN = os.getenv("WEB_ORIGIN", "").strip()
    if WEB_ORIGIN and WEB_ORIGIN not in ALLOWED_ORIGINS:
        ALLOWED_ORIGINS.append(WEB_ORIGIN)

    # OpenAI: one key drives both the realtime speech model and extraction.
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com")
    OPENAI_EXTRACTION_MODEL = os.getenv("OPENAI_EXTRACTION_MODEL", "gpt-4o-mini")
    OPENAI_REALTIME_URL = os.getenv(
        "OPENAI_REALTIME_URL",
        "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview",
    )
    OPENAI_REALTIME_VOICE = os.getenv("OPENAI_REALTIME_VOICE", "alloy")
    try:
        LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
    except ValueError:
        LLM_TIMEOUT_SECONDS = 30.0
    # Seconds to wait for the speech model to acknowledge the session config.
    # 0 disables the watchdog.
    try:
        REALTIME_CONFIGURE_TIMEOUT_SECONDS = float(os.getenv("REALTIME_CONFIGURE_TIMEOUT_SECONDS", "10"))
    except ValueError:
        REALTIME_CONFIGURE_TIMEOUT_SECONDS = 10.0

    ASSISTANT_PRINCIPAL_NAME = os.getenv("ASSISTANT_PRINCIPAL_NAME", "the user").strip() or "the user"

    # Twilio integration
    TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER", "")
    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip()

    # Google Calendar / Gmail follow-up
    GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
    GOOGLE_TOKEN_URI = os.getenv("GOOGLE_TOKEN_URI", "https://oauth2.googleapis.com/token")
    GOOGLE_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID", "primary")
    GOOGLE_AUTH_URI = os.getenv("GOOGLE_AUTH_URI", "https://accounts.google.com/o/oauth2/v2/auth")
    GOOGLE_USERINFO_URI = os.getenv("GOOGLE_USERINFO_URI", "https://www.googleapis.com/oauth2/v2/userinfo")
    GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI", "http://localhost:4000/auth/google/callback")
    WEB_ORIGIN = os.getenv("WEB_ORIGIN", "http://localhost:3000")

    TIMEZONE = os.getenv("TIMEZONE", "America/New_York").strip() or "America/New_York"

    # Outcome pipeline
    try:
        OUTCOME_CONFIDENCE_THRESHOLD = float(os.getenv("OUTCOME_CONFIDENCE_THRESHOLD", "0.7"))
    except ValueError:
        OUTCOME_CONFIDENCE_THRESHOLD = 0.7
    CALENDAR_DEFAULT_DURATION_MINUTES = int(os.getenv("CALENDAR_DEFAULT_DURATION_MINUTES", "90"))

    # Fabricates transcript lines on UI sockets when no call is active.
    DEMO_TRANSCRIPT_ENABLED = _env_flag("DEMO_TRANSCRIPT_ENABLED")
    try:
        DEMO_TRANSCRIPT_INTERVAL_SECONDS = float(os.getenv("DEMO_TRANSCRIPT_INTERVAL_SECONDS", "2.5"))
    except ValueError:
        DEMO_TRANSCRIPT_INTERVAL_SECONDS = 2.5

    # Logging controls
    LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
    if LOG_LEVEL not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        LOG_LEVEL = "INFO"
    try:
        LOG_NOISY_EVENTS_EVERY_N = int(os.getenv("LOG_NOISY_EVENTS_EVERY_N", "120"))
    except ValueError:
        LOG_NOISY_EVENTS_EVERY_N = 120
    if LOG_NOISY_EVENTS_EVERY_N < 0:
        LOG_NOISY_EVENTS_EVERY_N = 0
    LOG_PRETTY = (
        (os.getenv("LOG_PRETTY", "true") or "true").strip().lower() not in {"0", "false", "no", "off"}
    )
    _log_color = (os.getenv("LOG_COLOR", "auto") or "auto").strip().lower()
    if _log_color in {"1", "true", "yes", "on", "always"}:
        LOG_COLOR = True
    elif _log_color in {"0", "false", "no", "off", "never"}:
        LOG_COLOR = False
    else:
        LOG_COLOR = None

    LOG_NOISY_ACTIONS = tuple(
        action.strip()
        for action in os.getenv(
            "LOG_NOISY_ACTIONS",
            "media_event,audio_delta,audio_append",
        ).split(",")
        if action.strip()
    )
    if not LOG_NOISY_ACTIONS:
        LOG_NOISY_ACTIONS = ("media_event", "audio_delta", "audio_append")

    LOG_SKIP_REQUEST_PATHS = tuple(
        path.strip()
        for path in os.getenv("LOG_SKIP_REQUEST_PATHS", "/health,/api/health").split(",")
        if path.strip()
    )

    def telephony_configured(self) -> bool:
        return bool(
            self.TWILIO_ACCOUNT_SID
            and self.TWILIO_AUTH_TOKEN
            and self.TWILIO_FROM_NUMBER
            and self.PUBLIC_BASE_URL
        )

    def google_configured(self) -> bool:
        return bool(self.GOOGLE_CLIENT_ID and self.GOOGLE_CLIENT_SECRET)


settings = Settings()
