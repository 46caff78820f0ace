from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import quote, urlparse
from xml.sax.saxutils import quoteattr

import httpx

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event
from onbehalf.core.telemetry import timed_step


TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class TelephonyError(RuntimeError):
    pass


def media_stream_url(public_base_url: str) -> str:
    parsed = urlparse(public_base_url if "://" in public_base_url else f"https://{public_base_url}")
    ws_scheme = "ws" if parsed.scheme == "http" else "wss"
    return f"{ws_scheme}://{parsed.netloc}/ws/twilio-media"


def build_stream_twiml(task_id: str, public_base_url: Optional[str] = None) -> str:
    """TwiML that connects the answered call to our media stream socket."""
    stream_url = media_stream_url(public_base_url or settings.PUBLIC_BASE_URL)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<Response>"
        "<Connect>"
        f"<Stream url={quoteattr(stream_url)}>"
        f'<Parameter name="taskId" value={quoteattr(task_id)} />'
        "</Stream>"
        "</Connect>"
        "</Response>"
    )


class TwilioClient:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    def is_configured(self) -> bool:
        return settings.telephony_configured()

    def _public_base_url(self) -> str:
        raw = settings.PUBLIC_BASE_URL.strip()
        normalized = raw if "://" in raw else f"https://{raw}"
        host = (urlparse(normalized).hostname or "").lower()
        if host in {"localhost", "127.0.0.1", "0.0.0.0"} or host.endswith(".local"):
            log_event(
                "twilio",
                "public_base_url_not_public",
                status="warning",
                details={"public_base_url": normalized},
            )
        return normalized.rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN),
            timeout=15.0,
            transport=self._transport,
        )

    async def place_call(self, to_phone: str, task_id: str) -> Dict[str, Any]:
        """Dial ``to_phone`` via the Twilio REST API.

        The call fetches its TwiML from our stream endpoint and reports
        progress to the status callback, both tagged with ``task_id``.
        Raises ``TelephonyError`` when telephony is not configured or the
        API rejects the request.
        """
        if not self.is_configured():
            raise TelephonyError("Twilio is not configured")

        base_url = self._public_base_url()
        encoded_task = quote(task_id, safe="")
        payload = {
            "To": to_phone,
            "From": settings.TWILIO_FROM_NUMBER,
            "Url": f"{base_url}/api/twiml/stream?taskId={encoded_task}",
            "StatusCallback": f"{base_url}/api/twilio/status?taskId={encoded_task}",
            "StatusCallbackMethod": "POST",
        }
        url = f"{TWILIO_API_BASE}/Accounts/{settings.TWILIO_ACCOUNT_SID}/Calls.json"

        with timed_step("twilio", "place_call", task_id=task_id, details={"to": to_phone}):
            try:
                async with self._client() as client:
                    resp = await client.post(url, data=payload)
                    resp.raise_for_status()
                    data = resp.json()
            except httpx.HTTPStatusError as exc:
                log_event(
                    "twilio",
                    "place_call_http_error",
                    status="error",
                    task_id=task_id,
                    details={"status_code": exc.response.status_code, "response": exc.response.text[:500]},
                )
                raise TelephonyError(f"Twilio rejected the call ({exc.response.status_code})") from exc
            except httpx.HTTPError as exc:
                log_event(
                    "twilio",
                    "place_call_error",
                    status="error",
                    task_id=task_id,
                    details={"error": f"{type(exc).__name__}: {exc}"},
                )
                raise TelephonyError(f"Twilio request failed: {exc}") from exc

        if not data.get("sid"):
            raise TelephonyError("Twilio response did not include a call sid")
        return data

    async def end_call(self, call_sid: str) -> Dict[str, Any]:
        if not self.is_configured():
            return {"sid": call_sid, "status": "ended", "mode": "dry_run"}

        url = f"{TWILIO_API_BASE}/Accounts/{settings.TWILIO_ACCOUNT_SID}/Calls/{call_sid}.json"
        with timed_step("twilio", "end_call", details={"call_sid": call_sid}):
            async with self._client() as client:
                resp = await client.post(url, data={"Status": "completed"})
                resp.raise_for_status()
                return {"sid": call_sid, "status": "ended", "status_code": resp.status_code}
