from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import httpx

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event


def _normalize_openai_chat_endpoint(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.endswith("/v1"):
        return f"{base}/chat/completions"
    return f"{base}/v1/chat/completions"


class LLMResponseError(RuntimeError):
    pass


class LLMClient:
    """OpenAI chat completions in JSON mode, used for outcome extraction."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._chat_url = _normalize_openai_chat_endpoint(base_url or settings.OPENAI_BASE_URL)
        self._api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self._model = model or settings.OPENAI_EXTRACTION_MODEL
        self._timeout = httpx.Timeout(
            connect=5.0,
            read=timeout_seconds or settings.LLM_TIMEOUT_SECONDS,
            write=5.0,
            pool=5.0,
        )
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def complete_json(self, messages: List[Dict[str, str]]) -> str:
        """Return the raw JSON text of the first choice."""
        payload: Dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "response_format": {"type": "json_object"},
        }
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"}
        started = time.perf_counter()
        status = "ok"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, headers=headers, transport=self._transport) as client:
                resp = await client.post(self._chat_url, json=payload)
            if resp.status_code >= 400:
                raise LLMResponseError(f"chat completion failed: {resp.status_code} {resp.text[:500]}")
            data = resp.json()
            choices = data.get("choices") or []
            content = (choices[0].get("message") or {}).get("content") if choices else None
            if not content:
                raise LLMResponseError("no content in chat completion response")
            return content
        except Exception:
            status = "error"
            raise
        finally:
            log_event(
                "llm",
                "complete_json",
                status=status,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                details={"model": self._model, "endpoint": self._chat_url, "messages": len(messages)},
            )
