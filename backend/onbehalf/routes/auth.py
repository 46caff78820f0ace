from __future__ import annotations

from typing import Optional

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse, RedirectResponse

from onbehalf.core.config import settings
from onbehalf.core.telemetry import log_event, timed_step
from onbehalf.services.google_workspace import GoogleOAuthClient
from onbehalf.services.storage import DataStore


def get_routes(store: DataStore, oauth_client: Optional[GoogleOAuthClient] = None):
    router = APIRouter(prefix="/auth/google", tags=["auth"])
    oauth = oauth_client or GoogleOAuthClient()

    @router.get("")
    async def connect_google():
        if not oauth.is_configured():
            return PlainTextResponse("GOOGLE_CLIENT_ID not configured in .env", status_code=500)
        return RedirectResponse(oauth.authorization_url(), status_code=302)

    @router.get("/callback")
    async def google_callback(code: Optional[str] = None, error: Optional[str] = None):
        if error:
            log_event("auth", "google_consent_denied", status="warning", details={"error": error})
        if not code:
            return PlainTextResponse("Missing code", status_code=400)
        try:
            with timed_step("auth", "google_callback"):
                tokens = await oauth.exchange_code(code)
                account = store.upsert_account(
                    tokens["email"],
                    access_token=tokens["access_token"],
                    refresh_token=tokens.get("refresh_token"),
                    token_expiry=tokens.get("token_expiry"),
                )
        except Exception as exc:
            log_event(
                "auth",
                "google_callback_failed",
                status="error",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            return PlainTextResponse("Auth failed", status_code=500)
        log_event("auth", "google_connected", details={"email": account.email})
        return RedirectResponse(settings.WEB_ORIGIN, status_code=302)

    return router
