from __future__ import annotations

import time
import uuid
from pathlib import Path
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from onbehalf.core.config import settings
from onbehalf.core.telemetry import configure_logging, log_event, timed_step
from onbehalf.services.google_workspace import GoogleOAuthClient
from onbehalf.services.media_relay import OutcomeRunner, SpeechConnector
from onbehalf.services.outcome_runner import OutcomePipeline
from onbehalf.services.storage import DataStore
from onbehalf.services.twilio_client import TwilioClient
from onbehalf.services.ws_manager import ConnectionManager
from onbehalf.routes import auth as auth_routes
from onbehalf.routes import tasks as task_routes
from onbehalf.routes import twilio as twilio_routes
from onbehalf.routes import ws as ws_routes


ALLOWED_ORIGINS_TYPE = List[str]


def create_app(
    *,
    store: Optional[DataStore] = None,
    hub: Optional[ConnectionManager] = None,
    pipeline: Optional[OutcomeRunner] = None,
    twilio_client: Optional[TwilioClient] = None,
    speech_connector: Optional[SpeechConnector] = None,
    google_oauth: Optional[GoogleOAuthClient] = None,
    data_root: str | Path | None = None,
    sqlite_path: str | Path | None = None,
    allowed_origins: Optional[ALLOWED_ORIGINS_TYPE] = None,
) -> FastAPI:
    """Create the FastAPI app with injectable dependencies.

    Tests pass a temporary sqlite path and fakes for telephony, the speech
    model and the outcome pipeline.
    """

    if data_root is not None:
        settings.DATA_ROOT = Path(data_root)
    if sqlite_path is not None:
        settings.SQLITE_PATH = Path(sqlite_path)

    configure_logging()

    local_store = store or DataStore(sqlite_path=sqlite_path)
    local_hub = hub or ConnectionManager()
    local_pipeline = pipeline or OutcomePipeline(local_store, local_hub)
    local_twilio = twilio_client or TwilioClient()

    app = FastAPI(title="onbehalf call assistant")
    app.state.store = local_store
    app.state.hub = local_hub
    app.state.pipeline = local_pipeline
    app.state.twilio_client = local_twilio

    app.include_router(task_routes.get_routes(local_store, local_hub, local_pipeline, local_twilio))
    app.include_router(twilio_routes.get_routes(local_store, local_hub, local_pipeline, speech_connector))
    app.include_router(ws_routes.get_routes(local_store, local_hub))
    app.include_router(auth_routes.get_routes(local_store, google_oauth))

    cors_origins = list(allowed_origins or settings.ALLOWED_ORIGINS)
    if not cors_origins:
        cors_origins = ["*"]

    allow_credentials = True
    allow_origin_regex = None

    # Wildcard origins cannot be combined with credentials.
    if len(cors_origins) == 1 and cors_origins[0] == "*":
        allow_credentials = False
    else:
        has_local_host = any(
            "localhost" in origin or "127.0.0.1" in origin
            for origin in cors_origins
        )
        if has_local_host:
            allow_origin_regex = r"https?://(?:localhost|127\.0\.0\.1):[0-9]+"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_origin_regex=allow_origin_regex,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_request_timing(request: Request, call_next):
        request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
        request.state.request_id = request_id
        start = time.perf_counter()
        route = request.scope.get("route")
        route_path = getattr(route, "path", None)
        action = f"{request.method} {route_path or request.url.path}"
        should_skip_request_log = request.url.path in settings.LOG_SKIP_REQUEST_PATHS
        details = {
            "request_id": request_id,
            "route": route_path or str(request.url.path),
            "method": request.method,
            "query_params_count": len(request.query_params),
            "content_type": request.headers.get("content-type"),
            "client_ip": request.client.host if request.client else None,
        }
        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            details["status_code"] = 500
            details["error"] = f"{type(exc).__name__}: {exc}"
            log_event("http", action, status="error", duration_ms=elapsed_ms, details=details)
            raise
        else:
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            details["status_code"] = response.status_code
            details["response_content_type"] = (
                response.headers.get("content-type") if isinstance(response, Response) else None
            )
            if not should_skip_request_log or details["status_code"] >= 400:
                log_event(
                    "http",
                    action,
                    status="ok" if details["status_code"] < 500 else "error",
                    duration_ms=elapsed_ms,
                    details=details,
                )
            return response

    @app.get("/health")
    async def health() -> dict:
        with timed_step("http", "healthcheck"):
            return {"status": "ok"}

    @app.get("/api/health")
    async def api_health() -> dict:
        return {"ok": True}

    @app.on_event("startup")
    async def startup_telemetry() -> None:
        log_event(
            "system",
            "startup",
            details={
                "sqlite_path": str(settings.SQLITE_PATH),
                "speech_model_configured": bool(settings.OPENAI_API_KEY),
                "extraction_model": settings.OPENAI_EXTRACTION_MODEL,
                "realtime_url": settings.OPENAI_REALTIME_URL,
                "twilio_configured": settings.telephony_configured(),
                "public_base_url": settings.PUBLIC_BASE_URL or "(not set)",
                "google_configured": settings.google_configured(),
                "timezone": settings.TIMEZONE,
                "demo_transcript_enabled": settings.DEMO_TRANSCRIPT_ENABLED,
                "log_level": settings.LOG_LEVEL,
            },
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:
        if store is None:
            local_store.close()

    return app


app = create_app()


def run() -> None:
    uvicorn.run("onbehalf.main:app", host=settings.APP_HOST, port=settings.APP_PORT)


if __name__ == "__main__":
    run()
