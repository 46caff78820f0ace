#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import time
from typing import Any, Dict, List, Optional

import httpx
import websockets


async def _timed_request(
    method: str,
    client: httpx.AsyncClient,
    path: str,
    **kwargs: Any,
) -> tuple[httpx.Response, float]:
    start = time.perf_counter()
    response = await client.request(method, path, **kwargs)
    return response, (time.perf_counter() - start) * 1000


async def _read_ws_message(ws, timeout: float = 2.0) -> Dict[str, Any]:
    raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="ignore")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid websocket payload: {raw}") from exc


def _print_result(name: str, ok: bool, detail: Optional[str] = None, ms: Optional[float] = None) -> None:
    icon = "✓" if ok else "✗"
    suffix = f" ({ms:.1f}ms)" if ms is not None else ""
    print(f"{icon} {name}{suffix}")
    if detail:
        print(f"  {detail}")


async def run_smoke(base_url: str, phone: str, with_ws: bool) -> None:
    base_url = base_url.rstrip("/")
    ws_url = base_url.replace("https://", "wss://").replace("http://", "ws://")

    async with httpx.AsyncClient(base_url=base_url, timeout=20.0) as client:
        response, ms = await _timed_request("GET", client, "/health")
        _print_result("GET /health", response.status_code == 200, f"status={response.status_code}", ms)

        response, ms = await _timed_request("GET", client, "/api/twilio/status")
        readiness = response.json() if response.status_code == 200 else {}
        _print_result("GET /api/twilio/status", response.status_code == 200, readiness.get("message"), ms)

        payload = {
            "contextName": "Smoke Test Bistro",
            "contextPhone": phone,
            "contextNotes": "created by the CLI smoke script",
            "instructionText": "Ask whether they have a table for two tomorrow at 7pm.",
        }
        response, ms = await _timed_request("POST", client, "/api/tasks", json=payload)
        task_id = response.json().get("id", "") if response.status_code == 200 else ""
        _print_result(
            "POST /api/tasks",
            response.status_code == 200 and bool(task_id),
            f"task_id={task_id or response.status_code}",
            ms,
        )
        if not task_id:
            return

        events: List[Dict[str, Any]] = []
        if with_ws:
            async with websockets.connect(f"{ws_url}/ws/ui?taskId={task_id}") as ws:
                events.append(await _read_ws_message(ws))
                response, ms = await _timed_request("POST", client, f"/api/tasks/{task_id}/start-call")
                body = response.json()
                _print_result(
                    "POST /api/tasks/{id}/start-call",
                    response.status_code in (200, 502),
                    f"configured={body.get('configured')} callSid={body.get('callSid')}",
                    ms,
                )
                try:
                    while True:
                        events.append(await _read_ws_message(ws, timeout=2.5))
                except (asyncio.TimeoutError, websockets.exceptions.ConnectionClosed):
                    pass
        else:
            response, ms = await _timed_request("POST", client, f"/api/tasks/{task_id}/start-call")
            _print_result(
                "POST /api/tasks/{id}/start-call",
                response.status_code in (200, 502),
                f"status={response.status_code}",
                ms,
            )

        response, ms = await _timed_request("GET", client, f"/api/tasks/{task_id}")
        detail = response.json() if response.status_code == 200 else {}
        _print_result(
            "GET /api/tasks/{id}",
            response.status_code == 200,
            f"status={detail.get('status')} transcriptEvents={len(detail.get('transcriptEvents', []))}",
            ms,
        )

        if with_ws:
            statuses = [event["payload"].get("status") for event in events if event.get("type") == "status"]
            _print_result("UI websocket status events", bool(statuses), f"statuses={statuses}")
            print(f"  received_events={len(events)}")

        response, ms = await _timed_request("POST", client, f"/api/tasks/{task_id}/end-call")
        _print_result(
            "POST /api/tasks/{id}/end-call",
            response.status_code == 200,
            f"ok={response.json().get('ok') if response.status_code == 200 else response.status_code}",
            ms,
        )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="onbehalf backend CLI smoke test")
    parser.add_argument("--base-url", default="http://127.0.0.1:4000")
    parser.add_argument("--phone", default="+15550001111")
    parser.add_argument("--no-websocket", action="store_true", help="skip the UI websocket checks")
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    await run_smoke(args.base_url, args.phone, with_ws=not args.no_websocket)


if __name__ == "__main__":
    asyncio.run(main())
