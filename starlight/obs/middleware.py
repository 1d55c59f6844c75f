"""ASGI middleware for lightweight observability."""

from typing import Callable, Any
import time
import uuid

from starlight.obs.context import request_id_var, session_id_var
from starlight.obs.logger import log_event
from starlight.obs.metrics import record_timing, inc_counter


def _session_from_path(path: str):
    # /journey/{session_id}/...
    parts = [p for p in path.split("/") if p]
    if len(parts) >= 2 and parts[0] == "journey":
        return parts[1]
    return None


class ObservabilityMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope: dict, receive: Callable, send: Callable[[dict], Any]):
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)

        req_id = str(uuid.uuid4())
        request_id_var.set(req_id)
        method = scope.get("method", "")
        path = scope.get("path", "")
        session_id_var.set(_session_from_path(path))
        start = time.monotonic()
        status_code = 500

        async def send_wrapper(message: dict):
            nonlocal status_code
            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 200))
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", req_id.encode()))
                message = {**message, "headers": headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed_ms = (time.monotonic() - start) * 1000.0
            # templated path once routing ran, so session ids do not explode label sets
            route = getattr(scope.get("route"), "path", None) or path
            record_timing("request_latency_ms", elapsed_ms, {"method": method, "route": route})
            inc_counter("requests_total", {"method": method, "route": route, "status": str(status_code)})
            log_event(
                "request",
                method=method,
                route=path,
                status=status_code,
                ms_total=round(elapsed_ms, 2),
            )
