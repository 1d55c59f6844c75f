"""Structured JSON logging to stdout.

Low overhead, minimal dependencies, safe for production stdout collectors.
"""

from typing import Any, Dict
from datetime import datetime, timezone
import json

from starlight.obs.context import request_id_var, session_id_var


_SECRET_FIELDS = ("password", "security")
_PHONE_FIELDS = ("phone", "contact_phone")


def _redact_phone(value: Any) -> Any:
    s = str(value) if value is not None else ""
    if not s:
        return s
    digits = [c for c in s if c.isdigit()]
    if len(digits) < 4:
        return "***"
    tail = "".join(digits[-4:])
    return f"***{tail}"


def redact(body: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a provider request body that is safe to log."""
    out: Dict[str, Any] = {}
    for k, v in body.items():
        if k in _SECRET_FIELDS:
            out[k] = "***"
        elif k in _PHONE_FIELDS:
            out[k] = _redact_phone(v)
        else:
            out[k] = v
    return out


def log_event(event: str, **fields: Any) -> None:
    now = datetime.now(timezone.utc).isoformat()
    payload: Dict[str, Any] = {
        "ts": now,
        "level": fields.pop("level", "INFO"),
        "event": event,
        "request_id": request_id_var.get(),
    }
    payload.setdefault("session_id", session_id_var.get())

    # Merge remaining fields
    for k, v in fields.items():
        if k in _PHONE_FIELDS:
            payload[k] = _redact_phone(v)
        elif k in _SECRET_FIELDS:
            payload[k] = "***"
        else:
            payload[k] = v

    try:
        print(json.dumps(payload, separators=(",", ":"), default=str, ensure_ascii=False))
    except Exception:
        # As a last resort, avoid crashing the app due to logging
        pass
