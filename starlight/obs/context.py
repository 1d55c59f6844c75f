"""Request context helpers using ContextVars.

Carries request-scoped identifiers (request_id, journey session id) so every
log line emitted while serving a request can be correlated.
"""

from contextvars import ContextVar
from typing import Optional


# Public ContextVars (names are stable API)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)


def clear_context() -> None:
    """Reset context variables to defaults."""
    request_id_var.set(None)
    session_id_var.set(None)
