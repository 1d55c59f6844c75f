"""In-memory TTL store of per-session journey orchestrators."""

from typing import Any, Callable, Dict, Optional
import threading
import time

from starlight.booking.return_journey import ReturnJourneyOrchestrator
from starlight.config import settings
from starlight.obs.logger import log_event


class JourneySessionStore:
    """One ReturnJourneyOrchestrator per session id, dropped after inactivity."""

    def __init__(
        self,
        factory: Callable[[], ReturnJourneyOrchestrator],
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.factory = factory
        self.ttl_seconds = settings.SESSION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Any]] = {}

    def _expired(self, rec: Dict[str, Any]) -> bool:
        return (self._clock() - rec["updated_at"]) > self.ttl_seconds

    def get(self, session_id: str) -> Optional[ReturnJourneyOrchestrator]:
        """Orchestrator for the session if it is still alive; refreshes its TTL."""
        with self._lock:
            rec = self._data.get(session_id)
            if rec is None:
                return None
            if self._expired(rec):
                self._data.pop(session_id, None)
                log_event("session_expired", session_id=session_id)
                return None
            rec["updated_at"] = self._clock()
            return rec["orchestrator"]

    def get_or_create(self, session_id: str) -> ReturnJourneyOrchestrator:
        existing = self.get(session_id)
        if existing is not None:
            return existing
        now = self._clock()
        orchestrator = self.factory()
        with self._lock:
            # another caller may have created it meanwhile
            rec = self._data.setdefault(
                session_id, {"orchestrator": orchestrator, "started_at": now, "updated_at": now}
            )
        if rec["orchestrator"] is orchestrator:
            log_event("session_created", session_id=session_id)
        return rec["orchestrator"]

    def clear(self, session_id: str) -> bool:
        with self._lock:
            return self._data.pop(session_id, None) is not None

    def extras(self, session_id: str) -> Dict[str, Any]:
        """Per-session scratch space (phone verification) that expires with the session."""
        self.get_or_create(session_id)
        with self._lock:
            rec = self._data.get(session_id)
            return rec.setdefault("extras", {}) if rec is not None else {}

    def sweep(self) -> int:
        """Drop every expired session; returns how many were removed."""
        with self._lock:
            dead = [sid for sid, rec in self._data.items() if self._expired(rec)]
            for sid in dead:
                del self._data[sid]
        if dead:
            log_event("session_sweep", removed=len(dead))
        return len(dead)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
