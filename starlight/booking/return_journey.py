"""
Outbound/return journey state machine.

One orchestrator per user session. Transitions are serialized through an
asyncio.Lock; a failed network transition restores the exact pre-call state
and only leaves a message in ``error``.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
import asyncio

from starlight.bussystem.errors import ErrorCode
from starlight.obs.logger import log_event
from starlight.search.query_client import QueryClient
from starlight.search.return_search import (
    create_outbound_selection,
    get_min_return_date,
    validate_return_date,
)
from starlight.types import RouteSummary, TripBooking


class JourneyState(str, Enum):
    IDLE = "idle"
    OUTBOUND_SEARCHING = "outbound_searching"
    OUTBOUND_SELECTED = "outbound_selected"
    RETURN_SEARCHING = "return_searching"
    RETURN_SELECTED = "return_selected"


_RETURN_STATES = (JourneyState.RETURN_SEARCHING, JourneyState.RETURN_SELECTED)


class ReturnJourneyOrchestrator:
    def __init__(self, client: QueryClient):
        self.client = client
        self.state = JourneyState.IDLE
        self.booking = TripBooking()
        self.outbound_routes: List[RouteSummary] = []
        self.return_routes: List[RouteSummary] = []
        self.search_params: Dict[str, Any] = {}
        self.is_searching_outbound = False
        self.is_searching_return = False
        self.error: Optional[str] = None
        self.error_code: Optional[str] = None
        self._lock = asyncio.Lock()

    # --- snapshot / rollback ----------------------------------------------

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "booking": self.booking.model_copy(deep=True),
            "outbound_routes": list(self.outbound_routes),
            "return_routes": list(self.return_routes),
            "search_params": dict(self.search_params),
        }

    def _restore(self, snap: Dict[str, Any]) -> None:
        self.state = snap["state"]
        self.booking = snap["booking"]
        self.outbound_routes = snap["outbound_routes"]
        self.return_routes = snap["return_routes"]
        self.search_params = snap["search_params"]

    def _fail(self, code: str, message: str) -> None:
        self.error = message
        self.error_code = code
        log_event("journey_error", level="WARNING", code=code, error=message, state=self.state.value)

    def _clear_error(self) -> None:
        self.error = None
        self.error_code = None

    def _clear_return(self) -> None:
        self.booking.return_route = None
        self.return_routes = []

    # --- transitions ------------------------------------------------------

    async def search_outbound(
        self,
        id_from: str,
        id_to: str,
        date: str,
        station_id_from: Optional[str] = None,
        station_id_to: Optional[str] = None,
        trans: str = "bus",
        currency: Optional[str] = None,
        lang: Optional[str] = None,
    ) -> List[RouteSummary]:
        async with self._lock:
            snap = self._snapshot()
            self._clear_error()
            self.is_searching_outbound = True
            self.state = JourneyState.OUTBOUND_SEARCHING
            try:
                response = await self.client.get_routes(
                    id_from, id_to, date,
                    station_id_from=station_id_from, station_id_to=station_id_to,
                    trans=trans, change="auto", currency=currency, lang=lang,
                )
                if not response.success:
                    self._restore(snap)
                    self._fail(response.error.code, response.error.message)
                    return []
                self.outbound_routes = list(response.data)
                self.search_params = {
                    "id_from": str(id_from), "id_to": str(id_to), "date": date,
                    "station_id_from": station_id_from, "station_id_to": station_id_to,
                }
                # a new outbound search invalidates whatever return was picked
                self._clear_return()
                return self.outbound_routes
            except asyncio.CancelledError:
                self._restore(snap)
                raise
            finally:
                self.is_searching_outbound = False

    async def select_outbound(self, route: RouteSummary, search_params: Optional[Dict[str, Any]] = None) -> None:
        """Pin the outbound leg; defaults to the parameters of the last outbound search."""
        async with self._lock:
            params = search_params or self.search_params
            if not params.get("id_from") or not params.get("id_to") or not params.get("date"):
                self._fail(ErrorCode.INVALID_PARAMS, "Outbound search parameters are missing")
                return
            self.booking.outbound = create_outbound_selection(route, params)
            self._clear_return()
            self._clear_error()
            self.state = JourneyState.OUTBOUND_SELECTED
            log_event("journey_outbound_selected", interval_id=route.interval_id,
                      intervals=self.booking.outbound.intervals)

    async def search_return(
        self,
        date_return: str,
        trans: str = "bus",
        currency: Optional[str] = None,
        lang: Optional[str] = None,
    ) -> List[RouteSummary]:
        async with self._lock:
            outbound = self.booking.outbound
            if outbound is None:
                self._fail(ErrorCode.NO_OUTBOUND, "Select an outbound route first")
                return []
            if not self.booking.is_round_trip:
                self._fail(ErrorCode.ROUND_TRIP_OFF, "Turn on round trip before choosing a return")
                return []
            if not validate_return_date(outbound.date_arrival_go, date_return):
                self._fail(
                    ErrorCode.INVALID_RETURN_DATE,
                    f"Return date cannot be earlier than {outbound.date_arrival_go}",
                )
                return []

            snap = self._snapshot()
            self._clear_error()
            self.is_searching_return = True
            self.state = JourneyState.RETURN_SEARCHING
            try:
                response = await self.client.get_routes_return(
                    outbound, date_return, trans=trans, currency=currency, lang=lang,
                )
                if not response.success:
                    self._restore(snap)
                    self._fail(response.error.code, response.error.message)
                    return []
                self.return_routes = list(response.data)
                self.booking.return_route = None
                return self.return_routes
            except asyncio.CancelledError:
                self._restore(snap)
                raise
            finally:
                self.is_searching_return = False

    async def select_return(self, route: RouteSummary) -> None:
        async with self._lock:
            if self.booking.outbound is None:
                self._fail(ErrorCode.NO_OUTBOUND, "Select an outbound route first")
                return
            if not self.booking.is_round_trip:
                self._fail(ErrorCode.ROUND_TRIP_OFF, "Turn on round trip before choosing a return")
                return
            self.booking.return_route = route
            self._clear_error()
            self.state = JourneyState.RETURN_SELECTED

    async def toggle_round_trip(self) -> bool:
        async with self._lock:
            self.booking.is_round_trip = not self.booking.is_round_trip
            if not self.booking.is_round_trip:
                self._clear_return()
                if self.state in _RETURN_STATES:
                    self.state = JourneyState.OUTBOUND_SELECTED
            return self.booking.is_round_trip

    async def clear_selection(self) -> None:
        async with self._lock:
            self.booking = TripBooking()
            self.outbound_routes = []
            self.return_routes = []
            self.search_params = {}
            self._clear_error()
            self.state = JourneyState.IDLE

    # --- helpers ----------------------------------------------------------

    def min_return_date(self) -> Optional[str]:
        if self.booking.outbound is None:
            return None
        return get_min_return_date(self.booking.outbound.date_arrival_go)

    def is_return_date_valid(self, date: str) -> bool:
        if self.booking.outbound is None:
            return False
        return validate_return_date(self.booking.outbound.date_arrival_go, date)

    def find_route(self, interval_id: str, leg: str = "outbound") -> Optional[RouteSummary]:
        routes = self.outbound_routes if leg == "outbound" else self.return_routes
        return next((r for r in routes if r.interval_id == interval_id), None)

    def snapshot(self) -> Dict[str, Any]:
        """Plain-data view for the HTTP layer: data, loading flags, error."""
        return {
            "state": self.state.value,
            "data": {
                "trip_booking": self.booking.model_dump(by_alias=True),
                "outbound_routes": [r.model_dump() for r in self.outbound_routes],
                "return_routes": [r.model_dump() for r in self.return_routes],
                "min_return_date": self.min_return_date(),
            },
            "loading": {
                "outbound": self.is_searching_outbound,
                "return": self.is_searching_return,
            },
            "error": self.error,
            "error_code": self.error_code,
        }
