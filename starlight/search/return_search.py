"""Return-leg search parameters derived from a chosen outbound route.

The provider links the two legs of a round trip through the outbound
``interval_id`` list, so the return request must carry every outbound
interval (one per transfer segment) alongside the mirrored endpoints.
"""

from typing import Any, Dict, List, Optional

from starlight.bussystem.errors import ErrorCode, ValidationError
from starlight.types import OutboundSelection, RouteSummary
from starlight.utils.dates import parse_iso_date


def validate_return_date(arrival_date: str, return_date: str) -> bool:
    """Return may leave on the outbound arrival day or later."""
    if not parse_iso_date(return_date) or not parse_iso_date(arrival_date):
        return False
    return return_date >= arrival_date


def get_min_return_date(arrival_date: str) -> str:
    return arrival_date


def extract_intervals_from_route(route: RouteSummary) -> List[str]:
    if route.trips:
        return [t.interval_id for t in route.trips]
    return [route.interval_id]


def create_outbound_selection(route: RouteSummary, search_params: Dict[str, Any]) -> OutboundSelection:
    return OutboundSelection(
        id_from=str(search_params["id_from"]),
        id_to=str(search_params["id_to"]),
        station_id_from=search_params.get("station_id_from") or None,
        station_id_to=search_params.get("station_id_to") or None,
        date_go=str(search_params["date"]),
        date_arrival_go=route.date_to,
        intervals=extract_intervals_from_route(route),
        selected_route=route,
    )


def build_return_request(
    outbound: OutboundSelection,
    date_return: str,
    trans: str = "bus",
    currency: Optional[str] = None,
    lang: Optional[str] = None,
) -> Dict[str, Any]:
    """get_routes parameters for the return leg.

    Raises ValidationError(INVALID_RETURN_DATE) before anything is sent when
    the return date is earlier than the outbound arrival.
    """
    if not validate_return_date(outbound.date_arrival_go, date_return):
        raise ValidationError(
            f"Return date {date_return} is before outbound arrival {outbound.date_arrival_go}",
            code=ErrorCode.INVALID_RETURN_DATE,
        )
    params: Dict[str, Any] = {
        "id_from": outbound.id_to,
        "id_to": outbound.id_from,
        "date": date_return,
        "trans": trans,
        "change": "auto",
        "interval_id": list(outbound.intervals),
    }
    # each side mirrors independently; a missing side stays missing
    if outbound.station_id_to:
        params["station_id_from"] = outbound.station_id_to
    if outbound.station_id_from:
        params["station_id_to"] = outbound.station_id_from
    if currency:
        params["currency"] = currency
    if lang:
        params["lang"] = lang
    return params
