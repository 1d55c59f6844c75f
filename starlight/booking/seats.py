"""Seat selection across one or more route segments."""

from typing import Dict, Iterable, List, Mapping, Sequence, Union

from starlight.bussystem.errors import InsufficientSeatsError
from starlight.types import FreeSeatItem, PassengerSeatAssignment, RouteSummary, SegmentSeats


def get_available_seats(seats: Iterable[FreeSeatItem]) -> List[FreeSeatItem]:
    return [s for s in seats if s.seat_free == 1]


def has_enough_seats(seats: Iterable[FreeSeatItem], passenger_count: int) -> bool:
    return len(get_available_seats(seats)) >= passenger_count


def pick_free_seats(seats: Iterable[FreeSeatItem], count: int) -> List[str]:
    return [s.seat_number for s in get_available_seats(seats)[:count]]


def calculate_seat_price(seats: Iterable[FreeSeatItem], selected: Iterable[Union[str, int]]) -> float:
    by_number = {str(s.seat_number): s for s in seats}
    total = 0.0
    for number in selected:
        seat = by_number.get(str(number))
        if seat is not None and seat.seat_price:
            total += seat.seat_price
    return total


def should_call_get_free_seats(route: RouteSummary) -> bool:
    return route.request_get_free_seats


def seats_from_route(route: RouteSummary) -> SegmentSeats:
    """Seat list for routes that ship free seats inline (no get_free_seats call)."""
    return SegmentSeats(
        segment_id=route.interval_id,
        seats=[FreeSeatItem(seat_number=n, seat_free=1, seat_price=route.price_one_way, currency=route.currency or None)
               for n in route.free_seats],
        has_plan=route.has_plan,
        trip_name=route.route_name,
    )


def assign_seats_to_passengers(trip_seats: Sequence[SegmentSeats], passenger_count: int) -> List[PassengerSeatAssignment]:
    """Give every passenger one seat on every segment.

    All segments are checked up front, so an InsufficientSeatsError leaves the
    seat lists untouched. Otherwise seats are taken first-free in list order
    and marked occupied in place, which keeps them unique within a segment.
    """
    for segment in trip_seats:
        available = len(get_available_seats(segment.seats))
        if available < passenger_count:
            raise InsufficientSeatsError(segment.segment_id, available, passenger_count)

    assignments: List[PassengerSeatAssignment] = []
    for passenger_index in range(passenger_count):
        assignment = PassengerSeatAssignment(passenger_index=passenger_index)
        for segment in trip_seats:
            seat = next(s for s in segment.seats if s.seat_free == 1)
            seat.seat_free = 0
            assignment.seats_by_segment[segment.segment_id] = seat.seat_number
            assignment.total_price += seat.seat_price or 0.0
        assignments.append(assignment)
    return assignments


def format_seat_for_segments(selections: Mapping[int, str], total_segments: int) -> str:
    """{segment_index: seat} -> "5,1"; unknown segments stay empty."""
    seats = [""] * total_segments
    for index, seat in selections.items():
        if 0 <= index < total_segments:
            seats[index] = str(seat)
    return ",".join(seats)


def seats_per_passenger(assignments: Sequence[PassengerSeatAssignment], segment_ids: Sequence[str]) -> List[str]:
    """One seat string per passenger in passenger order, segments comma-joined."""
    ordered = sorted(assignments, key=lambda a: a.passenger_index)
    out: List[str] = []
    for a in ordered:
        selections: Dict[int, str] = {
            i: a.seats_by_segment[sid] for i, sid in enumerate(segment_ids) if sid in a.seats_by_segment
        }
        out.append(format_seat_for_segments(selections, len(segment_ids)))
    return out


def validate_round_trip_seats(outbound: RouteSummary, return_route: RouteSummary, passenger_count: int) -> Dict[str, Dict[str, bool]]:
    """Which legs need a get_free_seats call, and whether inline seats suffice."""
    out_inline = not should_call_get_free_seats(outbound)
    ret_inline = not should_call_get_free_seats(return_route)
    return {
        "outbound": {
            "needs_api_call": not out_inline,
            "has_enough_seats": out_inline and len(outbound.free_seats) >= passenger_count,
        },
        "return": {
            "needs_api_call": not ret_inline,
            "has_enough_seats": ret_inline and len(return_route.free_seats) >= passenger_count,
        },
    }
