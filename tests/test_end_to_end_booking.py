"""Search -> pick -> seats -> order -> buy against the in-memory provider."""

from starlight.booking.order_builder import OrderService
from starlight.booking.reservation import ReservationState, ReservationWorkflow
from starlight.booking.return_journey import JourneyState, ReturnJourneyOrchestrator
from starlight.booking.seats import assign_seats_to_passengers, seats_per_passenger
from starlight.types import OrderBuilder, Passenger, TripMeta

from conftest import MOCK_NOW


def _trip_meta(route, date, seats):
    return TripMeta(
        date=date,
        interval_id=route.interval_id,
        seats_per_passenger=seats,
        segments=max(1, len(route.trips)),
        need_orderdata=route.need_orderdata,
        need_birth=route.need_birth,
        need_doc=route.need_doc,
        need_doc_expire_date=route.need_doc_expire_date,
        need_gender=route.need_gender,
        need_citizenship=route.need_citizenship,
        need_middlename=route.need_middlename,
    )


async def test_round_trip_booking(query_client, mock_api):
    journey = ReturnJourneyOrchestrator(query_client)
    routes = await journey.search_outbound("1", "3", "2024-06-01")
    assert routes and all(r.interval_id for r in routes)
    outbound = next(r for r in routes if not r.has_transfers)
    await journey.select_outbound(outbound)
    await journey.toggle_round_trip()

    routes_calls = sum(1 for name, _ in mock_api.calls if name == "get_routes")
    assert await journey.search_return("2024-05-31") == []
    assert sum(1 for name, _ in mock_api.calls if name == "get_routes") == routes_calls

    returns = await journey.search_return("2024-06-02")
    assert returns
    back = next(r for r in returns if not r.has_transfers)
    await journey.select_return(back)
    assert journey.state == JourneyState.RETURN_SELECTED

    passengers = [
        Passenger(name="Ion", surname="Popescu", phone="+373 69 123 456", email="ion@example.com"),
        Passenger(name="Maria", surname="Popescu"),
    ]
    trips = []
    for route, date in ((outbound, "2024-06-01"), (back, "2024-06-02")):
        seats = (await query_client.get_free_seats(route.interval_id)).data
        assignments = assign_seats_to_passengers(seats, len(passengers))
        trips.append(_trip_meta(route, date, seats_per_passenger(assignments, [s.segment_id for s in seats])))
    assert trips[0].seats_per_passenger == ["1", "2"]

    orders = OrderService(mock_api)
    created = await orders.submit(OrderBuilder(trips=trips, passengers=passengers))
    assert created.success, created.error
    new_order = next(p for name, p in mock_api.calls if name == "new_order")
    assert new_order["phone"] == "+37369123456"
    assert new_order["seat"] == [["1", "2"], ["1", "2"]]

    workflow = ReservationWorkflow(created.reservation, orders, now=lambda: MOCK_NOW)
    assert workflow.countdown.format_remaining() == "30:00"
    bought = await workflow.buy()
    assert bought.success
    assert workflow.state == ReservationState.PAID

    seats_after = (await query_client.get_free_seats(outbound.interval_id, use_cache=False)).data[0]
    taken = {s.seat_number for s in seats_after.seats if s.seat_free == 0}
    assert {"1", "2"} <= taken


async def test_transfer_booking_sends_segment_seats(query_client, mock_api):
    routes = (await query_client.get_routes("1", "3", "2024-06-01")).data
    transfer = next(r for r in routes if r.has_transfers)
    seats = (await query_client.get_free_seats(transfer.interval_id)).data
    assert len(seats) == 2

    passengers = [Passenger(name="Ion", surname="Popescu", phone="+37369123456", birth_date="1990-01-01",
                            doc_type="1", doc_number="AB123", gender="M", citizenship="MD")]
    assignments = assign_seats_to_passengers(seats, 1)
    trip = _trip_meta(transfer, "2024-06-01", seats_per_passenger(assignments, [s.segment_id for s in seats]))
    assert trip.seats_per_passenger == ["1,1"]

    created = await OrderService(mock_api).submit(OrderBuilder(trips=[trip], passengers=passengers))
    assert created.success
    payload = next(p for name, p in mock_api.calls if name == "new_order")
    assert payload["doc_number"] == ["AB123"]
    assert payload["gender"] == ["M"]
