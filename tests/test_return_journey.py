import asyncio
from unittest.mock import AsyncMock

import pytest

from starlight.booking.return_journey import JourneyState, ReturnJourneyOrchestrator
from starlight.bussystem.errors import ErrorCode, RequestTimeoutError
from starlight.search.query_client import QueryClient


@pytest.fixture
def journey(query_client):
    return ReturnJourneyOrchestrator(query_client)


async def _pick_outbound(journey, round_trip=False):
    routes = await journey.search_outbound("1", "3", "2024-06-01", station_id_from="11")
    direct = next(r for r in routes if not r.has_transfers)
    await journey.select_outbound(direct)
    if round_trip:
        await journey.toggle_round_trip()
    return direct


def _route_calls(api):
    return [p for name, p in api.calls if name == "get_routes"]


async def test_outbound_search_and_select(journey):
    routes = await journey.search_outbound("1", "3", "2024-06-01")
    assert len(routes) == 2
    assert journey.state == JourneyState.OUTBOUND_SEARCHING
    assert journey.is_searching_outbound is False

    transfer = next(r for r in routes if r.has_transfers)
    await journey.select_outbound(transfer)
    assert journey.state == JourneyState.OUTBOUND_SELECTED
    outbound = journey.booking.outbound
    assert outbound.intervals == [t.interval_id for t in transfer.trips]
    assert outbound.date_arrival_go == "2024-06-03"
    assert journey.min_return_date() == "2024-06-03"


async def test_full_round_trip(journey, mock_api):
    await _pick_outbound(journey)
    await journey.toggle_round_trip()

    returns = await journey.search_return("2024-06-05")
    assert returns
    assert journey.state == JourneyState.RETURN_SEARCHING

    params = _route_calls(mock_api)[-1]
    assert (params["id_from"], params["id_to"]) == ("3", "1")
    assert params["station_id_to"] == "11"
    assert "station_id_from" not in params

    await journey.select_return(returns[0])
    assert journey.state == JourneyState.RETURN_SELECTED
    snap = journey.snapshot()
    assert snap["data"]["trip_booking"]["return"]["interval_id"] == returns[0].interval_id
    assert snap["data"]["trip_booking"]["is_round_trip"] is True


async def test_return_without_outbound(journey, mock_api):
    assert await journey.search_return("2024-06-05") == []
    assert journey.error_code == ErrorCode.NO_OUTBOUND
    assert mock_api.calls == []


async def test_return_leg_needs_round_trip(journey, mock_api):
    direct = await _pick_outbound(journey)
    calls = len(mock_api.calls)

    assert await journey.search_return("2024-06-05") == []
    assert journey.error_code == ErrorCode.ROUND_TRIP_OFF
    assert len(mock_api.calls) == calls
    assert journey.state == JourneyState.OUTBOUND_SELECTED

    await journey.select_return(direct)
    assert journey.error_code == ErrorCode.ROUND_TRIP_OFF
    assert journey.booking.return_route is None
    assert journey.state == JourneyState.OUTBOUND_SELECTED


async def test_early_return_date_is_rejected_locally(journey, mock_api):
    await _pick_outbound(journey, round_trip=True)
    await journey.search_return("2024-06-04")
    before = list(journey.return_routes)
    calls = len(mock_api.calls)

    assert await journey.search_return("2024-06-01") == []
    assert journey.error_code == ErrorCode.INVALID_RETURN_DATE
    assert len(mock_api.calls) == calls
    assert journey.return_routes == before
    assert journey.is_return_date_valid("2024-06-02")
    assert not journey.is_return_date_valid("2024-06-01")


async def test_new_outbound_search_clears_return(journey):
    await _pick_outbound(journey, round_trip=True)
    returns = await journey.search_return("2024-06-05")
    await journey.select_return(returns[0])

    await journey.search_outbound("1", "6", "2024-06-10")
    assert journey.booking.return_route is None
    assert journey.return_routes == []


async def test_reselecting_outbound_clears_return(journey):
    direct = await _pick_outbound(journey, round_trip=True)
    returns = await journey.search_return("2024-06-05")
    await journey.select_return(returns[0])

    await journey.select_outbound(direct)
    assert journey.booking.return_route is None
    assert journey.state == JourneyState.OUTBOUND_SELECTED


async def test_failed_search_rolls_back(cache):
    api = AsyncMock()
    api.get_routes.side_effect = RequestTimeoutError("/curl/get_routes.php", 15)
    journey = ReturnJourneyOrchestrator(QueryClient(api, cache))

    assert await journey.search_outbound("1", "3", "2024-06-01") == []
    assert journey.state == JourneyState.IDLE
    assert journey.search_params == {}
    assert journey.error_code == ErrorCode.TIMEOUT
    assert journey.is_searching_outbound is False


async def test_failed_return_search_keeps_selection(journey, query_client, mock_api):
    direct = await _pick_outbound(journey, round_trip=True)
    returns = await journey.search_return("2024-06-05")
    await journey.select_return(returns[0])
    before = journey.booking.model_dump()

    mock_api.get_routes = AsyncMock(side_effect=RequestTimeoutError("/curl/get_routes.php", 15))
    query_client.clear_cache()
    assert await journey.search_return("2024-06-07") == []

    assert journey.state == JourneyState.RETURN_SELECTED
    assert journey.booking.model_dump() == before
    assert journey.booking.outbound.selected_route.interval_id == direct.interval_id
    assert journey.is_searching_return is False
    assert journey.error


async def test_cancelled_search_restores_state(cache):
    started = asyncio.Event()

    async def slow_routes(**params):
        started.set()
        await asyncio.sleep(10)

    api = AsyncMock()
    api.get_routes.side_effect = slow_routes
    journey = ReturnJourneyOrchestrator(QueryClient(api, cache))

    task = asyncio.create_task(journey.search_outbound("1", "3", "2024-06-01"))
    await started.wait()
    assert journey.snapshot()["loading"]["outbound"] is True
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert journey.state == JourneyState.IDLE
    assert journey.is_searching_outbound is False


async def test_toggle_off_returns_to_outbound_selected(journey):
    await _pick_outbound(journey)
    assert await journey.toggle_round_trip() is True
    returns = await journey.search_return("2024-06-05")
    await journey.select_return(returns[0])

    assert await journey.toggle_round_trip() is False
    assert journey.state == JourneyState.OUTBOUND_SELECTED
    assert journey.booking.return_route is None
    assert journey.return_routes == []


async def test_clear_selection(journey):
    await _pick_outbound(journey)
    await journey.clear_selection()
    snap = journey.snapshot()
    assert snap["state"] == "idle"
    assert snap["data"]["trip_booking"]["outbound"] is None
    assert snap["data"]["outbound_routes"] == []
    assert snap["data"]["min_return_date"] is None


async def test_select_without_search_params_fails(journey, query_client):
    routes = (await query_client.get_routes("1", "3", "2024-06-01")).data
    await journey.select_outbound(routes[0])
    assert journey.error_code == ErrorCode.INVALID_PARAMS
    assert journey.booking.outbound is None
    assert journey.state == JourneyState.IDLE


async def test_find_route(journey):
    routes = await journey.search_outbound("1", "3", "2024-06-01")
    assert journey.find_route(routes[1].interval_id) is routes[1]
    assert journey.find_route("missing") is None
    assert journey.find_route(routes[0].interval_id, leg="return") is None
