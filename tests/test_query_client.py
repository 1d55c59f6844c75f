from unittest.mock import AsyncMock

import pytest

from starlight.bussystem.errors import ConfigurationError, ErrorCode, ProviderError, RequestTimeoutError
from starlight.cache.query_cache import QueryCache
from starlight.search.query_client import QueryClient
from starlight.search.return_search import build_return_request, validate_return_date
from starlight.types import OutboundSelection


def _calls(api, method):
    return [params for name, params in api.calls if name == method]


class TestAutocomplete:
    async def test_short_query_rejected_without_network(self, query_client, mock_api):
        response = await query_client.autocomplete("B")
        assert response.success is False
        assert response.error.code == ErrorCode.INVALID_QUERY
        assert mock_api.calls == []

    async def test_second_lookup_is_cached(self, query_client, mock_api):
        first = await query_client.autocomplete("Ber")
        second = await query_client.autocomplete("Ber")

        assert first.success and not first.cached
        assert second.success and second.cached
        assert [c.point_id for c in second.data] == [c.point_id for c in first.data]
        assert "3" in [c.point_id for c in first.data]
        assert len(_calls(mock_api, "get_points")) == 1

    async def test_cache_expires_after_five_minutes(self, query_client, mock_api, clock):
        await query_client.autocomplete("Ber")
        clock.advance(5 * 60 + 1)
        response = await query_client.autocomplete("Ber")
        assert response.cached is False
        assert len(_calls(mock_api, "get_points")) == 2

    async def test_accent_insensitive_match(self, query_client):
        response = await query_client.autocomplete("chisinau")
        assert [c.name for c in response.data] == ["Chișinău"]


class TestPoints:
    async def test_validation_codes(self, query_client, mock_api):
        assert (await query_client.get_cities_by_country("")).error.code == ErrorCode.INVALID_COUNTRY_ID
        assert (await query_client.get_cities_from(" ")).error.code == ErrorCode.INVALID_POINT_ID
        assert (await query_client.get_cities_in_bounds(50, 10, 40, 20)).error.code == ErrorCode.INVALID_BOUNDS
        assert mock_api.calls == []

    async def test_cities_by_country(self, query_client):
        response = await query_client.get_cities_by_country("1")
        assert sorted(c.point_id for c in response.data) == ["1", "9"]

    async def test_bounds_sends_both_spellings(self, query_client, mock_api):
        response = await query_client.get_cities_in_bounds(45.0, 20.0, 53.0, 30.0)
        params = _calls(mock_api, "get_points")[0]
        assert params["boundLonNE"] == params["boundLotNE"] == 30.0
        assert "4" in [c.point_id for c in response.data]

    async def test_countries_and_groups(self, query_client):
        countries = await query_client.get_countries()
        assert len(countries.data) == 6
        groups = await query_client.get_country_groups()
        assert groups.success
        assert all(g.country_name for g in groups.data)

    async def test_cities_with_stations(self, query_client):
        response = await query_client.get_cities_with_stations()
        berlin = next(c for c in response.data if c.point_id == "3")
        assert [s.station_id for s in berlin.stations] == ["31", "32"]


class TestErrors:
    async def test_provider_error_becomes_failed_envelope(self, cache):
        api = AsyncMock()
        api.get_routes.side_effect = ProviderError("route_no_activ")
        client = QueryClient(api, cache)
        response = await client.get_routes("1", "3", "2024-06-01")
        assert response.success is False
        assert response.error.code == ErrorCode.ROUTE_NO_ACTIV

    async def test_timeout_becomes_failed_envelope(self, cache):
        api = AsyncMock()
        api.get_points.side_effect = RequestTimeoutError("/curl/get_points.php", 15)
        response = await QueryClient(api, cache).autocomplete("Berlin")
        assert response.error.code == ErrorCode.TIMEOUT

    async def test_failures_are_not_cached(self, cache):
        api = AsyncMock()
        api.get_points.side_effect = [ProviderError("x"), {"item": [{"point_id": "3", "point_name": "Berlin"}]}]
        client = QueryClient(api, cache)
        assert (await client.autocomplete("Berlin")).success is False
        second = await client.autocomplete("Berlin")
        assert second.success and not second.cached

    async def test_configuration_error_escapes(self, cache):
        api = AsyncMock()
        api.get_points.side_effect = ConfigurationError("no credentials")
        with pytest.raises(ConfigurationError):
            await QueryClient(api, cache).autocomplete("Berlin")

    async def test_unknown_container_is_empty_result(self, cache):
        api = AsyncMock()
        api.get_points.return_value = {"unexpected": True}
        response = await QueryClient(api, cache).autocomplete("Berlin")
        assert response.success is True
        assert response.data == []


class TestRoutes:
    async def test_invalid_date_rejected(self, query_client, mock_api):
        response = await query_client.get_routes("1", "3", "01.06.2024")
        assert response.error.code == ErrorCode.INVALID_PARAMS
        assert mock_api.calls == []

    async def test_routes_found(self, query_client):
        response = await query_client.get_routes("1", "3", "2024-06-01")
        assert response.success
        assert all(r.interval_id for r in response.data)
        direct = next(r for r in response.data if not r.has_transfers)
        assert direct.date_to == "2024-06-02"
        assert direct.request_get_free_seats is True

    async def test_free_seats_discounts_baggage(self, query_client):
        routes = (await query_client.get_routes("1", "3", "2024-06-01")).data
        route = next(r for r in routes if not r.has_transfers)
        seats = await query_client.get_free_seats(route.interval_id)
        assert seats.data[0].segment_id == route.interval_id
        assert seats.data[0].seats[3].seat_free == 0
        discounts = await query_client.get_discounts(route.interval_id)
        assert [d.discount_id for d in discounts.data] == ["3196", "3197", "3198"]
        baggage = await query_client.get_baggage(route.interval_id)
        assert {b.baggage_id for b in baggage.data} == {"82", "86", "90"}

    async def test_unknown_interval_maps_provider_code(self, query_client):
        response = await query_client.get_free_seats("nope")
        assert response.error.code == ErrorCode.INTERVAL_NO_FOUND

    async def test_free_seats_labels_follow_segment_ids(self, cache):
        api = AsyncMock()
        api.get_free_seats.return_value = [{"free_seats": []}, {"free_seats": []}]
        client = QueryClient(api, cache)

        first = await client.get_free_seats("int-1", segment_ids=["a", "b"])
        assert [s.segment_id for s in first.data] == ["a", "b"]
        assert (await client.get_free_seats("int-1", segment_ids=["a", "b"])).cached is True

        other = await client.get_free_seats("int-1", segment_ids=["c", "d"])
        assert other.cached is False
        assert [s.segment_id for s in other.data] == ["c", "d"]
        assert api.get_free_seats.await_count == 2
        assert "segment_ids" not in api.get_free_seats.await_args.kwargs


class TestPlan:
    async def test_plan_is_normalized_and_cached(self, query_client, mock_api):
        response = await query_client.get_plan("1")
        plan = response.data
        assert plan.bustype_id == "1"
        assert plan.version == "2.0"
        row = plan.floors[0].rows[0]
        assert [s.number for s in row.seats] == ["1", "2", None, "3", "4"]
        assert row.seats[2].is_empty

        again = await query_client.get_plan("1")
        assert again.cached is True
        assert again.data == plan
        assert len(_calls(mock_api, "get_plan")) == 1
        assert _calls(mock_api, "get_plan")[0]["position"] == "h"

    async def test_plan_params_checked_locally(self, query_client, mock_api):
        assert (await query_client.get_plan("")).error.code == ErrorCode.INVALID_PARAMS
        assert (await query_client.get_plan("1", orientation="x")).error.code == ErrorCode.INVALID_PARAMS
        assert mock_api.calls == []


class TestReturnInversion:
    def _outbound(self, **kw):
        data = dict(id_from="3", id_to="6", date_go="2023-11-28", date_arrival_go="2023-12-01", intervals=["i1", "i2"])
        data.update(kw)
        return OutboundSelection(**data)

    def test_swaps_endpoints_and_carries_intervals(self):
        params = build_return_request(self._outbound(station_id_from="10"), "2023-12-05")
        assert params["id_from"] == "6"
        assert params["id_to"] == "3"
        assert params["station_id_to"] == "10"
        assert "station_id_from" not in params
        assert params["interval_id"] == ["i1", "i2"]
        assert params["change"] == "auto"

    def test_both_stations_mirror(self):
        params = build_return_request(self._outbound(station_id_from="10", station_id_to="60"), "2023-12-05")
        assert params["station_id_from"] == "60"
        assert params["station_id_to"] == "10"

    def test_return_date_rule(self):
        assert validate_return_date("2023-12-01", "2023-11-30") is False
        assert validate_return_date("2023-12-01", "2023-12-01") is True
        assert validate_return_date("2023-12-01", "garbage") is False

    async def test_get_routes_return_sends_inverted_request(self, query_client, mock_api):
        outbound = self._outbound(id_from="1", id_to="3", station_id_from="11", date_arrival_go="2024-06-02")
        response = await query_client.get_routes_return(outbound, "2024-06-05")
        assert response.success
        params = _calls(mock_api, "get_routes")[0]
        assert (params["id_from"], params["id_to"]) == ("3", "1")
        assert params["station_id_to"] == "11"
        assert "station_id_from" not in params

    async def test_early_return_date_never_hits_network(self, query_client, mock_api):
        response = await query_client.get_routes_return(self._outbound(), "2023-11-30")
        assert response.error.code == ErrorCode.INVALID_RETURN_DATE
        assert mock_api.calls == []


async def test_clear_cache(mock_api, clock):
    client = QueryClient(mock_api, QueryCache(clock=clock))
    await client.get_countries()
    client.clear_cache()
    assert (await client.get_countries()).cached is False
