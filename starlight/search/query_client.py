"""
Points / routes query client.

Read-through cached wrappers over the raw Bussystem API. Every public method
returns an ``ApiResponse`` envelope; validation, transport and provider
errors come back as ``success=False`` with a typed code instead of raising.
The only exception that escapes is ``ConfigurationError``.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Type
import time

from pydantic import BaseModel

from starlight.bussystem.client import BussystemApi
from starlight.bussystem.errors import BussystemError, ConfigurationError, ErrorCode, ValidationError
from starlight.bussystem import transform
from starlight.cache.query_cache import CacheTTL, QueryCache, create_cache_key
from starlight.config import settings
from starlight.obs.logger import log_event
from starlight.search.return_search import build_return_request
from starlight.types import (
    ApiResponse,
    BaggageItem,
    BusPlan,
    CountryGroup,
    CountryItem,
    DiscountItem,
    OutboundSelection,
    PointCity,
    RouteSummary,
    SegmentSeats,
)
from starlight.utils.dates import parse_iso_date


class QueryClient:
    """Cached query layer used by the journey orchestrator and the HTTP surface."""

    def __init__(self, api: BussystemApi, cache: Optional[QueryCache] = None,
                 lang: Optional[str] = None, currency: Optional[str] = None):
        self.api = api
        self.cache = cache if cache is not None else QueryCache()
        self.lang = lang or settings.DEFAULT_LANG
        self.currency = currency or settings.DEFAULT_CURRENCY

    # --- plumbing ---------------------------------------------------------

    async def _query(
        self,
        kind: str,
        params: Dict[str, Any],
        ttl: float,
        fetch: Callable[[], Awaitable[Any]],
        normalize: Callable[[Any], List[BaseModel]],
        model: Type[BaseModel],
        use_cache: bool = True,
    ) -> ApiResponse:
        key = create_cache_key(kind, params)
        if use_cache:
            hit = self.cache.get(key)
            if hit is not None:
                return ApiResponse.ok([model.model_validate(x) for x in hit], cached=True)

        start = time.monotonic()
        try:
            raw = await fetch()
        except ConfigurationError:
            raise
        except BussystemError as e:
            log_event("query_failed", level="WARNING", kind=kind, code=e.code, error=e.message)
            return ApiResponse.fail(e.code, e.message, e.detail)
        except Exception as e:
            log_event("query_failed", level="ERROR", kind=kind, error=f"{type(e).__name__}: {e}")
            return ApiResponse.fail(ErrorCode.PROVIDER_ERROR, f"{kind} request failed", str(e))

        try:
            items = normalize(raw)
        except ValueError as e:
            # unknown container shape is an empty answer, not a failure
            log_event("normalize_skip", level="WARNING", kind=kind, reason=str(e))
            items = []

        if use_cache:
            self.cache.set(key, [i.model_dump(by_alias=True) for i in items], ttl)
        log_event("query_ok", kind=kind, count=len(items), ms=round((time.monotonic() - start) * 1000, 1))
        return ApiResponse.ok(items)

    def clear_cache(self) -> None:
        self.cache.clear()

    # --- points -----------------------------------------------------------

    async def autocomplete(self, query: str, trans: str = "all", lang: Optional[str] = None,
                           include_all: bool = True, use_cache: bool = True) -> ApiResponse:
        query = (query or "").strip()
        if len(query) < settings.AUTOCOMPLETE_MIN_LENGTH:
            return ApiResponse.fail(
                ErrorCode.INVALID_QUERY,
                f"Query must be at least {settings.AUTOCOMPLETE_MIN_LENGTH} characters",
            )
        lang = lang or self.lang
        params = {"autocomplete": query, "trans": trans, "all": 1 if include_all else 0, "lang": lang}
        return await self._query(
            "autocomplete", params, CacheTTL.AUTOCOMPLETE,
            lambda: self.api.get_points(**params),
            lambda raw: transform.normalize_city_list(raw, lang),
            PointCity, use_cache,
        )

    async def get_cities_by_country(self, country_id: str, trans: str = "all",
                                    lang: Optional[str] = None, use_cache: bool = True) -> ApiResponse:
        if not str(country_id or "").strip():
            return ApiResponse.fail(ErrorCode.INVALID_COUNTRY_ID, "Country ID is required")
        lang = lang or self.lang
        params = {"country_id": str(country_id), "trans": trans, "lang": lang}
        return await self._query(
            "country-cities", params, CacheTTL.CITIES,
            lambda: self.api.get_points(**params),
            lambda raw: transform.normalize_city_list(raw, lang),
            PointCity, use_cache,
        )

    async def _connections(self, direction: str, point_id: str, trans: str,
                           lang: Optional[str], use_cache: bool) -> ApiResponse:
        if not str(point_id or "").strip():
            return ApiResponse.fail(ErrorCode.INVALID_POINT_ID, "Point ID is required")
        lang = lang or self.lang
        params = {f"point_id_{direction}": str(point_id), "trans": trans, "lang": lang}
        return await self._query(
            f"cities-{direction}", params, CacheTTL.CONNECTIONS,
            lambda: self.api.get_points(**params),
            lambda raw: transform.normalize_city_list(raw, lang),
            PointCity, use_cache,
        )

    async def get_cities_from(self, point_id: str, trans: str = "all",
                              lang: Optional[str] = None, use_cache: bool = True) -> ApiResponse:
        """Cities reachable from ``point_id``."""
        return await self._connections("from", point_id, trans, lang, use_cache)

    async def get_cities_to(self, point_id: str, trans: str = "all",
                            lang: Optional[str] = None, use_cache: bool = True) -> ApiResponse:
        """Cities with a connection into ``point_id``."""
        return await self._connections("to", point_id, trans, lang, use_cache)

    async def get_cities_in_bounds(self, sw_lat: float, sw_lon: float, ne_lat: float, ne_lon: float,
                                   trans: str = "all", lang: Optional[str] = None,
                                   use_cache: bool = True) -> ApiResponse:
        if sw_lat >= ne_lat or sw_lon >= ne_lon:
            return ApiResponse.fail(ErrorCode.INVALID_BOUNDS, "Invalid bounding box coordinates")
        lang = lang or self.lang
        params = {
            "boundLatSW": sw_lat,
            "boundLonSW": sw_lon,
            "boundLatNE": ne_lat,
            "boundLonNE": ne_lon,
            "boundLotNE": ne_lon,  # provider reads the misspelled key on some versions
            "trans": trans,
            "lang": lang,
        }
        return await self._query(
            "cities-bounds", params, CacheTTL.CITIES,
            lambda: self.api.get_points(**params),
            lambda raw: transform.normalize_city_list(raw, lang),
            PointCity, use_cache,
        )

    async def get_countries(self, lang: Optional[str] = None, use_cache: bool = True) -> ApiResponse:
        lang = lang or self.lang
        params = {"viev": "get_country", "lang": lang}
        return await self._query(
            "countries", params, CacheTTL.COUNTRIES,
            lambda: self.api.get_points(**params),
            lambda raw: transform.normalize_country_list(raw, lang),
            CountryItem, use_cache,
        )

    async def get_country_groups(self, lang: Optional[str] = None, use_cache: bool = True) -> ApiResponse:
        lang = lang or self.lang
        params = {"viev": "group_country", "lang": lang}
        return await self._query(
            "country-groups", params, CacheTTL.COUNTRIES,
            lambda: self.api.get_points(**params),
            lambda raw: transform.normalize_country_groups(raw, lang),
            CountryGroup, use_cache,
        )

    async def get_cities_with_stations(self, trans: str = "all", lang: Optional[str] = None,
                                       use_cache: bool = True) -> ApiResponse:
        lang = lang or self.lang
        params = {"group_by_point": 1, "trans": trans, "lang": lang}
        return await self._query(
            "cities-stations", params, CacheTTL.STATIONS,
            lambda: self.api.get_points(**params),
            lambda raw: transform.normalize_city_list(raw, lang),
            PointCity, use_cache,
        )

    # --- routes -----------------------------------------------------------

    async def _routes(self, kind: str, params: Dict[str, Any], use_cache: bool) -> ApiResponse:
        return await self._query(
            kind, params, CacheTTL.ROUTES,
            lambda: self.api.get_routes(**params),
            transform.normalize_route_list,
            RouteSummary, use_cache,
        )

    async def get_routes(
        self,
        id_from: str,
        id_to: str,
        date: str,
        station_id_from: Optional[str] = None,
        station_id_to: Optional[str] = None,
        trans: str = "bus",
        change: str = "auto",
        currency: Optional[str] = None,
        lang: Optional[str] = None,
        use_cache: bool = True,
    ) -> ApiResponse:
        if not id_from or not id_to:
            return ApiResponse.fail(ErrorCode.INVALID_POINT_ID, "id_from and id_to are required")
        if not parse_iso_date(date):
            return ApiResponse.fail(ErrorCode.INVALID_PARAMS, f"Invalid date: {date!r}")
        params: Dict[str, Any] = {
            "id_from": str(id_from),
            "id_to": str(id_to),
            "date": date,
            "trans": trans,
            "change": change,
            "currency": currency or self.currency,
            "lang": lang or self.lang,
        }
        if station_id_from:
            params["station_id_from"] = str(station_id_from)
        if station_id_to:
            params["station_id_to"] = str(station_id_to)
        return await self._routes("routes", params, use_cache)

    async def get_routes_return(
        self,
        outbound: OutboundSelection,
        date_return: str,
        trans: str = "bus",
        currency: Optional[str] = None,
        lang: Optional[str] = None,
        use_cache: bool = True,
    ) -> ApiResponse:
        try:
            params = build_return_request(
                outbound, date_return, trans=trans,
                currency=currency or self.currency, lang=lang or self.lang,
            )
        except ValidationError as e:
            return ApiResponse.fail(e.code, e.message)
        return await self._routes("routes-return", params, use_cache)

    # --- per-interval extras ----------------------------------------------

    async def get_free_seats(self, interval_id: str, segment_ids: Optional[List[str]] = None,
                             currency: Optional[str] = None, lang: Optional[str] = None,
                             use_cache: bool = True) -> ApiResponse:
        if not interval_id:
            return ApiResponse.fail(ErrorCode.INVALID_PARAMS, "interval_id is required")
        params = {"interval_id": str(interval_id), "currency": currency or self.currency, "lang": lang or self.lang}
        # labels depend on segment_ids, so they are part of the key but not the request
        key_params = dict(params, segment_ids=",".join(segment_ids or []))
        return await self._query(
            "free-seats", key_params, CacheTTL.SEATS,
            lambda: self.api.get_free_seats(**params),
            lambda raw: transform.normalize_free_seats(raw, segment_ids),
            SegmentSeats, use_cache,
        )

    async def get_discounts(self, interval_id: str, currency: Optional[str] = None,
                            lang: Optional[str] = None, use_cache: bool = True) -> ApiResponse:
        if not interval_id:
            return ApiResponse.fail(ErrorCode.INVALID_PARAMS, "interval_id is required")
        params = {"interval_id": str(interval_id), "currency": currency or self.currency, "lang": lang or self.lang}
        return await self._query(
            "discounts", params, CacheTTL.DISCOUNTS,
            lambda: self.api.get_discount(**params),
            transform.normalize_discounts,
            DiscountItem, use_cache,
        )

    async def get_baggage(self, interval_id: str, station_from_id: Optional[str] = None,
                          station_to_id: Optional[str] = None, currency: Optional[str] = None,
                          lang: Optional[str] = None, use_cache: bool = True) -> ApiResponse:
        if not interval_id:
            return ApiResponse.fail(ErrorCode.INVALID_PARAMS, "interval_id is required")
        params: Dict[str, Any] = {
            "interval_id": str(interval_id),
            "currency": currency or self.currency,
            "lang": lang or self.lang,
        }
        if station_from_id:
            params["station_from_id"] = str(station_from_id)
        if station_to_id:
            params["station_to_id"] = str(station_to_id)
        return await self._query(
            "baggage", params, CacheTTL.BAGGAGE,
            lambda: self.api.get_baggage(**params),
            transform.normalize_baggage,
            BaggageItem, use_cache,
        )

    # --- seat plan --------------------------------------------------------

    async def get_plan(self, bustype_id: str, orientation: str = "h", version: str = "2.0",
                       lang: Optional[str] = None, use_cache: bool = True) -> ApiResponse:
        """Seat layout for a vehicle type; ``data`` is a single BusPlan."""
        if not bustype_id:
            return ApiResponse.fail(ErrorCode.INVALID_PARAMS, "bustype_id is required")
        if orientation not in ("h", "v"):
            return ApiResponse.fail(ErrorCode.INVALID_PARAMS, "orientation must be h or v")
        params = {"bustype_id": str(bustype_id), "position": orientation, "v": version, "lang": lang or self.lang}
        response = await self._query(
            "plan", params, CacheTTL.PLAN,
            lambda: self.api.get_plan(**params),
            lambda raw: [transform.normalize_plan(raw, bustype_id, orientation)],
            BusPlan, use_cache,
        )
        if response.success:
            response.data = response.data[0] if response.data else None
        return response
