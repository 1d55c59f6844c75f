"""Normalize raw Bussystem payloads (JSON or XML-as-dict) into typed models.

The provider is inconsistent: lists arrive bare, under ``root.item``, under
``items`` or under ``item``, single records are not wrapped in a list, 0/1
flags arrive as ints or strings, and a few field names are misspelled
(``county_name``, ``seat_curency``). Everything downstream of this module
works with the models in ``starlight.types`` only.
"""

from typing import Any, Dict, Iterable, List, Optional
import re
import unicodedata

from starlight.obs.logger import log_event
from starlight.types import (
    BaggageItem,
    BusPlan,
    CancelRule,
    ChangeRouteSegment,
    CountryGroup,
    CountryItem,
    DiscountItem,
    FreeSeatItem,
    GroupPoint,
    OrderInfo,
    PlanFloor,
    PlanRow,
    PlanSeat,
    PointAirport,
    PointCity,
    PointStation,
    ReservationInfo,
    ReserveValidation,
    RouteDiscount,
    RouteSummary,
    RouteTrip,
    SegmentSeats,
    SmsValidationResult,
)

_LANGS = ("en", "ru", "ua", "de", "pl", "cz", "ro")


# --- coercion helpers -------------------------------------------------------

def to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def to_float(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if num != num or num in (float("inf"), float("-inf")):
        return None
    return num


def to_int(value: Any) -> Optional[int]:
    num = to_float(value)
    return int(num) if num is not None else None


def to_bool(value: Any) -> bool:
    """Provider flags are 0/1 as int, str or bool. Anything else is False."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value >= 1
    if isinstance(value, str):
        return value.strip().lower() in ("1", "2", "true", "yes")
    return False


def ensure_list(value: Any) -> List[Any]:
    """Unwrap ``{"item": x}`` and lift a single record into a list."""
    if value is None or value == "":
        return []
    if isinstance(value, dict) and "item" in value and len(value) <= 2:
        return ensure_list(value["item"])
    if isinstance(value, list):
        return value
    return [value]


def extract_items(raw: Any) -> List[Any]:
    """Flatten every container shape the provider uses into a plain list.

    Raises ValueError for anything that is not one of the known containers.
    """
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        root = raw.get("root")
        if isinstance(root, dict) and "item" in root:
            return ensure_list(root["item"])
        if isinstance(raw.get("items"), list):
            return raw["items"]
        if "item" in raw:
            return ensure_list(raw["item"])
    raise ValueError(f"unrecognized container: {type(raw).__name__}")


def _skip(kind: str, record: Any, reason: str) -> None:
    log_event("normalize_skip", level="WARNING", kind=kind, reason=reason, record=record)


# --- sorting ----------------------------------------------------------------

_DIGITS = re.compile(r"(\d+)")


def locale_sort_key(text: str):
    """Accent-insensitive, case-insensitive, numeric-aware key."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()
    parts = _DIGITS.split(stripped)
    return [(0, int(p), "") if p.isdigit() else (1, 0, p) for p in parts if p != ""]


def sort_cities_by_name(cities: Iterable[PointCity]) -> List[PointCity]:
    return sorted(cities, key=lambda c: (locale_sort_key(c.name), c.point_id))


# --- points -----------------------------------------------------------------

def localized_point_name(raw: Dict[str, Any], lang: str = "en") -> str:
    # already-normalized records keep their name
    if raw.get("name"):
        return to_str(raw["name"])
    candidates = []
    if lang != "en":
        candidates.append(raw.get(f"point_{lang}_name"))
    candidates.extend([raw.get("point_name"), raw.get("point_latin_name"), raw.get("latin_name")])
    for c in candidates:
        s = to_str(c)
        if s:
            return s
    return ""


def _normalize_station(raw: Dict[str, Any], point_id: str) -> PointStation:
    return PointStation(
        station_id=to_str(raw.get("station_id")),
        point_id=to_str(raw.get("point_id")) or point_id,
        station_name=to_str(raw.get("station_name")),
        station_address=to_str(raw.get("station_address")),
        latitude=to_float(raw.get("latitude") or raw.get("station_lat")),
        longitude=to_float(raw.get("longitude") or raw.get("station_lon")),
    )


def _normalize_airport(raw: Dict[str, Any]) -> PointAirport:
    return PointAirport(
        iata=to_str(raw.get("iata")),
        icao=to_str(raw.get("icao")),
        airport_name=to_str(raw.get("airport_name")),
        latitude=to_float(raw.get("latitude")),
        longitude=to_float(raw.get("longitude")),
    )


def normalize_point_city(raw: Dict[str, Any], lang: str = "en") -> PointCity:
    point_id = to_str(raw.get("point_id") or raw.get("pointId") or raw.get("id"))
    stations = [
        _normalize_station(s, point_id)
        for s in ensure_list(raw.get("stations"))
        if isinstance(s, dict) and s.get("station_id") not in (None, "")
    ]
    airports = [_normalize_airport(a) for a in ensure_list(raw.get("airports")) if isinstance(a, dict)]
    return PointCity(
        point_id=point_id,
        name=localized_point_name(raw, lang),
        latin_name=to_str(raw.get("point_latin_name") or raw.get("latin_name")),
        country_id=to_str(raw.get("country_id")),
        country_name=to_str(raw.get("country_name") or raw.get("country")),
        country_iso3=to_str(raw.get("country_kod") or raw.get("country_iso3")),
        country_iso2=to_str(raw.get("country_kod_two") or raw.get("country_iso2")),
        latitude=to_float(raw.get("latitude")),
        longitude=to_float(raw.get("longitude")),
        population=to_float(raw.get("population")),
        currency=to_str(raw.get("currency")),
        time_zone=to_str(raw.get("time_zone")) or None,
        stations=stations or None,
        airports=airports or None,
    )


def validate_point_city(city: PointCity) -> Optional[str]:
    """Return the reason a city is unusable, or None."""
    if not city.point_id:
        return "missing point_id"
    if not city.name:
        return "missing name"
    if city.latitude is not None and not -90 <= city.latitude <= 90:
        return "latitude out of range"
    if city.longitude is not None and not -180 <= city.longitude <= 180:
        return "longitude out of range"
    return None


def normalize_city_list(raw: Any, lang: str = "en") -> List[PointCity]:
    """Flatten, dedupe by point_id (last write wins), validate and sort."""
    by_id: Dict[str, PointCity] = {}
    for item in extract_items(raw):
        if isinstance(item, PointCity):
            item = item.model_dump()
        if not isinstance(item, dict):
            _skip("city", item, "not a record")
            continue
        try:
            city = normalize_point_city(item, lang)
        except (TypeError, ValueError) as e:
            _skip("city", item, str(e))
            continue
        reason = validate_point_city(city)
        if reason:
            _skip("city", item, reason)
            continue
        by_id[city.point_id] = city
    return sort_cities_by_name(by_id.values())


def _country_name(raw: Dict[str, Any], lang: str) -> str:
    if raw.get("name"):
        return to_str(raw["name"])
    return to_str(raw.get(f"country_{lang}") or raw.get("country_name"))


def normalize_country_list(raw: Any, lang: str = "en") -> List[CountryItem]:
    out: List[CountryItem] = []
    for item in extract_items(raw):
        if not isinstance(item, dict):
            _skip("country", item, "not a record")
            continue
        names = item.get("names") if isinstance(item.get("names"), dict) else {
            code: to_str(item.get(f"country_{code}")) for code in _LANGS if item.get(f"country_{code}")
        }
        country = CountryItem(
            country_id=to_str(item.get("country_id")),
            name=_country_name(item, lang),
            iso3=to_str(item.get("country_kod") or item.get("iso3")),
            iso2=to_str(item.get("country_kod_two") or item.get("iso2")),
            names=names,
            currency=to_str(item.get("currency")),
            time_zone=to_str(item.get("time_zone")) or None,
        )
        if not country.country_id or not country.name:
            _skip("country", item, "missing country_id or name")
            continue
        out.append(country)
    return out


def normalize_country_groups(raw: Any, lang: str = "en") -> List[CountryGroup]:
    out: List[CountryGroup] = []
    for item in extract_items(raw):
        if not isinstance(item, dict):
            _skip("country_group", item, "not a record")
            continue
        points = [
            GroupPoint(
                point_id=to_str(p.get("point_id")),
                point_name=to_str(p.get("point_name")),
                point_name_detail=to_str(p.get("point_name_detail")),
            )
            for p in ensure_list(item.get("points"))
            if isinstance(p, dict) and p.get("point_id") not in (None, "")
        ]
        out.append(CountryGroup(
            country_id=to_str(item.get("country_id")),
            # provider spells it county_name
            country_name=to_str(item.get("county_name") or item.get("country_name")),
            currency=to_str(item.get("currency")),
            time_zone=to_str(item.get("time_zone")) or None,
            points=points,
        ))
    return out


# --- routes -----------------------------------------------------------------

def _normalize_trip(raw: Dict[str, Any]) -> RouteTrip:
    return RouteTrip(
        interval_id=to_str(raw.get("interval_id")),
        route_name=to_str(raw.get("route_name")),
        carrier=to_str(raw.get("carrier")),
        date_from=to_str(raw.get("date_from")),
        time_from=to_str(raw.get("time_from")),
        date_to=to_str(raw.get("date_to")),
        time_to=to_str(raw.get("time_to")),
    )


def _normalize_change(raw: Dict[str, Any]) -> ChangeRouteSegment:
    return ChangeRouteSegment(**{
        field: to_str(raw.get(field)) for field in ChangeRouteSegment.model_fields
    })


def normalize_route(raw: Dict[str, Any]) -> RouteSummary:
    trips = [_normalize_trip(t) for t in ensure_list(raw.get("trips")) if isinstance(t, dict)]
    trips = [t for t in trips if t.interval_id]
    interval_id = to_str(raw.get("interval_id")) or (trips[0].interval_id if trips else "")
    if not interval_id:
        raise ValueError("missing interval_id")
    date_from = to_str(raw.get("date_from")) or (trips[0].date_from if trips else "")
    date_to = to_str(raw.get("date_to")) or (trips[-1].date_to if trips else "")
    if not date_from or not date_to:
        raise ValueError("missing date_from/date_to")

    discounts = [
        RouteDiscount(
            discount_id=to_str(d.get("discount_id")),
            discount_name=to_str(d.get("discount_name")),
            discount_price=to_float(d.get("discount_price")) or 0.0,
        )
        for d in ensure_list(raw.get("discounts"))
        if isinstance(d, dict) and d.get("discount_id") not in (None, "")
    ]
    cancel_rules = [
        CancelRule(
            hours_after_depar=to_str(c.get("hours_after_depar")),
            hours_before_depar=to_str(c.get("hours_before_depar")),
            cancel_rate=to_float(c.get("cancel_rate")) or 0.0,
            money_back=to_float(c.get("money_back")) or 0.0,
        )
        for c in ensure_list(raw.get("cancel_hours_info"))
        if isinstance(c, dict)
    ]

    return RouteSummary(
        interval_id=interval_id,
        trans=to_str(raw.get("trans")).lower() or "bus",
        route_name=to_str(raw.get("route_name")),
        carrier=to_str(raw.get("carrier")),
        point_from=to_str(raw.get("point_from")),
        station_from=to_str(raw.get("station_from")),
        date_from=date_from,
        time_from=to_str(raw.get("time_from")),
        point_to=to_str(raw.get("point_to")),
        station_to=to_str(raw.get("station_to")),
        date_to=date_to,
        time_to=to_str(raw.get("time_to")),
        time_in_way=to_str(raw.get("time_in_way")),
        price_one_way=to_float(raw.get("price_one_way")),
        price_one_way_max=to_float(raw.get("price_one_way_max")),
        price_two_way=to_float(raw.get("price_two_way")),
        currency=to_str(raw.get("currency")),
        request_get_free_seats=to_bool(raw.get("request_get_free_seats")),
        request_get_discount=to_bool(raw.get("request_get_discount")),
        request_get_baggage=to_bool(raw.get("request_get_baggage")),
        has_plan=to_bool(raw.get("has_plan")),
        bustype_id=to_str(raw.get("bustype_id")),
        need_orderdata=to_bool(raw.get("need_orderdata")),
        need_birth=to_bool(raw.get("need_birth")),
        need_doc=to_bool(raw.get("need_doc")),
        need_doc_expire_date=to_bool(raw.get("need_doc_expire_date")),
        need_citizenship=to_bool(raw.get("need_citizenship")),
        need_gender=to_bool(raw.get("need_gender") or raw.get("need_sex")),
        need_middlename=to_bool(raw.get("need_middlename")),
        reserve_min=to_int(raw.get("reserve_min")),
        lock_min=to_int(raw.get("lock_min")),
        max_seats=to_int(raw.get("max_seats")),
        free_seats=[to_str(s) for s in ensure_list(raw.get("free_seats")) if not isinstance(s, dict)],
        discounts=discounts,
        cancel_hours_info=cancel_rules,
        trips=trips,
        change_route=[_normalize_change(c) for c in ensure_list(raw.get("change_route")) if isinstance(c, dict)],
    )


def normalize_route_list(raw: Any) -> List[RouteSummary]:
    out: List[RouteSummary] = []
    for item in extract_items(raw):
        if isinstance(item, RouteSummary):
            out.append(item)
            continue
        if not isinstance(item, dict):
            _skip("route", item, "not a record")
            continue
        try:
            out.append(normalize_route(item))
        except ValueError as e:
            _skip("route", item, str(e))
    return out


# --- seats / discounts / baggage --------------------------------------------

def _normalize_seat(raw: Any) -> Optional[FreeSeatItem]:
    if not isinstance(raw, dict):
        number = to_str(raw)
        return FreeSeatItem(seat_number=number, seat_free=1) if number else None
    number = to_str(raw.get("seat_number") or raw.get("number") or raw.get("nr") or raw.get("seat_id"))
    if not number:
        return None
    flag = raw.get("seat_free", raw.get("seat_is_free", raw.get("is_free", 1)))
    return FreeSeatItem(
        seat_number=number,
        seat_free=1 if to_bool(flag) else 0,
        seat_price=to_float(raw.get("seat_price") or raw.get("price")),
        # provider spells it seat_curency
        currency=to_str(raw.get("seat_curency") or raw.get("seat_currency") or raw.get("currency")) or None,
    )


def normalize_free_seats(raw: Any, segment_ids: Optional[List[str]] = None) -> List[SegmentSeats]:
    """One SegmentSeats per trip in the response, in provider order.

    ``segment_ids`` labels trips that come back without their own id.
    """
    segments: List[SegmentSeats] = []
    for idx, trip in enumerate(extract_items(raw)):
        if not isinstance(trip, dict):
            _skip("free_seats", trip, "not a record")
            continue
        fallback = segment_ids[idx] if segment_ids and idx < len(segment_ids) else str(idx)
        seats = [s for s in (_normalize_seat(x) for x in ensure_list(trip.get("free_seats"))) if s]
        segments.append(SegmentSeats(
            segment_id=to_str(trip.get("interval_id") or trip.get("trip_id")) or fallback,
            seats=seats,
            has_plan=to_bool(trip.get("has_plan")),
            trip_name=to_str(trip.get("bus_name") or trip.get("train_name") or trip.get("route_name")),
        ))
    return segments


def normalize_discounts(raw: Any) -> List[DiscountItem]:
    if isinstance(raw, dict) and "discounts" in raw:
        items = ensure_list(raw["discounts"])
    else:
        items = extract_items(raw)
    out: List[DiscountItem] = []
    for d in items:
        if not isinstance(d, dict) or d.get("discount_id", d.get("id")) in (None, ""):
            _skip("discount", d, "missing discount_id")
            continue
        out.append(DiscountItem(
            discount_id=to_str(d.get("discount_id") or d.get("id")),
            discount_name=to_str(d.get("discount_name") or d.get("name")),
            discount_price=to_float(d.get("discount_price") or d.get("price")) or 0.0,
            discount_price_max=to_float(d.get("discount_price_max") or d.get("price_max")),
            discount_currency=to_str(d.get("discount_currency") or d.get("currency")) or None,
        ))
    return out


def normalize_baggage(raw: Any) -> List[BaggageItem]:
    if isinstance(raw, dict) and "baggage" in raw:
        items = ensure_list(raw["baggage"])
    else:
        items = extract_items(raw)
    out: List[BaggageItem] = []
    for b in items:
        if not isinstance(b, dict) or b.get("baggage_id") in (None, ""):
            _skip("baggage", b, "missing baggage_id")
            continue
        out.append(BaggageItem(
            baggage_id=to_str(b.get("baggage_id")),
            baggage_type_id=to_str(b.get("baggage_type_id")),
            baggage_type=to_str(b.get("baggage_type")),
            baggage_title=to_str(b.get("baggage_title")),
            kg=to_float(b.get("kg")),
            max_in_bus=to_int(b.get("max_in_bus")),
            max_per_person=to_int(b.get("max_per_person")),
            price=to_float(b.get("price")) or 0.0,
            currency=to_str(b.get("currency")),
        ))
    return out


# --- orders -----------------------------------------------------------------

def numeric_keyed(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Per-ticket records keyed "0", "1", ... in order and cancel responses."""
    keys = sorted((k for k in raw if str(k).isdigit()), key=lambda k: int(k))
    return [raw[k] for k in keys if isinstance(raw[k], dict)]


def normalize_reservation(raw: Dict[str, Any]) -> ReservationInfo:
    if not isinstance(raw, dict) or raw.get("order_id") in (None, ""):
        raise ValueError("new_order response without order_id")
    return ReservationInfo(
        order_id=to_str(raw.get("order_id")),
        security=to_str(raw.get("security")),
        reservation_until=to_str(raw.get("reservation_until")),
        reservation_until_min=to_int(raw.get("reservation_until_min")),
        price_total=to_float(raw.get("price_total")) or 0.0,
        currency=to_str(raw.get("currency")),
        status=to_str(raw.get("status")) or "reserve_ok",
    )


def normalize_order(raw: Dict[str, Any]) -> OrderInfo:
    if not isinstance(raw, dict) or raw.get("order_id") in (None, ""):
        raise ValueError("get_order response without order_id")
    tickets = ensure_list(raw.get("tickets")) or numeric_keyed(raw)
    return OrderInfo(
        order_id=to_str(raw.get("order_id")),
        status=to_str(raw.get("status")),
        security=to_str(raw.get("security")) or None,
        price_total=to_float(raw.get("price_total")) or 0.0,
        currency=to_str(raw.get("currency")),
        reservation_until=to_str(raw.get("reservation_until")) or None,
        tickets=[t for t in tickets if isinstance(t, dict)],
    )


# --- seat plan --------------------------------------------------------------

def _plan_list(value: Any, tag: str) -> List[Any]:
    # containers arrive as a list, {"<tag>": ...}, {"item": ...} or one bare record
    if isinstance(value, dict) and tag in value:
        return ensure_list(value[tag])
    return ensure_list(value)


def _plan_seat(raw: Any) -> PlanSeat:
    if isinstance(raw, dict):
        attrs = raw.get("@attributes") or {}
        number = to_str(raw.get("#text", raw.get("content")))
        icon = to_str(attrs.get("icon", raw.get("icon")))
        return PlanSeat(number=number or None, icon=icon or None)
    number = to_str(raw)
    return PlanSeat(number=number or None)


def _plan_rows(raw: Any) -> List[PlanRow]:
    rows = []
    for idx, row in enumerate(_plan_list(raw, "row")):
        cells = row.get("seat", row.get("seats")) if isinstance(row, dict) else row
        # a row of one seat is not wrapped in a list
        rows.append(PlanRow(row_index=idx, seats=[_plan_seat(s) for s in _plan_list(cells, "seat")]))
    return rows


def normalize_plan(raw: Any, bustype_id: str, orientation: str = "h") -> BusPlan:
    """get_plan payload -> BusPlan.

    Version 2.0 answers carry ``floors``; 1.1 answers put rows straight under
    the root and are read as a single floor.
    """
    data = raw.get("root", raw) if isinstance(raw, dict) else {}
    if not isinstance(data, dict):
        data = {}
    plan_type = to_str(data.get("plan_type")) or "standard"
    floors_raw = data.get("floors", data.get("floor"))

    floors: List[PlanFloor] = []
    version = "1.1"
    if floors_raw:
        version = "2.0"
        for f in _plan_list(floors_raw, "floor"):
            if not isinstance(f, dict):
                _skip("plan_floor", f, "not a record")
                continue
            floors.append(PlanFloor(
                number=to_int(f.get("number", f.get("floor"))) or 1,
                rows=_plan_rows(f.get("rows", f.get("row"))),
            ))
    if not floors:
        rows = _plan_rows(data.get("rows", data.get("row")))
        if rows:
            floors.append(PlanFloor(number=1, rows=rows))

    return BusPlan(
        bustype_id=to_str(data.get("bustype_id")) or str(bustype_id),
        plan_type=plan_type,
        version=version,
        orientation="v" if orientation == "v" else "h",
        floors=floors,
    )


def plan_seat_numbers(plan: BusPlan) -> List[str]:
    numbers = [s.number for f in plan.floors for r in f.rows for s in r.seats if s.number]
    return sorted(numbers, key=locale_sort_key)


def find_plan_seat(plan: BusPlan, seat_number: str) -> Optional[Dict[str, int]]:
    """Grid position of a seat, or None when the plan has no such seat."""
    for f_idx, floor in enumerate(plan.floors):
        for r_idx, row in enumerate(floor.rows):
            for s_idx, seat in enumerate(row.seats):
                if seat.number == str(seat_number):
                    return {"floor": f_idx, "row": r_idx, "seat": s_idx}
    return None


# --- phone validation -------------------------------------------------------

def normalize_reserve_validation(raw: Any) -> ReserveValidation:
    data = raw.get("root", raw) if isinstance(raw, dict) else None
    if not isinstance(data, dict):
        raise ValueError("reserve_validation: unrecognized response")
    return ReserveValidation(
        reserve_validation=to_bool(data.get("reserve_validation")),
        need_sms_validation=to_bool(data.get("need_sms_validation")),
    )


def normalize_sms_validation(raw: Any) -> SmsValidationResult:
    data = raw.get("root", raw) if isinstance(raw, dict) else None
    if not isinstance(data, dict):
        raise ValueError("sms_validation: unrecognized response")
    return SmsValidationResult(
        validation_id=to_str(data.get("validation_id")) or None,
        phone=to_str(data.get("phone")),
        status_code=to_str(data.get("status_code")).lower(),
        status_sms=to_str(data.get("status_sms")) or None,
    )
