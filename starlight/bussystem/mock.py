"""Deterministic in-memory stand-in for the Bussystem API.

Answers with the same raw payload shapes as the live service (numeric
strings, 0/1 flags, ``{"item": ...}`` wrappers, typo'd field names) so the
normalizer and every caller behave identically in mock and live mode.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import asyncio
import re
import unicodedata

import pytz

from starlight.bussystem.errors import ProviderError
from starlight.config import settings


_COUNTRIES: List[Dict[str, Any]] = [
    {"country_id": "1", "country_name": "Moldova", "country_en": "Moldova", "country_ro": "Moldova",
     "country_ru": "Молдова", "country_kod": "MDA", "country_kod_two": "MD", "currency": "MDL",
     "time_zone": "Europe/Chisinau"},
    {"country_id": "2", "country_name": "Romania", "country_en": "Romania", "country_ro": "România",
     "country_ru": "Румыния", "country_kod": "ROU", "country_kod_two": "RO", "currency": "RON",
     "time_zone": "Europe/Bucharest"},
    {"country_id": "3", "country_name": "Germany", "country_en": "Germany", "country_ro": "Germania",
     "country_ru": "Германия", "country_kod": "DEU", "country_kod_two": "DE", "currency": "EUR",
     "time_zone": "Europe/Berlin"},
    {"country_id": "4", "country_name": "Poland", "country_en": "Poland", "country_ro": "Polonia",
     "country_ru": "Польша", "country_kod": "POL", "country_kod_two": "PL", "currency": "PLN",
     "time_zone": "Europe/Warsaw"},
    {"country_id": "5", "country_name": "Czech Republic", "country_en": "Czech Republic", "country_ro": "Cehia",
     "country_ru": "Чехия", "country_kod": "CZE", "country_kod_two": "CZ", "currency": "CZK",
     "time_zone": "Europe/Prague"},
    {"country_id": "6", "country_name": "Austria", "country_en": "Austria", "country_ro": "Austria",
     "country_ru": "Австрия", "country_kod": "AUT", "country_kod_two": "AT", "currency": "EUR",
     "time_zone": "Europe/Vienna"},
]

_COUNTRY_BY_ID = {c["country_id"]: c for c in _COUNTRIES}

# point_id, name, latin, ro, ru, country_id, lat, lon, population, stations
_CITY_ROWS: List[Tuple[str, str, str, str, str, str, float, float, int, List[Tuple[str, str, str]]]] = [
    ("1", "Chișinău", "Chisinau", "Chișinău", "Кишинёв", "1", 47.0105, 28.8638, 532513,
     [("11", "Gara de Nord", "str. Ismail 1"), ("12", "Autogara Centrală", "str. Mitropolit Varlaam 58")]),
    ("2", "Bucharest", "Bucuresti", "București", "Бухарест", "2", 44.4268, 26.1025, 1883425,
     [("21", "Autogara Militari", "Bd. Iuliu Maniu 141")]),
    ("3", "Berlin", "Berlin", "Berlin", "Берлин", "3", 52.52, 13.405, 3645000,
     [("31", "ZOB Berlin", "Masurenallee 4-6"), ("32", "Berlin Südkreuz", "Hildegard-Knef-Platz")]),
    ("4", "Warsaw", "Warszawa", "Varșovia", "Варшава", "4", 52.2297, 21.0122, 1790658,
     [("41", "Warszawa Zachodnia", "Al. Jerozolimskie 144")]),
    ("5", "Prague", "Praha", "Praga", "Прага", "5", 50.0755, 14.4378, 1309000,
     [("51", "Florenc", "Křižíkova 2110")]),
    ("6", "Vienna", "Wien", "Viena", "Вена", "6", 48.2082, 16.3738, 1911191,
     [("61", "Erdberg", "Erdbergstraße 202")]),
    ("7", "Iași", "Iasi", "Iași", "Яссы", "2", 47.1585, 27.6014, 290422,
     [("71", "Autogara Codrescu", "str. Codrescu 1")]),
    ("8", "Munich", "Muenchen", "München", "Мюнхен", "3", 48.1351, 11.582, 1488202,
     [("81", "ZOB München", "Hackerbrücke 4")]),
    ("9", "Bălți", "Balti", "Bălți", "Бельцы", "1", 47.7617, 27.9289, 102457,
     [("91", "Autogara Bălți", "str. Ștefan cel Mare 2")]),
]

# overnight legs, hours
_DURATIONS = {("1", "3"): 26, ("1", "8"): 28, ("1", "6"): 22}

# hub between points for transfer itineraries
_TRANSFER_HUB = "2"

_DISCOUNTS = [
    {"discount_id": "3196", "discount_name": "Child 0-11", "discount_price": 0.5},
    {"discount_id": "3197", "discount_name": "Student", "discount_price": 0.8},
    {"discount_id": "3198", "discount_name": "Senior 60+", "discount_price": 0.85},
]

_BAGGAGE = [
    {"baggage_id": "82", "baggage_type_id": "1", "baggage_type": "small_baggage",
     "baggage_title": "Hand luggage", "length": "40", "width": "30", "height": "20", "kg": "7",
     "max_in_bus": "", "max_per_person": "1", "typ": "route", "price": "0", "currency": "EUR"},
    {"baggage_id": "86", "baggage_type_id": "2", "baggage_type": "medium_baggage",
     "baggage_title": "Suitcase", "length": "80", "width": "50", "height": "30", "kg": "20",
     "max_in_bus": "20", "max_per_person": "2", "typ": "route", "price": "10", "currency": "EUR"},
    {"baggage_id": "90", "baggage_type_id": "3", "baggage_type": "large_baggage",
     "baggage_title": "Bicycle", "length": "180", "width": "60", "height": "100", "kg": "25",
     "max_in_bus": "2", "max_per_person": "1", "typ": "route", "price": "25", "currency": "EUR"},
]

_CANCEL_RATE = 20  # percent retained on cancellation
MOCK_SMS_CODE = "123456"


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def _digits(phone: Any) -> str:
    return re.sub(r"\D", "", str(phone or ""))


def _raw_city(row) -> Dict[str, Any]:
    point_id, name, latin, ro, ru, country_id, lat, lon, population, stations = row
    country = _COUNTRY_BY_ID[country_id]
    return {
        "point_id": point_id,
        "point_name": name,
        "point_latin_name": latin,
        "point_ro_name": ro,
        "point_ru_name": ru,
        "country_id": country_id,
        "country_name": country["country_name"],
        "country_kod": country["country_kod"],
        "country_kod_two": country["country_kod_two"],
        "latitude": str(lat),
        "longitude": str(lon),
        "population": str(population),
        "currency": country["currency"],
        "time_zone": country["time_zone"],
        "stations": {"item": [
            {"station_id": sid, "station_name": sname, "station_address": addr}
            for sid, sname, addr in stations
        ]},
    }


class MockBussystem:
    def __init__(
        self,
        seats_per_bus: int = 12,
        latency: float = 0.0,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sms_phones: Iterable[str] = (),
    ):
        self.seats_per_bus = seats_per_bus
        self.latency = latency
        self._now = now
        self._tz = pytz.timezone(settings.TZ)
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

        self._intervals: Dict[str, Dict[str, Any]] = {}
        self._orders: Dict[str, Dict[str, Any]] = {}
        self._tickets: Dict[str, Dict[str, Any]] = {}
        self._next_order = 1000
        self._next_ticket = 5000
        self.sms_phones = {_digits(p) for p in sms_phones}
        self._sms_codes: Dict[str, Tuple[str, str]] = {}
        self._next_validation = 700

    async def _enter(self, method: str, params: Dict[str, Any]) -> None:
        self.calls.append((method, dict(params)))
        if self.latency:
            await asyncio.sleep(self.latency)

    # --- points -----------------------------------------------------------

    async def get_points(self, **params: Any) -> Any:
        await self._enter("get_points", params)
        viev = params.get("viev")
        if viev == "get_country":
            return [dict(c) for c in _COUNTRIES]
        if viev == "group_country":
            return self._country_groups()

        cities = [_raw_city(r) for r in _CITY_ROWS]
        query = params.get("autocomplete")
        if query:
            needle = _fold(str(query))
            cities = [
                c for c in cities
                if any(needle in _fold(str(c[k])) for k in ("point_name", "point_latin_name", "point_ro_name", "point_ru_name"))
            ]
        if params.get("country_id"):
            cities = [c for c in cities if c["country_id"] == str(params["country_id"])]
        for key in ("point_id_from", "point_id_to"):
            if params.get(key):
                cities = [c for c in cities if c["point_id"] != str(params[key])]
        if params.get("boundLatSW") is not None:
            sw_lat, sw_lon = float(params["boundLatSW"]), float(params["boundLonSW"])
            ne_lat, ne_lon = float(params["boundLatNE"]), float(params["boundLonNE"])
            cities = [
                c for c in cities
                if sw_lat <= float(c["latitude"]) <= ne_lat and sw_lon <= float(c["longitude"]) <= ne_lon
            ]
        if not params.get("group_by_point"):
            for c in cities:
                c.pop("stations", None)
        return {"item": cities} if len(cities) != 1 else {"item": cities[0]}

    def _country_groups(self) -> List[Dict[str, Any]]:
        groups = []
        for country in _COUNTRIES:
            points = [
                {"point_id": r[0], "point_name": r[1], "point_name_detail": country["country_name"]}
                for r in _CITY_ROWS if r[5] == country["country_id"]
            ]
            groups.append({
                "country_id": country["country_id"],
                "county_name": country["country_name"],
                "currency": country["currency"],
                "time_zone": country["time_zone"],
                "points": {"item": points if len(points) != 1 else points[0]},
            })
        return groups

    # --- routes -----------------------------------------------------------

    def _hours_between(self, id_from: str, id_to: str) -> int:
        a, b = sorted((int(id_from), int(id_to)))
        if (str(a), str(b)) in _DURATIONS:
            return _DURATIONS[(str(a), str(b))]
        # symmetric, deterministic travel time
        return 6 + ((a * 7 + b * 5) % 20)

    def _price(self, id_from: str, id_to: str) -> float:
        return float(20 + self._hours_between(id_from, id_to) * 2.5)

    def _segment(self, id_from: str, id_to: str, departure: datetime, tag: str) -> Dict[str, Any]:
        hours = self._hours_between(id_from, id_to)
        arrival = departure + timedelta(hours=hours)
        interval_id = f"mock{tag}{id_from}x{id_to}x{departure:%Y%m%d%H%M}"
        names = {r[0]: r[1] for r in _CITY_ROWS}
        stations = {r[0]: r[9][0][1] for r in _CITY_ROWS}
        segment = {
            "interval_id": interval_id,
            "route_name": f"{names.get(id_from, id_from)} - {names.get(id_to, id_to)}",
            "carrier": "Starlines Express",
            "bustype_id": "1",
            "trans": "bus",
            "point_from": names.get(id_from, id_from),
            "station_from": stations.get(id_from, ""),
            "date_from": departure.strftime("%Y-%m-%d"),
            "time_from": departure.strftime("%H:%M:%S"),
            "point_to": names.get(id_to, id_to),
            "station_to": stations.get(id_to, ""),
            "date_to": arrival.strftime("%Y-%m-%d"),
            "time_to": arrival.strftime("%H:%M:%S"),
            "price_one_way": str(self._price(id_from, id_to)),
            "currency": "EUR",
        }
        self._intervals[interval_id] = {"segments": [segment], "price": self._price(id_from, id_to)}
        return segment

    def _direct_route(self, id_from: str, id_to: str, date: str, params: Dict[str, Any]) -> Dict[str, Any]:
        departure = datetime.strptime(f"{date} 08:00", "%Y-%m-%d %H:%M")
        seg = self._segment(id_from, id_to, departure, "d")
        hours = self._hours_between(id_from, id_to)
        route = dict(seg)
        route.update({
            "time_in_way": f"{hours:02d}:00",
            "price_one_way_max": str(self._price(id_from, id_to) + 15),
            "price_two_way": str(self._price(id_from, id_to) * 1.8),
            "request_get_free_seats": 1,
            "request_get_discount": 1,
            "request_get_baggage": 1,
            "has_plan": 1,
            "need_orderdata": 1,
            "need_birth": 0,
            "need_doc": 0,
            "need_doc_expire_date": 0,
            "need_citizenship": 0,
            "need_gender": 0,
            "need_middlename": 0,
            "reserve_min": "30",
            "lock_min": "30",
            "max_seats": "10",
            "station_from_id": params.get("station_id_from") or "",
            "station_to_id": params.get("station_id_to") or "",
            "discounts": {"item": [dict(d, discount_price=str(self._price(id_from, id_to) * d["discount_price"]))
                                   for d in _DISCOUNTS]},
            "cancel_hours_info": {"item": [
                {"hours_after_depar": "0", "hours_before_depar": "24", "cancel_rate": str(_CANCEL_RATE),
                 "money_back": str(self._price(id_from, id_to) * (100 - _CANCEL_RATE) / 100)},
            ]},
        })
        return route

    def _transfer_route(self, id_from: str, id_to: str, date: str) -> Optional[Dict[str, Any]]:
        if _TRANSFER_HUB in (id_from, id_to):
            return None
        first = self._segment(id_from, _TRANSFER_HUB, datetime.strptime(f"{date} 18:30", "%Y-%m-%d %H:%M"), "t")
        first_arrival = datetime.strptime(f"{first['date_to']} {first['time_to']}", "%Y-%m-%d %H:%M:%S")
        second = self._segment(_TRANSFER_HUB, id_to, first_arrival + timedelta(hours=2), "t")
        interval_id = f"{first['interval_id']}|{second['interval_id']}"
        price = self._price(id_from, _TRANSFER_HUB) + self._price(_TRANSFER_HUB, id_to)
        self._intervals[interval_id] = {"segments": [first, second], "price": price}
        return {
            "interval_id": interval_id,
            "route_name": f"{first['point_from']} - {second['point_to']} (via {first['point_to']})",
            "carrier": "Starlines Express",
            "trans": "bus",
            "point_from": first["point_from"],
            "station_from": first["station_from"],
            "date_from": first["date_from"],
            "time_from": first["time_from"],
            "point_to": second["point_to"],
            "station_to": second["station_to"],
            "date_to": second["date_to"],
            "time_to": second["time_to"],
            "price_one_way": str(price),
            "currency": "EUR",
            "request_get_free_seats": "1",
            "request_get_discount": "0",
            "request_get_baggage": "1",
            "has_plan": "0",
            "need_orderdata": "1",
            "need_birth": "1",
            "need_doc": "1",
            "need_doc_expire_date": "0",
            "need_citizenship": "1",
            "need_gender": "1",
            "reserve_min": "30",
            "trips": {"item": [
                {k: first[k] for k in ("interval_id", "route_name", "carrier", "date_from", "time_from", "date_to", "time_to")},
                {k: second[k] for k in ("interval_id", "route_name", "carrier", "date_from", "time_from", "date_to", "time_to")},
            ]},
            "change_route": {"item": [
                {"interval_id": first["interval_id"], "point_from": first["point_from"], "point_to": first["point_to"],
                 "date_from": first["date_from"], "time_from": first["time_from"],
                 "date_to": first["date_to"], "time_to": first["time_to"], "carrier": first["carrier"]},
                {"interval_id": second["interval_id"], "point_from": second["point_from"], "point_to": second["point_to"],
                 "date_from": second["date_from"], "time_from": second["time_from"],
                 "date_to": second["date_to"], "time_to": second["time_to"], "carrier": second["carrier"]},
            ]},
        }

    async def get_routes(self, **params: Any) -> Any:
        await self._enter("get_routes", params)
        id_from, id_to, date = str(params.get("id_from", "")), str(params.get("id_to", "")), params.get("date")
        known = {r[0] for r in _CITY_ROWS}
        if id_from not in known or id_to not in known or id_from == id_to or not date:
            return []
        routes = [self._direct_route(id_from, id_to, date, params)]
        if params.get("change", "auto") == "auto":
            transfer = self._transfer_route(id_from, id_to, date)
            if transfer:
                routes.append(transfer)
        return routes

    # --- seats / extras ---------------------------------------------------

    def _interval(self, interval_id: Any) -> Dict[str, Any]:
        entry = self._intervals.get(str(interval_id))
        if entry is None:
            raise ProviderError("interval_no_found")
        return entry

    def _occupied(self, interval_id: str) -> set:
        taken = set()
        for ticket in self._tickets.values():
            if ticket["interval_id"] == interval_id and ticket["status"] != "cancel":
                taken.add(ticket["seat"])
        return taken

    async def get_free_seats(self, **params: Any) -> Any:
        await self._enter("get_free_seats", params)
        entry = self._interval(params.get("interval_id"))
        trips = []
        for seg in entry["segments"]:
            taken = self._occupied(seg["interval_id"])
            seats = []
            for n in range(1, self.seats_per_bus + 1):
                # every fourth seat sold to someone else
                free = n % 4 != 0 and str(n) not in taken
                seats.append({
                    "seat_number": str(n),
                    "seat_free": "1" if free else "0",
                    "seat_price": seg["price_one_way"],
                    "seat_curency": "EUR",
                })
            trips.append({
                "trip_id": seg["interval_id"],
                "bus_name": seg["route_name"],
                "has_plan": 1,
                "free_seats": {"item": seats},
            })
        return trips

    async def get_discount(self, **params: Any) -> Any:
        await self._enter("get_discount", params)
        entry = self._interval(params.get("interval_id"))
        price = entry["price"]
        return {
            "route_id": str(params.get("interval_id")),
            "discounts": {"item": [
                dict(d, discount_price=f"{price * d['discount_price']:.2f}", discount_currency="EUR")
                for d in _DISCOUNTS
            ]},
        }

    async def get_baggage(self, **params: Any) -> Any:
        await self._enter("get_baggage", params)
        self._interval(params.get("interval_id"))
        return {"item": [dict(b) for b in _BAGGAGE]}

    async def get_plan(self, **params: Any) -> Any:
        await self._enter("get_plan", params)
        bustype_id = str(params.get("bustype_id") or "")
        if not bustype_id:
            raise ProviderError("bustype_id")
        # 2 + aisle + 2
        rows = []
        for r in range(self.seats_per_bus // 4):
            n = [str(r * 4 + c + 1) for c in range(4)]
            rows.append({"seat": [n[0], n[1], "", n[2], n[3]]})
        return {"bustype_id": bustype_id, "plan_type": "bus",
                "floors": {"item": {"number": 1, "rows": {"item": rows}}}}

    # --- orders -----------------------------------------------------------

    def _local_now(self) -> datetime:
        return self._now().astimezone(self._tz)

    async def new_order(self, payload: Dict[str, Any]) -> Any:
        await self._enter("new_order", payload)
        dates: List[str] = payload.get("date") or []
        intervals: List[str] = payload.get("interval_id") or []
        seats: List[List[str]] = payload.get("seat") or []
        if not intervals or len(dates) != len(intervals) or len(seats) != len(intervals):
            raise ProviderError("new_order_params")

        order_id = str(self._next_order)
        self._next_order += 1
        names = payload.get("name") or []
        surnames = payload.get("surname") or []
        baggage = payload.get("baggage") or {}
        discount_maps = payload.get("discount_id") or []
        price_total = 0.0
        trips_out: Dict[str, Any] = {}
        tickets: List[str] = []

        for t_idx, interval_id in enumerate(intervals):
            entry = self._interval(interval_id)
            segments = entry["segments"]
            discounts = discount_maps[t_idx] if t_idx < len(discount_maps) else {}
            passengers_out = []
            for p_idx, seat_str in enumerate(seats[t_idx]):
                seat_parts = [s.strip() for s in str(seat_str).split(",")]
                factor = 1.0
                discount_id = discounts.get(str(p_idx)) if isinstance(discounts, dict) else None
                for d in _DISCOUNTS:
                    if d["discount_id"] == discount_id:
                        factor = d["discount_price"]
                price = round(entry["price"] * factor, 2)
                bag_ids = []
                trip_bags = baggage.get(str(t_idx)) or baggage.get(t_idx) or []
                if p_idx < len(trip_bags) and trip_bags[p_idx]:
                    bag_ids = [b for b in str(trip_bags[p_idx]).split(",") if b]
                bag_items = [b for bid in bag_ids for b in _BAGGAGE if b["baggage_id"] == bid]
                bag_price = sum(float(b["price"]) for b in bag_items)

                ticket_id = str(self._next_ticket)
                self._next_ticket += 1
                self._tickets[ticket_id] = {
                    "ticket_id": ticket_id,
                    "order_id": order_id,
                    "security": f"{ticket_id}7",
                    "interval_id": segments[0]["interval_id"],
                    "seat": seat_parts[0],
                    "segment_seats": list(zip([s["interval_id"] for s in segments], seat_parts)),
                    "price": price,
                    "baggage": [{"baggage_id": b["baggage_id"], "baggage_title": b["baggage_title"],
                                 "price": float(b["price"])} for b in bag_items],
                    "first_name": names[p_idx] if p_idx < len(names) else "",
                    "last_name": surnames[p_idx] if p_idx < len(surnames) else "",
                    "status": "reserve",
                    "cancel_only_order": 1 if len(segments) > 1 else 0,
                }
                tickets.append(ticket_id)
                price_total += price + bag_price
                passengers_out.append({"ticket_id": ticket_id, "seat": seat_str, "price": price})
            trips_out[str(t_idx)] = {
                "interval_id": interval_id,
                "date_from": segments[0]["date_from"],
                "route_name": segments[0]["route_name"],
                "passengers": passengers_out,
            }

        until = self._local_now() + timedelta(minutes=30)
        order = {
            "order_id": order_id,
            "security": f"{order_id}42",
            "reservation_until": until.strftime("%Y-%m-%d %H:%M:%S"),
            "reservation_until_min": "30",
            "status": "reserve_ok",
            "price_total": round(price_total, 2),
            "currency": payload.get("currency") or "EUR",
            "tickets": tickets,
            "until": until,
        }
        self._orders[order_id] = order
        response = {k: v for k, v in order.items() if k not in ("tickets", "until")}
        response.update(trips_out)
        return response

    def _order(self, order_id: Any) -> Dict[str, Any]:
        order = self._orders.get(str(order_id))
        if order is None:
            raise ProviderError("order_id")
        if order["status"] == "reserve_ok" and self._local_now() > order["until"]:
            order["status"] = "cancel"
            for tid in order["tickets"]:
                self._tickets[tid]["status"] = "cancel"
        return order

    def set_order_status(self, order_id: str, status: str) -> None:
        """Test hook: simulate an out-of-band status change (payment, expiry)."""
        self._orders[str(order_id)]["status"] = status

    async def buy_ticket(self, **params: Any) -> Any:
        await self._enter("buy_ticket", params)
        order = self._order(params.get("order_id"))
        if order["status"] not in ("reserve_ok", "confirmation"):
            raise ProviderError("order_no_activ")
        order["status"] = "buy"
        out: Dict[str, Any] = {
            "order_id": order["order_id"],
            "status": "buy_ok",
            "price_total": order["price_total"],
            "currency": order["currency"],
        }
        for idx, tid in enumerate(order["tickets"]):
            ticket = self._tickets[tid]
            ticket["status"] = "buy"
            out[str(idx)] = {"ticket_id": tid, "security": ticket["security"], "price": ticket["price"]}
        return out

    async def reserve_validation(self, **params: Any) -> Any:
        await self._enter("reserve_validation", params)
        phone = _digits(params.get("phone"))
        if not phone:
            raise ProviderError("no_phone")
        return {"reserve_validation": 1, "need_sms_validation": 1 if phone in self.sms_phones else 0}

    async def sms_validation(self, **params: Any) -> Any:
        await self._enter("sms_validation", params)
        phone = _digits(params.get("phone"))
        if not phone:
            raise ProviderError("no_phone")
        if params.get("send_sms"):
            self._next_validation += 1
            self._sms_codes[phone] = (str(self._next_validation), MOCK_SMS_CODE)
            return {"validation_id": str(self._next_validation), "phone": phone,
                    "status_code": "send_sms", "status_sms": "ok"}
        if params.get("check_sms"):
            if phone not in self._sms_codes:
                raise ProviderError("generate_code")
            if not params.get("validation_code"):
                raise ProviderError("validation_code")
            validation_id, code = self._sms_codes[phone]
            valid = str(params["validation_code"]) == code
            return {"validation_id": validation_id, "phone": phone,
                    "status_code": "valid" if valid else "invalid"}
        raise ProviderError("method")

    async def get_order(self, **params: Any) -> Any:
        await self._enter("get_order", params)
        order = self._order(params.get("order_id"))
        out: Dict[str, Any] = {
            "order_id": order["order_id"],
            "security": order["security"],
            "status": order["status"],
            "price_total": order["price_total"],
            "currency": order["currency"],
            "reservation_until": order["reservation_until"],
        }
        for idx, tid in enumerate(order["tickets"]):
            t = self._tickets[tid]
            out[str(idx)] = {
                "ticket_id": tid,
                "security": t["security"],
                "passenger_name": f"{t['first_name']} {t['last_name']}".strip(),
                "seat": t["seat"],
                "price": t["price"],
                "status": t["status"],
            }
        return out

    # --- tickets / cancellation -------------------------------------------

    def _ticket(self, ticket_id: Any) -> Dict[str, Any]:
        ticket = self._tickets.get(str(ticket_id))
        if ticket is None:
            raise ProviderError("ticket_id")
        return ticket

    def _refund(self, ticket: Dict[str, Any]) -> Tuple[float, float]:
        retained = round(ticket["price"] * _CANCEL_RATE / 100, 2)
        return round(ticket["price"] - retained, 2), retained

    async def get_ticket(self, **params: Any) -> Any:
        await self._enter("get_ticket", params)
        ticket = self._ticket(params.get("ticket_id"))
        refund, retained = self._refund(ticket)
        return {
            "ticket_id": ticket["ticket_id"],
            "order_id": ticket["order_id"],
            "status": ticket["status"],
            "price": str(ticket["price"]),
            "currency": "EUR",
            "cancel_rate": str(_CANCEL_RATE),
            "money_back_if_cancel": str(refund),
            "money_noback_if_cancel": str(retained),
            "cancel_only_order": str(ticket["cancel_only_order"]),
            "passenger_info": {"first_name": ticket["first_name"], "last_name": ticket["last_name"]},
            "baggage": {"item": [dict(b) for b in ticket["baggage"]]} if ticket["baggage"] else "",
        }

    def _cancel_one(self, ticket: Dict[str, Any]) -> Dict[str, Any]:
        if ticket["status"] == "cancel":
            raise ProviderError("cancel")
        refund, retained = self._refund(ticket)
        ticket["status"] = "cancel"
        return {
            "transaction_id": f"tx{ticket['ticket_id']}",
            "ticket_id": ticket["ticket_id"],
            "cancel_ticket": "1",
            "price": retained,
            "money_back": refund,
            "currency": "EUR",
            "rate": _CANCEL_RATE,
            "baggage": [
                dict(b, price_back=b["price"]) for b in ticket["baggage"]
            ],
        }

    async def cancel_ticket(self, **params: Any) -> Any:
        await self._enter("cancel_ticket", params)
        if params.get("ticket_id") is not None:
            ticket = self._ticket(params["ticket_id"])
            if ticket["cancel_only_order"]:
                raise ProviderError("cancel_order")
            return self._cancel_one(ticket)

        order = self._order(params.get("order_id"))
        out: Dict[str, Any] = {"order_id": order["order_id"], "cancel_order": "1", "currency": "EUR", "log_id": 1}
        refund_total = retained_total = 0.0
        for idx, tid in enumerate(order["tickets"]):
            # tickets cancelled one by one earlier are not refunded twice
            if self._tickets[tid]["status"] == "cancel":
                continue
            item = self._cancel_one(self._tickets[tid])
            refund_total += item["money_back"]
            retained_total += item["price"]
            out[str(idx)] = item
        order["status"] = "cancel"
        out["money_back_total"] = round(refund_total, 2)
        out["price_total"] = round(retained_total, 2)
        return out

    async def ping(self) -> Any:
        await self._enter("ping", {})
        return {"ping": "pong"}

    async def aclose(self) -> None:
        return None
