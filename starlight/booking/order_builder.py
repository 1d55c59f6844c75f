"""
new_order payload assembly and pre-submit validation.

Trips are parallel arrays on the wire: ``date[i]``, ``interval_id[i]`` and
``seat[i]`` describe trip ``i`` (0 = outbound, 1 = return). Passenger data is
only sent for the fields some trip actually requires.
"""

from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
import re

from starlight.booking.seats import seats_per_passenger
from starlight.bussystem import transform
from starlight.bussystem.client import BussystemApi
from starlight.bussystem.errors import BussystemError, ErrorCode, ValidationError
from starlight.config import settings
from starlight.obs.logger import log_event
from starlight.types import (
    ApiError,
    ApiResponse,
    CommonOrderData,
    OrderBuilder,
    OrderCreationResult,
    OrderValidationError,
    Passenger,
    TripMeta,
)
from starlight.utils.dates import age_on, get_current_datetime, parse_iso_date

PHONE_PATTERN = re.compile(r"^\+\d{7,15}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_SEPARATORS = re.compile(r"[\s\-().]")

MIN_AGE_YEARS = 1
MAX_AGE_YEARS = 120

_DOC_FIELDS = ("doc_type", "doc_number")


def normalize_phone(phone: Optional[str]) -> str:
    return _PHONE_SEPARATORS.sub("", phone or "")


def is_valid_phone(phone: Optional[str]) -> bool:
    return bool(PHONE_PATTERN.match(normalize_phone(phone)))


def combined_requirements(trips: Iterable[TripMeta]) -> Dict[str, bool]:
    """A field is required for the order when any trip requires it."""
    keys = ("need_orderdata", "need_birth", "need_doc", "need_doc_expire_date",
            "need_gender", "need_citizenship", "need_middlename")
    trips = list(trips)
    return {k: any(getattr(t, k) for t in trips) for k in keys}


def contact_phone(passengers: Sequence[Passenger], common: CommonOrderData) -> Optional[str]:
    if common.phone:
        return common.phone
    return passengers[0].phone if passengers else None


def contact_email(passengers: Sequence[Passenger], common: CommonOrderData) -> Optional[str]:
    if common.email:
        return common.email
    return passengers[0].email if passengers else None


# --- validation -------------------------------------------------------------

def _validate_passenger(p: Passenger, idx: int, need: Dict[str, bool], today: date) -> List[OrderValidationError]:
    errors: List[OrderValidationError] = []

    def add(field: str, message: str) -> None:
        errors.append(OrderValidationError(field=field, message=message, passenger_index=idx))

    if not (p.name or "").strip():
        add("name", "Name is required")
    if not (p.surname or "").strip():
        add("surname", "Surname is required")
    if need["need_middlename"] and not (p.middlename or "").strip():
        add("middlename", "Middle name is required")

    if p.birth_date:
        born = parse_iso_date(p.birth_date)
        if born is None:
            add("birth_date", "Birth date must be in YYYY-MM-DD format")
        else:
            age = age_on(born, today)
            if age < MIN_AGE_YEARS or age > MAX_AGE_YEARS:
                add("birth_date", f"Age must be between {MIN_AGE_YEARS} and {MAX_AGE_YEARS} years")
    elif need["need_birth"]:
        add("birth_date", "Birth date is required")

    if need["need_doc"]:
        if not (p.doc_type or "").strip():
            add("doc_type", "Document type is required")
        if not (p.doc_number or "").strip():
            add("doc_number", "Document number is required")
    if need["need_doc_expire_date"]:
        if not p.doc_expire_date:
            add("doc_expire_date", "Document expiry date is required")
        elif parse_iso_date(p.doc_expire_date) is None:
            add("doc_expire_date", "Document expiry date must be in YYYY-MM-DD format")
    if need["need_gender"] and (p.gender or "").upper() not in ("M", "F"):
        add("gender", "Gender is required (M or F)")
    if need["need_citizenship"] and not (p.citizenship or "").strip():
        add("citizenship", "Citizenship is required")

    if p.phone and not is_valid_phone(p.phone):
        add("phone", "Phone must look like +<country code><number>")
    if p.email and not EMAIL_PATTERN.match(p.email):
        add("email", "Invalid email format")
    return errors


def _validate_seats(trips: Sequence[TripMeta], passenger_count: int) -> List[OrderValidationError]:
    errors: List[OrderValidationError] = []
    for t_idx, trip in enumerate(trips):
        if not trip.seats_per_passenger:
            errors.append(OrderValidationError(field="seat", message="Seats must be selected", trip_index=t_idx))
            continue
        if len(trip.seats_per_passenger) != passenger_count:
            errors.append(OrderValidationError(
                field="seat",
                message=f"Expected {passenger_count} seats, got {len(trip.seats_per_passenger)}",
                trip_index=t_idx,
            ))
        for p_idx, seat in enumerate(trip.seats_per_passenger):
            parts = str(seat).split(",")
            if trip.segments > 1 and len(parts) != trip.segments:
                errors.append(OrderValidationError(
                    field="seat",
                    message=f"Expected {trip.segments} seat segments, got {len(parts)}",
                    trip_index=t_idx, passenger_index=p_idx,
                ))
            elif not all(part.strip() for part in parts):
                errors.append(OrderValidationError(
                    field="seat", message="Seat number is empty",
                    trip_index=t_idx, passenger_index=p_idx,
                ))
        if trip.baggage_per_passenger and len(trip.baggage_per_passenger) != passenger_count:
            errors.append(OrderValidationError(
                field="baggage",
                message=f"Expected baggage for {passenger_count} passengers, got {len(trip.baggage_per_passenger)}",
                trip_index=t_idx,
            ))
        for p_idx in trip.discounts:
            if not 0 <= p_idx < passenger_count:
                errors.append(OrderValidationError(
                    field="discount_id", message=f"Discount for unknown passenger {p_idx}", trip_index=t_idx,
                ))
    return errors


def validate_order(
    trips: Sequence[TripMeta],
    passengers: Sequence[Passenger],
    common: Optional[CommonOrderData] = None,
    today: Optional[date] = None,
) -> List[OrderValidationError]:
    """Collect every problem with the order instead of stopping at the first."""
    common = common or CommonOrderData()
    if not trips:
        return [OrderValidationError(field="trips", message="At least one trip is required")]
    if not passengers:
        return [OrderValidationError(field="passengers", message="At least one passenger is required")]

    today = today or get_current_datetime(settings.TZ).date()
    need = combined_requirements(trips)
    errors: List[OrderValidationError] = []
    for idx, p in enumerate(passengers):
        errors.extend(_validate_passenger(p, idx, need, today))

    phone = contact_phone(passengers, common)
    if not phone:
        errors.append(OrderValidationError(field="phone", message="Contact phone is required"))
    elif common.phone and not is_valid_phone(common.phone):
        errors.append(OrderValidationError(field="phone", message="Phone must look like +<country code><number>"))
    if common.email and not EMAIL_PATTERN.match(common.email):
        errors.append(OrderValidationError(field="email", message="Invalid email format"))

    errors.extend(_validate_seats(trips, len(passengers)))
    return errors


# --- payload ----------------------------------------------------------------

def format_baggage_ids(selections: Iterable[Mapping[str, Any]]) -> str:
    """[{baggage_id: "86", quantity: 2}, ...] -> "86,86"."""
    ids: List[str] = []
    for sel in selections:
        ids.extend([str(sel["baggage_id"])] * int(sel.get("quantity", 1) or 0))
    return ",".join(ids)


def build_order_payload(builder: OrderBuilder) -> Dict[str, Any]:
    """Assemble the new_order body; credentials are added by the transport.

    Raises ValidationError when seat arrays do not line up with passengers.
    """
    trips, passengers, common = builder.trips, builder.passengers, builder.common
    if not trips or not passengers:
        raise ValidationError("Order needs at least one trip and one passenger",
                              code=ErrorCode.VALIDATION_FAILED)
    count = len(passengers)
    need = combined_requirements(trips)

    payload: Dict[str, Any] = {
        "date": [t.date for t in trips],
        "interval_id": [t.interval_id for t in trips],
        "seat": [list(t.seats_per_passenger) for t in trips],
        "currency": common.currency or settings.DEFAULT_CURRENCY,
        "lang": common.lang or settings.DEFAULT_LANG,
    }
    if common.promocode_name:
        payload["promocode_name"] = common.promocode_name

    if need["need_orderdata"]:
        payload["name"] = [p.name for p in passengers]
        payload["surname"] = [p.surname for p in passengers]
        phone = contact_phone(passengers, common)
        if phone:
            payload["phone"] = normalize_phone(phone)
        email = contact_email(passengers, common)
        if email:
            payload["email"] = email
    if need["need_middlename"]:
        payload["middlename"] = [p.middlename or "" for p in passengers]
    if need["need_birth"]:
        payload["birth_date"] = [p.birth_date or "" for p in passengers]

    if need["need_doc"]:
        for field in _DOC_FIELDS:
            payload[field] = [getattr(p, field) for p in passengers]
    if need["need_doc_expire_date"]:
        payload["doc_expire_date"] = [p.doc_expire_date for p in passengers]
    if need["need_gender"]:
        payload["gender"] = [(p.gender or "").upper() for p in passengers]
    if need["need_citizenship"]:
        payload["citizenship"] = [p.citizenship for p in passengers]

    discount_maps = [{str(idx): str(d) for idx, d in sorted(t.discounts.items()) if d} for t in trips]
    if any(discount_maps):
        payload["discount_id"] = discount_maps

    baggage: Dict[str, List[str]] = {}
    for t_idx, trip in enumerate(trips):
        per_passenger = [b or "" for b in trip.baggage_per_passenger]
        if any(per_passenger):
            baggage[str(t_idx)] = per_passenger
    if baggage:
        payload["baggage"] = baggage

    validate_order_payload(payload, passenger_count=count)
    return payload


def validate_order_payload(payload: Mapping[str, Any], passenger_count: Optional[int] = None) -> None:
    """Structural consistency of a built payload; raises ValidationError."""

    def fail(message: str) -> None:
        raise ValidationError(message, code=ErrorCode.VALIDATION_FAILED)

    dates, intervals, seats = payload.get("date", []), payload.get("interval_id", []), payload.get("seat", [])
    if not (len(dates) == len(intervals) == len(seats)) or not dates:
        fail(f"Mismatched trip arrays: date({len(dates)}), interval_id({len(intervals)}), seat({len(seats)})")

    count = passenger_count if passenger_count is not None else len(seats[0])
    for t_idx, trip_seats in enumerate(seats):
        if len(trip_seats) != count:
            fail(f"Trip {t_idx}: {len(trip_seats)} seats for {count} passengers")

    for field in ("name", "surname", "middlename", "birth_date", "doc_type", "doc_number",
                  "doc_expire_date", "gender", "citizenship"):
        values = payload.get(field)
        if values is not None and len(values) != count:
            fail(f"{field}: {len(values)} values for {count} passengers")
        # required document data is never sent blank
        if field in ("doc_type", "doc_number", "doc_expire_date", "gender", "citizenship") and values is not None:
            if any(v in (None, "") for v in values):
                fail(f"{field} is required for every passenger")

    discounts = payload.get("discount_id")
    if discounts is not None and len(discounts) != len(dates):
        fail("discount_id must have one map per trip")

    for t_key, per_passenger in (payload.get("baggage") or {}).items():
        if int(t_key) >= len(dates):
            fail(f"Baggage trip index {t_key} exceeds trip count")
        if len(per_passenger) != count:
            fail(f"Trip {t_key}: baggage for {len(per_passenger)} of {count} passengers")


def lock_seat_assignments(builder: OrderBuilder) -> OrderBuilder:
    """Freeze each trip's seat assignments and derive missing seat strings from them."""
    trips: List[TripMeta] = []
    for trip in builder.trips:
        if not trip.seat_assignments:
            trips.append(trip)
            continue
        frozen = [a.freeze() for a in trip.seat_assignments]
        update: Dict[str, Any] = {"seat_assignments": frozen}
        if not trip.seats_per_passenger:
            segment_ids = list(frozen[0].seats_by_segment)
            update["seats_per_passenger"] = seats_per_passenger(frozen, segment_ids)
        trips.append(trip.model_copy(update=update))
    return builder.model_copy(update={"trips": trips})


# --- submission -------------------------------------------------------------

class OrderService:
    """Validates, submits and follows up on orders."""

    def __init__(self, api: BussystemApi):
        self.api = api

    async def submit(self, builder: OrderBuilder, today: Optional[date] = None,
                     verification=None) -> OrderCreationResult:
        """Validate and post new_order.

        ``verification`` (a PhoneVerification) gates submission on a verified
        contact phone when the caller ran the reserve_validation step.
        """
        builder = lock_seat_assignments(builder)
        errors = validate_order(builder.trips, builder.passengers, builder.common, today=today)
        if errors:
            log_event("order_invalid", level="WARNING", errors=len(errors),
                      fields=sorted({e.field for e in errors}))
            return OrderCreationResult(
                success=False,
                validation_errors=errors,
                error=ApiError(code=ErrorCode.VALIDATION_FAILED, message=f"{len(errors)} validation error(s)"),
            )
        if verification is not None:
            phone = contact_phone(builder.passengers, builder.common)
            if not verification.verified or not verification.matches(phone):
                log_event("order_phone_unverified", level="WARNING", phone=phone)
                return OrderCreationResult(
                    success=False,
                    error=ApiError(code=ErrorCode.SMS_VALIDATION_REQUIRED, message="Contact phone is not verified"),
                )
        try:
            payload = build_order_payload(builder)
            raw = await self.api.new_order(payload)
            reservation = transform.normalize_reservation(raw)
        except BussystemError as e:
            log_event("order_failed", level="WARNING", code=e.code, error=e.message)
            return OrderCreationResult(success=False, error=ApiError(code=e.code, message=e.message, detail=e.detail))
        except ValueError as e:
            log_event("order_failed", level="ERROR", error=str(e))
            return OrderCreationResult(
                success=False, error=ApiError(code=ErrorCode.INVALID_FORMAT, message=str(e)),
            )

        log_event("order_created", order_id=reservation.order_id, price_total=reservation.price_total,
                  currency=reservation.currency, reservation_until=reservation.reservation_until)
        return OrderCreationResult(
            success=True, reservation=reservation,
            seat_assignments=[t.seat_assignments for t in builder.trips],
        )

    async def buy(self, order_id: str, lang: Optional[str] = None) -> ApiResponse:
        try:
            raw = await self.api.buy_ticket(order_id=str(order_id), lang=lang or settings.DEFAULT_LANG)
        except BussystemError as e:
            log_event("order_buy_failed", level="WARNING", order_id=order_id, code=e.code)
            return ApiResponse.fail(e.code, e.message, e.detail)
        log_event("order_bought", order_id=order_id, status=raw.get("status"))
        return ApiResponse.ok(raw)

    async def get_order(self, order_id: str, security: Optional[str] = None) -> ApiResponse:
        params: Dict[str, Any] = {"order_id": str(order_id)}
        if security:
            params["security"] = str(security)
        try:
            raw = await self.api.get_order(**params)
            return ApiResponse.ok(transform.normalize_order(raw))
        except BussystemError as e:
            return ApiResponse.fail(e.code, e.message, e.detail)
        except ValueError as e:
            return ApiResponse.fail(ErrorCode.INVALID_FORMAT, str(e))
