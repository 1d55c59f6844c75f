from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional
import time

LanguageCode = Literal["en", "ru", "ua", "de", "pl", "cz", "ro"]
TransportType = Literal["all", "bus", "train", "air", "travel", "hotel"]


# --- Points -----------------------------------------------------------------

class PointStation(BaseModel):
    station_id: str
    point_id: str = ""
    station_name: str = ""
    station_address: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class PointAirport(BaseModel):
    iata: str = ""
    icao: str = ""
    airport_name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class PointCity(BaseModel):
    point_id: str
    name: str
    latin_name: str = ""
    country_id: str = ""
    country_name: str = ""
    country_iso3: str = ""
    country_iso2: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    population: Optional[float] = None
    currency: str = ""
    time_zone: Optional[str] = None
    stations: Optional[List[PointStation]] = None
    airports: Optional[List[PointAirport]] = None


class CountryItem(BaseModel):
    country_id: str
    name: str
    iso3: str = ""
    iso2: str = ""
    names: Dict[str, str] = Field(default_factory=dict)
    currency: str = ""
    time_zone: Optional[str] = None


class GroupPoint(BaseModel):
    point_id: str
    point_name: str = ""
    point_name_detail: str = ""


class CountryGroup(BaseModel):
    country_id: str = ""
    country_name: str = ""
    currency: str = ""
    time_zone: Optional[str] = None
    points: List[GroupPoint] = Field(default_factory=list)


# --- Routes -----------------------------------------------------------------

class RouteDiscount(BaseModel):
    discount_id: str
    discount_name: str = ""
    discount_price: float = 0.0


class CancelRule(BaseModel):
    hours_after_depar: str = ""
    hours_before_depar: str = ""
    cancel_rate: float = 0.0
    money_back: float = 0.0


class RouteTrip(BaseModel):
    """Sub-interval of a multi-carrier transfer route."""
    interval_id: str
    route_name: str = ""
    carrier: str = ""
    date_from: str = ""
    time_from: str = ""
    date_to: str = ""
    time_to: str = ""


class ChangeRouteSegment(BaseModel):
    interval_id: str = ""
    point_from: str = ""
    station_from: str = ""
    date_from: str = ""
    time_from: str = ""
    point_to: str = ""
    station_to: str = ""
    date_to: str = ""
    time_to: str = ""
    carrier: str = ""
    bustype_id: str = ""


class RouteSummary(BaseModel):
    interval_id: str
    trans: str = "bus"
    route_name: str = ""
    carrier: str = ""

    point_from: str = ""
    station_from: str = ""
    date_from: str
    time_from: str = ""
    point_to: str = ""
    station_to: str = ""
    date_to: str
    time_to: str = ""
    time_in_way: str = ""

    price_one_way: Optional[float] = None
    price_one_way_max: Optional[float] = None
    price_two_way: Optional[float] = None
    currency: str = ""

    # gates for follow-up calls
    request_get_free_seats: bool = False
    request_get_discount: bool = False
    request_get_baggage: bool = False
    has_plan: bool = False
    bustype_id: str = ""

    # passenger form requirements for new_order
    need_orderdata: bool = False
    need_birth: bool = False
    need_doc: bool = False
    need_doc_expire_date: bool = False
    need_citizenship: bool = False
    need_gender: bool = False
    need_middlename: bool = False

    reserve_min: Optional[int] = None
    lock_min: Optional[int] = None
    max_seats: Optional[int] = None

    free_seats: List[str] = Field(default_factory=list)
    discounts: List[RouteDiscount] = Field(default_factory=list)
    cancel_hours_info: List[CancelRule] = Field(default_factory=list)
    trips: List[RouteTrip] = Field(default_factory=list)
    change_route: List[ChangeRouteSegment] = Field(default_factory=list)

    @property
    def has_transfers(self) -> bool:
        return len(self.trips) > 1


# --- Return journey ---------------------------------------------------------

class OutboundSelection(BaseModel):
    id_from: str
    id_to: str
    station_id_from: Optional[str] = None
    station_id_to: Optional[str] = None
    date_go: str
    date_arrival_go: str
    intervals: List[str]
    selected_route: Optional[RouteSummary] = None


class TripBooking(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    outbound: Optional[OutboundSelection] = None
    return_route: Optional[RouteSummary] = Field(default=None, alias="return")
    is_round_trip: bool = False


# --- Seats / extras ---------------------------------------------------------

class FreeSeatItem(BaseModel):
    seat_number: str
    seat_free: Literal[0, 1] = 1
    seat_price: Optional[float] = None
    currency: Optional[str] = None


class SegmentSeats(BaseModel):
    segment_id: str
    seats: List[FreeSeatItem] = Field(default_factory=list)
    has_plan: bool = False
    trip_name: str = ""


class PassengerSeatAssignment(BaseModel):
    passenger_index: int
    seats_by_segment: Dict[str, str] = Field(default_factory=dict)
    total_price: float = 0.0

    def freeze(self) -> "FrozenSeatAssignment":
        return FrozenSeatAssignment(**self.model_dump())


class FrozenSeatAssignment(PassengerSeatAssignment):
    """Assignment as it was sent with new_order; attribute writes raise."""

    model_config = ConfigDict(frozen=True)

    def freeze(self) -> "FrozenSeatAssignment":
        return self


class PlanSeat(BaseModel):
    number: Optional[str] = None  # None marks an aisle or gap cell
    icon: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.number


class PlanRow(BaseModel):
    row_index: int
    seats: List[PlanSeat] = Field(default_factory=list)


class PlanFloor(BaseModel):
    number: int = 1
    rows: List[PlanRow] = Field(default_factory=list)


class BusPlan(BaseModel):
    """Seat layout of a vehicle type, one grid per floor."""

    bustype_id: str
    plan_type: str = "standard"
    version: str = "2.0"
    orientation: Literal["h", "v"] = "h"
    floors: List[PlanFloor] = Field(default_factory=list)


class DiscountItem(BaseModel):
    discount_id: str
    discount_name: str = ""
    discount_price: float = 0.0
    discount_price_max: Optional[float] = None
    discount_currency: Optional[str] = None


class BaggageItem(BaseModel):
    baggage_id: str
    baggage_type_id: str = ""
    baggage_type: str = ""
    baggage_title: str = ""
    kg: Optional[float] = None
    max_in_bus: Optional[int] = None
    max_per_person: Optional[int] = None
    price: float = 0.0
    currency: str = ""


# --- Orders -----------------------------------------------------------------

class Passenger(BaseModel):
    name: str = ""
    surname: str = ""
    middlename: Optional[str] = None
    birth_date: Optional[str] = None  # YYYY-MM-DD
    phone: Optional[str] = None
    email: Optional[str] = None
    doc_type: Optional[str] = None
    doc_number: Optional[str] = None
    doc_expire_date: Optional[str] = None
    gender: Optional[str] = None  # "M" | "F"
    citizenship: Optional[str] = None


class TripMeta(BaseModel):
    date: str
    interval_id: str
    seats_per_passenger: List[str] = Field(default_factory=list)  # ["3","4"] or ["5,1","6,2"]
    discounts: Dict[int, str] = Field(default_factory=dict)  # passenger index -> discount_id
    baggage_per_passenger: List[Optional[str]] = Field(default_factory=list)  # "82,86" per passenger
    segments: int = 1
    need_orderdata: bool = False
    need_birth: bool = False
    need_doc: bool = False
    need_doc_expire_date: bool = False
    need_gender: bool = False
    need_citizenship: bool = False
    need_middlename: bool = False
    # filled by assign_seats_to_passengers; frozen by OrderService.submit
    seat_assignments: List[PassengerSeatAssignment] = Field(default_factory=list)


class CommonOrderData(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    promocode_name: Optional[str] = None
    currency: Optional[str] = None
    lang: Optional[str] = None


class OrderBuilder(BaseModel):
    trips: List[TripMeta]
    passengers: List[Passenger]
    common: CommonOrderData = Field(default_factory=CommonOrderData)


class OrderValidationError(BaseModel):
    field: str
    message: str
    passenger_index: Optional[int] = None
    trip_index: Optional[int] = None


class ReservationInfo(BaseModel):
    order_id: str
    security: str
    reservation_until: str = ""  # "YYYY-MM-DD HH:MM:SS" provider time
    reservation_until_min: Optional[int] = None
    price_total: float = 0.0
    currency: str = ""
    status: str = "reserve_ok"


class ReserveValidation(BaseModel):
    reserve_validation: bool = False
    need_sms_validation: bool = False


class SmsValidationResult(BaseModel):
    validation_id: Optional[str] = None
    phone: str = ""
    status_code: str = ""  # send_sms | valid | invalid
    status_sms: Optional[str] = None


class OrderInfo(BaseModel):
    order_id: str
    status: str = ""
    security: Optional[str] = None
    price_total: float = 0.0
    currency: str = ""
    reservation_until: Optional[str] = None
    tickets: List[Dict[str, Any]] = Field(default_factory=list)


# --- Cancellation -----------------------------------------------------------

class CancellationEstimate(BaseModel):
    ticket_id: str
    passenger_name: Optional[str] = None
    original_price: float = 0.0
    retention_amount: float = 0.0
    refund_amount: float = 0.0
    cancellation_rate: float = 0.0
    currency: str = ""
    can_cancel_individual: bool = True
    baggage_refund: Optional[float] = None


class CancellationDetail(BaseModel):
    ticket_id: str
    passenger_name: Optional[str] = None
    original_price: float = 0.0
    refund_amount: float = 0.0
    retained_amount: float = 0.0
    currency: str = ""
    baggage_refund: Optional[float] = None


class CancellationResult(BaseModel):
    success: bool
    type: Literal["ticket", "order"]
    ticket_id: Optional[str] = None
    order_id: Optional[str] = None
    total_refund: float = 0.0
    total_retained: float = 0.0
    currency: str = ""
    details: List[CancellationDetail] = Field(default_factory=list)
    message: Optional[str] = None
    error_message: Optional[str] = None


class RefundTotals(BaseModel):
    total_refund: float
    total_retained: float
    currency: str


# --- Envelope ---------------------------------------------------------------

class ApiError(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ApiResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[ApiError] = None
    cached: bool = False
    timestamp: Optional[float] = None

    @classmethod
    def ok(cls, data: Any, cached: bool = False) -> "ApiResponse":
        return cls(success=True, data=data, cached=cached, timestamp=time.time())

    @classmethod
    def fail(cls, code: str, message: str, detail: Optional[str] = None) -> "ApiResponse":
        return cls(success=False, error=ApiError(code=code, message=message, detail=detail))


class OrderCreationResult(BaseModel):
    success: bool
    reservation: Optional[ReservationInfo] = None
    seat_assignments: List[List[PassengerSeatAssignment]] = Field(default_factory=list)  # per trip
    validation_errors: List[OrderValidationError] = Field(default_factory=list)
    error: Optional[ApiError] = None
