from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from starlight.booking.cancellation import CancellationService, calculate_total_refund, can_cancel_individual_tickets
from starlight.booking.order_builder import OrderService
from starlight.booking.phone_verification import PhoneVerification
from starlight.booking.reservation import ReservationWorkflow
from starlight.booking.return_journey import ReturnJourneyOrchestrator
from starlight.bussystem.client import create_api
from starlight.bussystem.errors import ErrorCode, ValidationError
from starlight.cache.query_cache import CacheSweeper, QueryCache, RedisQueryCache
from starlight.config import settings
from starlight.infrastructure.resilience import HealthChecker
from starlight.obs.logger import log_event
from starlight.obs.metrics import get_metrics_snapshot
from starlight.obs.middleware import ObservabilityMiddleware
from starlight.search.query_client import QueryClient
from starlight.session.store import JourneySessionStore
from starlight.types import ApiResponse, OrderBuilder
from starlight.utils.dates import normalize_search_date

load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_event("startup", env=settings.APP_ENV, mock=settings.USE_MOCK_API)

    app.state.cache = RedisQueryCache(settings.REDIS_URL) if settings.REDIS_URL else QueryCache()

    app.state.api = create_api()
    app.state.query_client = QueryClient(app.state.api, app.state.cache)
    app.state.sessions = JourneySessionStore(lambda: ReturnJourneyOrchestrator(app.state.query_client))
    app.state.orders = OrderService(app.state.api)
    app.state.cancellations = CancellationService(app.state.api)
    app.state.reservations = {}

    app.state.sweeper = CacheSweeper(
        app.state.cache, settings.CACHE_SWEEP_INTERVAL_SECONDS,
        housekeeping=[app.state.sessions.sweep, lambda: prune_reservations(app.state.reservations)],
    )
    app.state.sweeper.start()

    health = HealthChecker()
    health.register_check("cache", lambda: app.state.cache.stats() is not None)
    health.register_check("bussystem", _provider_check(app))
    app.state.health = health

    yield

    log_event("shutdown")
    for workflow in app.state.reservations.values():
        await workflow.stop_monitoring()
    await app.state.sweeper.stop()
    await app.state.api.aclose()


def _provider_check(app: FastAPI):
    async def check() -> bool:
        breaker = getattr(app.state.api, "circuit_breaker", None)
        if breaker is not None:
            return breaker.get_state()["state"] != "open"
        await app.state.api.ping()
        return True
    return check


def prune_reservations(reservations: Dict[str, ReservationWorkflow]) -> int:
    """Forget workflows that reached a terminal state; returns how many went."""
    done = [order_id for order_id, wf in list(reservations.items()) if wf.is_terminal]
    for order_id in done:
        reservations.pop(order_id, None)
    if done:
        log_event("reservation_prune", removed=len(done))
    return len(done)


app = FastAPI(
    title="Starlight Routes",
    version="1.0.0",
    lifespan=lifespan
)


# --- request bodies ---------------------------------------------------------

class OutboundSearchBody(BaseModel):
    id_from: str
    id_to: str
    date: str
    station_id_from: Optional[str] = None
    station_id_to: Optional[str] = None
    trans: str = "bus"
    currency: Optional[str] = None
    lang: Optional[str] = None


class ReturnSearchBody(BaseModel):
    date: str
    trans: str = "bus"
    currency: Optional[str] = None
    lang: Optional[str] = None


class SelectRouteBody(BaseModel):
    interval_id: str


class TicketRef(BaseModel):
    ticket_id: str
    security: Optional[str] = None
    passenger_name: Optional[str] = None


class EstimateBody(BaseModel):
    tickets: List[TicketRef]


class CancelTicketBody(BaseModel):
    ticket_id: str
    security: Optional[str] = None
    lang: Optional[str] = None


class CancelOrderBody(BaseModel):
    order_id: str
    security: Optional[str] = None
    lang: Optional[str] = None


class PhoneCheckBody(BaseModel):
    phone: str
    lang: Optional[str] = None


class PhoneCodeBody(BaseModel):
    code: str


def _fail(code: str, message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(ApiResponse.fail(code, message).model_dump(), status_code=status_code)


# --- service ----------------------------------------------------------------

@app.get("/")
async def root():
    return {
        "service": "Starlight Routes",
        "version": "1.0.0",
        "status": "running",
        "provider": "mock" if settings.USE_MOCK_API else "bussystem",
    }


@app.get("/health")
async def health(request: Request):
    results = await request.app.state.health.run_checks()
    status_code = 200 if results["status"] == "healthy" else 503
    return JSONResponse(results, status_code=status_code)


@app.get("/metrics")
async def metrics(request: Request):
    cache = getattr(request.app.state, "cache", None)
    api = getattr(request.app.state, "api", None)
    breaker = getattr(api, "circuit_breaker", None)

    snapshot = get_metrics_snapshot()
    snapshot.update({
        "cache": cache.stats() if cache else {"hits": 0, "misses": 0, "hit_rate": "0.0%"},
        "circuit_breaker": breaker.get_state() if breaker else None,
    })
    return snapshot


# --- points -----------------------------------------------------------------

@app.get("/points/autocomplete")
async def autocomplete(request: Request, q: str = "", trans: str = "all", lang: Optional[str] = None):
    return await request.app.state.query_client.autocomplete(q, trans=trans, lang=lang)


@app.get("/countries")
async def countries(request: Request, lang: Optional[str] = None):
    return await request.app.state.query_client.get_countries(lang=lang)


@app.get("/plan/{bustype_id}")
async def bus_plan(request: Request, bustype_id: str, orientation: str = "h", lang: Optional[str] = None):
    response = await request.app.state.query_client.get_plan(bustype_id, orientation=orientation, lang=lang)
    if not response.success and response.error.code == ErrorCode.INVALID_PARAMS:
        return JSONResponse(response.model_dump(), status_code=400)
    return response


# --- journey ----------------------------------------------------------------

@app.get("/journey/{session_id}")
async def journey_state(request: Request, session_id: str):
    return request.app.state.sessions.get_or_create(session_id).snapshot()


@app.post("/journey/{session_id}/outbound/search")
async def search_outbound(request: Request, session_id: str, body: OutboundSearchBody):
    try:
        date = normalize_search_date(body.date, settings.TZ)
    except ValidationError as e:
        return _fail(e.code, e.message)
    orchestrator = request.app.state.sessions.get_or_create(session_id)
    await orchestrator.search_outbound(
        body.id_from, body.id_to, date,
        station_id_from=body.station_id_from, station_id_to=body.station_id_to,
        trans=body.trans, currency=body.currency, lang=body.lang,
    )
    return orchestrator.snapshot()


@app.post("/journey/{session_id}/outbound/select")
async def select_outbound(request: Request, session_id: str, body: SelectRouteBody):
    orchestrator = request.app.state.sessions.get_or_create(session_id)
    route = orchestrator.find_route(body.interval_id, "outbound")
    if route is None:
        return _fail(ErrorCode.INVALID_PARAMS, f"Unknown outbound interval {body.interval_id}", 404)
    await orchestrator.select_outbound(route)
    return orchestrator.snapshot()


@app.post("/journey/{session_id}/return/search")
async def search_return(request: Request, session_id: str, body: ReturnSearchBody):
    orchestrator = request.app.state.sessions.get_or_create(session_id)
    await orchestrator.search_return(body.date, trans=body.trans, currency=body.currency, lang=body.lang)
    return orchestrator.snapshot()


@app.post("/journey/{session_id}/return/select")
async def select_return(request: Request, session_id: str, body: SelectRouteBody):
    orchestrator = request.app.state.sessions.get_or_create(session_id)
    route = orchestrator.find_route(body.interval_id, "return")
    if route is None:
        return _fail(ErrorCode.INVALID_PARAMS, f"Unknown return interval {body.interval_id}", 404)
    await orchestrator.select_return(route)
    return orchestrator.snapshot()


@app.post("/journey/{session_id}/round-trip/toggle")
async def toggle_round_trip(request: Request, session_id: str):
    orchestrator = request.app.state.sessions.get_or_create(session_id)
    await orchestrator.toggle_round_trip()
    return orchestrator.snapshot()


def _phone_state(verification: PhoneVerification, response: ApiResponse) -> JSONResponse:
    body = response.model_dump()
    body["phone"] = verification.snapshot()
    return JSONResponse(body, status_code=200 if response.success else 400)


@app.post("/journey/{session_id}/phone/check")
async def check_phone(request: Request, session_id: str, body: PhoneCheckBody):
    verification = PhoneVerification(request.app.state.api, body.phone, lang=body.lang)
    request.app.state.sessions.extras(session_id)["phone"] = verification
    return _phone_state(verification, await verification.check())


@app.post("/journey/{session_id}/phone/send-code")
async def send_phone_code(request: Request, session_id: str):
    verification = request.app.state.sessions.extras(session_id).get("phone")
    if verification is None:
        return _fail(ErrorCode.INVALID_PARAMS, "Check the phone first", 404)
    return _phone_state(verification, await verification.send_code())


@app.post("/journey/{session_id}/phone/verify")
async def verify_phone_code(request: Request, session_id: str, body: PhoneCodeBody):
    verification = request.app.state.sessions.extras(session_id).get("phone")
    if verification is None:
        return _fail(ErrorCode.INVALID_PARAMS, "Check the phone first", 404)
    return _phone_state(verification, await verification.verify_code(body.code))


@app.delete("/journey/{session_id}")
async def clear_journey(request: Request, session_id: str):
    orchestrator = request.app.state.sessions.get(session_id)
    if orchestrator is not None:
        await orchestrator.clear_selection()
    request.app.state.sessions.clear(session_id)
    return {"status": "cleared", "session_id": session_id}


# --- orders -----------------------------------------------------------------

async def _log_status_change(previous: Optional[str], status: str) -> None:
    log_event("reservation_status", previous=previous, status=status)


@app.post("/orders")
async def create_order(request: Request, builder: OrderBuilder, session_id: Optional[str] = None):
    verification = None
    if session_id:
        verification = request.app.state.sessions.extras(session_id).get("phone")
    result = await request.app.state.orders.submit(builder, verification=verification)
    if not result.success:
        if result.validation_errors:
            status_code = 422
        elif result.error and result.error.code == ErrorCode.SMS_VALIDATION_REQUIRED:
            status_code = 403
        else:
            status_code = 502
        return JSONResponse(result.model_dump(), status_code=status_code)

    workflow = ReservationWorkflow(
        result.reservation, request.app.state.orders, request.app.state.cancellations,
    )
    request.app.state.reservations[result.reservation.order_id] = workflow
    if settings.ORDER_POLL_INTERVAL_SECONDS > 0:
        workflow.start_monitoring(_log_status_change)
    return {**result.model_dump(), "countdown": workflow.snapshot()}


@app.get("/orders/{order_id}")
async def get_order(request: Request, order_id: str, security: Optional[str] = None):
    response = await request.app.state.orders.get_order(order_id, security)
    workflow = request.app.state.reservations.get(order_id)
    body = response.model_dump()
    if workflow is not None:
        body["reservation"] = workflow.snapshot()
    return body


@app.post("/orders/{order_id}/buy")
async def buy_order(request: Request, order_id: str):
    workflow = request.app.state.reservations.get(order_id)
    if workflow is None:
        return await request.app.state.orders.buy(order_id)
    try:
        return await workflow.buy()
    except ValidationError as e:
        return _fail(e.code, e.message, 409)


# --- cancellations ----------------------------------------------------------

@app.post("/cancellations/estimate")
async def cancellation_estimate(request: Request, body: EstimateBody):
    estimates = await request.app.state.cancellations.get_order_cancellation_estimate(
        [t.model_dump() for t in body.tickets]
    )
    return ApiResponse.ok({
        "estimates": estimates,
        "totals": calculate_total_refund(estimates),
        "can_cancel_individual": can_cancel_individual_tickets(estimates),
        "missing": len(body.tickets) - len(estimates),
    })


@app.post("/cancellations/ticket")
async def cancel_ticket(request: Request, body: CancelTicketBody):
    return await request.app.state.cancellations.cancel_ticket(body.ticket_id, body.security, lang=body.lang)


@app.post("/cancellations/order")
async def cancel_order(request: Request, body: CancelOrderBody):
    workflow = request.app.state.reservations.get(body.order_id)
    if workflow is not None:
        if body.security != workflow.reservation.security:
            log_event("cancel_order_refused", level="WARNING", order_id=body.order_id)
            return _fail(ErrorCode.SECURITY_MISMATCH, "Security code does not match the order", 403)
        if not workflow.is_terminal:
            return await workflow.cancel()
    return await request.app.state.cancellations.cancel_order(body.order_id, body.security, lang=body.lang)


# Apply middleware
app = ObservabilityMiddleware(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8001,
        reload=settings.APP_ENV == "dev",
        log_level="info"
    )
