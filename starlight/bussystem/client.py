from typing import Any, Dict, Optional, Protocol

from starlight.bussystem.errors import ConfigurationError
from starlight.bussystem.http import BussystemTransport, Endpoint
from starlight.config import settings
from starlight.infrastructure.resilience import CircuitBreaker, RetryPolicy
from starlight.obs.logger import log_event


class BussystemApi(Protocol):
    """Raw provider surface shared by the live client and the mock."""

    async def get_points(self, **params: Any) -> Any: ...
    async def get_routes(self, **params: Any) -> Any: ...
    async def get_free_seats(self, **params: Any) -> Any: ...
    async def get_discount(self, **params: Any) -> Any: ...
    async def get_baggage(self, **params: Any) -> Any: ...
    async def get_plan(self, **params: Any) -> Any: ...
    async def new_order(self, payload: Dict[str, Any]) -> Any: ...
    async def buy_ticket(self, **params: Any) -> Any: ...
    async def reserve_validation(self, **params: Any) -> Any: ...
    async def sms_validation(self, **params: Any) -> Any: ...
    async def get_order(self, **params: Any) -> Any: ...
    async def get_ticket(self, **params: Any) -> Any: ...
    async def cancel_ticket(self, **params: Any) -> Any: ...
    async def ping(self) -> Any: ...
    async def aclose(self) -> None: ...


class BussystemClient:
    """Live Bussystem client. Every method returns the decoded raw payload."""

    def __init__(self, transport: Optional[BussystemTransport] = None):
        if transport is None:
            if not settings.BUSS_LOGIN or not settings.BUSS_PASSWORD:
                raise ConfigurationError("BUSS_LOGIN and BUSS_PASSWORD are required when USE_MOCK_API is off")
            transport = BussystemTransport(
                base_url=settings.BUSS_BASE_URL,
                login=settings.BUSS_LOGIN,
                password=settings.BUSS_PASSWORD,
                lang=settings.DEFAULT_LANG,
                version=settings.BUSS_API_VERSION,
                timeout=settings.REQUEST_TIMEOUT_SECONDS,
                retry_policy=RetryPolicy(max_attempts=settings.REQUEST_RETRIES + 1),
                circuit_breaker=CircuitBreaker("bussystem"),
            )
        self._transport = transport

    @property
    def circuit_breaker(self) -> Optional[CircuitBreaker]:
        return self._transport.circuit_breaker

    async def get_points(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.POINTS, params)

    async def get_routes(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.ROUTES, params)

    async def get_free_seats(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.FREE_SEATS, params)

    async def get_discount(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.DISCOUNT, params)

    async def get_baggage(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.BAGGAGE, params)

    async def get_plan(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.PLAN, params)

    async def new_order(self, payload: Dict[str, Any]) -> Any:
        return await self._transport.post(Endpoint.NEW_ORDER, payload)

    async def buy_ticket(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.BUY_TICKET, params)

    async def reserve_validation(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.RESERVE_VALIDATION, params)

    async def sms_validation(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.SMS_VALIDATION, params)

    async def get_order(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.GET_ORDER, params)

    async def get_ticket(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.GET_TICKET, params)

    async def cancel_ticket(self, **params: Any) -> Any:
        return await self._transport.post(Endpoint.CANCEL_TICKET, params)

    async def ping(self) -> Any:
        return await self._transport.post(Endpoint.PING, {})

    async def aclose(self) -> None:
        await self._transport.aclose()


def create_api(use_mock: Optional[bool] = None) -> BussystemApi:
    """Mock/live switch. Both sides expose the same methods and payload shapes."""
    from starlight.bussystem.mock import MockBussystem

    if use_mock is None:
        use_mock = settings.USE_MOCK_API
    log_event("bussystem_api_selected", mode="mock" if use_mock else "live")
    if use_mock:
        return MockBussystem()
    return BussystemClient()
