"""
Reservation lifecycle after new_order: countdown, status polling, terminal states.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
import asyncio
import inspect

import pytz

from starlight.bussystem.errors import ErrorCode, ValidationError
from starlight.config import settings
from starlight.obs.logger import log_event
from starlight.types import ApiResponse, ReservationInfo
from starlight.utils.dates import format_remaining, parse_provider_datetime

DEFAULT_RESERVATION_MINUTES = 20
EXPIRATION_WARNING_SECONDS = 5 * 60

PAID_STATUSES = {"buy", "buy_ok", "paid"}
CANCELLED_STATUSES = {"cancel", "cancel_ok", "cancelled"}


def _utc_now() -> datetime:
    return datetime.now(pytz.utc)


class ReservationCountdown:
    """Time left on a reservation.

    ``reservation_until`` is provider wall-clock time in ``settings.TZ``;
    when it is missing or unparseable the deadline is ``reservation_until_min``
    minutes from construction.
    """

    def __init__(self, reservation: ReservationInfo, now: Callable[[], datetime] = _utc_now,
                 tz: Optional[str] = None):
        self._now = now
        deadline = parse_provider_datetime(reservation.reservation_until, tz or settings.TZ)
        if deadline is None:
            minutes = reservation.reservation_until_min or DEFAULT_RESERVATION_MINUTES
            deadline = now() + timedelta(minutes=minutes)
        self.deadline = deadline

    def remaining(self) -> float:
        return max(0.0, (self.deadline - self._now()).total_seconds())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def format_remaining(self) -> str:
        return format_remaining(self.remaining())

    def is_expiration_warning(self, threshold_seconds: float = EXPIRATION_WARNING_SECONDS) -> bool:
        left = self.remaining()
        return 0 < left <= threshold_seconds

    def extend(self, minutes: int) -> None:
        self.deadline = self.deadline + timedelta(minutes=minutes)


StatusCallback = Callable[[Optional[str], str], Any]


class OrderStatusMonitor:
    """Poll an order's status and report each change exactly once.

    The first status seen is the baseline and is not reported, unless the
    caller already knows it and passes ``initial_status``. Fetch errors are
    logged and the next poll proceeds.
    """

    def __init__(
        self,
        fetch_status: Callable[[], Awaitable[Optional[str]]],
        on_change: StatusCallback,
        interval_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        initial_status: Optional[str] = None,
    ):
        self.fetch_status = fetch_status
        self.on_change = on_change
        self.interval_seconds = settings.ORDER_POLL_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._sleep = sleep
        self.last_status: Optional[str] = initial_status
        self._seen_any = initial_status is not None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> bool:
        """One poll; True when a transition was reported."""
        try:
            status = await self.fetch_status()
        except Exception as e:
            log_event("order_poll_failed", level="WARNING", error=f"{type(e).__name__}: {e}")
            return False
        if status is None:
            return False
        if not self._seen_any:
            self._seen_any = True
            self.last_status = status
            return False
        if status == self.last_status:
            return False

        previous, self.last_status = self.last_status, status
        log_event("order_status_changed", previous=previous, status=status)
        result = self.on_change(previous, status)
        if inspect.isawaitable(result):
            await result
        return True

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await self._sleep(self.interval_seconds)

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if task is asyncio.current_task():
            task.cancel()
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class ReservationState(str, Enum):
    RESERVED = "reserved"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


_TERMINAL = (ReservationState.PAID, ReservationState.CANCELLED, ReservationState.EXPIRED)


class ReservationWorkflow:
    """One reservation from new_order to a terminal state.

    ``order_service`` needs ``buy(order_id)`` and ``get_order(order_id, security)``;
    ``cancellation`` (optional) needs ``cancel_order(order_id, security)``.
    """

    def __init__(self, reservation: ReservationInfo, order_service, cancellation=None,
                 now: Callable[[], datetime] = _utc_now, tz: Optional[str] = None):
        self.reservation = reservation
        self.order_service = order_service
        self.cancellation = cancellation
        self.countdown = ReservationCountdown(reservation, now=now, tz=tz)
        self.state = ReservationState.RESERVED
        self.monitor: Optional[OrderStatusMonitor] = None
        self._on_status: Optional[StatusCallback] = None
        self._apply_status(reservation.status)

    @property
    def is_terminal(self) -> bool:
        self._check_expiry()
        return self.state in _TERMINAL

    def _check_expiry(self) -> None:
        if self.state == ReservationState.RESERVED and self.countdown.expired:
            self.state = ReservationState.EXPIRED
            log_event("reservation_expired", order_id=self.reservation.order_id)

    def _ensure_mutable(self, action: str) -> None:
        if self.is_terminal:
            raise ValidationError(
                f"Cannot {action}: reservation {self.reservation.order_id} is {self.state.value}",
                code=ErrorCode.RESERVATION_TERMINAL,
            )

    def _apply_status(self, status: Optional[str]) -> None:
        self._check_expiry()
        if not status or self.state in _TERMINAL:
            return
        status = status.lower()
        if status in PAID_STATUSES:
            self.state = ReservationState.PAID
        elif status in CANCELLED_STATUSES:
            self.state = ReservationState.CANCELLED

    # --- mutations --------------------------------------------------------

    async def buy(self, lang: Optional[str] = None) -> ApiResponse:
        self._ensure_mutable("buy")
        response = await self.order_service.buy(self.reservation.order_id, lang=lang)
        if response.success:
            self._apply_status((response.data or {}).get("status") or "buy_ok")
            self.reservation = self.reservation.model_copy(update={"status": "buy_ok"})
            await self.stop_monitoring()
        return response

    async def cancel(self) -> Any:
        self._ensure_mutable("cancel")
        if self.cancellation is None:
            raise ValidationError("No cancellation service configured", code=ErrorCode.INVALID_PARAMS)
        result = await self.cancellation.cancel_order(self.reservation.order_id, self.reservation.security)
        # envelope ok but provider may still refuse (cancel_order=0)
        if result.success and getattr(result.data, "success", True):
            self.state = ReservationState.CANCELLED
            await self.stop_monitoring()
        return result

    def extend(self, minutes: int) -> None:
        self._ensure_mutable("extend")
        self.countdown.extend(minutes)
        log_event("reservation_extended", order_id=self.reservation.order_id, minutes=minutes)

    # --- monitoring -------------------------------------------------------

    async def _fetch_status(self) -> Optional[str]:
        if self.is_terminal:
            # deadline passed between polls; nothing left to watch
            await self.stop_monitoring()
            return None
        response = await self.order_service.get_order(self.reservation.order_id, self.reservation.security)
        if not response.success:
            log_event("order_poll_failed", level="WARNING", order_id=self.reservation.order_id,
                      code=response.error.code)
            return None
        return response.data.status

    async def _handle_change(self, previous: Optional[str], status: str) -> None:
        self._apply_status(status)
        if self._on_status is not None:
            result = self._on_status(previous, status)
            if inspect.isawaitable(result):
                await result
        if self.state in _TERMINAL:
            await self.stop_monitoring()

    def start_monitoring(self, on_status: Optional[StatusCallback] = None,
                         interval_seconds: Optional[float] = None) -> Optional[OrderStatusMonitor]:
        self._on_status = on_status
        if self.is_terminal:
            return self.monitor
        if self.monitor is None or not self.monitor.running:
            self.monitor = OrderStatusMonitor(self._fetch_status, self._handle_change, interval_seconds,
                                              initial_status=self.reservation.status)
            self.monitor.start()
        return self.monitor

    async def stop_monitoring(self) -> None:
        if self.monitor is not None:
            await self.monitor.stop()

    def snapshot(self) -> dict:
        terminal = self.is_terminal
        return {
            "order_id": self.reservation.order_id,
            "state": self.state.value,
            "terminal": terminal,
            "remaining_seconds": self.countdown.remaining(),
            "remaining": self.countdown.format_remaining(),
            "expiration_warning": self.countdown.is_expiration_warning(),
        }
