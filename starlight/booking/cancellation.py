"""
Refund estimates and cancellation of tickets or whole orders.

get_ticket carries the refund figures (``money_back_if_cancel`` /
``money_noback_if_cancel``) and the ``cancel_only_order`` marker; cancel_ticket
answers with one record for a ticket or numeric-keyed records for an order.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional
import asyncio

from starlight.bussystem.client import BussystemApi
from starlight.bussystem.errors import BussystemError, ErrorCode
from starlight.bussystem.transform import ensure_list, numeric_keyed, to_bool, to_float, to_str
from starlight.obs.logger import log_event
from starlight.types import (
    ApiResponse,
    CancellationDetail,
    CancellationEstimate,
    CancellationResult,
    RefundTotals,
)

DEFAULT_REFUND_CURRENCY = "EUR"


def _money(value: Any) -> float:
    return to_float(value) or 0.0


def _baggage_sum(raw: Any, field: str) -> Optional[float]:
    items = [b for b in ensure_list(raw) if isinstance(b, dict)]
    if not items:
        return None
    return round(sum(_money(b.get(field)) for b in items), 2)


def estimate_from_ticket(raw: Mapping[str, Any], ticket_id: Optional[str] = None) -> CancellationEstimate:
    info = raw.get("passenger_info") or {}
    name = None
    if isinstance(info, dict) and (info.get("first_name") or info.get("last_name")):
        name = f"{to_str(info.get('first_name'))} {to_str(info.get('last_name'))}".strip()
    return CancellationEstimate(
        ticket_id=to_str(raw.get("ticket_id")) or to_str(ticket_id),
        passenger_name=name,
        original_price=_money(raw.get("price")),
        retention_amount=_money(raw.get("money_noback_if_cancel")),
        refund_amount=_money(raw.get("money_back_if_cancel")),
        cancellation_rate=_money(raw.get("cancel_rate")),
        currency=to_str(raw.get("currency")),
        can_cancel_individual=not to_bool(raw.get("cancel_only_order")),
        baggage_refund=_baggage_sum(raw.get("baggage"), "price"),
    )


def calculate_total_refund(estimates: Iterable[CancellationEstimate]) -> RefundTotals:
    """Sum refunds (ticket plus baggage) and retentions.

    All estimates are assumed to share the first one's currency.
    """
    estimates = list(estimates)
    currency = estimates[0].currency if estimates and estimates[0].currency else DEFAULT_REFUND_CURRENCY
    return RefundTotals(
        total_refund=round(sum(e.refund_amount + (e.baggage_refund or 0.0) for e in estimates), 2),
        total_retained=round(sum(e.retention_amount for e in estimates), 2),
        currency=currency,
    )


def can_cancel_individual_tickets(estimates: Iterable[CancellationEstimate]) -> bool:
    return all(e.can_cancel_individual for e in estimates)


def _detail(raw: Mapping[str, Any], currency: str) -> CancellationDetail:
    refund = _money(raw.get("money_back"))
    retained = _money(raw.get("price"))
    return CancellationDetail(
        ticket_id=to_str(raw.get("ticket_id")),
        original_price=round(refund + retained, 2),
        refund_amount=refund,
        retained_amount=retained,
        currency=to_str(raw.get("currency")) or currency,
        baggage_refund=_baggage_sum(raw.get("baggage"), "price_back"),
    )


def process_cancellation_result(response: Mapping[str, Any], kind: str) -> CancellationResult:
    """Fold the ticket and order response shapes into one CancellationResult."""
    currency = to_str(response.get("currency"))
    message = to_str(response.get("message")) or None

    if kind == "ticket":
        detail = _detail(response, currency)
        success = to_bool(response.get("cancel_ticket", 1))
        return CancellationResult(
            success=success,
            type="ticket",
            ticket_id=detail.ticket_id,
            total_refund=round(detail.refund_amount + (detail.baggage_refund or 0.0), 2),
            total_retained=detail.retained_amount,
            currency=currency,
            details=[detail],
            message=message,
            error_message=None if success else message,
        )

    details = [_detail(item, currency) for item in numeric_keyed(dict(response))]
    baggage = sum(d.baggage_refund or 0.0 for d in details)
    refund_total = to_float(response.get("money_back_total"))
    if refund_total is None:
        refund_total = sum(d.refund_amount for d in details)
    retained_total = to_float(response.get("price_total"))
    if retained_total is None:
        retained_total = sum(d.retained_amount for d in details)
    success = to_bool(response.get("cancel_order", 1))
    return CancellationResult(
        success=success,
        type="order",
        order_id=to_str(response.get("order_id")) or None,
        total_refund=round(refund_total + baggage, 2),
        total_retained=round(retained_total, 2),
        currency=currency,
        details=details,
        message=message,
        error_message=None if success else message,
    )


class CancellationService:
    def __init__(self, api: BussystemApi):
        self.api = api

    async def _estimate(self, ticket_id: str, security: Optional[str] = None) -> CancellationEstimate:
        params: Dict[str, Any] = {"ticket_id": str(ticket_id)}
        if security:
            params["security"] = str(security)
        raw = await self.api.get_ticket(**params)
        return estimate_from_ticket(raw, ticket_id)

    async def get_cancellation_estimate(self, ticket_id: str, security: Optional[str] = None) -> ApiResponse:
        try:
            return ApiResponse.ok(await self._estimate(ticket_id, security))
        except BussystemError as e:
            return ApiResponse.fail(e.code, e.message, e.detail)

    async def get_order_cancellation_estimate(self, tickets: Iterable[Mapping[str, Any]]) -> List[CancellationEstimate]:
        """Estimates for every ticket that answers; failures are logged and skipped."""
        tickets = list(tickets)
        results = await asyncio.gather(
            *(self._estimate(t["ticket_id"], t.get("security")) for t in tickets),
            return_exceptions=True,
        )
        estimates: List[CancellationEstimate] = []
        for ticket, result in zip(tickets, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                log_event("cancel_estimate_skipped", level="WARNING", ticket_id=str(ticket["ticket_id"]),
                          error=f"{type(result).__name__}: {result}")
                continue
            if ticket.get("passenger_name"):
                result.passenger_name = ticket["passenger_name"]
            estimates.append(result)
        return estimates

    async def cancel_ticket(self, ticket_id: str, security: Optional[str] = None,
                            lang: Optional[str] = None) -> ApiResponse:
        try:
            estimate = await self._estimate(ticket_id, security)
            if not estimate.can_cancel_individual:
                log_event("cancel_rejected", level="WARNING", ticket_id=str(ticket_id), reason="cancel_only_order")
                return ApiResponse.fail(
                    ErrorCode.CANCEL_ONLY_ORDER,
                    f"Ticket {ticket_id} can only be cancelled together with its order",
                )
            params: Dict[str, Any] = {"ticket_id": str(ticket_id)}
            if security:
                params["security"] = str(security)
            if lang:
                params["lang"] = lang
            raw = await self.api.cancel_ticket(**params)
        except BussystemError as e:
            log_event("cancel_failed", level="WARNING", ticket_id=str(ticket_id), code=e.code)
            return ApiResponse.fail(e.code, e.message, e.detail)

        result = process_cancellation_result(raw, "ticket")
        if estimate.passenger_name:
            for d in result.details:
                d.passenger_name = estimate.passenger_name
        log_event("ticket_cancelled", ticket_id=str(ticket_id), refund=result.total_refund, currency=result.currency)
        return ApiResponse.ok(result)

    async def cancel_order(self, order_id: str, security: Optional[str] = None,
                           lang: Optional[str] = None) -> ApiResponse:
        params: Dict[str, Any] = {"order_id": str(order_id)}
        if security:
            params["security"] = str(security)
        if lang:
            params["lang"] = lang
        try:
            raw = await self.api.cancel_ticket(**params)
        except BussystemError as e:
            log_event("cancel_failed", level="WARNING", order_id=str(order_id), code=e.code)
            return ApiResponse.fail(e.code, e.message, e.detail)
        result = process_cancellation_result(raw, "order")
        log_event("order_cancelled", order_id=str(order_id), refund=result.total_refund,
                  tickets=len(result.details), currency=result.currency)
        return ApiResponse.ok(result)
