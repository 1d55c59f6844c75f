"""POST transport for the Bussystem ``/curl/*.php`` endpoints.

The provider answers JSON when asked with ``json=1`` but some endpoints and
error paths still come back as XML, so both are decoded into plain dicts here.
"""

from typing import Any, Dict, Optional
import json
import time
import xml.etree.ElementTree as ET

import httpx

from starlight.bussystem.errors import (
    ApiHttpError,
    ErrorCode,
    ProviderError,
    RequestTimeoutError,
)
from starlight.infrastructure.resilience import CircuitBreaker, RetryPolicy
from starlight.obs.logger import log_event, redact
from starlight.obs.metrics import inc_counter, record_timing


class Endpoint:
    POINTS = "/curl/get_points.php"
    ROUTES = "/curl/get_routes.php"
    FREE_SEATS = "/curl/get_free_seats.php"
    DISCOUNT = "/curl/get_discount.php"
    BAGGAGE = "/curl/get_baggage.php"
    PLAN = "/curl/get_plan.php"
    NEW_ORDER = "/curl/new_order.php"
    BUY_TICKET = "/curl/buy_ticket.php"
    CANCEL_TICKET = "/curl/cancel_ticket.php"
    GET_ORDER = "/curl/get_order.php"
    GET_TICKET = "/curl/get_ticket.php"
    SMS_VALIDATION = "/curl/sms_validation.php"
    RESERVE_VALIDATION = "/curl/reserve_validation.php"
    PING = "/curl/ping.php"


# --- XML --------------------------------------------------------------------

def _coerce_leaf(text: str) -> Any:
    try:
        return int(text)
    except ValueError:
        pass
    try:
        num = float(text)
    except ValueError:
        return text
    if num != num or num in (float("inf"), float("-inf")):
        return text
    return num


def _element_to_value(el: ET.Element) -> Any:
    children = list(el)
    if not children:
        text = (el.text or "").strip()
        if el.attrib:
            out: Dict[str, Any] = {"@attributes": dict(el.attrib)}
            if text:
                out["#text"] = _coerce_leaf(text)
            return out
        return _coerce_leaf(text) if text else None

    result: Dict[str, Any] = {}
    if el.attrib:
        result["@attributes"] = dict(el.attrib)
    for child in children:
        value = _element_to_value(child)
        if child.tag in result:
            existing = result[child.tag]
            if not isinstance(existing, list):
                result[child.tag] = [existing]
            result[child.tag].append(value)
        else:
            result[child.tag] = value
    return result


def xml_to_dict(text: str) -> Any:
    """Convert an XML document into the content of its document element.

    Attributes land under ``@attributes``, repeated tags become lists and
    numeric leaf text is coerced, so ``<root><item>..</item></root>`` decodes
    to ``{"item": [...]}`` or ``{"item": {...}}`` exactly like the JSON shape.
    """
    root = ET.fromstring(text)
    return _element_to_value(root)


def _error_sentinel(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    if data.get("error"):
        return str(data["error"])
    root = data.get("root")
    if isinstance(root, dict) and root.get("error"):
        return str(root["error"])
    return None


def decode_body(text: str, content_type: str = "", status: Optional[int] = None) -> Any:
    """Decode a provider body, raising ProviderError on an ``error`` sentinel."""
    stripped = text.lstrip()
    is_xml = "xml" in content_type.lower() or stripped.startswith("<")
    if is_xml:
        try:
            data = xml_to_dict(stripped)
        except ET.ParseError as e:
            raise ApiHttpError("Failed to parse XML response", status=status,
                               code=ErrorCode.PARSE_ERROR, detail=str(e))
    else:
        try:
            data = json.loads(stripped)
        except ValueError:
            raise ApiHttpError("Invalid response format", status=status, code=ErrorCode.INVALID_FORMAT,
                               detail=stripped[:200])

    sentinel = _error_sentinel(data)
    if sentinel:
        # provider spells it detal
        detail = data.get("detal")
        if not detail and isinstance(data.get("root"), dict):
            detail = data["root"].get("detal")
        raise ProviderError(sentinel, status=status, detail=str(detail) if detail else None)
    return data


# --- transport --------------------------------------------------------------

class BussystemTransport:
    def __init__(
        self,
        base_url: str,
        login: str,
        password: str,
        lang: str = "en",
        version: str = "1.1",
        timeout: float = 15.0,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.login = login
        self.password = password
        self.lang = lang
        self.version = version
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2)
        self.circuit_breaker = circuit_breaker
        self._http = client or httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(timeout, connect=5.0),
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "Starlight-Routes/1.0",
            },
        )

    def _payload(self, body: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "login": self.login,
            "password": self.password,
            "lang": self.lang,
            "v": self.version,
            "json": 1,
        }
        payload.update({k: v for k, v in body.items() if v is not None})
        return payload

    async def _post_once(self, path: str, payload: Dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        start = time.monotonic()
        try:
            r = await self._http.post(url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException:
            raise RequestTimeoutError(path, self.timeout)
        except httpx.HTTPError as e:
            raise ApiHttpError(f"Network error: {type(e).__name__}", code=ErrorCode.NETWORK_ERROR, detail=str(e))
        finally:
            record_timing("bussystem_latency_ms", (time.monotonic() - start) * 1000.0, {"path": path})

        if r.status_code >= 400:
            raise ApiHttpError(f"HTTP {r.status_code}: {r.reason_phrase}", status=r.status_code,
                               detail=r.text[:200])
        return decode_body(r.text, r.headers.get("content-type", ""), r.status_code)

    async def _guarded(self, path: str, payload: Dict[str, Any]) -> Any:
        if self.circuit_breaker is not None:
            return await self.circuit_breaker.async_call(self._post_once, path, payload)
        return await self._post_once(path, payload)

    async def post(self, path: str, body: Dict[str, Any]) -> Any:
        payload = self._payload(body)
        log_event("bussystem_request", path=path, body=redact(payload))
        try:
            data = await self.retry_policy.execute_with_retry(self._guarded, path, payload)
        except ApiHttpError as e:
            inc_counter("bussystem_errors_total", {"path": path, "code": e.code})
            log_event("bussystem_error", level="ERROR", path=path, code=e.code,
                      status=e.status, error=e.message)
            raise
        inc_counter("bussystem_calls_total", {"path": path})
        log_event("bussystem_response", path=path, kind=type(data).__name__)
        return data

    async def aclose(self) -> None:
        await self._http.aclose()
