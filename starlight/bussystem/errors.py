"""Error taxonomy for the Bussystem integration.

Validation errors never reach the network; transport errors may be retried;
provider business errors are surfaced verbatim with a mapped code.
"""

from typing import Optional


class ErrorCode:
    # client-side validation
    INVALID_QUERY = "INVALID_QUERY"
    INVALID_COUNTRY_ID = "INVALID_COUNTRY_ID"
    INVALID_POINT_ID = "INVALID_POINT_ID"
    INVALID_BOUNDS = "INVALID_BOUNDS"
    INVALID_RETURN_DATE = "INVALID_RETURN_DATE"
    INVALID_PARAMS = "INVALID_PARAMS"
    NO_OUTBOUND = "NO_OUTBOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INSUFFICIENT_SEATS = "INSUFFICIENT_SEATS"
    RESERVATION_TERMINAL = "RESERVATION_TERMINAL"
    CANCEL_ONLY_ORDER = "CANCEL_ONLY_ORDER"
    INVALID_PHONE = "INVALID_PHONE"
    SMS_VALIDATION_REQUIRED = "SMS_VALIDATION_REQUIRED"
    SMS_ATTEMPTS_EXCEEDED = "SMS_ATTEMPTS_EXCEEDED"
    RESERVE_NOT_ALLOWED = "RESERVE_NOT_ALLOWED"
    SECURITY_MISMATCH = "SECURITY_MISMATCH"
    ROUND_TRIP_OFF = "ROUND_TRIP_OFF"

    # transport
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    HTTP_ERROR = "HTTP_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    INVALID_FORMAT = "INVALID_FORMAT"

    # provider business errors
    DEALER_NO_ACTIV = "DEALER_NO_ACTIV"
    ROUTE_NO_ACTIV = "ROUTE_NO_ACTIV"
    CURRENCY_NO_ACTIV = "CURRENCY_NO_ACTIV"
    INTERVAL_NO_FOUND = "INTERVAL_NO_FOUND"
    PROVIDER_ERROR = "PROVIDER_ERROR"

    CONFIGURATION = "CONFIGURATION"


# provider sentinel -> code
_PROVIDER_CODES = {
    "dealer_no_activ": ErrorCode.DEALER_NO_ACTIV,
    "route_no_activ": ErrorCode.ROUTE_NO_ACTIV,
    "currency_no_activ": ErrorCode.CURRENCY_NO_ACTIV,
    "interval_no_found": ErrorCode.INTERVAL_NO_FOUND,
    "no_phone": ErrorCode.INVALID_PHONE,
    "invalid_phone": ErrorCode.INVALID_PHONE,
    "sends_limit": ErrorCode.SMS_ATTEMPTS_EXCEEDED,
}

_FATAL_CODES = {ErrorCode.DEALER_NO_ACTIV, ErrorCode.INVALID_FORMAT}


class BussystemError(Exception):
    def __init__(self, message: str, code: str = ErrorCode.PROVIDER_ERROR, detail: Optional[str] = None):
        self.message = message
        self.code = code
        self.detail = detail
        super().__init__(self.message)


class ValidationError(BussystemError):
    """Client-side rejection; no request was sent."""

    def __init__(self, message: str, code: str = ErrorCode.INVALID_PARAMS, detail: Optional[str] = None):
        super().__init__(message, code=code, detail=detail)


class InsufficientSeatsError(ValidationError):
    def __init__(self, segment_id: str, available: int, required: int):
        self.segment_id = segment_id
        self.available = available
        self.required = required
        super().__init__(
            f"Not enough free seats on segment {segment_id}: {available} available, {required} required",
            code=ErrorCode.INSUFFICIENT_SEATS,
        )


class ApiHttpError(BussystemError):
    def __init__(self, message: str, status: Optional[int] = None,
                 code: str = ErrorCode.HTTP_ERROR, detail: Optional[str] = None):
        self.status = status
        super().__init__(message, code=code, detail=detail)


class RequestTimeoutError(ApiHttpError):
    def __init__(self, path: str, timeout: float):
        super().__init__(f"Request to {path} timed out after {timeout:g}s", code=ErrorCode.TIMEOUT)


class ProviderError(ApiHttpError):
    """The provider answered with an `error` field."""

    def __init__(self, provider_message: str, status: Optional[int] = None, detail: Optional[str] = None):
        self.provider_message = provider_message
        super().__init__(
            f"API Error: {provider_message}",
            status=status,
            code=map_provider_error(provider_message),
            detail=detail,
        )


class ConfigurationError(BussystemError):
    def __init__(self, message: str):
        super().__init__(message, code=ErrorCode.CONFIGURATION)


def map_provider_error(message: str) -> str:
    lowered = (message or "").lower()
    for sentinel, code in _PROVIDER_CODES.items():
        if sentinel in lowered:
            return code
    return ErrorCode.PROVIDER_ERROR


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, (ValidationError, ProviderError, ConfigurationError)):
        return False
    if isinstance(exc, ApiHttpError):
        if exc.status is not None and 400 <= exc.status < 500:
            return False
        if exc.code in _FATAL_CODES:
            return False
    return True
