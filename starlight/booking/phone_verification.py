"""
Pre-reservation phone checks.

``reserve_validation`` tells whether the contact phone may reserve at all and
whether an SMS code has to be confirmed first; ``sms_validation`` sends and
checks that code. An order is only submitted once the phone is verified.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from starlight.booking.order_builder import is_valid_phone, normalize_phone
from starlight.bussystem import transform
from starlight.bussystem.client import BussystemApi
from starlight.bussystem.errors import BussystemError, ConfigurationError, ErrorCode
from starlight.config import settings
from starlight.obs.logger import log_event
from starlight.types import ApiResponse

SMS_MAX_ATTEMPTS = 3


class SmsState(str, Enum):
    UNCHECKED = "unchecked"
    NOT_REQUIRED = "not_required"
    REQUIRED = "required"
    CODE_SENT = "code_sent"
    CODE_VERIFIED = "code_verified"
    CODE_FAILED = "code_failed"


class PhoneVerification:
    """One phone's way through reserve_validation and, if asked, the SMS code."""

    def __init__(self, api: BussystemApi, phone: str, lang: Optional[str] = None,
                 max_attempts: int = SMS_MAX_ATTEMPTS):
        self.api = api
        self.phone = normalize_phone(phone)
        self.lang = lang or settings.DEFAULT_LANG
        self.state = SmsState.UNCHECKED
        self.attempts_remaining = max_attempts
        self.validation_id: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.state in (SmsState.NOT_REQUIRED, SmsState.CODE_VERIFIED)

    def matches(self, phone: Optional[str]) -> bool:
        return normalize_phone(phone) == self.phone

    async def _call(self, kind: str, fetch: Callable[[], Awaitable[Any]],
                    normalize: Callable[[Any], Any]) -> ApiResponse:
        try:
            raw = await fetch()
            return ApiResponse.ok(normalize(raw))
        except ConfigurationError:
            raise
        except BussystemError as e:
            log_event("phone_check_failed", level="WARNING", kind=kind, code=e.code, phone=self.phone)
            return ApiResponse.fail(e.code, e.message, e.detail)
        except ValueError as e:
            return ApiResponse.fail(ErrorCode.INVALID_FORMAT, str(e))

    async def check(self) -> ApiResponse:
        if not is_valid_phone(self.phone):
            return ApiResponse.fail(ErrorCode.INVALID_PHONE, "Phone must look like +<country code><number>")
        response = await self._call(
            "reserve_validation",
            lambda: self.api.reserve_validation(phone=self.phone, lang=self.lang),
            transform.normalize_reserve_validation,
        )
        if not response.success:
            return response
        result = response.data
        if not result.reserve_validation:
            return ApiResponse.fail(ErrorCode.RESERVE_NOT_ALLOWED, "Reservations are not allowed for this phone")
        self.state = SmsState.REQUIRED if result.need_sms_validation else SmsState.NOT_REQUIRED
        log_event("phone_checked", phone=self.phone, state=self.state.value)
        return response

    def _ensure_sms_step(self) -> Optional[ApiResponse]:
        if self.state in (SmsState.UNCHECKED, SmsState.NOT_REQUIRED, SmsState.CODE_VERIFIED):
            return ApiResponse.fail(ErrorCode.INVALID_PARAMS, f"No SMS step in state {self.state.value}")
        if self.attempts_remaining <= 0:
            return ApiResponse.fail(ErrorCode.SMS_ATTEMPTS_EXCEEDED, "Too many SMS attempts")
        return None

    async def send_code(self) -> ApiResponse:
        refused = self._ensure_sms_step()
        if refused is not None:
            return refused
        response = await self._call(
            "send_sms",
            lambda: self.api.sms_validation(phone=self.phone, send_sms=1, lang=self.lang),
            transform.normalize_sms_validation,
        )
        if response.success:
            self.validation_id = response.data.validation_id
            self.state = SmsState.CODE_SENT
        return response

    async def verify_code(self, code: str) -> ApiResponse:
        if self.state not in (SmsState.CODE_SENT, SmsState.CODE_FAILED):
            return ApiResponse.fail(ErrorCode.INVALID_PARAMS, "Request an SMS code first")
        refused = self._ensure_sms_step()
        if refused is not None:
            return refused
        if not code or not str(code).strip():
            return ApiResponse.fail(ErrorCode.INVALID_PARAMS, "validation_code is required")
        response = await self._call(
            "check_sms",
            lambda: self.api.sms_validation(phone=self.phone, check_sms=1,
                                            validation_code=str(code).strip(), lang=self.lang),
            transform.normalize_sms_validation,
        )
        if not response.success:
            return response
        if response.data.status_code == "valid":
            self.state = SmsState.CODE_VERIFIED
        else:
            self.attempts_remaining -= 1
            self.state = SmsState.CODE_FAILED
        log_event("sms_code_checked", phone=self.phone, state=self.state.value,
                  attempts_remaining=self.attempts_remaining)
        return response

    def snapshot(self) -> dict:
        return {
            "phone": self.phone,
            "state": self.state.value,
            "verified": self.verified,
            "attempts_remaining": self.attempts_remaining,
        }
