from datetime import date
from unittest.mock import AsyncMock

import pytest

from starlight.booking.order_builder import OrderService
from starlight.booking.phone_verification import PhoneVerification, SmsState
from starlight.bussystem.errors import ErrorCode, ProviderError
from starlight.bussystem.mock import MOCK_SMS_CODE, MockBussystem
from starlight.types import OrderBuilder, Passenger, TripMeta

from conftest import MOCK_NOW

PHONE = "+373 69 123 456"
TODAY = date(2024, 5, 20)


@pytest.fixture
def sms_api():
    return MockBussystem(now=lambda: MOCK_NOW, sms_phones=[PHONE])


def _sms_calls(api):
    return [p for name, p in api.calls if name == "sms_validation"]


async def test_phone_without_sms_step_is_verified(mock_api):
    verification = PhoneVerification(mock_api, PHONE)
    response = await verification.check()
    assert response.success
    assert verification.state == SmsState.NOT_REQUIRED
    assert verification.verified
    assert verification.matches("+37369123456")

    refused = await verification.send_code()
    assert refused.error.code == ErrorCode.INVALID_PARAMS
    assert _sms_calls(mock_api) == []


async def test_invalid_phone_never_hits_network(mock_api):
    verification = PhoneVerification(mock_api, "069123456")
    response = await verification.check()
    assert response.error.code == ErrorCode.INVALID_PHONE
    assert verification.state == SmsState.UNCHECKED
    assert mock_api.calls == []


async def test_sms_code_flow(sms_api):
    verification = PhoneVerification(sms_api, PHONE)
    await verification.check()
    assert verification.state == SmsState.REQUIRED
    assert not verification.verified

    early = await verification.verify_code(MOCK_SMS_CODE)
    assert early.error.code == ErrorCode.INVALID_PARAMS

    sent = await verification.send_code()
    assert sent.success
    assert verification.state == SmsState.CODE_SENT
    assert verification.validation_id == sent.data.validation_id

    wrong = await verification.verify_code("000000")
    assert wrong.success
    assert verification.state == SmsState.CODE_FAILED
    assert verification.attempts_remaining == 2

    await verification.verify_code(MOCK_SMS_CODE)
    assert verification.state == SmsState.CODE_VERIFIED
    assert verification.verified
    assert verification.snapshot()["verified"] is True


async def test_attempts_run_out(sms_api):
    verification = PhoneVerification(sms_api, PHONE, max_attempts=2)
    await verification.check()
    await verification.send_code()
    await verification.verify_code("1")
    await verification.verify_code("2")
    checks = len(_sms_calls(sms_api))

    response = await verification.verify_code(MOCK_SMS_CODE)
    assert response.error.code == ErrorCode.SMS_ATTEMPTS_EXCEEDED
    assert len(_sms_calls(sms_api)) == checks
    assert not verification.verified

    again = await verification.send_code()
    assert again.error.code == ErrorCode.SMS_ATTEMPTS_EXCEEDED


async def test_blank_code_is_rejected_locally(sms_api):
    verification = PhoneVerification(sms_api, PHONE)
    await verification.check()
    await verification.send_code()
    sends = len(_sms_calls(sms_api))
    assert (await verification.verify_code("  ")).error.code == ErrorCode.INVALID_PARAMS
    assert len(_sms_calls(sms_api)) == sends
    assert verification.attempts_remaining == 3


async def test_reserve_not_allowed():
    api = AsyncMock()
    api.reserve_validation.return_value = {"reserve_validation": 0, "need_sms_validation": 0}
    verification = PhoneVerification(api, PHONE)
    response = await verification.check()
    assert response.error.code == ErrorCode.RESERVE_NOT_ALLOWED
    assert verification.state == SmsState.UNCHECKED


async def test_provider_send_limit_maps_to_attempts_code():
    api = AsyncMock()
    api.reserve_validation.return_value = {"reserve_validation": 1, "need_sms_validation": 1}
    api.sms_validation.side_effect = ProviderError("sends_limit")
    verification = PhoneVerification(api, PHONE)
    await verification.check()
    response = await verification.send_code()
    assert response.error.code == ErrorCode.SMS_ATTEMPTS_EXCEEDED
    assert verification.state == SmsState.REQUIRED


class TestSubmitGate:
    async def _builder(self, query_client):
        routes = (await query_client.get_routes("1", "3", "2024-06-01")).data
        direct = next(r for r in routes if not r.has_transfers)
        trip = TripMeta(date="2024-06-01", interval_id=direct.interval_id, seats_per_passenger=["1"],
                        need_orderdata=True)
        return OrderBuilder(trips=[trip], passengers=[Passenger(name="Ion", surname="Popescu", phone=PHONE)])

    def _orders(self, api):
        return [p for name, p in api.calls if name == "new_order"]

    async def test_unverified_phone_blocks_order(self, query_client, mock_api):
        builder = await self._builder(query_client)
        verification = PhoneVerification(mock_api, PHONE)

        result = await OrderService(mock_api).submit(builder, today=TODAY, verification=verification)
        assert result.success is False
        assert result.error.code == ErrorCode.SMS_VALIDATION_REQUIRED
        assert self._orders(mock_api) == []

    async def test_verification_of_another_phone_blocks_order(self, query_client, mock_api):
        builder = await self._builder(query_client)
        verification = PhoneVerification(mock_api, "+40722111222")
        await verification.check()
        assert verification.verified

        result = await OrderService(mock_api).submit(builder, today=TODAY, verification=verification)
        assert result.error.code == ErrorCode.SMS_VALIDATION_REQUIRED
        assert self._orders(mock_api) == []

    async def test_verified_phone_places_order(self, query_client, mock_api):
        builder = await self._builder(query_client)
        verification = PhoneVerification(mock_api, PHONE)
        await verification.check()

        result = await OrderService(mock_api).submit(builder, today=TODAY, verification=verification)
        assert result.success
        assert len(self._orders(mock_api)) == 1
