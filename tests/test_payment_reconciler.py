import asyncio

import pytest

from checkout_service.application.process_payment import IngestStatus
from checkout_service.domain.models import OrderStatus, PaymentStatus

ORDER_CODE = "ORD2026101900001"


def _callback(signer, amount=220000, response_code="00", **overrides):
    payload = {
        "order_code": ORDER_CODE,
        "amount": str(amount),
        "response_code": response_code,
        "transaction_no": "14012345",
        "pay_date": "20261019120000",
    }
    payload.update(overrides)
    return signer.signed(payload)


async def _seed_order(seed, **overrides):
    # 2 x 100000 + доставка 20000
    await seed.order("O1", order_code=ORDER_CODE, **overrides)


class TestSuccessfulPayment:
    @pytest.mark.asyncio
    async def test_marks_order_paid(self, reconciler, seed, signer, uow):
        await _seed_order(seed)

        result = await reconciler(_callback(signer), source="ipn")

        assert result.status == IngestStatus.ACCEPTED
        assert result.payment_status == PaymentStatus.PAID
        async with uow() as u:
            order = await u.orders.get_order("O1")
        assert order.payment_status == PaymentStatus.PAID
        assert order.status == OrderStatus.PENDING
        assert await seed.outbox_types("O1") == ["order.paid"]

    @pytest.mark.asyncio
    async def test_duplicate_notification_applied_once(self, reconciler, seed, signer):
        await _seed_order(seed)
        payload = _callback(signer)

        first = await reconciler(payload, source="return")
        second = await reconciler(payload, source="ipn")

        assert first.status == IngestStatus.ACCEPTED
        assert second.status == IngestStatus.DUPLICATE
        assert second.payment_status == PaymentStatus.PAID
        assert await seed.outbox_types("O1") == ["order.paid"]

    @pytest.mark.asyncio
    async def test_concurrent_redelivery(self, reconciler, seed, signer):
        await _seed_order(seed)
        payload = _callback(signer)

        results = await asyncio.gather(
            reconciler(payload, source="return"),
            reconciler(payload, source="ipn")
        )

        statuses = sorted(result.status.value for result in results)
        assert statuses == ["accepted", "duplicate"]
        assert await seed.outbox_types("O1") == ["order.paid"]

    @pytest.mark.asyncio
    async def test_payment_after_cancellation_is_recorded(self, reconciler, seed, signer):
        await _seed_order(seed, status=OrderStatus.CANCELLED, restock_count=1)

        result = await reconciler(_callback(signer), source="ipn")

        assert result.status == IngestStatus.ACCEPTED
        assert result.payment_status == PaymentStatus.PAID


class TestRejectedCallbacks:
    @pytest.mark.asyncio
    async def test_bad_signature(self, reconciler, seed, signer, uow):
        await _seed_order(seed)
        payload = _callback(signer)
        payload["amount"] = "1"

        result = await reconciler(payload, source="ipn")

        assert result.status == IngestStatus.REJECTED
        assert result.reason == "invalid_signature"
        async with uow() as u:
            order = await u.orders.get_order("O1")
        assert order.payment_status == PaymentStatus.UNPAID

    @pytest.mark.asyncio
    async def test_non_ascii_signature(self, reconciler, seed, signer):
        await _seed_order(seed)
        payload = _callback(signer)
        payload["secure_hash"] = "é" * 128

        result = await reconciler(payload, source="return")

        assert result.status == IngestStatus.REJECTED
        assert result.reason == "invalid_signature"
        assert await seed.outbox_types("O1") == []

    @pytest.mark.asyncio
    async def test_amount_mismatch(self, reconciler, seed, signer):
        await _seed_order(seed)

        result = await reconciler(_callback(signer, amount=1000), source="ipn")

        assert result.status == IngestStatus.REJECTED
        assert result.reason == "amount_mismatch"
        assert await seed.outbox_types("O1") == []

    @pytest.mark.asyncio
    async def test_unknown_order(self, reconciler, signer):
        result = await reconciler(_callback(signer), source="ipn")

        assert result.status == IngestStatus.REJECTED
        assert result.reason == "order_not_found"

    @pytest.mark.asyncio
    async def test_malformed_payload(self, reconciler, signer):
        result = await reconciler(signer.signed({"order_code": ORDER_CODE}), source="ipn")

        assert result.status == IngestStatus.REJECTED
        assert result.reason == "malformed"


class TestFailedPayment:
    @pytest.mark.asyncio
    async def test_failure_leaves_order_pending_unpaid(self, reconciler, seed, signer, uow):
        await _seed_order(seed)

        result = await reconciler(_callback(signer, response_code="24"), source="return")

        assert result.status == IngestStatus.ACCEPTED
        assert result.payment_status == PaymentStatus.UNPAID
        async with uow() as u:
            order = await u.orders.get_order("O1")
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.UNPAID

    @pytest.mark.asyncio
    async def test_retry_after_failure_can_succeed(self, reconciler, seed, signer):
        await _seed_order(seed)

        await reconciler(_callback(signer, response_code="24"), source="return")
        result = await reconciler(_callback(signer), source="ipn")

        assert result.status == IngestStatus.ACCEPTED
        assert result.payment_status == PaymentStatus.PAID
