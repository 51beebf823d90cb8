import pytest

from checkout_service.application.get_order import GetOrderUseCase
from checkout_service.application.order_state import OrderStateMachine
from checkout_service.domain.exceptions import (
    ConflictError, ForbiddenError, InvalidTransitionError, OrderNotFoundError
)
from checkout_service.domain.models import Actor, ActorRole, OrderStatus, PaymentStatus
from checkout_service.infrastructure.repositories import SQLAlchemyCartOrderRepository

CUSTOMER = Actor(user_id="u1")
STRANGER = Actor(user_id="u2")
ADMIN = Actor(user_id="admin-1", role=ActorRole.ADMIN)


def _stale_reads(monkeypatch, count, **stale_fields):
    """Первые count чтений заказа отдают устаревший снимок, как у проигравшего гонку"""
    original = SQLAlchemyCartOrderRepository.get_order
    calls = []

    async def get_order(self, order_id):
        order = await original(self, order_id)
        calls.append(order_id)
        if order is not None and len(calls) <= count:
            return order.model_copy(update=stale_fields)
        return order

    monkeypatch.setattr(SQLAlchemyCartOrderRepository, "get_order", get_order)
    return calls


class TestCancel:
    @pytest.mark.asyncio
    async def test_processing_paid_order(self, uow, seed):
        await seed.variant("V1", stock=3)
        await seed.order("O1", status=OrderStatus.PROCESSING, payment_status=PaymentStatus.PAID)

        order = await OrderStateMachine(uow).cancel("O1", CUSTOMER, reason="передумал")

        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.restock_count == 1
        assert order.cancellation_reason == "передумал"
        assert await seed.stock_of("V1") == 5
        assert await seed.outbox_types("O1") == ["order.cancelled", "payment.refund_requested"]

    @pytest.mark.asyncio
    async def test_unpaid_order_has_no_refund(self, uow, seed):
        await seed.variant("V1", stock=3)
        await seed.order("O1")

        order = await OrderStateMachine(uow).cancel("O1", CUSTOMER)

        assert order.payment_status == PaymentStatus.UNPAID
        assert await seed.outbox_types("O1") == ["order.cancelled"]

    @pytest.mark.asyncio
    async def test_second_cancel_restores_nothing(self, uow, seed):
        await seed.variant("V1", stock=3)
        await seed.order("O1")
        machine = OrderStateMachine(uow)

        await machine.cancel("O1", CUSTOMER)
        again = await machine.cancel("O1", ADMIN)

        assert again.status == OrderStatus.CANCELLED
        assert again.restock_count == 1
        assert await seed.stock_of("V1") == 5
        assert await seed.outbox_types("O1") == ["order.cancelled"]

    @pytest.mark.asyncio
    async def test_delivered_order_cannot_be_cancelled(self, uow, seed):
        await seed.variant("V1", stock=3)
        await seed.order("O1", status=OrderStatus.DELIVERED, payment_status=PaymentStatus.PAID)

        with pytest.raises(InvalidTransitionError):
            await OrderStateMachine(uow).cancel("O1", ADMIN)
        assert await seed.stock_of("V1") == 3

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, uow, seed):
        await seed.order("O1")
        with pytest.raises(ForbiddenError):
            await OrderStateMachine(uow).cancel("O1", STRANGER)

    @pytest.mark.asyncio
    async def test_admin_cancel_through_transition(self, uow, seed):
        await seed.variant("V1", stock=0)
        await seed.order("O1", status=OrderStatus.PROCESSING)

        order = await OrderStateMachine(uow).transition("O1", ADMIN, OrderStatus.CANCELLED)

        assert order.status == OrderStatus.CANCELLED
        assert await seed.stock_of("V1") == 2


class TestForwardTransitions:
    @pytest.mark.asyncio
    async def test_one_step_forward(self, uow, seed):
        await seed.order("O1", payment_status=PaymentStatus.PAID)

        order = await OrderStateMachine(uow).transition("O1", ADMIN, OrderStatus.PROCESSING)

        assert order.status == OrderStatus.PROCESSING
        assert order.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_skipping_is_rejected(self, uow, seed):
        await seed.order("O1")
        with pytest.raises(InvalidTransitionError):
            await OrderStateMachine(uow).transition("O1", ADMIN, OrderStatus.DELIVERED)

    @pytest.mark.asyncio
    async def test_customer_cannot_advance(self, uow, seed):
        await seed.order("O1")
        with pytest.raises(ForbiddenError):
            await OrderStateMachine(uow).transition("O1", CUSTOMER, OrderStatus.PROCESSING)

    @pytest.mark.asyncio
    async def test_unknown_order(self, uow):
        with pytest.raises(OrderNotFoundError):
            await OrderStateMachine(uow).transition("missing", ADMIN, OrderStatus.PROCESSING)

    @pytest.mark.asyncio
    async def test_history_is_recorded(self, uow, seed):
        await seed.order("O1")
        await OrderStateMachine(uow).transition("O1", ADMIN, OrderStatus.PROCESSING)

        history = await GetOrderUseCase(uow).history("O1", ADMIN)

        assert history[-1]["action"] == "status.changed"
        assert history[-1]["actor"] == "admin:admin-1"
        assert history[-1]["after"] == {"status": "processing"}


class TestPaymentOverride:
    @pytest.mark.asyncio
    async def test_mark_paid_manually(self, uow, seed):
        await seed.order("O1")

        order = await OrderStateMachine(uow).override_payment_status("O1", ADMIN, PaymentStatus.PAID, "перевод")

        assert order.payment_status == PaymentStatus.PAID
        history = await GetOrderUseCase(uow).history("O1", ADMIN)
        assert history[-1]["action"] == "payment_status.override"
        assert history[-1]["note"] == "перевод"

    @pytest.mark.asyncio
    async def test_refund_active_order_rejected(self, uow, seed):
        await seed.order("O1", payment_status=PaymentStatus.PAID)
        with pytest.raises(InvalidTransitionError):
            await OrderStateMachine(uow).override_payment_status("O1", ADMIN, PaymentStatus.REFUNDED)

    @pytest.mark.asyncio
    async def test_only_admin(self, uow, seed):
        await seed.order("O1")
        with pytest.raises(ForbiddenError):
            await OrderStateMachine(uow).override_payment_status("O1", CUSTOMER, PaymentStatus.PAID)


class TestConcurrentChanges:
    @pytest.mark.asyncio
    async def test_cancel_retries_with_fresh_state(self, uow, seed, monkeypatch):
        await seed.variant("V1", stock=3)
        await seed.order("O1", payment_status=PaymentStatus.PAID)
        calls = _stale_reads(monkeypatch, 1, payment_status=PaymentStatus.UNPAID)

        order = await OrderStateMachine(uow).cancel("O1", CUSTOMER)

        assert len(calls) == 3
        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.restock_count == 1
        assert await seed.stock_of("V1") == 5
        assert await seed.outbox_types("O1") == ["order.cancelled", "payment.refund_requested"]

    @pytest.mark.asyncio
    async def test_transition_retries_with_fresh_state(self, uow, seed, monkeypatch):
        await seed.order("O1", payment_status=PaymentStatus.PAID)
        _stale_reads(monkeypatch, 1, payment_status=PaymentStatus.UNPAID)

        order = await OrderStateMachine(uow).transition("O1", ADMIN, OrderStatus.PROCESSING)

        assert order.status == OrderStatus.PROCESSING
        assert order.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_transition_second_miss_is_conflict(self, uow, seed, monkeypatch):
        await seed.order("O1", status=OrderStatus.PROCESSING)
        calls = _stale_reads(monkeypatch, 100, status=OrderStatus.PENDING)

        with pytest.raises(ConflictError):
            await OrderStateMachine(uow).transition("O1", ADMIN, OrderStatus.PROCESSING)

        assert len(calls) == 2
        monkeypatch.undo()
        assert await GetOrderUseCase(uow).history("O1", ADMIN) == []

    @pytest.mark.asyncio
    async def test_cancel_second_miss_is_conflict(self, uow, seed, monkeypatch):
        await seed.variant("V1", stock=3)
        await seed.order("O1", payment_status=PaymentStatus.PAID)
        _stale_reads(monkeypatch, 100, payment_status=PaymentStatus.UNPAID)

        with pytest.raises(ConflictError):
            await OrderStateMachine(uow).cancel("O1", CUSTOMER)

        monkeypatch.undo()
        async with uow() as u:
            order = await u.orders.get_order("O1")
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PAID
        assert await seed.stock_of("V1") == 3
        assert await seed.outbox_types("O1") == []

    @pytest.mark.asyncio
    async def test_override_second_miss_is_conflict(self, uow, seed, monkeypatch):
        await seed.order("O1", status=OrderStatus.CANCELLED, payment_status=PaymentStatus.REFUNDED, restock_count=1)
        _stale_reads(monkeypatch, 100, payment_status=PaymentStatus.UNPAID)

        with pytest.raises(ConflictError):
            await OrderStateMachine(uow).override_payment_status("O1", ADMIN, PaymentStatus.PAID)

        monkeypatch.undo()
        async with uow() as u:
            order = await u.orders.get_order("O1")
        assert order.payment_status == PaymentStatus.REFUNDED


class TestDelete:
    @pytest.mark.asyncio
    async def test_cancelled_order_is_removed(self, uow, seed):
        await seed.order("O1", status=OrderStatus.CANCELLED, restock_count=1)

        await OrderStateMachine(uow).delete("O1", ADMIN)

        with pytest.raises(OrderNotFoundError):
            await GetOrderUseCase(uow)("O1", ADMIN)

    @pytest.mark.asyncio
    async def test_active_order_is_kept(self, uow, seed):
        await seed.order("O1", status=OrderStatus.SHIPPED)
        with pytest.raises(InvalidTransitionError):
            await OrderStateMachine(uow).delete("O1", ADMIN)


class TestReads:
    @pytest.mark.asyncio
    async def test_owner_reads_by_code(self, uow, seed):
        await seed.order("O1", order_code="ORD2026101900001")

        order = await GetOrderUseCase(uow).by_code("ORD2026101900001", CUSTOMER)

        assert order.id == "O1"

    @pytest.mark.asyncio
    async def test_stranger_is_forbidden(self, uow, seed):
        await seed.order("O1")
        with pytest.raises(ForbiddenError):
            await GetOrderUseCase(uow)("O1", STRANGER)

    @pytest.mark.asyncio
    async def test_list_filters_by_user_and_status(self, uow, seed):
        await seed.order("O1")
        await seed.order("O2", status=OrderStatus.CANCELLED)
        await seed.order("O3", user_id="u2")
        reads = GetOrderUseCase(uow)

        mine = await reads.list_orders(CUSTOMER)
        cancelled = await reads.list_orders(CUSTOMER, OrderStatus.CANCELLED)

        assert {order.id for order in mine} == {"O1", "O2"}
        assert [order.id for order in cancelled] == ["O2"]
