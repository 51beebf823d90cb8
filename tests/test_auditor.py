import pytest

from checkout_service.application.auditor import ConsistencyAuditor, IssueCode
from checkout_service.domain.exceptions import ForbiddenError, OrderNotFoundError
from checkout_service.domain.models import (
    Actor, ActorRole, OrderStatus, PaymentMethodKind, PaymentStatus
)

ADMIN = Actor(user_id="admin-1", role=ActorRole.ADMIN)


def _codes(report):
    return {issue.code for issue in report.issues}


class TestValidate:
    @pytest.mark.asyncio
    async def test_healthy_order(self, uow, seed):
        await seed.payment_method("PM-COD")
        await seed.order("O1")

        report = await ConsistencyAuditor(uow).validate("O1")

        assert report.ok
        assert report.issues == []

    @pytest.mark.asyncio
    async def test_arithmetic_drift(self, uow, seed):
        await seed.payment_method("PM-COD")
        await seed.order("O1", total=150000, final_total=999)

        report = await ConsistencyAuditor(uow).validate("O1")

        assert not report.ok
        assert _codes(report) == {IssueCode.TOTAL_MISMATCH, IssueCode.FINAL_TOTAL_MISMATCH}
        assert all(issue.fixable for issue in report.issues)

    @pytest.mark.asyncio
    async def test_broken_line_total(self, uow, seed):
        await seed.payment_method("PM-COD")
        await seed.order(
            "O1",
            items=[{"variant_id": "V1", "quantity": 2, "unit_price": 100000, "line_total": 150000}],
            total=200000,
            final_total=220000
        )

        report = await ConsistencyAuditor(uow).validate("O1")

        assert _codes(report) == {IssueCode.LINE_TOTAL_MISMATCH}

    @pytest.mark.asyncio
    async def test_cancelled_without_restock(self, uow, seed):
        await seed.payment_method("PM-COD")
        await seed.order("O1", status=OrderStatus.CANCELLED, restock_count=0)

        report = await ConsistencyAuditor(uow).validate("O1")

        assert _codes(report) == {IssueCode.STOCK_NOT_RESTORED}

    @pytest.mark.asyncio
    async def test_payment_issues_are_not_fixable(self, uow, seed):
        await seed.payment_method("PM-GW", kind=PaymentMethodKind.GATEWAY)
        await seed.order(
            "O1", status=OrderStatus.CANCELLED, payment_status=PaymentStatus.PAID,
            payment_method_id="PM-GW", restock_count=1
        )
        await seed.order(
            "O2", status=OrderStatus.DELIVERED, payment_status=PaymentStatus.UNPAID,
            payment_method_id="PM-GW"
        )
        auditor = ConsistencyAuditor(uow)

        cancelled_paid = await auditor.validate("O1")
        delivered_unpaid = await auditor.validate("O2")

        assert _codes(cancelled_paid) == {IssueCode.CANCELLED_PAID_NOT_REFUNDED}
        assert _codes(delivered_unpaid) == {IssueCode.DELIVERED_UNPAID}
        assert not any(issue.fixable for issue in cancelled_paid.issues + delivered_unpaid.issues)

    @pytest.mark.asyncio
    async def test_delivered_unpaid_cash_on_delivery_is_fine(self, uow, seed):
        await seed.payment_method("PM-COD")
        await seed.order("O1", status=OrderStatus.DELIVERED, payment_status=PaymentStatus.UNPAID)

        assert (await ConsistencyAuditor(uow).validate("O1")).ok

    @pytest.mark.asyncio
    async def test_restock_counter_anomalies(self, uow, seed):
        await seed.payment_method("PM-COD")
        await seed.order("O1", status=OrderStatus.CANCELLED, restock_count=2)
        await seed.order("O2", status=OrderStatus.PROCESSING, restock_count=1)
        auditor = ConsistencyAuditor(uow)

        assert _codes(await auditor.validate("O1")) == {IssueCode.STOCK_RESTORED_MULTIPLE_TIMES}
        assert _codes(await auditor.validate("O2")) == {IssueCode.STOCK_RESTORED_WHILE_ACTIVE}

    @pytest.mark.asyncio
    async def test_unknown_order(self, uow):
        with pytest.raises(OrderNotFoundError):
            await ConsistencyAuditor(uow).validate("missing")


class TestAutoFix:
    @pytest.mark.asyncio
    async def test_repairs_arithmetic(self, uow, seed):
        await seed.payment_method("PM-COD")
        await seed.order("O1", total=150000, discount_amount=500000, final_total=999)

        order = await ConsistencyAuditor(uow).auto_fix("O1", ADMIN)

        assert order.total == 200000
        assert order.discount_amount == 200000
        assert order.final_total == 20000

    @pytest.mark.asyncio
    async def test_is_idempotent(self, uow, seed):
        await seed.variant("V1", stock=0)
        await seed.payment_method("PM-COD")
        await seed.order("O1", status=OrderStatus.CANCELLED, total=1, final_total=1)
        auditor = ConsistencyAuditor(uow)

        first = await auditor.auto_fix("O1", ADMIN)
        second = await auditor.auto_fix("O1", ADMIN)
        report = await auditor.validate("O1")

        assert first == second
        assert report.ok
        assert first.restock_count == 1
        assert await seed.stock_of("V1") == 2

    @pytest.mark.asyncio
    async def test_never_touches_payment_status(self, uow, seed):
        await seed.payment_method("PM-GW", kind=PaymentMethodKind.GATEWAY)
        await seed.order(
            "O1", status=OrderStatus.CANCELLED, payment_status=PaymentStatus.PAID,
            payment_method_id="PM-GW", restock_count=1
        )
        auditor = ConsistencyAuditor(uow)

        order = await auditor.auto_fix("O1", ADMIN)

        assert order.payment_status == PaymentStatus.PAID
        assert _codes(await auditor.validate("O1")) == {IssueCode.CANCELLED_PAID_NOT_REFUNDED}

    @pytest.mark.asyncio
    async def test_only_admin(self, uow, seed):
        await seed.order("O1")
        with pytest.raises(ForbiddenError):
            await ConsistencyAuditor(uow).auto_fix("O1", Actor(user_id="u1"))
