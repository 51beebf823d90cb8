import logging
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel

from checkout_service.domain.models import (
    Actor, LineItem, Order, OrderStatus, PaymentMethod, PaymentStatus
)
from checkout_service.domain.pricing import final_total
from checkout_service.domain.exceptions import ForbiddenError, OrderNotFoundError

logger = logging.getLogger(__name__)


class IssueCode(str, Enum):
    LINE_TOTAL_MISMATCH = "LINE_TOTAL_MISMATCH"
    TOTAL_MISMATCH = "TOTAL_MISMATCH"
    DISCOUNT_EXCEEDS_TOTAL = "DISCOUNT_EXCEEDS_TOTAL"
    FINAL_TOTAL_MISMATCH = "FINAL_TOTAL_MISMATCH"
    STOCK_NOT_RESTORED = "STOCK_NOT_RESTORED"
    STOCK_RESTORED_MULTIPLE_TIMES = "STOCK_RESTORED_MULTIPLE_TIMES"
    STOCK_RESTORED_WHILE_ACTIVE = "STOCK_RESTORED_WHILE_ACTIVE"
    CANCELLED_PAID_NOT_REFUNDED = "CANCELLED_PAID_NOT_REFUNDED"
    REFUNDED_NOT_CANCELLED = "REFUNDED_NOT_CANCELLED"
    DELIVERED_UNPAID = "DELIVERED_UNPAID"


ARITHMETIC = frozenset({
    IssueCode.LINE_TOTAL_MISMATCH,
    IssueCode.TOTAL_MISMATCH,
    IssueCode.DISCOUNT_EXCEEDS_TOTAL,
    IssueCode.FINAL_TOTAL_MISMATCH,
})


class Issue(BaseModel):
    code: IssueCode
    message: str
    fixable: bool


class AuditReport(BaseModel):
    order_id: str
    order_code: str
    ok: bool
    issues: List[Issue] = []


def _repriced(items: List[LineItem]) -> List[LineItem]:
    return [LineItem.priced(item.variant_id, item.quantity, item.unit_price) for item in items]


def inspect(order: Order, payment_method: Optional[PaymentMethod]) -> List[Issue]:
    """Все расхождения заказа. Найденная проблема это данные, а не исключение"""
    issues = []

    for item in order.items:
        if item.line_total != item.unit_price * item.quantity:
            issues.append(Issue(
                code=IssueCode.LINE_TOTAL_MISMATCH,
                message=f"Позиция {item.variant_id}: {item.line_total} != {item.unit_price} x {item.quantity}",
                fixable=True
            ))

    expected_total = sum(item.line_total for item in _repriced(order.items))
    if order.total != expected_total:
        issues.append(Issue(
            code=IssueCode.TOTAL_MISMATCH,
            message=f"total {order.total} != сумма позиций {expected_total}",
            fixable=True
        ))

    expected_discount = max(0, min(order.discount_amount, expected_total))
    if order.discount_amount != expected_discount:
        issues.append(Issue(
            code=IssueCode.DISCOUNT_EXCEEDS_TOTAL,
            message=f"Скидка {order.discount_amount} вне диапазона [0, {expected_total}]",
            fixable=True
        ))

    expected_final = final_total(expected_total, expected_discount, order.shipping_fee)
    if order.final_total != expected_final:
        issues.append(Issue(
            code=IssueCode.FINAL_TOTAL_MISMATCH,
            message=f"finalTotal {order.final_total} != {expected_final}",
            fixable=True
        ))

    cancelled = order.status == OrderStatus.CANCELLED
    if cancelled and order.restock_count == 0:
        issues.append(Issue(
            code=IssueCode.STOCK_NOT_RESTORED,
            message="Заказ отменен, но остатки не возвращены на склад",
            fixable=True
        ))
    if order.restock_count > 1:
        issues.append(Issue(
            code=IssueCode.STOCK_RESTORED_MULTIPLE_TIMES,
            message=f"Остатки возвращены {order.restock_count} раз",
            fixable=False
        ))
    if not cancelled and order.restock_count > 0:
        issues.append(Issue(
            code=IssueCode.STOCK_RESTORED_WHILE_ACTIVE,
            message=f"Остатки возвращены, но заказ в статусе {order.status.value}",
            fixable=False
        ))

    if cancelled and order.payment_status == PaymentStatus.PAID:
        issues.append(Issue(
            code=IssueCode.CANCELLED_PAID_NOT_REFUNDED,
            message="Отмененный заказ оплачен, возврат не оформлен",
            fixable=False
        ))
    if order.payment_status == PaymentStatus.REFUNDED and not cancelled:
        issues.append(Issue(
            code=IssueCode.REFUNDED_NOT_CANCELLED,
            message=f"Возврат оформлен, но заказ в статусе {order.status.value}",
            fixable=False
        ))

    is_cod = payment_method is not None and payment_method.is_cash_on_delivery
    if order.status == OrderStatus.DELIVERED and order.payment_status == PaymentStatus.UNPAID and not is_cod:
        issues.append(Issue(
            code=IssueCode.DELIVERED_UNPAID,
            message="Заказ доставлен, но не оплачен (способ оплаты не наложенный платеж)",
            fixable=False
        ))

    return issues


class ConsistencyAuditor:
    """Проверка и исправление рассинхронизированных заказов.

    auto_fix чинит только арифметику и пропущенный возврат остатков.
    Статус оплаты никогда не угадывается.
    """

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def validate(self, order_id: str) -> AuditReport:
        async with self._uow() as uow:
            order, method = await self._load(uow, order_id)
        return self._report(order, inspect(order, method))

    async def auto_fix(self, order_id: str, actor: Actor) -> Order:
        if not actor.is_admin:
            raise ForbiddenError("Исправлять заказы может только администратор")

        async with self._uow() as uow:
            order, method = await self._load(uow, order_id)
            issues = inspect(order, method)
            codes = {issue.code for issue in issues if issue.fixable}
            if not codes:
                return order

            applied = []
            if codes & ARITHMETIC:
                items = _repriced(order.items)
                total = sum(item.line_total for item in items)
                discount = max(0, min(order.discount_amount, total))
                await uow.orders.update_amounts(
                    order_id,
                    items=items,
                    total=total,
                    discount_amount=discount,
                    final_total=final_total(total, discount, order.shipping_fee)
                )
                applied.extend(sorted(code.value for code in codes & ARITHMETIC))

            if IssueCode.STOCK_NOT_RESTORED in codes:
                # Условный UPDATE restock_count 0 -> 1 защищает от двойного возврата
                if await uow.orders.mark_restocked(order_id):
                    for item in order.items:
                        await uow.variants.increment_stock(item.variant_id, item.quantity)
                    applied.append(IssueCode.STOCK_NOT_RESTORED.value)

            if applied:
                await uow.history.record(
                    order_id=order_id,
                    actor=f"{actor.role.value}:{actor.user_id}",
                    action="order.auto_fixed",
                    before={
                        "total": order.total,
                        "discount_amount": order.discount_amount,
                        "final_total": order.final_total,
                        "restock_count": order.restock_count
                    },
                    note=", ".join(applied)
                )
            await uow.commit()
            fixed, _ = await self._load(uow, order_id)

        logger.info(f"Заказ {order.order_code} исправлен: {', '.join(applied) or 'нет изменений'}")
        return fixed

    @staticmethod
    async def _load(uow, order_id: str):
        order = await uow.orders.get_order(order_id)
        if not order:
            raise OrderNotFoundError(f"Заказ {order_id} не найден")
        method = await uow.payment_methods.get(order.payment_method_id)
        return order, method

    @staticmethod
    def _report(order: Order, issues: List[Issue]) -> AuditReport:
        return AuditReport(order_id=order.id, order_code=order.order_code, ok=not issues, issues=issues)
