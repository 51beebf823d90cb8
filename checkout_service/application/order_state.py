import logging
from typing import Optional

from checkout_service.domain.models import Actor, Order, OrderStatus, PaymentStatus
from checkout_service.domain.exceptions import (
    ConflictError, ForbiddenError, InvalidTransitionError, OrderNotFoundError
)
from checkout_service.domain.state_machine import (
    check_cancel, check_forward, check_payment_override, payment_status_after_cancel
)

logger = logging.getLogger(__name__)

# Первая попытка + один повтор со свежим состоянием
ATTEMPTS = 2


def _actor_label(actor: Actor) -> str:
    return f"{actor.role.value}:{actor.user_id}"


class OrderStateMachine:
    """Переходы status и payment_status.

    Каждая запись это условный UPDATE по ожидаемой паре (status, payment_status).
    Проигравший гонку перечитывает заказ и пробует еще раз, вторая неудача
    превращается в ConflictError.
    """

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def transition(self, order_id: str, actor: Actor, new_status: OrderStatus) -> Order:
        if new_status == OrderStatus.CANCELLED:
            return await self.cancel(order_id, actor)
        if not actor.is_admin:
            raise ForbiddenError("Менять статус заказа может только администратор")

        for attempt in range(ATTEMPTS):
            async with self._uow() as uow:
                order = await self._load(uow, order_id)
                check_forward(order.status, new_status)

                updated = await uow.orders.update_status(
                    order_id,
                    expected_status=order.status,
                    expected_payment=order.payment_status,
                    status=new_status,
                    payment_status=order.payment_status
                )
                if not updated:
                    logger.warning(f"Заказ {order_id} изменен параллельно, попытка {attempt + 1}")
                    continue

                await uow.history.record(
                    order_id=order_id,
                    actor=_actor_label(actor),
                    action="status.changed",
                    before={"status": order.status.value},
                    after={"status": new_status.value}
                )
                await uow.commit()
                logger.info(f"Заказ {order.order_code}: {order.status.value} -> {new_status.value}")
                return await self._load(uow, order_id)

        raise ConflictError(f"Не удалось изменить статус заказа {order_id}: параллельное изменение")

    async def cancel(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        """Отмена вместе с возвратом остатков и, если нужно, запросом возврата денег.

        Повторная отмена уже отмененного заказа возвращает его без изменений.
        """
        for attempt in range(ATTEMPTS):
            async with self._uow() as uow:
                order = await self._load(uow, order_id)
                if not order.is_owned_by(actor):
                    raise ForbiddenError("Нельзя отменить чужой заказ")
                if order.status == OrderStatus.CANCELLED:
                    logger.info(f"Заказ {order.order_code} уже отменен")
                    return order
                check_cancel(order.status)

                payment_status = payment_status_after_cancel(order.payment_status)
                cancelled = await uow.orders.cancel(
                    order_id,
                    expected_status=order.status,
                    expected_payment=order.payment_status,
                    payment_status=payment_status,
                    reason=reason
                )
                if not cancelled:
                    logger.warning(f"Заказ {order_id} изменен параллельно, попытка {attempt + 1}")
                    continue

                for item in order.items:
                    if not await uow.variants.increment_stock(item.variant_id, item.quantity):
                        logger.warning(f"Вариант {item.variant_id} не найден при возврате остатка заказа {order_id}")

                await uow.outbox.create(
                    event_type="order.cancelled",
                    event_data={
                        "order_id": order.id,
                        "order_code": order.order_code,
                        "reason": reason,
                        "cancelled_by": _actor_label(actor)
                    },
                    order_id=order.id
                )
                if payment_status == PaymentStatus.REFUNDED:
                    await uow.outbox.create(
                        event_type="payment.refund_requested",
                        event_data={
                            "order_id": order.id,
                            "order_code": order.order_code,
                            "amount": order.final_total
                        },
                        order_id=order.id
                    )
                await uow.history.record(
                    order_id=order_id,
                    actor=_actor_label(actor),
                    action="order.cancelled",
                    before={"status": order.status.value, "payment_status": order.payment_status.value},
                    after={"status": OrderStatus.CANCELLED.value, "payment_status": payment_status.value},
                    note=reason
                )
                await uow.commit()
                logger.info(f"Заказ {order.order_code} отменен ({_actor_label(actor)})")
                return await self._load(uow, order_id)

        raise ConflictError(f"Не удалось отменить заказ {order_id}: параллельное изменение")

    async def override_payment_status(
        self, order_id: str, actor: Actor, payment_status: PaymentStatus, note: Optional[str] = None
    ) -> Order:
        """Ручная правка статуса оплаты, всегда с записью в историю"""
        if not actor.is_admin:
            raise ForbiddenError("Менять статус оплаты может только администратор")

        for attempt in range(ATTEMPTS):
            async with self._uow() as uow:
                order = await self._load(uow, order_id)
                check_payment_override(order.status, order.payment_status, payment_status)
                if order.payment_status == payment_status:
                    return order

                updated = await uow.orders.update_status(
                    order_id,
                    expected_status=order.status,
                    expected_payment=order.payment_status,
                    status=order.status,
                    payment_status=payment_status
                )
                if not updated:
                    logger.warning(f"Заказ {order_id} изменен параллельно, попытка {attempt + 1}")
                    continue

                await uow.history.record(
                    order_id=order_id,
                    actor=_actor_label(actor),
                    action="payment_status.override",
                    before={"payment_status": order.payment_status.value},
                    after={"payment_status": payment_status.value},
                    note=note
                )
                await uow.commit()
                logger.info(
                    f"Статус оплаты заказа {order.order_code} изменен вручную: "
                    f"{order.payment_status.value} -> {payment_status.value}"
                )
                return await self._load(uow, order_id)

        raise ConflictError(f"Не удалось изменить статус оплаты заказа {order_id}: параллельное изменение")

    async def delete(self, order_id: str, actor: Actor) -> None:
        if not actor.is_admin:
            raise ForbiddenError("Удалять заказы может только администратор")

        async with self._uow() as uow:
            order = await self._load(uow, order_id)
            if not order.can_be_deleted():
                raise InvalidTransitionError(order.status.value, "deleted", "удалить можно только отмененный заказ")
            if not await uow.orders.delete_order(order_id):
                raise ConflictError(f"Заказ {order_id} изменен параллельно")
            await uow.history.record(
                order_id=order_id,
                actor=_actor_label(actor),
                action="order.deleted",
                before={"order_code": order.order_code, "status": order.status.value}
            )
            await uow.commit()
        logger.info(f"Заказ {order.order_code} удален ({_actor_label(actor)})")

    @staticmethod
    async def _load(uow, order_id: str) -> Order:
        order = await uow.orders.get_order(order_id)
        if not order:
            raise OrderNotFoundError(f"Заказ {order_id} не найден")
        return order
