from typing import List, Optional

from checkout_service.domain.models import Actor, Order, OrderStatus
from checkout_service.domain.exceptions import ForbiddenError, OrderNotFoundError


class GetOrderUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, order_id: str, actor: Actor) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_order(order_id)
        return self._visible(order, order_id, actor)

    async def by_code(self, order_code: str, actor: Actor) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_order_by_code(order_code)
        return self._visible(order, order_code, actor)

    async def list_orders(self, actor: Actor, status: Optional[OrderStatus] = None) -> List[Order]:
        """Заказы пользователя, новые первыми"""
        async with self._uow() as uow:
            return await uow.orders.list_orders(actor.user_id, status)

    async def history(self, order_id: str, actor: Actor) -> List[dict]:
        if not actor.is_admin:
            raise ForbiddenError("История заказа доступна только администратору")
        async with self._uow() as uow:
            return await uow.history.list_for(order_id)

    @staticmethod
    def _visible(order: Optional[Order], reference: str, actor: Actor) -> Order:
        if not order:
            raise OrderNotFoundError(f"Заказ {reference} не найден")
        if not order.is_owned_by(actor):
            raise ForbiddenError("Нет доступа к заказу")
        return order
