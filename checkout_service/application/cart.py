import logging
import uuid
from datetime import datetime, timezone

from checkout_service.domain.models import Cart, LineItem
from checkout_service.domain.exceptions import (
    CartItemNotFoundError, ConflictError, InsufficientStockError, VariantNotFoundError,
    VariantUnavailableError
)

logger = logging.getLogger(__name__)


def new_cart(user_id: str) -> Cart:
    now = datetime.now(timezone.utc)
    return Cart(id=str(uuid.uuid4()), user_id=user_id, items=[], cart_updated_at=now, created_at=now)


class CartUseCase:
    """Минимальные операции с корзиной, нужные для оформления.

    Цена позиции фиксируется в момент добавления и пересчитывается только
    при оформлении заказа.
    """

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def get_or_create_cart(self, user_id: str) -> Cart:
        async with self._uow() as uow:
            cart = await uow.orders.get_cart_for_user(user_id)
            if cart:
                return cart
            cart = new_cart(user_id)
            await uow.orders.create_cart(cart)
            await uow.commit()
        logger.info(f"Создана корзина {cart.id} для пользователя {user_id}")
        return cart

    async def add_item(self, user_id: str, variant_id: str, quantity: int) -> Cart:
        cart = await self.get_or_create_cart(user_id)
        now = datetime.now(timezone.utc)

        async with self._uow() as uow:
            variant = await uow.variants.get(variant_id)
            if not variant:
                raise VariantNotFoundError(f"Вариант {variant_id} не найден")
            if not variant.is_active:
                raise VariantUnavailableError(f"Вариант {variant_id} недоступен для заказа")

            existing = cart.find_item(variant_id)
            requested = quantity + (existing.quantity if existing else 0)
            if variant.stock < requested:
                raise InsufficientStockError(variant_id, variant.stock, requested)

            line = LineItem.priced(variant_id, requested, variant.current_price(now))
            if existing:
                items = [line if item.variant_id == variant_id else item for item in cart.items]
            else:
                items = [*cart.items, line]
            await self._save(uow, cart, items, now)

        logger.info(f"В корзину {cart.id} добавлено {quantity} шт. варианта {variant_id}")
        return cart.model_copy(update={"items": items, "cart_updated_at": now})

    async def update_item(self, user_id: str, variant_id: str, quantity: int) -> Cart:
        if quantity <= 0:
            return await self.remove_item(user_id, variant_id)

        cart = await self.get_or_create_cart(user_id)
        existing = cart.find_item(variant_id)
        if not existing:
            raise CartItemNotFoundError(f"Позиция {variant_id} в корзине не найдена")
        now = datetime.now(timezone.utc)

        async with self._uow() as uow:
            variant = await uow.variants.get(variant_id)
            if not variant:
                raise VariantNotFoundError(f"Вариант {variant_id} не найден")
            if variant.stock < quantity:
                raise InsufficientStockError(variant_id, variant.stock, quantity)

            # Цена снимка сохраняется, меняется только количество
            line = LineItem.priced(variant_id, quantity, existing.unit_price)
            items = [line if item.variant_id == variant_id else item for item in cart.items]
            await self._save(uow, cart, items, now)

        return cart.model_copy(update={"items": items, "cart_updated_at": now})

    async def remove_item(self, user_id: str, variant_id: str) -> Cart:
        cart = await self.get_or_create_cart(user_id)
        if not cart.find_item(variant_id):
            raise CartItemNotFoundError(f"Позиция {variant_id} в корзине не найдена")
        now = datetime.now(timezone.utc)
        items = [item for item in cart.items if item.variant_id != variant_id]

        async with self._uow() as uow:
            await self._save(uow, cart, items, now)

        logger.info(f"Из корзины {cart.id} удален вариант {variant_id}")
        return cart.model_copy(update={"items": items, "cart_updated_at": now})

    @staticmethod
    async def _save(uow, cart: Cart, items: list[LineItem], now: datetime) -> None:
        saved = await uow.orders.save_cart_items(cart.id, items, now, expected_updated_at=cart.cart_updated_at)
        if not saved:
            current = await uow.orders.get_document(cart.id)
            if not isinstance(current, Cart):
                raise ConflictError(f"Корзина {cart.id} уже оформлена")
            raise ConflictError(f"Корзина {cart.id} изменена параллельно, повторите запрос")
        await uow.commit()
