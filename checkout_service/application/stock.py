import logging

from checkout_service.domain.models import ProductVariant
from checkout_service.domain.exceptions import (
    InsufficientStockError, VariantNotFoundError, VariantUnavailableError
)

logger = logging.getLogger(__name__)


class VariantStockManager:
    """Резервирование и возврат остатков.

    reserve: один условный UPDATE на вариант (stock >= qty проверяется и
    списывается атомарно), restore: безусловное прибавление. Каждая операция
    коммитится в собственной транзакции.
    """

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def reserve(self, variant_id: str, quantity: int) -> ProductVariant:
        async with self._uow() as uow:
            variant = await uow.variants.compare_and_decrement_stock(variant_id, quantity)
            if variant is not None:
                await uow.commit()
                logger.info(f"Зарезервировано {quantity} шт. варианта {variant_id}, остаток {variant.stock}")
                return variant

            # Условие не выполнено, выясняем почему
            current = await uow.variants.get(variant_id)
            if current is None:
                raise VariantNotFoundError(f"Вариант {variant_id} не найден")
            if not current.is_active:
                raise VariantUnavailableError(f"Вариант {variant_id} недоступен для заказа")
            raise InsufficientStockError(variant_id, current.stock, quantity)

    async def restore(self, variant_id: str, quantity: int) -> None:
        async with self._uow() as uow:
            restored = await uow.variants.increment_stock(variant_id, quantity)
            await uow.commit()
        if restored:
            logger.info(f"Возвращено {quantity} шт. варианта {variant_id}")
        else:
            logger.warning(f"Вариант {variant_id} не найден при возврате {quantity} шт.")
