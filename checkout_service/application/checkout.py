import logging
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel

from checkout_service.domain.models import (
    Address, Cart, LineItem, Order, PaymentMethod, finalize
)
from checkout_service.domain.pricing import ShippingPolicy, final_total, format_order_code
from checkout_service.domain.exceptions import (
    AddressNotFoundError, CartAlreadyCheckedOutError, CartEmptyError, CartNotFoundError,
    ConflictError, ForbiddenError, PaymentGatewayError, PaymentMethodNotFoundError,
    PaymentMethodUnavailableError, VariantNotFoundError
)
from checkout_service.application.interfaces import DuplicateKeyError, PaymentGateway
from checkout_service.application.saga import Saga, SagaStep
from checkout_service.application.stock import VariantStockManager
from checkout_service.application.vouchers import VoucherEngine

logger = logging.getLogger(__name__)

ORDER_CODE_ATTEMPTS = 3


class CheckoutDTO(BaseModel):
    user_id: str
    address_id: str
    payment_method_id: str
    voucher_code: Optional[str] = None
    cart_id: Optional[str] = None


class CheckoutResult(BaseModel):
    order: Order
    payment_url: Optional[str] = None


class CheckoutPreview(BaseModel):
    total: int
    discount_amount: int
    shipping_fee: int
    final_total: int
    is_home_zone: bool


class ShippingQuote(BaseModel):
    address_id: str
    city: str
    shipping_fee: int
    is_home_zone: bool


class CheckoutUseCase:
    """Оформление заказа: корзина -> заказ.

    Побочные эффекты (резерв остатков, применение промокода, номер заказа)
    выполняются шагами саги, каждый в своей транзакции. Если следующий шаг
    падает, выполненные шаги откатываются в обратном порядке, наружу уходит
    только исходная ошибка.
    """

    def __init__(
        self,
        unit_of_work,
        stock_manager: VariantStockManager,
        voucher_engine: VoucherEngine,
        shipping_policy: ShippingPolicy,
        payment_gateway: Optional[PaymentGateway] = None,
        payment_reconciler=None
    ):
        self._uow = unit_of_work
        self._stock = stock_manager
        self._vouchers = voucher_engine
        self._shipping = shipping_policy
        self._gateway = payment_gateway
        self._reconciler = payment_reconciler

    async def __call__(self, data: CheckoutDTO) -> CheckoutResult:
        logger.info(f"Оформление заказа пользователем {data.user_id}")
        now = datetime.now(timezone.utc)

        # 1. Все проверки до первого побочного эффекта
        cart, address, method = await self._load_and_validate(data)

        async with Saga(f"checkout:{cart.id}") as saga:
            # 2. Резерв остатков, цена берется из актуального состояния варианта
            items = []
            for item in cart.items:
                variant = await saga.run(SagaStep(
                    name=f"reserve:{item.variant_id}",
                    action=lambda item=item: self._stock.reserve(item.variant_id, item.quantity),
                    compensation=lambda _, item=item: self._stock.restore(item.variant_id, item.quantity)
                ))
                items.append(LineItem.priced(item.variant_id, item.quantity, variant.current_price(now)))
            total = sum(item.line_total for item in items)

            # 3. Промокод: окно действия проверяется на момент оформления
            discount = 0
            if data.voucher_code:
                application = await saga.run(SagaStep(
                    name=f"voucher:{data.voucher_code}",
                    action=lambda: self._vouchers.apply(data.voucher_code, data.user_id, total, now),
                    compensation=lambda applied: self._vouchers.release(applied, data.user_id)
                ))
                discount = application.discount_amount

            # 4. Номер заказа. Пропуск в дневной последовательности допустим
            order_code = await saga.run(SagaStep(
                name="order_code",
                action=lambda: self._allocate_order_code(now)
            ))

            order = finalize(
                cart,
                order_code=order_code,
                items=items,
                address_id=address.id,
                payment_method_id=method.id,
                voucher_code=data.voucher_code,
                discount_amount=discount,
                shipping_fee=self._shipping.fee_for(address.city),
                placed_at=now
            )

            # 5. Переворот cart -> order вместе с outbox и историей
            await saga.run(SagaStep(name="place_order", action=lambda: self._place(order)))

        logger.info(
            f"Заказ {order.order_code} оформлен: total={order.total}, "
            f"discount={order.discount_amount}, shipping={order.shipping_fee}, final={order.final_total}"
        )

        payment_url = None
        if method.is_gateway and self._gateway is not None:
            payment_url = self._gateway.build_payment_url(order)
            if method.confirms_synchronously:
                order = await self._charge(order)

        return CheckoutResult(order=order, payment_url=payment_url)

    async def preview(
        self, user_id: str, address_id: str, voucher_code: Optional[str] = None
    ) -> CheckoutPreview:
        """Расчет итогов текущей корзины без изменения состояния"""
        now = datetime.now(timezone.utc)
        async with self._uow() as uow:
            cart = await uow.orders.get_cart_for_user(user_id)
            if not cart:
                raise CartNotFoundError(f"Корзина пользователя {user_id} не найдена")
            if cart.is_empty():
                raise CartEmptyError("Корзина пуста")
            address = await self._owned_address(uow, address_id, user_id)
            variants = await uow.variants.get_many([item.variant_id for item in cart.items])

        total = 0
        for item in cart.items:
            variant = variants.get(item.variant_id)
            if variant is None:
                raise VariantNotFoundError(f"Вариант {item.variant_id} не найден")
            total += variant.current_price(now) * item.quantity

        discount = 0
        if voucher_code:
            check = await self._vouchers.check_usage(voucher_code, user_id, total, now)
            discount = min(check.discount_amount or 0, total)

        fee = self._shipping.fee_for(address.city)
        return CheckoutPreview(
            total=total,
            discount_amount=discount,
            shipping_fee=fee,
            final_total=final_total(total, discount, fee),
            is_home_zone=self._shipping.is_home_zone(address.city)
        )

    async def shipping_fee(self, user_id: str, address_id: str) -> ShippingQuote:
        async with self._uow() as uow:
            address = await self._owned_address(uow, address_id, user_id)
        return ShippingQuote(
            address_id=address.id,
            city=address.city,
            shipping_fee=self._shipping.fee_for(address.city),
            is_home_zone=self._shipping.is_home_zone(address.city)
        )

    async def _load_and_validate(self, data: CheckoutDTO) -> tuple[Cart, Address, PaymentMethod]:
        async with self._uow() as uow:
            if data.cart_id:
                document = await uow.orders.get_document(data.cart_id)
            else:
                document = await uow.orders.get_cart_for_user(data.user_id)
            if document is None:
                raise CartNotFoundError(f"Корзина {data.cart_id or data.user_id} не найдена")
            if document.user_id != data.user_id:
                raise ForbiddenError("Корзина принадлежит другому пользователю")
            if isinstance(document, Order):
                raise CartAlreadyCheckedOutError(f"Корзина уже оформлена как заказ {document.order_code}")
            if document.is_empty():
                raise CartEmptyError("Корзина пуста")

            address = await self._owned_address(uow, data.address_id, data.user_id)

            method = await uow.payment_methods.get(data.payment_method_id)
            if not method:
                raise PaymentMethodNotFoundError(f"Способ оплаты {data.payment_method_id} не найден")
            if not method.is_active:
                raise PaymentMethodUnavailableError(f"Способ оплаты {method.code} недоступен")

        return document, address, method

    @staticmethod
    async def _owned_address(uow, address_id: str, user_id: str) -> Address:
        address = await uow.addresses.get(address_id)
        if not address:
            raise AddressNotFoundError(f"Адрес {address_id} не найден")
        if address.user_id != user_id:
            raise ForbiddenError("Адрес принадлежит другому пользователю")
        return address

    async def _allocate_order_code(self, now: datetime) -> str:
        day = now.date()
        for attempt in range(ORDER_CODE_ATTEMPTS):
            try:
                async with self._uow() as uow:
                    seq = await uow.order_codes.next_sequence(day)
                    await uow.commit()
                return format_order_code(day, seq)
            except DuplicateKeyError:
                # Параллельно создан первый счетчик дня
                logger.info(f"Гонка за счетчик номеров заказов {day}, попытка {attempt + 1}")
        raise ConflictError(f"Не удалось выделить номер заказа за {day}")

    async def _place(self, order: Order) -> Order:
        async with self._uow() as uow:
            placed = await uow.orders.place_order(order)
            if not placed:
                current = await uow.orders.get_document(order.id)
                if not isinstance(current, Cart):
                    raise CartAlreadyCheckedOutError(f"Корзина {order.id} уже оформлена")
                raise ConflictError(f"Корзина {order.id} изменена во время оформления, повторите запрос")
            await uow.outbox.create(
                event_type="order.placed",
                event_data={
                    "order_id": order.id,
                    "order_code": order.order_code,
                    "user_id": order.user_id,
                    "final_total": order.final_total,
                    "items": [item.model_dump() for item in order.items]
                },
                order_id=order.id
            )
            await uow.history.record(
                order_id=order.id,
                actor=f"user:{order.user_id}",
                action="order.placed",
                after={"status": order.status.value, "payment_status": order.payment_status.value}
            )
            await uow.commit()
        return order

    async def _charge(self, order: Order) -> Order:
        """Синхронное подтверждение шлюзом. Таймаут = неизвестный исход"""
        try:
            confirmed = await self._gateway.charge(order)
        except PaymentGatewayError as e:
            logger.warning(f"Шлюз не подтвердил оплату заказа {order.order_code}: {e}. Заказ остается unpaid")
            return order

        if self._reconciler is None:
            logger.warning(f"Оплата заказа {order.order_code} подтверждена, но некому ее применить")
            return order
        await self._reconciler.apply_outcome(
            order_code=order.order_code,
            success=confirmed,
            amount=order.final_total if confirmed else None,
            source="charge"
        )
        async with self._uow() as uow:
            return await uow.orders.get_order(order.id) or order

