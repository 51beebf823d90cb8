import uuid
from datetime import date, datetime, timezone
from typing import Optional, List, Union

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_service.domain.models import (
    Address, Cart, CartKind, LineItem, Order, OrderStatus, PaymentMethod, PaymentStatus,
    ProductVariant, Voucher
)
from checkout_service.infrastructure.db_schema import (
    cart_orders_tbl, product_variants_tbl, vouchers_tbl, voucher_usages_tbl, addresses_tbl,
    payment_methods_tbl, order_code_counters_tbl, outbox_events_tbl, inbox_events_tbl,
    order_history_tbl
)
from checkout_service.application.interfaces import (
    AddressRepository, CartOrderRepository, DuplicateKeyError, HistoryRepository, InboxRepository,
    OrderCodeRepository, OutboxRepository, PaymentMethodRepository, VariantRepository,
    VoucherRepository
)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite возвращает naive datetime
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def compare_and_add(
    session: AsyncSession,
    table,
    key_column,
    key,
    field: str,
    delta: int,
    lower=None,
    upper=None,
    where=(),
):
    """Атомарно прибавляет delta к полю, только если результат остается в [lower, upper].

    Один UPDATE ... WHERE ... RETURNING: проверка и запись в одной операции.
    Границы могут быть константами или колонками. Возвращает обновленную
    строку или None, если условие не выполнено.
    """
    column = table.c[field]
    conditions = [key_column == key, *where]
    if lower is not None:
        conditions.append(column + delta >= lower)
    if upper is not None:
        conditions.append(column + delta <= upper)
    stmt = (
        update(table)
        .where(*conditions)
        .values({field: column + delta})
        .returning(*table.c)
    )
    result = await session.execute(stmt)
    return result.fetchone()


def _dump_items(items: List[LineItem]) -> list:
    return [item.model_dump() for item in items]


class SQLAlchemyCartOrderRepository(CartOrderRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_document(self, document_id: str) -> Optional[Union[Cart, Order]]:
        result = await self._session.execute(
            select(cart_orders_tbl).where(cart_orders_tbl.c.id == document_id)
        )
        row = result.fetchone()
        if not row:
            return None
        if row.kind == CartKind.CART:
            return self._to_cart(row)
        return self._to_order(row)

    async def get_cart_for_user(self, user_id: str) -> Optional[Cart]:
        result = await self._session.execute(
            select(cart_orders_tbl)
            .where(
                cart_orders_tbl.c.user_id == user_id,
                cart_orders_tbl.c.kind == CartKind.CART
            )
            .order_by(cart_orders_tbl.c.created_at.desc())
            .limit(1)
        )
        row = result.fetchone()
        return self._to_cart(row) if row else None

    async def create_cart(self, cart: Cart) -> None:
        stmt = insert(cart_orders_tbl).values(
            id=cart.id,
            kind=CartKind.CART,
            user_id=cart.user_id,
            items=_dump_items(cart.items),
            total=cart.total,
            cart_updated_at=cart.cart_updated_at,
            created_at=cart.created_at,
            updated_at=cart.cart_updated_at
        )
        await self._session.execute(stmt)

    async def save_cart_items(
        self, cart_id: str, items: List[LineItem], updated_at: datetime, expected_updated_at: datetime
    ) -> bool:
        """Перезапись позиций, только если корзину никто не менял после чтения"""
        stmt = (
            update(cart_orders_tbl)
            .where(
                cart_orders_tbl.c.id == cart_id,
                cart_orders_tbl.c.kind == CartKind.CART,
                cart_orders_tbl.c.cart_updated_at == expected_updated_at
            )
            .values(
                items=_dump_items(items),
                total=sum(item.line_total for item in items),
                cart_updated_at=updated_at,
                updated_at=updated_at
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def place_order(self, order: Order) -> bool:
        """Переворот cart -> order. Срабатывает только если документ еще корзина
        и ее позиции не менялись с момента чтения при оформлении"""
        stmt = (
            update(cart_orders_tbl)
            .where(
                cart_orders_tbl.c.id == order.id,
                cart_orders_tbl.c.kind == CartKind.CART,
                cart_orders_tbl.c.cart_updated_at == order.cart_updated_at
            )
            .values(
                kind=CartKind.ORDER,
                order_code=order.order_code,
                items=_dump_items(order.items),
                address_id=order.address_id,
                payment_method_id=order.payment_method_id,
                voucher_code=order.voucher_code,
                total=order.total,
                discount_amount=order.discount_amount,
                shipping_fee=order.shipping_fee,
                final_total=order.final_total,
                status=order.status,
                payment_status=order.payment_status,
                restock_count=0,
                order_placed_at=order.order_placed_at,
                updated_at=order.updated_at
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def get_order(self, order_id: str) -> Optional[Order]:
        result = await self._session.execute(
            select(cart_orders_tbl).where(
                cart_orders_tbl.c.id == order_id,
                cart_orders_tbl.c.kind == CartKind.ORDER
            )
        )
        row = result.fetchone()
        return self._to_order(row) if row else None

    async def get_order_by_code(self, order_code: str) -> Optional[Order]:
        result = await self._session.execute(
            select(cart_orders_tbl).where(
                cart_orders_tbl.c.order_code == order_code,
                cart_orders_tbl.c.kind == CartKind.ORDER
            )
        )
        row = result.fetchone()
        return self._to_order(row) if row else None

    async def list_orders(self, user_id: str, status: Optional[OrderStatus] = None) -> List[Order]:
        stmt = select(cart_orders_tbl).where(
            cart_orders_tbl.c.user_id == user_id,
            cart_orders_tbl.c.kind == CartKind.ORDER
        )
        if status:
            stmt = stmt.where(cart_orders_tbl.c.status == status)
        result = await self._session.execute(
            stmt.order_by(cart_orders_tbl.c.order_placed_at.desc())
        )
        return [self._to_order(row) for row in result.fetchall()]

    async def update_status(
        self,
        order_id: str,
        expected_status: OrderStatus,
        expected_payment: PaymentStatus,
        status: OrderStatus,
        payment_status: PaymentStatus
    ) -> bool:
        stmt = (
            update(cart_orders_tbl)
            .where(
                cart_orders_tbl.c.id == order_id,
                cart_orders_tbl.c.kind == CartKind.ORDER,
                cart_orders_tbl.c.status == expected_status,
                cart_orders_tbl.c.payment_status == expected_payment
            )
            .values(
                status=status,
                payment_status=payment_status,
                updated_at=_now()
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def cancel(
        self,
        order_id: str,
        expected_status: OrderStatus,
        expected_payment: PaymentStatus,
        payment_status: PaymentStatus,
        reason: Optional[str]
    ) -> bool:
        """Отмена вместе с отметкой о возврате товара на склад (restock_count 0 -> 1)"""
        stmt = (
            update(cart_orders_tbl)
            .where(
                cart_orders_tbl.c.id == order_id,
                cart_orders_tbl.c.kind == CartKind.ORDER,
                cart_orders_tbl.c.status == expected_status,
                cart_orders_tbl.c.payment_status == expected_payment,
                cart_orders_tbl.c.restock_count == 0
            )
            .values(
                status=OrderStatus.CANCELLED,
                payment_status=payment_status,
                cancellation_reason=reason,
                restock_count=cart_orders_tbl.c.restock_count + 1,
                updated_at=_now()
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_paid(self, order_code: str) -> Optional[Order]:
        stmt = (
            update(cart_orders_tbl)
            .where(
                cart_orders_tbl.c.order_code == order_code,
                cart_orders_tbl.c.kind == CartKind.ORDER,
                cart_orders_tbl.c.payment_status == PaymentStatus.UNPAID
            )
            .values(payment_status=PaymentStatus.PAID, updated_at=_now())
            .returning(*cart_orders_tbl.c)
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()
        return self._to_order(row) if row else None

    async def update_amounts(
        self, order_id: str, items: List[LineItem], total: int, discount_amount: int, final_total: int
    ) -> None:
        stmt = (
            update(cart_orders_tbl)
            .where(
                cart_orders_tbl.c.id == order_id,
                cart_orders_tbl.c.kind == CartKind.ORDER
            )
            .values(
                items=_dump_items(items),
                total=total,
                discount_amount=discount_amount,
                final_total=final_total,
                updated_at=_now()
            )
        )
        await self._session.execute(stmt)

    async def mark_restocked(self, order_id: str) -> bool:
        stmt = (
            update(cart_orders_tbl)
            .where(
                cart_orders_tbl.c.id == order_id,
                cart_orders_tbl.c.kind == CartKind.ORDER,
                cart_orders_tbl.c.status == OrderStatus.CANCELLED,
                cart_orders_tbl.c.restock_count == 0
            )
            .values(restock_count=1, updated_at=_now())
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def delete_order(self, order_id: str) -> bool:
        stmt = delete(cart_orders_tbl).where(
            cart_orders_tbl.c.id == order_id,
            cart_orders_tbl.c.kind == CartKind.ORDER,
            cart_orders_tbl.c.status == OrderStatus.CANCELLED
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    def _to_cart(self, row) -> Cart:
        """Трансформация DB → Domain"""
        return Cart(
            id=row.id,
            user_id=row.user_id,
            items=[LineItem(**item) for item in row.items or []],
            cart_updated_at=_utc(row.cart_updated_at),
            created_at=_utc(row.created_at)
        )

    def _to_order(self, row) -> Order:
        """Трансформация DB → Domain"""
        return Order(
            id=row.id,
            order_code=row.order_code,
            user_id=row.user_id,
            items=[LineItem(**item) for item in row.items or []],
            address_id=row.address_id,
            payment_method_id=row.payment_method_id,
            voucher_code=row.voucher_code,
            total=row.total,
            discount_amount=row.discount_amount,
            shipping_fee=row.shipping_fee,
            final_total=row.final_total,
            status=OrderStatus(row.status),
            payment_status=PaymentStatus(row.payment_status),
            cancellation_reason=row.cancellation_reason,
            restock_count=row.restock_count,
            cart_updated_at=_utc(row.cart_updated_at),
            order_placed_at=_utc(row.order_placed_at),
            updated_at=_utc(row.updated_at)
        )


class SQLAlchemyVariantRepository(VariantRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, variant_id: str) -> Optional[ProductVariant]:
        result = await self._session.execute(
            select(product_variants_tbl).where(product_variants_tbl.c.id == variant_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_many(self, variant_ids: List[str]) -> dict:
        if not variant_ids:
            return {}
        result = await self._session.execute(
            select(product_variants_tbl).where(product_variants_tbl.c.id.in_(variant_ids))
        )
        return {row.id: self._to_domain(row) for row in result.fetchall()}

    async def compare_and_decrement_stock(self, variant_id: str, quantity: int) -> Optional[ProductVariant]:
        row = await compare_and_add(
            self._session,
            product_variants_tbl,
            product_variants_tbl.c.id,
            variant_id,
            "stock",
            -quantity,
            lower=0,
            where=[product_variants_tbl.c.is_active.is_(True)]
        )
        return self._to_domain(row) if row else None

    async def increment_stock(self, variant_id: str, quantity: int) -> bool:
        row = await compare_and_add(
            self._session,
            product_variants_tbl,
            product_variants_tbl.c.id,
            variant_id,
            "stock",
            quantity
        )
        return row is not None

    def _to_domain(self, row) -> ProductVariant:
        return ProductVariant(
            id=row.id,
            name=row.name,
            stock=row.stock,
            price=row.price,
            sale_price=row.sale_price,
            sale_starts_at=_utc(row.sale_starts_at),
            sale_ends_at=_utc(row.sale_ends_at),
            is_active=row.is_active
        )


class SQLAlchemyVoucherRepository(VoucherRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_code(self, code: str) -> Optional[Voucher]:
        result = await self._session.execute(
            select(vouchers_tbl).where(vouchers_tbl.c.code == code)
        )
        row = result.fetchone()
        if not row:
            return None
        users = await self._session.execute(
            select(voucher_usages_tbl.c.user_id).where(voucher_usages_tbl.c.voucher_code == code)
        )
        return self._to_domain(row, {user_id for (user_id,) in users.fetchall()})

    async def redeem(self, code: str, user_id: str, one_time_per_user: bool) -> bool:
        """Compare-and-increment used_count + запись пользователя в usedByUsers.

        Для одноразовых промокодов повтор ловится уникальным ключом
        (voucher_code, user_id) дает DuplicateKeyError, транзакцию нужно откатить.
        """
        row = await compare_and_add(
            self._session,
            vouchers_tbl,
            vouchers_tbl.c.code,
            code,
            "used_count",
            1,
            upper=vouchers_tbl.c.usage_limit,
            where=[vouchers_tbl.c.is_active.is_(True)]
        )
        if row is None:
            return False

        if not one_time_per_user:
            existing = await self._session.execute(
                select(voucher_usages_tbl.c.user_id).where(
                    voucher_usages_tbl.c.voucher_code == code,
                    voucher_usages_tbl.c.user_id == user_id
                )
            )
            if existing.fetchone():
                return True
        try:
            await self._session.execute(
                insert(voucher_usages_tbl).values(voucher_code=code, user_id=user_id, created_at=_now())
            )
        except IntegrityError as e:
            raise DuplicateKeyError(f"{code}:{user_id}") from e
        return True

    async def release(self, code: str, user_id: str, forget_user: bool) -> None:
        await compare_and_add(
            self._session,
            vouchers_tbl,
            vouchers_tbl.c.code,
            code,
            "used_count",
            -1,
            lower=0
        )
        if forget_user:
            await self._session.execute(
                delete(voucher_usages_tbl).where(
                    voucher_usages_tbl.c.voucher_code == code,
                    voucher_usages_tbl.c.user_id == user_id
                )
            )

    def _to_domain(self, row, used_by_users: set) -> Voucher:
        return Voucher(
            code=row.code,
            discount_percent=row.discount_percent,
            minimum_order_value=row.minimum_order_value,
            maximum_order_value=row.maximum_order_value,
            maximum_discount_amount=row.maximum_discount_amount,
            start_date=_utc(row.start_date),
            end_date=_utc(row.end_date),
            is_active=row.is_active,
            usage_limit=row.usage_limit,
            is_one_time_per_user=row.is_one_time_per_user,
            used_count=row.used_count,
            used_by_users=used_by_users
        )


class SQLAlchemyAddressRepository(AddressRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, address_id: str) -> Optional[Address]:
        result = await self._session.execute(
            select(addresses_tbl).where(addresses_tbl.c.id == address_id)
        )
        row = result.fetchone()
        if not row:
            return None
        return Address(
            id=row.id,
            user_id=row.user_id,
            city=row.city,
            district=row.district,
            ward=row.ward,
            street=row.street
        )


class SQLAlchemyPaymentMethodRepository(PaymentMethodRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, payment_method_id: str) -> Optional[PaymentMethod]:
        result = await self._session.execute(
            select(payment_methods_tbl).where(payment_methods_tbl.c.id == payment_method_id)
        )
        row = result.fetchone()
        if not row:
            return None
        return PaymentMethod(
            id=row.id,
            code=row.code,
            name=row.name,
            kind=row.kind,
            confirms_synchronously=row.confirms_synchronously,
            is_active=row.is_active
        )


class SQLAlchemyOrderCodeRepository(OrderCodeRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def next_sequence(self, day: date) -> int:
        row = await compare_and_add(
            self._session,
            order_code_counters_tbl,
            order_code_counters_tbl.c.day,
            day,
            "last_value",
            1
        )
        if row is not None:
            return row.last_value
        try:
            await self._session.execute(
                insert(order_code_counters_tbl).values(day=day, last_value=1)
            )
        except IntegrityError as e:
            raise DuplicateKeyError(f"order_code_counters:{day}") from e
        return 1


class SQLAlchemyOutboxRepository(OutboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, order_id: str) -> str:
        event_id = str(uuid.uuid4())
        stmt = insert(outbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,  # SQLAlchemy JSON column сериализует автоматически
            order_id=order_id,
            status="pending",
            created_at=_now()
        )
        await self._session.execute(stmt)
        return event_id

    async def get_pending(self, limit: int = 10) -> List[dict]:
        result = await self._session.execute(
            select(outbox_events_tbl)
            .where(outbox_events_tbl.c.status == "pending")
            .order_by(outbox_events_tbl.c.created_at.asc())
            .limit(limit)
        )
        rows = result.fetchall()

        return [
            {
                "id": row.id,
                "event_type": row.event_type,
                "event_data": row.event_data,
                "order_id": row.order_id
            }
            for row in rows
        ]

    async def mark_as_published(self, event_id: str) -> None:
        stmt = (
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(status="published")
        )
        await self._session.execute(stmt)


class SQLAlchemyInboxRepository(InboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, order_id: str, idempotency_key: str) -> str:
        event_id = str(uuid.uuid4())
        stmt = insert(inbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,
            order_id=order_id,
            idempotency_key=idempotency_key,
            status="processed",
            created_at=_now()
        )
        try:
            await self._session.execute(stmt)
        except IntegrityError as e:
            raise DuplicateKeyError(idempotency_key) from e
        return event_id

    async def is_processed(self, idempotency_key: str) -> bool:
        result = await self._session.execute(
            select(inbox_events_tbl.c.id)
            .where(inbox_events_tbl.c.idempotency_key == idempotency_key)
        )
        return result.fetchone() is not None


class SQLAlchemyHistoryRepository(HistoryRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def record(
        self,
        order_id: str,
        actor: str,
        action: str,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
        note: Optional[str] = None
    ) -> str:
        entry_id = str(uuid.uuid4())
        await self._session.execute(
            insert(order_history_tbl).values(
                id=entry_id,
                order_id=order_id,
                actor=actor,
                action=action,
                before=before,
                after=after,
                note=note,
                created_at=_now()
            )
        )
        return entry_id

    async def list_for(self, order_id: str) -> List[dict]:
        result = await self._session.execute(
            select(order_history_tbl)
            .where(order_history_tbl.c.order_id == order_id)
            .order_by(order_history_tbl.c.created_at.asc())
        )
        return [
            {
                "id": row.id,
                "actor": row.actor,
                "action": row.action,
                "before": row.before,
                "after": row.after,
                "note": row.note,
                "created_at": _utc(row.created_at)
            }
            for row in result.fetchall()
        ]
