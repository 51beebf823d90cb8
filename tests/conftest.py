from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert, select

from checkout_service.application.interfaces import EventPublisher, PaymentGateway
from checkout_service.application.checkout import CheckoutUseCase
from checkout_service.application.process_payment import ProcessPaymentCallbackUseCase
from checkout_service.application.stock import VariantStockManager
from checkout_service.application.vouchers import VoucherEngine
from checkout_service.database import build_engine, build_session_factory, create_tables
from checkout_service.domain.models import (
    CartKind, LineItem, OrderStatus, PaymentMethodKind, PaymentStatus
)
from checkout_service.domain.pricing import ShippingPolicy
from checkout_service.infrastructure.db_schema import (
    addresses_tbl, cart_orders_tbl, outbox_events_tbl, payment_methods_tbl,
    product_variants_tbl, vouchers_tbl
)
from checkout_service.infrastructure.signing import PayloadSigner
from checkout_service.infrastructure.unit_of_work import UnitOfWork
from checkout_service.main import create_app

GATEWAY_SECRET = "test-secret"


class FakePaymentGateway(PaymentGateway):
    def __init__(self):
        self.charge_result = True
        self.charge_error: Optional[Exception] = None
        self.charges = []
        self.refunds = []
        self.refund_result = True

    def build_payment_url(self, order) -> str:
        return f"https://gateway.test/pay?order_code={order.order_code}&amount={order.final_total}"

    async def charge(self, order) -> bool:
        self.charges.append(order.order_code)
        if self.charge_error:
            raise self.charge_error
        return self.charge_result

    async def request_refund(self, order_code: str, amount: int, idempotency_key: str) -> bool:
        self.refunds.append((order_code, amount, idempotency_key))
        return self.refund_result


class FakeEventPublisher(EventPublisher):
    def __init__(self):
        self.published = []
        self.fail = False

    async def publish(self, event_type: str, payload: dict, key: str) -> bool:
        if self.fail:
            return False
        self.published.append((event_type, key, payload))
        return True


class Seeder:
    """Прямые вставки в таблицы, минуя use cases"""

    def __init__(self, session_factory):
        self._factory = session_factory

    async def _insert(self, table, **values):
        async with self._factory() as session:
            await session.execute(insert(table).values(**values))
            await session.commit()

    async def _scalar(self, stmt):
        async with self._factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def variant(self, variant_id="V1", stock=5, price=100000, **overrides) -> str:
        await self._insert(
            product_variants_tbl,
            id=variant_id,
            name=overrides.pop("name", f"Variant {variant_id}"),
            stock=stock,
            price=price,
            is_active=overrides.pop("is_active", True),
            **overrides
        )
        return variant_id

    async def voucher(self, code="SAVE10", **overrides) -> str:
        now = datetime.now(timezone.utc)
        values = {
            "code": code,
            "discount_percent": 10,
            "minimum_order_value": 100000,
            "maximum_order_value": None,
            "maximum_discount_amount": 50000,
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=1),
            "is_active": True,
            "usage_limit": 100,
            "is_one_time_per_user": False,
            "used_count": 0,
        }
        values.update(overrides)
        await self._insert(vouchers_tbl, **values)
        return code

    async def address(self, address_id="A1", user_id="u1", city="Hồ Chí Minh") -> str:
        await self._insert(
            addresses_tbl,
            id=address_id,
            user_id=user_id,
            city=city,
            district="Quận 1",
            ward="Bến Nghé",
            street="1 Lê Lợi"
        )
        return address_id

    async def payment_method(
        self, method_id="PM-COD", kind=PaymentMethodKind.COD, confirms_synchronously=False, is_active=True
    ) -> str:
        await self._insert(
            payment_methods_tbl,
            id=method_id,
            code=method_id.lower(),
            name=method_id,
            kind=kind,
            confirms_synchronously=confirms_synchronously,
            is_active=is_active
        )
        return method_id

    async def cart(self, cart_id="C1", user_id="u1", items=(("V1", 2, 100000),)) -> str:
        now = datetime.now(timezone.utc)
        lines = [LineItem.priced(variant_id, qty, price).model_dump() for variant_id, qty, price in items]
        await self._insert(
            cart_orders_tbl,
            id=cart_id,
            kind=CartKind.CART,
            user_id=user_id,
            items=lines,
            total=sum(line["line_total"] for line in lines),
            cart_updated_at=now,
            created_at=now,
            updated_at=now
        )
        return cart_id

    async def order(
        self,
        order_id="O1",
        user_id="u1",
        items=(("V1", 2, 100000),),
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
        payment_method_id="PM-COD",
        discount_amount=0,
        shipping_fee=20000,
        restock_count=0,
        order_code=None,
        **overrides
    ) -> str:
        now = datetime.now(timezone.utc)
        lines = [item if isinstance(item, dict) else LineItem.priced(*item).model_dump() for item in items]
        total = sum(line["line_total"] for line in lines)
        values = {
            "id": order_id,
            "kind": CartKind.ORDER,
            "order_code": order_code or f"ORD{now:%Y%m%d}{order_id}",
            "user_id": user_id,
            "items": lines,
            "address_id": "A1",
            "payment_method_id": payment_method_id,
            "total": total,
            "discount_amount": discount_amount,
            "shipping_fee": shipping_fee,
            "final_total": total - discount_amount + shipping_fee,
            "status": status,
            "payment_status": payment_status,
            "restock_count": restock_count,
            "cart_updated_at": now,
            "order_placed_at": now,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        await self._insert(cart_orders_tbl, **values)
        return order_id

    async def stock_of(self, variant_id="V1") -> int:
        return await self._scalar(
            select(product_variants_tbl.c.stock).where(product_variants_tbl.c.id == variant_id)
        )

    async def used_count(self, code="SAVE10") -> int:
        return await self._scalar(select(vouchers_tbl.c.used_count).where(vouchers_tbl.c.code == code))

    async def kind_of(self, document_id: str) -> CartKind:
        return await self._scalar(select(cart_orders_tbl.c.kind).where(cart_orders_tbl.c.id == document_id))

    async def outbox_types(self, order_id: str) -> list:
        async with self._factory() as session:
            result = await session.execute(
                select(outbox_events_tbl.c.event_type)
                .where(outbox_events_tbl.c.order_id == order_id)
                .order_by(outbox_events_tbl.c.created_at.asc())
            )
            return [event_type for (event_type,) in result.fetchall()]

    async def outbox_statuses(self) -> list:
        async with self._factory() as session:
            result = await session.execute(select(outbox_events_tbl.c.status))
            return [status for (status,) in result.fetchall()]

    async def outbox_id(self, event_type: str) -> str:
        return await self._scalar(
            select(outbox_events_tbl.c.id).where(outbox_events_tbl.c.event_type == event_type)
        )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def uow(session_factory):
    return UnitOfWork(session_factory)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def signer():
    return PayloadSigner(GATEWAY_SECRET)


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def publisher():
    return FakeEventPublisher()


@pytest.fixture
def shipping_policy():
    return ShippingPolicy(["Hồ Chí Minh", "TP HCM"], home_fee=20000, other_fee=50000)


@pytest.fixture
def reconciler(uow, signer):
    return ProcessPaymentCallbackUseCase(uow, signer)


@pytest.fixture
def checkout(uow, shipping_policy, gateway, reconciler):
    return CheckoutUseCase(
        uow,
        stock_manager=VariantStockManager(uow),
        voucher_engine=VoucherEngine(uow),
        shipping_policy=shipping_policy,
        payment_gateway=gateway,
        payment_reconciler=reconciler
    )


@pytest_asyncio.fixture
async def client(session_factory, gateway, signer, shipping_policy):
    app = create_app(
        session_factory=session_factory,
        payment_gateway=gateway,
        signer=signer,
        shipping_policy=shipping_policy
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
