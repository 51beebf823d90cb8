from sqlalchemy import (
    Table, Column, String, Integer, Boolean, Enum, DateTime, Date, JSON, MetaData, UniqueConstraint
)
from sqlalchemy.sql import func

from checkout_service.domain.models import CartKind, OrderStatus, PaymentStatus, PaymentMethodKind

metadata = MetaData()


# Корзина и заказ: один документ с дискриминатором kind
cart_orders_tbl = Table(
    "cart_orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("kind", Enum(CartKind), nullable=False, default=CartKind.CART),
    Column("order_code", String, unique=True, nullable=True),
    Column("user_id", String, nullable=False, index=True),
    Column("items", JSON, nullable=False, default=list),
    Column("address_id", String, nullable=True),
    Column("payment_method_id", String, nullable=True),
    Column("voucher_code", String, nullable=True),
    Column("total", Integer, nullable=False, default=0),
    Column("discount_amount", Integer, nullable=False, default=0),
    Column("shipping_fee", Integer, nullable=False, default=0),
    Column("final_total", Integer, nullable=False, default=0),
    Column("status", Enum(OrderStatus), nullable=True, index=True),
    Column("payment_status", Enum(PaymentStatus), nullable=True),
    Column("cancellation_reason", String, nullable=True),
    Column("restock_count", Integer, nullable=False, default=0),
    Column("cart_updated_at", DateTime(timezone=True), server_default=func.now()),
    Column("order_placed_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


product_variants_tbl = Table(
    "product_variants",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False, default=""),
    Column("stock", Integer, nullable=False, default=0),
    Column("price", Integer, nullable=False),
    Column("sale_price", Integer, nullable=True),
    Column("sale_starts_at", DateTime(timezone=True), nullable=True),
    Column("sale_ends_at", DateTime(timezone=True), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True)
)


vouchers_tbl = Table(
    "vouchers",
    metadata,
    Column("code", String, primary_key=True),
    Column("discount_percent", Integer, nullable=False),
    Column("minimum_order_value", Integer, nullable=False, default=0),
    Column("maximum_order_value", Integer, nullable=True),
    Column("maximum_discount_amount", Integer, nullable=False),
    Column("start_date", DateTime(timezone=True), nullable=False),
    Column("end_date", DateTime(timezone=True), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("usage_limit", Integer, nullable=False),
    Column("is_one_time_per_user", Boolean, nullable=False, default=False),
    Column("used_count", Integer, nullable=False, default=0)
)


# Множество usedByUsers: пара (voucher_code, user_id) встречается один раз
voucher_usages_tbl = Table(
    "voucher_usages",
    metadata,
    Column("voucher_code", String, primary_key=True),
    Column("user_id", String, primary_key=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now())
)


addresses_tbl = Table(
    "addresses",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False, index=True),
    Column("city", String, nullable=False),
    Column("district", String, nullable=False, default=""),
    Column("ward", String, nullable=False, default=""),
    Column("street", String, nullable=False, default="")
)


payment_methods_tbl = Table(
    "payment_methods",
    metadata,
    Column("id", String, primary_key=True),
    Column("code", String, unique=True, nullable=False),
    Column("name", String, nullable=False),
    Column("kind", Enum(PaymentMethodKind), nullable=False),
    Column("confirms_synchronously", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True)
)


order_code_counters_tbl = Table(
    "order_code_counters",
    metadata,
    Column("day", Date, primary_key=True),
    Column("last_value", Integer, nullable=False, default=0)
)


outbox_events_tbl = Table(
    "outbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("order_id", String, nullable=False),
    Column("status", String, default="pending"),
    Column("created_at", DateTime(timezone=True), server_default=func.now())
)


inbox_events_tbl = Table(
    "inbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("order_id", String, nullable=False),
    Column("idempotency_key", String, nullable=False),
    Column("status", String, default="processed"),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("idempotency_key", name="uq_inbox_events_idempotency_key")
)


order_history_tbl = Table(
    "order_history",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False, index=True),
    Column("actor", String, nullable=False),
    Column("action", String, nullable=False),
    Column("before", JSON, nullable=True),
    Column("after", JSON, nullable=True),
    Column("note", String, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now())
)
