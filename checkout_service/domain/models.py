from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class CartKind(str, Enum):
    CART = "cart"
    ORDER = "order"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentMethodKind(str, Enum):
    COD = "cod"
    GATEWAY = "gateway"
    BANK_TRANSFER = "bank_transfer"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class Actor(BaseModel):
    """Кто выполняет операцию (приходит из слоя аутентификации)"""
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: ActorRole = ActorRole.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


class LineItem(BaseModel):
    """Позиция корзины/заказа. unit_price и line_total: снимок цены"""
    model_config = ConfigDict(frozen=True)

    variant_id: str
    quantity: int = Field(gt=0)
    unit_price: int
    line_total: int

    @classmethod
    def priced(cls, variant_id: str, quantity: int, unit_price: int) -> "LineItem":
        return cls(
            variant_id=variant_id,
            quantity=quantity,
            unit_price=unit_price,
            line_total=unit_price * quantity
        )


class Cart(BaseModel):
    """Domain Entity — корзина пользователя (до оформления)"""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    items: list[LineItem] = []
    cart_updated_at: datetime
    created_at: datetime

    def is_empty(self) -> bool:
        return not self.items

    def find_item(self, variant_id: str) -> Optional[LineItem]:
        for item in self.items:
            if item.variant_id == variant_id:
                return item
        return None

    @property
    def total(self) -> int:
        return sum(item.line_total for item in self.items)


class Order(BaseModel):
    """Domain Entity — оформленный заказ"""
    model_config = ConfigDict(frozen=True)

    id: str
    order_code: str
    user_id: str
    items: list[LineItem]
    address_id: str
    payment_method_id: str
    voucher_code: Optional[str] = None
    total: int
    discount_amount: int = 0
    shipping_fee: int = 0
    final_total: int
    status: OrderStatus
    payment_status: PaymentStatus
    cancellation_reason: Optional[str] = None
    restock_count: int = 0
    cart_updated_at: datetime
    order_placed_at: datetime
    updated_at: datetime

    def can_be_deleted(self) -> bool:
        """Бизнес-правило: удалить можно только отмененный заказ"""
        return self.status == OrderStatus.CANCELLED

    def is_owned_by(self, actor: Actor) -> bool:
        return actor.is_admin or self.user_id == actor.user_id


class ProductVariant(BaseModel):
    """Value Object — вариант товара (цвет, размер) из каталога"""
    id: str
    name: str = ""
    stock: int = Field(ge=0)
    price: int
    sale_price: Optional[int] = None
    sale_starts_at: Optional[datetime] = None
    sale_ends_at: Optional[datetime] = None
    is_active: bool = True

    def current_price(self, at: datetime) -> int:
        """Цена на момент at: распродажная, если она действует"""
        if self.sale_price is None:
            return self.price
        if self.sale_starts_at and at < self.sale_starts_at:
            return self.price
        if self.sale_ends_at and at > self.sale_ends_at:
            return self.price
        return self.sale_price


class Voucher(BaseModel):
    """Value Object — промокод из каталога"""
    code: str
    discount_percent: int = Field(ge=0, le=100)
    minimum_order_value: int = 0
    maximum_order_value: Optional[int] = None
    maximum_discount_amount: int
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    usage_limit: int
    is_one_time_per_user: bool = False
    used_count: int = 0
    used_by_users: set[str] = set()


class Address(BaseModel):
    id: str
    user_id: str
    city: str
    district: str = ""
    ward: str = ""
    street: str = ""


class PaymentMethod(BaseModel):
    id: str
    code: str
    name: str
    kind: PaymentMethodKind
    confirms_synchronously: bool = False
    is_active: bool = True

    @property
    def is_gateway(self) -> bool:
        return self.kind == PaymentMethodKind.GATEWAY

    @property
    def is_cash_on_delivery(self) -> bool:
        return self.kind == PaymentMethodKind.COD


def finalize(
    cart: Cart,
    *,
    order_code: str,
    items: list[LineItem],
    address_id: str,
    payment_method_id: str,
    voucher_code: Optional[str],
    discount_amount: int,
    shipping_fee: int,
    placed_at: datetime
) -> Order:
    """Единственный путь Cart -> Order.

    items: позиции, переоцененные на момент оформления. Скидка
    ограничивается суммой товаров, итог не может быть отрицательным.
    """
    total = sum(item.line_total for item in items)
    discount_amount = max(0, min(discount_amount, total))
    return Order(
        id=cart.id,
        order_code=order_code,
        user_id=cart.user_id,
        items=items,
        address_id=address_id,
        payment_method_id=payment_method_id,
        voucher_code=voucher_code,
        total=total,
        discount_amount=discount_amount,
        shipping_fee=shipping_fee,
        final_total=total - discount_amount + shipping_fee,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
        cart_updated_at=cart.cart_updated_at,
        order_placed_at=placed_at,
        updated_at=placed_at
    )
