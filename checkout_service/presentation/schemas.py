from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional

from checkout_service.domain.models import Cart, LineItem, Order, OrderStatus, PaymentStatus


class LineItemResponse(BaseModel):
    variant_id: str
    quantity: int
    unit_price: int
    line_total: int

    @classmethod
    def from_domain(cls, item: LineItem):
        return cls(**item.model_dump())


class CartResponse(BaseModel):
    id: str
    user_id: str
    items: List[LineItemResponse]
    total: int
    cart_updated_at: datetime

    @classmethod
    def from_domain(cls, cart: Cart):
        return cls(
            id=cart.id,
            user_id=cart.user_id,
            items=[LineItemResponse.from_domain(item) for item in cart.items],
            total=cart.total,
            cart_updated_at=cart.cart_updated_at
        )


class OrderResponse(BaseModel):
    id: str
    order_code: str
    user_id: str
    items: List[LineItemResponse]
    address_id: str
    payment_method_id: str
    voucher_code: Optional[str] = None
    total: int
    discount_amount: int
    shipping_fee: int
    final_total: int
    status: OrderStatus
    payment_status: PaymentStatus
    cancellation_reason: Optional[str] = None
    order_placed_at: datetime
    updated_at: datetime
    payment_url: Optional[str] = None

    @classmethod
    def from_domain(cls, order: Order, payment_url: Optional[str] = None):
        return cls(
            id=order.id,
            order_code=order.order_code,
            user_id=order.user_id,
            items=[LineItemResponse.from_domain(item) for item in order.items],
            address_id=order.address_id,
            payment_method_id=order.payment_method_id,
            voucher_code=order.voucher_code,
            total=order.total,
            discount_amount=order.discount_amount,
            shipping_fee=order.shipping_fee,
            final_total=order.final_total,
            status=order.status,
            payment_status=order.payment_status,
            cancellation_reason=order.cancellation_reason,
            order_placed_at=order.order_placed_at,
            updated_at=order.updated_at,
            payment_url=payment_url
        )


class AddItemRequest(BaseModel):
    variant_id: str
    quantity: int = Field(gt=0)


class UpdateItemRequest(BaseModel):
    quantity: int


class CheckoutRequest(BaseModel):
    address_id: str
    payment_method_id: str
    voucher_code: Optional[str] = None
    cart_id: Optional[str] = None


class PreviewRequest(BaseModel):
    address_id: str
    voucher_code: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: OrderStatus


class PaymentStatusUpdateRequest(BaseModel):
    payment_status: PaymentStatus
    note: Optional[str] = None


class VoucherCheckResponse(BaseModel):
    code: str
    eligible: bool
    discount_percent: Optional[int] = None
    maximum_discount_amount: Optional[int] = None
    discount_amount: Optional[int] = None
    reason: Optional[str] = None
    kind: Optional[str] = None


class PaymentCallbackResponse(BaseModel):
    status: str
    message: str
    order_code: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None


class ErrorResponse(BaseModel):
    detail: str
