from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Optional, List, Union

from checkout_service.domain.models import (
    Address, Cart, LineItem, Order, OrderStatus, PaymentMethod, PaymentStatus,
    ProductVariant, Voucher
)


class DuplicateKeyError(Exception):
    """Запись с таким уникальным ключом уже существует"""


class CartOrderRepository(ABC):
    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[Union[Cart, Order]]:
        pass

    @abstractmethod
    async def get_cart_for_user(self, user_id: str) -> Optional[Cart]:
        pass

    @abstractmethod
    async def create_cart(self, cart: Cart) -> None:
        pass

    @abstractmethod
    async def save_cart_items(
        self, cart_id: str, items: List[LineItem], updated_at: datetime, expected_updated_at: datetime
    ) -> bool:
        pass

    @abstractmethod
    async def place_order(self, order: Order) -> bool:
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_code(self, order_code: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_orders(self, user_id: str, status: Optional[OrderStatus] = None) -> List[Order]:
        pass

    @abstractmethod
    async def update_status(
        self,
        order_id: str,
        expected_status: OrderStatus,
        expected_payment: PaymentStatus,
        status: OrderStatus,
        payment_status: PaymentStatus
    ) -> bool:
        pass

    @abstractmethod
    async def cancel(
        self,
        order_id: str,
        expected_status: OrderStatus,
        expected_payment: PaymentStatus,
        payment_status: PaymentStatus,
        reason: Optional[str]
    ) -> bool:
        pass

    @abstractmethod
    async def mark_paid(self, order_code: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def update_amounts(
        self, order_id: str, items: List[LineItem], total: int, discount_amount: int, final_total: int
    ) -> None:
        pass

    @abstractmethod
    async def mark_restocked(self, order_id: str) -> bool:
        pass

    @abstractmethod
    async def delete_order(self, order_id: str) -> bool:
        pass


class VariantRepository(ABC):
    @abstractmethod
    async def get(self, variant_id: str) -> Optional[ProductVariant]:
        pass

    @abstractmethod
    async def get_many(self, variant_ids: List[str]) -> dict:
        pass

    @abstractmethod
    async def compare_and_decrement_stock(self, variant_id: str, quantity: int) -> Optional[ProductVariant]:
        pass

    @abstractmethod
    async def increment_stock(self, variant_id: str, quantity: int) -> bool:
        pass


class VoucherRepository(ABC):
    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[Voucher]:
        pass

    @abstractmethod
    async def redeem(self, code: str, user_id: str, one_time_per_user: bool) -> bool:
        pass

    @abstractmethod
    async def release(self, code: str, user_id: str, forget_user: bool) -> None:
        pass


class AddressRepository(ABC):
    @abstractmethod
    async def get(self, address_id: str) -> Optional[Address]:
        pass


class PaymentMethodRepository(ABC):
    @abstractmethod
    async def get(self, payment_method_id: str) -> Optional[PaymentMethod]:
        pass


class OrderCodeRepository(ABC):
    @abstractmethod
    async def next_sequence(self, day: date) -> int:
        pass


class OutboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, order_id: str) -> str:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 10) -> List[dict]:
        pass

    @abstractmethod
    async def mark_as_published(self, event_id: str) -> None:
        pass


class InboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, order_id: str, idempotency_key: str) -> str:
        pass

    @abstractmethod
    async def is_processed(self, idempotency_key: str) -> bool:
        pass


class HistoryRepository(ABC):
    @abstractmethod
    async def record(
        self,
        order_id: str,
        actor: str,
        action: str,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
        note: Optional[str] = None
    ) -> str:
        pass

    @abstractmethod
    async def list_for(self, order_id: str) -> List[dict]:
        pass


class UnitOfWork(ABC):
    orders: CartOrderRepository
    variants: VariantRepository
    vouchers: VoucherRepository
    addresses: AddressRepository
    payment_methods: PaymentMethodRepository
    order_codes: OrderCodeRepository
    outbox: OutboxRepository
    inbox: InboxRepository
    history: HistoryRepository

    @abstractmethod
    async def __call__(self):
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class PaymentGateway(ABC):
    @abstractmethod
    def build_payment_url(self, order: Order) -> str:
        pass

    @abstractmethod
    async def charge(self, order: Order) -> bool:
        pass

    @abstractmethod
    async def request_refund(self, order_code: str, amount: int, idempotency_key: str) -> bool:
        pass


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, event_type: str, payload: dict, key: str) -> bool:
        pass
