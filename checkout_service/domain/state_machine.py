from checkout_service.domain.models import OrderStatus, PaymentStatus
from checkout_service.domain.exceptions import InvalidTransitionError


# Прямой путь заказа, без пропусков шагов
FORWARD_FLOW = {
    OrderStatus.PENDING: OrderStatus.PROCESSING,
    OrderStatus.PROCESSING: OrderStatus.SHIPPED,
    OrderStatus.SHIPPED: OrderStatus.DELIVERED,
}

CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})

TERMINAL = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def check_forward(current: OrderStatus, requested: OrderStatus) -> None:
    """Админский переход вперед: ровно на один шаг"""
    if current in TERMINAL:
        raise InvalidTransitionError(current.value, requested.value, "статус финальный")
    if FORWARD_FLOW.get(current) != requested:
        raise InvalidTransitionError(current.value, requested.value, "шаги пропускать нельзя")


def check_cancel(current: OrderStatus) -> None:
    if current not in CANCELLABLE:
        raise InvalidTransitionError(
            current.value, OrderStatus.CANCELLED.value, "отмена возможна только из pending/processing"
        )


def payment_status_after_cancel(current: PaymentStatus) -> PaymentStatus:
    """При отмене оплаченный заказ становится refunded"""
    return PaymentStatus.REFUNDED if current == PaymentStatus.PAID else current


def check_payment_override(
    status: OrderStatus, current: PaymentStatus, requested: PaymentStatus
) -> None:
    """Ручная правка статуса оплаты администратором"""
    if current == requested:
        return
    if current == PaymentStatus.UNPAID and requested == PaymentStatus.PAID:
        return
    if current == PaymentStatus.PAID and requested == PaymentStatus.UNPAID:
        if status == OrderStatus.CANCELLED:
            raise InvalidTransitionError(current.value, requested.value, "заказ отменен")
        return
    if current == PaymentStatus.PAID and requested == PaymentStatus.REFUNDED:
        if status != OrderStatus.CANCELLED:
            raise InvalidTransitionError(current.value, requested.value, "возврат только для отмененного заказа")
        return
    raise InvalidTransitionError(current.value, requested.value)
