import logging
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ValidationError

from checkout_service.domain.models import Order, OrderStatus, PaymentStatus
from checkout_service.domain.exceptions import (
    AmountMismatchError, InvalidSignatureError, OrderNotFoundError
)
from checkout_service.application.interfaces import DuplicateKeyError

logger = logging.getLogger(__name__)

SUCCESS_CODE = "00"


class GatewayCallbackDTO(BaseModel):
    order_code: str
    amount: int
    response_code: str
    transaction_no: str = ""
    pay_date: str = ""
    secure_hash: str

    @property
    def is_success(self) -> bool:
        return self.response_code == SUCCESS_CODE


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class IngestResult(BaseModel):
    status: IngestStatus
    reason: Optional[str] = None
    order_code: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None

    @property
    def acknowledged(self) -> bool:
        return self.status != IngestStatus.REJECTED


class ProcessPaymentCallbackUseCase:
    """Идемпотентный прием результатов оплаты от шлюза.

    И синхронный redirect пользователя, и асинхронный IPN проходят через
    один и тот же путь. Ключ идемпотентности "<orderCode>:<outcome>"
    записывается в inbox в той же транзакции, что и изменение заказа,
    поэтому повторная доставка распознается по уникальному ключу.
    """

    def __init__(self, unit_of_work, signer):
        self._uow = unit_of_work
        self._signer = signer

    async def __call__(self, payload: dict, source: str) -> IngestResult:
        logger.info(f"Обработка payment callback ({source}): {payload.get('order_code')}")
        try:
            if not self._signer.verify(payload):
                raise InvalidSignatureError("Неверная подпись payload")
            try:
                dto = GatewayCallbackDTO(**payload)
            except ValidationError as e:
                logger.warning(f"Отклонен некорректный callback ({source}): {e}")
                return IngestResult(status=IngestStatus.REJECTED, reason="malformed")
        except InvalidSignatureError as e:
            logger.warning(f"Отклонен callback ({source}): {e}. Payload: {payload}")
            return IngestResult(
                status=IngestStatus.REJECTED,
                reason="invalid_signature",
                order_code=payload.get("order_code")
            )

        return await self.apply_outcome(
            order_code=dto.order_code,
            success=dto.is_success,
            amount=dto.amount,
            source=source,
            event_data=dto.model_dump(exclude={"secure_hash"})
        )

    async def apply_outcome(
        self,
        order_code: str,
        success: bool,
        amount: Optional[int],
        source: str,
        event_data: Optional[dict] = None
    ) -> IngestResult:
        try:
            return await self._apply(order_code, success, amount, source, event_data)
        except OrderNotFoundError as e:
            logger.warning(f"Отклонен callback ({source}): {e}")
            return IngestResult(status=IngestStatus.REJECTED, reason="order_not_found", order_code=order_code)
        except AmountMismatchError as e:
            logger.warning(f"Отклонен callback ({source}): {e}")
            return IngestResult(status=IngestStatus.REJECTED, reason="amount_mismatch", order_code=order_code)

    async def _apply(
        self,
        order_code: str,
        success: bool,
        amount: Optional[int],
        source: str,
        event_data: Optional[dict]
    ) -> IngestResult:
        outcome = "paid" if success else "failed"
        key = f"{order_code}:{outcome}"

        async with self._uow() as uow:
            order = await uow.orders.get_order_by_code(order_code)
            if not order:
                raise OrderNotFoundError(f"Заказ {order_code} не найден")

            # Идемпотентность
            if await uow.inbox.is_processed(key):
                logger.info(f"Callback {key} уже обработан")
                return self._duplicate(order)

            if success and amount is not None and amount != order.final_total:
                raise AmountMismatchError(
                    f"Сумма {amount} не совпадает с итогом заказа {order_code}: {order.final_total}"
                )

            try:
                await uow.inbox.create(
                    event_type=f"payment.{outcome}",
                    event_data={**(event_data or {}), "source": source},
                    order_id=order.id,
                    idempotency_key=key
                )
            except DuplicateKeyError:
                await uow.rollback()
                logger.info(f"Callback {key} обработан параллельно")
                return self._duplicate(order)

            if not success:
                # Заказ остается pending/unpaid, клиент может оплатить повторно
                await uow.history.record(
                    order_id=order.id,
                    actor=f"gateway:{source}",
                    action="payment.failed",
                    note=(event_data or {}).get("response_code")
                )
                await uow.commit()
                logger.info(f"Оплата заказа {order_code} не прошла")
                return IngestResult(
                    status=IngestStatus.ACCEPTED,
                    order_code=order_code,
                    payment_status=order.payment_status
                )

            paid = await uow.orders.mark_paid(order_code)
            if paid is None:
                # Статус уже отражает оплату (например, ручная правка)
                await uow.commit()
                return self._duplicate(order)

            await uow.outbox.create(
                event_type="order.paid",
                event_data={
                    "order_id": paid.id,
                    "order_code": paid.order_code,
                    "amount": paid.final_total,
                    "source": source
                },
                order_id=paid.id
            )
            await uow.history.record(
                order_id=paid.id,
                actor=f"gateway:{source}",
                action="payment.paid",
                before={"payment_status": order.payment_status.value},
                after={"payment_status": paid.payment_status.value}
            )
            await uow.commit()

        if paid.status == OrderStatus.CANCELLED:
            logger.warning(f"Оплата поступила для отмененного заказа {order_code}, требуется ручной возврат")
        logger.info(f"Заказ {order_code} отмечен paid ({source})")
        return IngestResult(
            status=IngestStatus.ACCEPTED,
            order_code=order_code,
            payment_status=paid.payment_status
        )

    @staticmethod
    def _duplicate(order: Order) -> IngestResult:
        return IngestResult(
            status=IngestStatus.DUPLICATE,
            order_code=order.order_code,
            payment_status=order.payment_status
        )
