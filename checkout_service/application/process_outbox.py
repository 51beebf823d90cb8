import json
import logging

from checkout_service.application.interfaces import EventPublisher, PaymentGateway

logger = logging.getLogger(__name__)

REFUND_REQUESTED = "payment.refund_requested"


class ProcessOutboxEventsUseCase:
    """Доставка outbox событий: заказы в Kafka, возвраты в платежный шлюз.

    Пачка читается в короткой транзакции, внешние вызовы идут без открытой
    сессии, каждое доставленное событие помечается в своей транзакции.
    """

    def __init__(self, unit_of_work, event_publisher: EventPublisher, payment_gateway: PaymentGateway):
        self._uow = unit_of_work
        self._publisher = event_publisher
        self._gateway = payment_gateway

    async def __call__(self, limit: int = 10) -> int:
        """Обрабатывает pending события из outbox. Возвращает количество опубликованных."""
        async with self._uow() as uow:
            pending = await uow.outbox.get_pending(limit=limit)

        published = 0
        for event in pending:
            try:
                success = await self._deliver(event)
            except Exception as e:
                # Событие остается pending и уйдет на следующем опросе
                logger.error(f"Ошибка обработки outbox event {event['id']}: {e}", exc_info=True)
                continue

            if not success:
                logger.warning(f"Неуспешная отправка {event['event_type']} ({event['id']}), повтор позже")
                continue

            async with self._uow() as uow:
                await uow.outbox.mark_as_published(event["id"])
                await uow.commit()
            published += 1
            logger.info(f"Outbox event {event['id']} ({event['event_type']}) доставлен")

        return published

    async def _deliver(self, event: dict) -> bool:
        event_data = event["event_data"]
        if isinstance(event_data, str):
            event_data = json.loads(event_data)

        if event["event_type"] == REFUND_REQUESTED:
            # id события стабилен между повторами, шлюз дедуплицирует по нему
            return await self._gateway.request_refund(
                order_code=event_data["order_code"],
                amount=event_data["amount"],
                idempotency_key=event["id"]
            )
        return await self._publisher.publish(
            event_type=event["event_type"],
            payload={**event_data, "event_id": event["id"]},
            key=event_data.get("order_code") or event["order_id"]
        )
