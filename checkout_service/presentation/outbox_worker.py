import asyncio
import logging

from checkout_service.database import AsyncSessionLocal
from checkout_service.infrastructure.unit_of_work import UnitOfWork
from checkout_service.infrastructure.http_clients import HTTPPaymentGatewayClient
from checkout_service.infrastructure.kafka_producer import KafkaEventPublisher
from checkout_service.infrastructure.signing import PayloadSigner
from checkout_service.application.process_outbox import ProcessOutboxEventsUseCase
from checkout_service.config import settings

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

event_publisher = KafkaEventPublisher(settings.KAFKA_BOOTSTRAP_SERVERS)
payment_gateway = HTTPPaymentGatewayClient(
    base_url=settings.PAYMENT_GATEWAY_URL,
    signer=PayloadSigner(settings.PAYMENT_GATEWAY_SECRET),
    return_url=settings.RETURN_URL,
    ipn_url=settings.IPN_URL,
    timeout=settings.PAYMENT_GATEWAY_TIMEOUT
)


async def outbox_worker():
    """Worker для обработки outbox событий"""
    logger.info("Outbox worker запущен")
    await event_publisher.start()

    try:
        while True:
            try:
                uow = UnitOfWork(AsyncSessionLocal)
                use_case = ProcessOutboxEventsUseCase(
                    unit_of_work=uow,
                    event_publisher=event_publisher,
                    payment_gateway=payment_gateway
                )

                processed = await use_case(limit=settings.OUTBOX_BATCH_SIZE)
                if processed:
                    logger.info(f"Обработано {processed} outbox events")

                await asyncio.sleep(settings.OUTBOX_POLL_INTERVAL)

            except Exception as e:
                logger.error(f"Ошибка в outbox worker: {e}", exc_info=True)
                await asyncio.sleep(settings.OUTBOX_POLL_INTERVAL * 3)
    finally:
        await event_publisher.stop()


async def main():
    await outbox_worker()


if __name__ == "__main__":
    asyncio.run(main())
