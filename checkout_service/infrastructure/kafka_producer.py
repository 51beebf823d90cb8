import json
import logging
from typing import Optional
from aiokafka import AIOKafkaProducer

from checkout_service.application.interfaces import EventPublisher

logger = logging.getLogger(__name__)

ORDER_EVENTS_TOPIC = "checkout.order-events"


class KafkaEventPublisher(EventPublisher):
    """События заказов в один топик, ключ = order_code (порядок внутри заказа)"""

    def __init__(self, bootstrap_servers: str, topic: str = ORDER_EVENTS_TOPIC):
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._producer: Optional[AIOKafkaProducer] = None

    async def start(self):
        if self._producer:
            return
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            acks="all",
            enable_idempotence=True,
            key_serializer=str.encode,
            value_serializer=lambda value: json.dumps(value, default=str).encode()
        )
        await self._producer.start()
        logger.info(f"Kafka producer запущен, топик {self._topic}")

    async def stop(self):
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Kafka producer остановлен")

    async def publish(self, event_type: str, payload: dict, key: str) -> bool:
        if not self._producer:
            logger.error("Kafka producer не запущен")
            return False

        try:
            await self._producer.send_and_wait(
                self._topic,
                value={"event_type": event_type, **payload},
                key=key,
                headers=[("event_type", event_type.encode())]
            )
            logger.info(f"Опубликовано {event_type} для {key}")
            return True
        except Exception as e:
            logger.error(f"Не удалось опубликовать {event_type} для {key}: {e}")
            return False
