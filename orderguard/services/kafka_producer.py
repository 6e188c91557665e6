"""
OrderGuard — Kafka Producer

Publishes recorded-order and blocked-checkout events for downstream
consumers (analytics, courier risk checks).  Lifecycle is managed by the
FastAPI lifespan via ``app.state.kafka_producer``.
"""

import json
import logging
from typing import Any, Dict, Optional

from aiokafka import AIOKafkaProducer

from orderguard.config import settings
from orderguard.services.errors import KafkaError

logger = logging.getLogger("orderguard.kafka")


class KafkaProducer:
    def __init__(self, bootstrap_servers: Optional[str] = None):
        self._bootstrap_servers = bootstrap_servers or settings.KAFKA_BOOTSTRAP_SERVERS
        self._producer: Optional[AIOKafkaProducer] = None

    @property
    def is_running(self) -> bool:
        return self._producer is not None

    async def start(self):
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            acks="all",
            compression_type="gzip",
            request_timeout_ms=settings.KAFKA_TIMEOUT_MS,
        )
        await self._producer.start()
        logger.info("Kafka producer started, brokers=%s", self._bootstrap_servers)

    async def stop(self):
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Kafka producer stopped.")

    async def send(self, topic: str, value: Dict[str, Any], key: Optional[str] = None):
        if self._producer is None:
            raise KafkaError("KafkaProducer has not been started.")
        await self._producer.send_and_wait(topic=topic, value=value, key=key)
        logger.debug("Kafka send → topic=%s key=%s", topic, key)
