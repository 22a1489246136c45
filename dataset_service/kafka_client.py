import json
import logging
from typing import Any

from kafka import KafkaProducer
from kafka.errors import KafkaError

from .config import settings

logger = logging.getLogger(__name__)


def get_kafka_producer() -> KafkaProducer:
    """Create and return a Kafka producer instance."""
    config: dict[str, Any] = {
        "bootstrap_servers": settings.kafka.bootstrap_servers,
        "key_serializer": lambda k: k.encode("utf-8"),
        "value_serializer": lambda v: json.dumps(v).encode("utf-8"),
        "security_protocol": settings.kafka.security_protocol.upper(),
    }
    if settings.kafka.username and settings.kafka.password:
        config["sasl_mechanism"] = "PLAIN"
        config["sasl_plain_username"] = settings.kafka.username
        config["sasl_plain_password"] = settings.kafka.password
    return KafkaProducer(**config)


class ImportQueue:
    """Publishes one import job per registered file upload.

    Delivery is at-least-once: the same upload id may reach the worker more
    than once, so the importer treats redelivery as a no-op.
    """

    def __init__(
        self,
        producer: KafkaProducer,
        topic: str | None = None,
        attempts: int | None = None,
        timeout: float | None = None,
    ):
        self._producer = producer
        self._topic = topic or settings.kafka.topic
        self._attempts = max(1, attempts or settings.kafka.enqueue_attempts)
        self._timeout = timeout or settings.kafka.send_timeout_seconds

    def enqueue_import(self, file_upload_id: str) -> None:
        """Send an import job and block until the broker acknowledges it.

        Raises:
            KafkaError: If every attempt fails
        """
        message = {"file_upload_id": file_upload_id}
        for attempt in range(1, self._attempts + 1):
            try:
                # send() itself raises when broker metadata is unavailable
                future = self._producer.send(self._topic, key=file_upload_id, value=message)
                future.get(timeout=self._timeout)
                return
            except KafkaError as exc:
                if attempt == self._attempts:
                    raise
                logger.warning(
                    "enqueue of file upload %s failed (attempt %s/%s): %s",
                    file_upload_id,
                    attempt,
                    self._attempts,
                    exc,
                )

    def close(self) -> None:
        self._producer.close()
