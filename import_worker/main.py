import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import uvicorn
from confluent_kafka import Consumer, KafkaError, KafkaException
from fastapi import FastAPI

from dataset_service.clients import create_s3_client
from dataset_service.config import settings as service_settings
from dataset_service.database import AsyncSessionLocal
from dataset_service.kafka_client import ImportQueue, get_kafka_producer
from dataset_service.uploads import reconcile_stale_uploads

from .config import settings
from .importer import import_dataset_entries

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    stop_event = asyncio.Event()
    tasks = [
        asyncio.create_task(_consume(stop_event)),
        asyncio.create_task(_reconcile(stop_event)),
    ]
    try:
        yield
    finally:
        stop_event.set()
        await asyncio.gather(*tasks, return_exceptions=True)


app = FastAPI(title="Import Worker", lifespan=lifespan)


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@dataclass
class ImportMessage:
    file_upload_id: str


def _parse_message(raw: bytes) -> ImportMessage:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError("failed to decode kafka message") from exc

    try:
        file_upload_id = payload["file_upload_id"]
        if not isinstance(file_upload_id, str) or not file_upload_id:
            raise TypeError("file_upload_id must be a non-empty string")
        return ImportMessage(file_upload_id=file_upload_id)
    except (KeyError, TypeError) as exc:
        raise ValueError("invalid kafka message payload") from exc


def _create_consumer() -> Consumer:
    config: dict[str, Any] = {
        "bootstrap.servers": settings.kafka.bootstrap_servers,
        "group.id": settings.kafka.group_id,
        "enable.auto.commit": False,
        "auto.offset.reset": settings.kafka.auto_offset_reset,
        "security.protocol": settings.kafka.security_protocol.upper(),
    }
    if settings.kafka.username and settings.kafka.password:
        config["sasl.mechanisms"] = "PLAIN"
        config["sasl.username"] = settings.kafka.username
        config["sasl.password"] = settings.kafka.password
    consumer = Consumer(config)
    consumer.subscribe([settings.kafka.topic])
    return consumer


async def _download_blob(blob_name: str) -> bytes:
    async with create_s3_client() as client:
        response = await client.get_object(Bucket=service_settings.s3.bucket, Key=blob_name)
        return await response["Body"].read()


async def _process_message(message: ImportMessage) -> None:
    async with AsyncSessionLocal() as session:
        await import_dataset_entries(
            session,
            message.file_upload_id,
            _download_blob,
            max_entries=settings.importer.max_entries,
        )


async def _consume(stop_event: asyncio.Event) -> None:
    consumer = _create_consumer()
    try:
        while not stop_event.is_set():
            msg = await asyncio.to_thread(consumer.poll, 1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                logger.error("kafka error: %s", msg.error())
                continue

            try:
                import_message = _parse_message(msg.value())
            except ValueError as exc:
                logger.error("skipping invalid message: %s", exc)
                consumer.commit(message=msg, asynchronous=False)
                continue

            try:
                await _process_message(import_message)
            except Exception:
                # left uncommitted; the reconciliation sweep picks the upload up again
                logger.exception("import of file upload %s crashed", import_message.file_upload_id)
                continue
            try:
                consumer.commit(message=msg, asynchronous=False)
            except KafkaException as exc:
                logger.error("failed to commit offset: %s", exc)
    finally:
        consumer.close()


async def _wait(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep for ``seconds``; return True if the worker is stopping."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def _reconcile(stop_event: asyncio.Event) -> None:
    queue: ImportQueue | None = None
    try:
        while not await _wait(stop_event, settings.importer.reconcile_interval_seconds):
            try:
                if queue is None:
                    queue = ImportQueue(await asyncio.to_thread(get_kafka_producer))
                async with AsyncSessionLocal() as session:
                    await reconcile_stale_uploads(
                        session,
                        queue,
                        pending_after=timedelta(seconds=settings.importer.pending_timeout_seconds),
                        processing_after=timedelta(
                            seconds=settings.importer.processing_timeout_seconds
                        ),
                    )
            except Exception:
                logger.exception("upload reconciliation sweep failed")
    finally:
        if queue is not None:
            queue.close()


def main() -> None:
    uvicorn.run(
        "import_worker.main:app",
        host=settings.api.host,
        port=settings.api.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
