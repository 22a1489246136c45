import threading
import uuid

import aiobotocore.session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import HTTPException, Request, status
from kafka.errors import KafkaError

from .config import settings
from .kafka_client import ImportQueue, get_kafka_producer
from .schemas import UploadUrlOut

_aio_session = aiobotocore.session.get_session()


def create_s3_client():
    return _aio_session.create_client(
        "s3",
        endpoint_url=settings.s3.endpoint_url,
        region_name=settings.s3.region,
        aws_access_key_id=settings.s3.access_key_id,
        aws_secret_access_key=settings.s3.secret_access_key,
        config=Config(signature_version="s3v4"),
    )


async def get_s3_client():
    async with create_s3_client() as client:
        yield client


_import_queue_lock = threading.Lock()


def get_import_queue(request: Request) -> ImportQueue:
    """Return the app-wide import queue, connecting the producer on first use.

    FastAPI runs this sync dependency in its threadpool, so creation is
    serialized to keep a single producer per app.
    """
    queue = getattr(request.app.state, "import_queue", None)
    if queue is not None:
        return queue
    with _import_queue_lock:
        queue = getattr(request.app.state, "import_queue", None)
        if queue is None:
            try:
                queue = ImportQueue(get_kafka_producer())
            except KafkaError as exc:
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail=f"failed to connect to import queue: {exc}",
                )
            request.app.state.import_queue = queue
    return queue


def blob_prefix(project_id: str) -> str:
    return f"datasets/{project_id}/"


async def issue_upload_url(s3_client, project_id: str) -> UploadUrlOut:
    """Presign a PUT for one fresh object key under the project's prefix.

    The URL only allows writing that single key and expires after
    ``S3_UPLOAD_URL_EXPIRES_SECONDS``; the file bytes never pass through us.
    """
    blob_name = f"{blob_prefix(project_id)}{uuid.uuid4()}"
    expires_in = settings.s3.upload_url_expires_seconds
    try:
        url = await s3_client.generate_presigned_url(
            "put_object",
            Params={"Bucket": settings.s3.bucket, "Key": blob_name},
            ExpiresIn=expires_in,
            HttpMethod="PUT",
        )
    except (BotoCoreError, ClientError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="failed to issue upload url",
        ) from exc
    return UploadUrlOut(
        url=url, container=settings.s3.bucket, blob_name=blob_name, expires_in=expires_in
    )
