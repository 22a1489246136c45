"""Upload registry: file upload rows, their status lifecycle and import jobs."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from fastapi import HTTPException, status
from kafka.errors import KafkaError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .access import not_found, require_can_modify_project
from .kafka_client import ImportQueue
from .models import (
    Dataset,
    DatasetFileUpload,
    FileUploadStatus,
    InvalidStatusTransition,
    utcnow,
)
from .schemas import FileUploadCreate, FileUploadOut, OperationResult, error, success

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1024


async def advance_status(
    session: AsyncSession,
    file_upload_id: str,
    current: FileUploadStatus,
    target: FileUploadStatus,
    **values: Any,
) -> bool:
    """Move an upload from ``current`` to ``target`` if it is still in ``current``.

    Returns False when another writer moved the row first. Does not commit.
    """
    if not current.can_transition_to(target):
        raise InvalidStatusTransition(
            f"file upload cannot move from {current.value} to {target.value}"
        )
    if "error_message" in values and values["error_message"] is not None:
        values["error_message"] = values["error_message"][:MAX_ERROR_MESSAGE_LENGTH]
    result = await session.execute(
        update(DatasetFileUpload)
        .where(DatasetFileUpload.id == file_upload_id, DatasetFileUpload.status == current)
        .values(status=target, updated_at=utcnow(), **values)
    )
    return result.rowcount == 1


async def enqueue_upload(queue: ImportQueue, file_upload_id: str) -> None:
    await asyncio.to_thread(queue.enqueue_import, file_upload_id)


async def _enqueue_or_503(queue: ImportQueue, file_upload_id: str) -> None:
    try:
        await enqueue_upload(queue, file_upload_id)
    except KafkaError as exc:
        logger.exception("failed to enqueue import for file upload %s", file_upload_id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"failed to enqueue import for file upload {file_upload_id}; it stays pending",
        ) from exc


async def register_upload(
    session: AsyncSession,
    queue: ImportQueue,
    dataset: Dataset,
    payload: FileUploadCreate,
) -> OperationResult:
    """Record a finished direct-to-storage upload and schedule its import.

    The row is committed as PENDING before the job is published. If publishing
    fails the request ends with 503 and the row stays PENDING, to be picked up
    again by ``requeue_upload`` or ``reconcile_stale_uploads``.
    """
    upload = DatasetFileUpload(
        dataset_id=dataset.id,
        blob_name=payload.blob_name,
        file_name=payload.file_name,
        file_size=payload.file_size,
        status=FileUploadStatus.PENDING,
        visible=True,
        uploaded_at=utcnow(),
    )
    session.add(upload)
    await session.commit()
    await session.refresh(upload)
    logger.info("registered file upload %s for dataset %s", upload.id, dataset.id)

    await _enqueue_or_503(queue, upload.id)
    return success(FileUploadOut.model_validate(upload))


async def requeue_upload(queue: ImportQueue, upload: DatasetFileUpload) -> OperationResult:
    if upload.status is not FileUploadStatus.PENDING:
        return error(f"File upload is already {upload.status.value}")
    await _enqueue_or_503(queue, upload.id)
    logger.info("re-enqueued import for file upload %s", upload.id)
    return success(FileUploadOut.model_validate(upload))


async def list_uploads(session: AsyncSession, dataset_id: str) -> list[DatasetFileUpload]:
    result = await session.scalars(
        select(DatasetFileUpload)
        .where(DatasetFileUpload.dataset_id == dataset_id, DatasetFileUpload.visible.is_(True))
        .order_by(DatasetFileUpload.created_at.desc())
    )
    return list(result.all())


async def hide_uploads(
    session: AsyncSession, user_id: int, file_upload_ids: list[str]
) -> OperationResult:
    """Soft-delete uploads after authorizing every project the ids belong to.

    Hiding never touches status; an import already in flight still finishes.
    """
    if not file_upload_ids:
        return error("No file upload ids provided")

    unique_ids = set(file_upload_ids)
    rows = (
        await session.execute(
            select(DatasetFileUpload.id, Dataset.project_id)
            .join(Dataset, Dataset.id == DatasetFileUpload.dataset_id)
            .where(DatasetFileUpload.id.in_(unique_ids))
        )
    ).all()
    if len(rows) != len(unique_ids):
        raise not_found("file upload")

    for project_id in sorted({project_id for _, project_id in rows}):
        await require_can_modify_project(session, project_id, user_id)

    await session.execute(
        update(DatasetFileUpload)
        .where(DatasetFileUpload.id.in_(unique_ids))
        .values(visible=False, updated_at=utcnow())
    )
    await session.commit()
    logger.info("hid %s file uploads", len(unique_ids))
    return success(len(unique_ids))


@dataclass
class ReconcileReport:
    requeued: list[str] = field(default_factory=list)
    timed_out: list[str] = field(default_factory=list)


async def reconcile_stale_uploads(
    session: AsyncSession,
    queue: ImportQueue,
    pending_after: timedelta,
    processing_after: timedelta,
    now: datetime | None = None,
) -> ReconcileReport:
    """Re-enqueue uploads stuck in PENDING and fail uploads stuck in PROCESSING."""
    now = now or utcnow()
    report = ReconcileReport()

    stuck_processing = await session.scalars(
        select(DatasetFileUpload.id).where(
            DatasetFileUpload.status == FileUploadStatus.PROCESSING,
            DatasetFileUpload.updated_at < now - processing_after,
        )
    )
    for file_upload_id in stuck_processing.all():
        moved = await advance_status(
            session,
            file_upload_id,
            FileUploadStatus.PROCESSING,
            FileUploadStatus.ERROR,
            error_message="import timed out",
        )
        if moved:
            report.timed_out.append(file_upload_id)
    await session.commit()

    # updated_at of a PENDING row is the time its job was last published
    stuck_pending = await session.scalars(
        select(DatasetFileUpload.id)
        .where(
            DatasetFileUpload.status == FileUploadStatus.PENDING,
            DatasetFileUpload.updated_at < now - pending_after,
        )
        .order_by(DatasetFileUpload.created_at)
    )
    for file_upload_id in stuck_pending.all():
        try:
            await enqueue_upload(queue, file_upload_id)
        except KafkaError:
            logger.exception("failed to re-enqueue file upload %s", file_upload_id)
            break
        await session.execute(
            update(DatasetFileUpload)
            .where(
                DatasetFileUpload.id == file_upload_id,
                DatasetFileUpload.status == FileUploadStatus.PENDING,
            )
            .values(updated_at=now)
        )
        await session.commit()
        report.requeued.append(file_upload_id)

    if report.requeued or report.timed_out:
        logger.info(
            "reconciled uploads: %s re-enqueued, %s timed out",
            len(report.requeued),
            len(report.timed_out),
        )
    return report
