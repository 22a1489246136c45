from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .access import (
    AccessLevel,
    get_authorized_dataset,
    get_authorized_upload,
    get_dataset_or_404,
    require_can_modify_project,
    require_can_view_project,
)
from .clients import get_import_queue, get_s3_client, issue_upload_url
from .database import get_session
from .kafka_client import ImportQueue
from .models import Dataset, DatasetEntry
from .schemas import (
    DatasetCreate,
    DatasetDetailOut,
    DatasetEntryOut,
    DatasetEntryPage,
    DatasetOut,
    DatasetUpdate,
    FileUploadCreate,
    FileUploadHide,
    FileUploadOut,
    OperationResult,
    ProjectOut,
    UploadUrlOut,
    success,
)
from .security import get_current_user_id
from .uploads import hide_uploads, list_uploads, register_upload, requeue_upload

router = APIRouter()


async def _entry_counts(session: AsyncSession, dataset_ids: list[str]) -> dict[str, int]:
    """Count non-outdated entries per dataset. Always aggregated, never cached."""
    if not dataset_ids:
        return {}
    result = await session.execute(
        select(DatasetEntry.dataset_id, func.count(DatasetEntry.id))
        .where(DatasetEntry.dataset_id.in_(dataset_ids), DatasetEntry.outdated.is_(False))
        .group_by(DatasetEntry.dataset_id)
    )
    return {dataset_id: count for dataset_id, count in result.all()}


def _dataset_out(dataset: Dataset, entry_count: int) -> DatasetOut:
    return DatasetOut(
        id=dataset.id,
        project_id=dataset.project_id,
        name=dataset.name,
        created_at=dataset.created_at,
        updated_at=dataset.updated_at,
        entry_count=entry_count,
    )


@router.get("/datasets/{dataset_id}", response_model=DatasetDetailOut)
async def get_dataset(
    dataset_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    dataset = await get_dataset_or_404(session, dataset_id)
    project = await require_can_view_project(session, dataset.project_id, user_id)
    counts = await _entry_counts(session, [dataset.id])
    return DatasetDetailOut(
        **_dataset_out(dataset, counts.get(dataset.id, 0)).model_dump(),
        project=ProjectOut.model_validate(project),
    )


@router.get("/projects/{project_id}/datasets", response_model=list[DatasetOut])
async def list_datasets(
    project_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    await require_can_view_project(session, project_id, user_id)
    result = await session.scalars(
        select(Dataset).where(Dataset.project_id == project_id).order_by(Dataset.created_at.desc())
    )
    datasets = list(result.all())
    counts = await _entry_counts(session, [dataset.id for dataset in datasets])
    return [_dataset_out(dataset, counts.get(dataset.id, 0)) for dataset in datasets]


@router.post("/datasets", response_model=OperationResult, status_code=status.HTTP_201_CREATED)
async def create_dataset(
    payload: DatasetCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    await require_can_modify_project(session, payload.project_id, user_id)
    dataset = Dataset(project_id=payload.project_id, name=payload.name)
    session.add(dataset)
    await session.commit()
    return success(dataset.id)


@router.patch("/datasets/{dataset_id}", response_model=OperationResult)
async def update_dataset(
    dataset_id: str,
    payload: DatasetUpdate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    dataset = await get_authorized_dataset(session, dataset_id, user_id, AccessLevel.MODIFY)
    dataset.name = payload.name
    await session.commit()
    return success(message="Dataset updated")


@router.delete("/datasets/{dataset_id}", response_model=OperationResult)
async def delete_dataset(
    dataset_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    dataset = await get_authorized_dataset(session, dataset_id, user_id, AccessLevel.MODIFY)
    await session.delete(dataset)
    await session.commit()
    return success(message="Dataset deleted")


@router.get("/datasets/{dataset_id}/entries", response_model=DatasetEntryPage)
async def list_dataset_entries(
    dataset_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    await get_authorized_dataset(session, dataset_id, user_id, AccessLevel.VIEW)
    result = await session.scalars(
        select(DatasetEntry)
        .where(DatasetEntry.dataset_id == dataset_id, DatasetEntry.outdated.is_(False))
        .order_by(DatasetEntry.created_at.desc(), DatasetEntry.id)
        .offset(offset)
        .limit(limit)
    )
    entries = [DatasetEntryOut.model_validate(entry) for entry in result.all()]
    counts = await _entry_counts(session, [dataset_id])
    return DatasetEntryPage(entries=entries, count=counts.get(dataset_id, 0))


@router.get("/projects/{project_id}/upload-url", response_model=UploadUrlOut)
async def get_upload_url(
    project_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    s3_client=Depends(get_s3_client),
):
    await require_can_modify_project(session, project_id, user_id)
    return await issue_upload_url(s3_client, project_id)


@router.post("/datasets/{dataset_id}/uploads", response_model=OperationResult)
async def create_file_upload(
    dataset_id: str,
    payload: FileUploadCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    queue: ImportQueue = Depends(get_import_queue),
):
    dataset = await get_authorized_dataset(session, dataset_id, user_id, AccessLevel.MODIFY)
    return await register_upload(session, queue, dataset, payload)


@router.get("/datasets/{dataset_id}/uploads", response_model=list[FileUploadOut])
async def list_file_uploads(
    dataset_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    await get_authorized_dataset(session, dataset_id, user_id, AccessLevel.VIEW)
    return await list_uploads(session, dataset_id)


@router.post("/uploads/hide", response_model=OperationResult)
async def hide_file_uploads(
    payload: FileUploadHide,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    return await hide_uploads(session, user_id, payload.file_upload_ids)


@router.get("/uploads/{file_upload_id}", response_model=FileUploadOut)
async def get_file_upload(
    file_upload_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    return await get_authorized_upload(session, file_upload_id, user_id, AccessLevel.VIEW)


@router.post("/uploads/{file_upload_id}/enqueue", response_model=OperationResult)
async def enqueue_file_upload(
    file_upload_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    queue: ImportQueue = Depends(get_import_queue),
):
    upload = await get_authorized_upload(session, file_upload_id, user_id, AccessLevel.MODIFY)
    return await requeue_upload(queue, upload)
