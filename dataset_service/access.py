"""Project-scoped authorization.

Every dataset and upload operation resolves its target to the owning project
and checks the caller's membership role before touching anything else.
"""

from enum import Enum

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Dataset, DatasetFileUpload, Project, ProjectMember, ProjectRole


class AccessLevel(str, Enum):
    VIEW = "view"
    MODIFY = "modify"
    ADMIN = "admin"


_ROLES_BY_LEVEL: dict[AccessLevel, frozenset[ProjectRole]] = {
    AccessLevel.VIEW: frozenset({ProjectRole.ADMIN, ProjectRole.MEMBER, ProjectRole.VIEWER}),
    AccessLevel.MODIFY: frozenset({ProjectRole.ADMIN, ProjectRole.MEMBER}),
    AccessLevel.ADMIN: frozenset({ProjectRole.ADMIN}),
}


def not_found(kind: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{kind} not found")


async def require_project_access(
    session: AsyncSession, project_id: str, user_id: int, level: AccessLevel
) -> Project:
    project = await session.get(Project, project_id)
    if project is None:
        raise not_found("project")

    role = await session.scalar(
        select(ProjectMember.role).where(
            ProjectMember.project_id == project_id, ProjectMember.user_id == user_id
        )
    )
    if role is None or role not in _ROLES_BY_LEVEL[level]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"{level.value} access to project denied",
        )
    return project


async def require_can_view_project(session: AsyncSession, project_id: str, user_id: int) -> Project:
    return await require_project_access(session, project_id, user_id, AccessLevel.VIEW)


async def require_can_modify_project(
    session: AsyncSession, project_id: str, user_id: int
) -> Project:
    return await require_project_access(session, project_id, user_id, AccessLevel.MODIFY)


async def require_project_admin(session: AsyncSession, project_id: str, user_id: int) -> Project:
    return await require_project_access(session, project_id, user_id, AccessLevel.ADMIN)


async def get_dataset_or_404(session: AsyncSession, dataset_id: str) -> Dataset:
    dataset = await session.get(Dataset, dataset_id)
    if dataset is None:
        raise not_found("dataset")
    return dataset


async def get_authorized_dataset(
    session: AsyncSession, dataset_id: str, user_id: int, level: AccessLevel
) -> Dataset:
    dataset = await get_dataset_or_404(session, dataset_id)
    await require_project_access(session, dataset.project_id, user_id, level)
    return dataset


async def get_authorized_upload(
    session: AsyncSession, file_upload_id: str, user_id: int, level: AccessLevel
) -> DatasetFileUpload:
    row = (
        await session.execute(
            select(DatasetFileUpload, Dataset.project_id)
            .join(Dataset, Dataset.id == DatasetFileUpload.dataset_id)
            .where(DatasetFileUpload.id == file_upload_id)
        )
    ).first()
    if row is None:
        raise not_found("file upload")
    upload, project_id = row
    await require_project_access(session, project_id, user_id, level)
    return upload
