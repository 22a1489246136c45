from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from .models import EntrySplit, FileUploadStatus, ProjectRole


class UserCreate(BaseModel):
    login: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)


class UserOut(BaseModel):
    id: int
    login: str
    created_at: datetime

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class OperationResult(BaseModel):
    """Envelope for mutations that can fail in an expected, user-facing way."""

    status: Literal["success", "error"]
    message: str | None = None
    payload: Any = None


def success(payload: Any = None, message: str | None = None) -> OperationResult:
    return OperationResult(status="success", payload=payload, message=message)


def error(message: str) -> OperationResult:
    return OperationResult(status="error", message=message)


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class ProjectUpdate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class ProjectDelete(BaseModel):
    confirm_name: str


class ProjectOut(BaseModel):
    id: str
    name: str
    created_at: datetime

    class Config:
        from_attributes = True


class ProjectWithRoleOut(ProjectOut):
    role: ProjectRole


class MemberIn(BaseModel):
    login: str
    role: ProjectRole = ProjectRole.MEMBER


class MemberOut(BaseModel):
    user_id: int
    login: str
    role: ProjectRole
    created_at: datetime


class DatasetCreate(BaseModel):
    project_id: str
    name: str = Field(min_length=1, max_length=255)


class DatasetUpdate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class DatasetOut(BaseModel):
    id: str
    project_id: str
    name: str
    created_at: datetime
    updated_at: datetime
    entry_count: int = 0

    class Config:
        from_attributes = True


class DatasetDetailOut(DatasetOut):
    project: ProjectOut


class DatasetEntryOut(BaseModel):
    id: str
    dataset_id: str
    input: Any
    output: Any | None
    split: EntrySplit
    import_id: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class DatasetEntryPage(BaseModel):
    entries: list[DatasetEntryOut]
    count: int


class UploadUrlOut(BaseModel):
    url: str
    container: str
    blob_name: str
    expires_in: int


class FileUploadCreate(BaseModel):
    blob_name: str = Field(min_length=1, max_length=1024)
    file_name: str = Field(min_length=1, max_length=255)
    file_size: int = Field(ge=0)


class FileUploadOut(BaseModel):
    id: str
    dataset_id: str
    blob_name: str
    file_name: str
    file_size: int
    status: FileUploadStatus
    visible: bool
    error_message: str | None
    entries_imported: int
    uploaded_at: datetime
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class FileUploadHide(BaseModel):
    file_upload_ids: list[str]
