import os

os.environ.setdefault("POSTGRES_URL", "sqlite+aiosqlite://")
os.environ.setdefault("S3_BUCKET", "test-bucket")
os.environ.setdefault("S3_ENDPOINT_URL", "http://localhost:9000")
os.environ.setdefault("S3_ACCESS_KEY_ID", "test")
os.environ.setdefault("S3_SECRET_ACCESS_KEY", "test")

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from kafka.errors import KafkaTimeoutError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.pool import StaticPool

from dataset_service import app
from dataset_service.clients import get_import_queue, get_s3_client
from dataset_service.database import Base, build_engine, get_session
from dataset_service.models import (
    Dataset,
    DatasetEntry,
    DatasetFileUpload,
    FileUploadStatus,
    Project,
    ProjectMember,
    ProjectRole,
    User,
    utcnow,
)
from dataset_service.security import create_access_token
from import_worker.importer import input_hash


class FakeImportQueue:
    def __init__(self):
        self.enqueued: list[str] = []
        self.fail = False

    def enqueue_import(self, file_upload_id: str) -> None:
        if self.fail:
            raise KafkaTimeoutError("broker unavailable")
        self.enqueued.append(file_upload_id)

    def close(self) -> None:
        pass


class FakeS3Client:
    def __init__(self):
        self.presigned: list[dict[str, Any]] = []

    async def generate_presigned_url(self, client_method, Params, ExpiresIn, HttpMethod=None):
        self.presigned.append(
            {"method": client_method, "params": Params, "expires": ExpiresIn, "http": HttpMethod}
        )
        return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


@dataclass
class Caller:
    id: int
    login: str
    headers: dict[str, str] = field(default_factory=dict)


@pytest.fixture
async def engine():
    engine = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def import_queue():
    return FakeImportQueue()


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
async def client(session_factory, import_queue, s3_client):
    async def _get_session():
        async with session_factory() as session:
            yield session

    async def _get_s3_client():
        yield s3_client

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_import_queue] = lambda: import_queue
    app.dependency_overrides[get_s3_client] = _get_s3_client
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(session_factory):
    async def _make(login: str) -> Caller:
        async with session_factory() as session:
            user = User(login=login, password_hash="not-used")
            session.add(user)
            await session.commit()
            token = create_access_token(user.id)
            return Caller(user.id, login, {"Authorization": f"Bearer {token}"})

    return _make


@pytest.fixture
def make_project(session_factory):
    async def _make(name: str, members: list[tuple[Caller, ProjectRole]]) -> str:
        async with session_factory() as session:
            project = Project(name=name)
            session.add(project)
            await session.flush()
            for caller, role in members:
                session.add(ProjectMember(project_id=project.id, user_id=caller.id, role=role))
            await session.commit()
            return project.id

    return _make


@pytest.fixture
def make_dataset(session_factory):
    async def _make(project_id: str, name: str = "dataset", **values: Any) -> str:
        async with session_factory() as session:
            dataset = Dataset(project_id=project_id, name=name, **values)
            session.add(dataset)
            await session.commit()
            return dataset.id

    return _make


@pytest.fixture
def make_entries(session_factory):
    async def _make(dataset_id: str, inputs: list[Any], outdated: bool = False) -> list[str]:
        async with session_factory() as session:
            entries = [
                DatasetEntry(
                    dataset_id=dataset_id,
                    input=value,
                    output={"content": "ok"},
                    input_hash=input_hash(value),
                    outdated=outdated,
                )
                for value in inputs
            ]
            session.add_all(entries)
            await session.commit()
            return [entry.id for entry in entries]

    return _make


@pytest.fixture
def make_upload(session_factory):
    async def _make(
        dataset_id: str,
        file_name: str = "data.jsonl",
        blob_name: str | None = None,
        status: FileUploadStatus = FileUploadStatus.PENDING,
        visible: bool = True,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> str:
        now = utcnow()
        async with session_factory() as session:
            upload = DatasetFileUpload(
                dataset_id=dataset_id,
                blob_name=blob_name or f"blobs/{file_name}",
                file_name=file_name,
                file_size=128,
                status=status,
                visible=visible,
                uploaded_at=now,
                created_at=created_at or now,
                updated_at=updated_at or created_at or now,
            )
            session.add(upload)
            await session.commit()
            return upload.id

    return _make


@pytest.fixture
def fetch(session_factory):
    async def _fetch(model, ident):
        async with session_factory() as session:
            return await session.get(model, ident)

    return _fetch


@pytest.fixture
def count_rows(session_factory):
    async def _count(model, *criteria) -> int:
        async with session_factory() as session:
            return await session.scalar(select(func.count()).select_from(model).where(*criteria))

    return _count
