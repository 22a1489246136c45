from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .access import require_can_modify_project, require_can_view_project, require_project_admin
from .database import get_session
from .models import Project, ProjectMember, ProjectRole, User
from .schemas import (
    MemberIn,
    MemberOut,
    OperationResult,
    ProjectCreate,
    ProjectDelete,
    ProjectOut,
    ProjectUpdate,
    ProjectWithRoleOut,
    Token,
    UserCreate,
    UserOut,
    error,
    success,
)
from .security import create_access_token, get_current_user_id, hash_password, verify_password

router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.post("/auth/register", response_model=UserOut, status_code=status.HTTP_201_CREATED)
async def register_user(payload: UserCreate, session: AsyncSession = Depends(get_session)):
    hashed_password = hash_password(payload.password)
    user = User(login=payload.login, password_hash=hashed_password)
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="login already exists")
    await session.refresh(user)
    return user


@router.post("/auth/login", response_model=Token)
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(), session: AsyncSession = Depends(get_session)
):
    user = await session.scalar(select(User).where(User.login == form_data.username))
    if user is None or not verify_password(user.password_hash, form_data.password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid credentials")
    token = create_access_token(user_id=user.id)
    return Token(access_token=token)


@router.get("/auth/me", response_model=UserOut)
async def get_current_user(
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
    return user


@router.post("/projects", response_model=ProjectOut, status_code=status.HTTP_201_CREATED)
async def create_project(
    payload: ProjectCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    project = Project(name=payload.name)
    project.members.append(ProjectMember(user_id=user_id, role=ProjectRole.ADMIN))
    session.add(project)
    await session.commit()
    await session.refresh(project)
    return project


@router.get("/projects", response_model=list[ProjectWithRoleOut])
async def list_projects(
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    result = await session.execute(
        select(Project, ProjectMember.role)
        .join(ProjectMember, ProjectMember.project_id == Project.id)
        .where(ProjectMember.user_id == user_id)
        .order_by(Project.created_at.desc())
    )
    return [
        ProjectWithRoleOut(id=project.id, name=project.name, created_at=project.created_at, role=role)
        for project, role in result.all()
    ]


@router.get("/projects/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    return await require_can_view_project(session, project_id, user_id)


@router.patch("/projects/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: str,
    payload: ProjectUpdate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    project = await require_can_modify_project(session, project_id, user_id)
    project.name = payload.name
    await session.commit()
    await session.refresh(project)
    return project


@router.delete("/projects/{project_id}", response_model=OperationResult)
async def delete_project(
    project_id: str,
    payload: ProjectDelete,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    project = await require_project_admin(session, project_id, user_id)
    if payload.confirm_name != project.name:
        return error("Project name does not match")
    await session.delete(project)
    await session.commit()
    return success(message="Project deleted")


async def _member_out(session: AsyncSession, project_id: str) -> list[MemberOut]:
    result = await session.execute(
        select(ProjectMember, User.login)
        .join(User, User.id == ProjectMember.user_id)
        .where(ProjectMember.project_id == project_id)
        .order_by(ProjectMember.created_at)
    )
    return [
        MemberOut(
            user_id=member.user_id, login=login, role=member.role, created_at=member.created_at
        )
        for member, login in result.all()
    ]


@router.get("/projects/{project_id}/members", response_model=list[MemberOut])
async def list_members(
    project_id: str,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    await require_can_view_project(session, project_id, user_id)
    return await _member_out(session, project_id)


@router.post("/projects/{project_id}/members", response_model=OperationResult)
async def add_member(
    project_id: str,
    payload: MemberIn,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    await require_project_admin(session, project_id, user_id)
    user = await session.scalar(select(User).where(User.login == payload.login))
    if user is None:
        return error(f"No user with login {payload.login}")

    member = await session.scalar(
        select(ProjectMember).where(
            ProjectMember.project_id == project_id, ProjectMember.user_id == user.id
        )
    )
    if member is None:
        session.add(ProjectMember(project_id=project_id, user_id=user.id, role=payload.role))
    else:
        if member.role is ProjectRole.ADMIN and payload.role is not ProjectRole.ADMIN:
            if await _admin_count(session, project_id) <= 1:
                return error("A project must keep at least one admin")
        member.role = payload.role
    await session.commit()
    return success(await _member_out(session, project_id))


async def _admin_count(session: AsyncSession, project_id: str) -> int:
    return await session.scalar(
        select(func.count(ProjectMember.id)).where(
            ProjectMember.project_id == project_id, ProjectMember.role == ProjectRole.ADMIN
        )
    )


@router.delete("/projects/{project_id}/members/{member_user_id}", response_model=OperationResult)
async def remove_member(
    project_id: str,
    member_user_id: int,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    await require_project_admin(session, project_id, user_id)
    member = await session.scalar(
        select(ProjectMember).where(
            ProjectMember.project_id == project_id, ProjectMember.user_id == member_user_id
        )
    )
    if member is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="member not found")
    if member.role is ProjectRole.ADMIN and await _admin_count(session, project_id) <= 1:
        return error("A project must keep at least one admin")
    await session.delete(member)
    await session.commit()
    return success(message="Member removed")
