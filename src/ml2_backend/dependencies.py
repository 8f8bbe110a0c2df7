"""FastAPI dependencies: identity, repositories and pipeline wiring."""

from functools import lru_cache

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from .artifacts import ArtifactService
from .config import Settings, get_settings
from .database import get_async_session
from .exceptions import Unauthenticated
from .models import User
from .pipeline import ProjectLocks, ToolInvoker, get_project_locks
from .pipeline.orchestrator import ProjectPipeline
from .repository import ProjectRepository, UserRepository
from .storage import StorageService


@lru_cache
def get_storage() -> StorageService:
    return StorageService(get_settings())


@lru_cache
def get_invoker() -> ToolInvoker:
    return ToolInvoker(reader_grace_sec=get_settings().reader_grace_sec)


async def get_user_repository(db: AsyncSession = Depends(get_async_session)) -> UserRepository:
    return UserRepository(db)


async def get_current_user(
    x_user_name: str | None = Header(default=None, alias="X-User-Name"),
    users: UserRepository = Depends(get_user_repository),
) -> User:
    """Get current user from the X-User-Name header.

    Raises Unauthenticated if the header is missing or names no user.
    """
    if not x_user_name:
        raise Unauthenticated("No authenticated user")
    user = await users.find_by_name(x_user_name)
    if user is None:
        raise Unauthenticated(f"Unknown user {x_user_name}")
    return user


async def get_pipeline(
    db: AsyncSession = Depends(get_async_session),
    storage: StorageService = Depends(get_storage),
    invoker: ToolInvoker = Depends(get_invoker),
    settings: Settings = Depends(get_settings),
    locks: ProjectLocks = Depends(get_project_locks),
) -> ProjectPipeline:
    return ProjectPipeline(ProjectRepository(db), storage, invoker, settings, locks)


async def get_artifacts(
    storage: StorageService = Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> ArtifactService:
    return ArtifactService(storage, settings)
