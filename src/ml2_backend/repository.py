"""Record store for projects and users.

Thin keyed access over an AsyncSession. A save is the only point where
in-memory mutations become visible to other readers.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Project, User


class ProjectRepository:
    """Keyed store for Project records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_by_id(self, project_id: int) -> Project | None:
        return await self.session.get(Project, project_id)

    async def find_by_original_name(self, name: str) -> Project | None:
        query = select(Project).where(Project.original_file_name == name)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_for_owner(self, owner_id: int) -> list[Project]:
        query = select(Project).where(Project.owner_id == owner_id).order_by(Project.id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(Project))
        return result.scalar_one()

    async def save(self, project: Project) -> Project:
        """Persist the project atomically and refresh it."""
        self.session.add(project)
        await self.session.commit()
        await self.session.refresh(project)
        return project

    async def delete(self, project: Project) -> None:
        await self.session.delete(project)
        await self.session.commit()

    async def discard(self) -> None:
        """Drop uncommitted in-memory changes."""
        await self.session.rollback()


class UserRepository:
    """Keyed store for User records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_by_name(self, name: str) -> User | None:
        query = select(User).where(User.name == name)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def save(self, user: User) -> User:
        self.session.add(user)
        await self.session.commit()
        await self.session.refresh(user)
        return user
