"""Database models package."""

from .base import Base
from .project import Project
from .user import User

__all__ = [
    "Base",
    "Project",
    "User",
]
