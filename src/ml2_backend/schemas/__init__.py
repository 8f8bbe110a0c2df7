"""Pydantic schemas for the HTTP layer."""

from .project import ExecutionResponse, MessageResponse, ProjectRead
from .user import UserCreate, UserRead

__all__ = [
    "ExecutionResponse",
    "MessageResponse",
    "ProjectRead",
    "UserCreate",
    "UserRead",
]
