"""API routers package."""

from . import health, projects, users

__all__ = ["health", "projects", "users"]
