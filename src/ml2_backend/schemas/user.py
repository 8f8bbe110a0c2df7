"""User schemas."""

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UserCreate(BaseModel):
    """Schema for registering a user."""

    # Also used as a directory name
    name: str = Field(..., min_length=1, max_length=255, pattern=r"^[A-Za-z0-9_.-]+$")
    email: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject names that resolve to the storage root or its parent."""
        if set(v) == {"."}:
            raise ValueError("Name cannot consist of dots only")
        return v


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str | None = None
