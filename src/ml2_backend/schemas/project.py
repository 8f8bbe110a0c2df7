"""Project schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class ProjectRead(BaseModel):
    """Schema for reading a project. Storage paths are never exposed."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    upload_date: datetime
    original_file_name: str
    converted_file_name: str | None = None
    thingml_file_name: str | None = None
    generated_project_name: str | None = None
    dataset_name: str | None = None
    has_output: bool = False


class MessageResponse(BaseModel):
    message: str


class ExecutionResponse(MessageResponse):
    """Result of a deadline-bound run."""

    outcome: str
    finished: bool
