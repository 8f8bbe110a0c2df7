"""Project model."""

from datetime import datetime
from pathlib import Path

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

PATH_LENGTH = 1024


class Project(Base):
    """Project model - the artifacts of one uploaded graphical model.

    Artifacts are strictly ordered: original -> converted -> thingml ->
    generated project -> generated output.
    """

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False, index=True
    )
    upload_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    original_file_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    original_file_path: Mapped[str | None] = mapped_column(String(PATH_LENGTH), unique=True)

    converted_file_name: Mapped[str | None] = mapped_column(String(255))
    converted_file_path: Mapped[str | None] = mapped_column(String(PATH_LENGTH), unique=True)

    thingml_file_name: Mapped[str | None] = mapped_column(String(255))
    thingml_file_path: Mapped[str | None] = mapped_column(String(PATH_LENGTH), unique=True)

    generated_project_name: Mapped[str | None] = mapped_column(String(255))
    generated_project_path: Mapped[str | None] = mapped_column(String(PATH_LENGTH), unique=True)

    generated_output_path: Mapped[str | None] = mapped_column(String(PATH_LENGTH), unique=True)

    dataset_name: Mapped[str | None] = mapped_column(String(255))
    dataset_path: Mapped[str | None] = mapped_column(String(PATH_LENGTH), unique=True)

    @property
    def model_stem(self) -> str:
        """Generated model file name without its `.thingml` suffix."""
        if self.thingml_file_name:
            return self.thingml_file_name.removesuffix(".thingml")
        return Path(self.original_file_name).stem

    @property
    def is_generated(self) -> bool:
        return self.generated_project_path is not None

    @property
    def has_output(self) -> bool:
        return self.generated_output_path is not None

    def owned_paths(self) -> list[str]:
        """Every file path the project owns, generated project excluded."""
        paths = [
            self.original_file_path,
            self.converted_file_path,
            self.thingml_file_path,
            self.generated_output_path,
            self.dataset_path,
        ]
        return [p for p in paths if p]
