"""Downloadable artifacts of a project: single files and zip archives."""

import io
from pathlib import Path
import zipfile

import structlog

from .config import Settings
from .exceptions import ArtifactNotFoundError, NotGeneratedError
from .models import Project, User
from .storage import StorageService

logger = structlog.get_logger()


class ArtifactService:
    """Resolves the files clients may download.

    Callers are expected to have checked project ownership already.
    """

    def __init__(self, storage: StorageService, settings: Settings) -> None:
        self.storage = storage
        self.settings = settings

    def original_file(self, user: User, project: Project) -> Path:
        if project.original_file_path is None:
            raise ArtifactNotFoundError("Project has no original file")
        return self.storage.load_file_by_name(user, Path(project.original_file_path).name)

    def converted_file(self, project: Project) -> Path:
        return self._required(project.converted_file_path, "converted file")

    def thingml_file(self, project: Project) -> Path:
        return self._required(project.thingml_file_path, ".thingml file")

    def dataset_file(self, project: Project) -> Path:
        return self._required(project.dataset_path, "dataset")

    def generated_output(self, project: Project) -> Path:
        if project.generated_output_path is None:
            raise ArtifactNotFoundError("Project has not been run yet, can not retrieve generated output.")
        return self.storage.load_file_by_path(project.generated_output_path)

    def generated_report(self, project: Project) -> Path:
        report = self.storage.resolve_visualization_directory(project) / self.settings.report_file_name
        if not report.is_file():
            raise ArtifactNotFoundError("Project has not been run yet, can not retrieve generated report.")
        return self.storage.load_file_by_path(report)

    def zip_generated_project(self, project: Project) -> bytes:
        """Whole generated tree, entries named relative to the project root."""
        if not project.generated_project_path:
            raise NotGeneratedError("Project has not been generated yet")
        root = Path(project.generated_project_path)
        if not root.is_dir():
            raise ArtifactNotFoundError(f"Generated project directory {root.name} is missing")

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for path in sorted(root.rglob("*")):
                if path.is_file():
                    archive.write(path, arcname=path.relative_to(root).as_posix())
        logger.info("generated_project_zipped", project_id=project.id, size=buffer.tell())
        return buffer.getvalue()

    def zip_visualizations(self, project: Project) -> bytes:
        """Flat listing of the visualization directory."""
        directory = self.storage.resolve_visualization_directory(project)
        if not directory.is_dir():
            raise ArtifactNotFoundError("No images have been generated for this project")

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for path in sorted(directory.iterdir()):
                if path.is_file():
                    archive.write(path, arcname=path.name)
        return buffer.getvalue()

    @staticmethod
    def archive_name(project: Project) -> str:
        name = project.generated_project_name or project.model_stem
        return f"{name}.zip"

    def _required(self, path: str | None, label: str) -> Path:
        if path is None:
            raise ArtifactNotFoundError(f"Project has no {label}")
        return self.storage.load_file_by_path(path)
