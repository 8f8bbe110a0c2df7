"""Filesystem storage for uploaded files, generated artifacts and tool paths.

Each user owns a directory named after them under the storage root. Every
path handed out by this module is absolute.
"""

import os
from pathlib import Path
import shutil
from typing import BinaryIO
import uuid

import structlog

from .config import Settings
from .exceptions import ArtifactNotFoundError, StorageError
from .models import Project, User
from .pipeline.stages import ToolKind

logger = structlog.get_logger()

COPY_CHUNK_SIZE = 1024 * 1024


class StorageService:
    """Resolves and manages every file the backend reads or writes."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.root_location = Path(settings.storage_path).resolve()
        self.root_location.mkdir(parents=True, exist_ok=True)

    # === Directories ===

    def resolve_user_root_directory(self, user: User) -> Path:
        """Absolute path of the user's directory, created on demand.

        Raises:
            StorageError: If the user name does not denote a direct child of the root
        """
        user_dir = (self.root_location / user.name).resolve()
        if user_dir.parent != self.root_location:
            raise StorageError(f"Invalid user directory name: {user.name}")
        user_dir.mkdir(parents=True, exist_ok=True)
        return user_dir

    def store_location(self, directory: Path, filename: str) -> Path:
        """Where a file of that name would land inside directory.

        Raises:
            StorageError: If the name escapes the directory
        """
        destination = (directory / filename).resolve()
        if not filename or destination.parent != directory.resolve():
            raise StorageError(f"Cannot store file outside current directory: {filename}")
        return destination

    @staticmethod
    def unique_location(directory: Path, name: str) -> Path:
        """First free `name`, `stem(1).ext`, `stem(2).ext`, ... inside directory."""
        candidate = directory / name
        stem, suffix = Path(name).stem, Path(name).suffix
        counter = 1
        while candidate.exists():
            candidate = directory / f"{stem}({counter}){suffix}"
            counter += 1
        return candidate

    def create_staging_directory(self, user: User) -> Path:
        """Private scratch directory inside the user's directory."""
        staging = self.resolve_user_root_directory(user) / f".staging-{uuid.uuid4().hex}"
        staging.mkdir()
        return staging

    def resolve_visualization_directory(self, project: Project) -> Path:
        if not project.generated_project_path:
            raise ArtifactNotFoundError("Project has not been generated yet")
        return Path(project.generated_project_path) / self.settings.project_visualisation

    def resolve_execution_subdirectory(self) -> str:
        return self.settings.project_execution

    def resolve_runtime_path(self) -> Path:
        return self.settings.conda_path

    def resolve_tool_path(self, kind: ToolKind) -> str:
        """Program or script used for a tool kind."""
        scripts = Path(self.settings.scripts_path).resolve()
        tools = {
            ToolKind.JAVA: self.settings.java_path,
            ToolKind.JAVA11: self.settings.java11_path,
            ToolKind.BUILD_TOOL: self.settings.build_tool_path,
            ToolKind.PYTHON: self.settings.python_path,
            ToolKind.FORMAT_CONVERTER: str(scripts / self.settings.format_converter_jar),
            ToolKind.MODEL_CONVERTER: str(scripts / self.settings.model_converter_jar),
            ToolKind.GENERATOR: str(scripts / self.settings.generator_jar),
            ToolKind.IMAGE_SCRIPT: str(scripts / self.settings.images_script),
        }
        return tools[kind]

    # === Files ===

    def store_file(self, user: User, filename: str, stream: BinaryIO, directory: Path | None = None) -> Path:
        """Copy an uploaded stream into the user's directory (or directory).

        An existing file is never overwritten: the upload gets the first
        free deduplicated name instead.
        """
        if not filename:
            raise StorageError("Uploaded file has no name")
        target_dir = directory or self.resolve_user_root_directory(user)
        location = self.store_location(target_dir, filename)
        destination = self.unique_location(location.parent, location.name)
        try:
            with destination.open("xb") as out:
                shutil.copyfileobj(stream, out, COPY_CHUNK_SIZE)
        except OSError as e:
            raise StorageError(f"Can't save file {filename}: {e}") from e
        logger.info("file_stored", user=user.name, path=str(destination))
        return destination

    def move_into_user_directory(self, user: User, path: Path) -> Path:
        """Move a staged file into the user's directory under a free name."""
        destination = self.unique_location(self.resolve_user_root_directory(user), path.name)
        try:
            shutil.move(path, destination)
        except OSError as e:
            raise StorageError(f"Can't move {path.name} into user directory: {e}") from e
        return destination

    def load_file_by_name(self, user: User, filename: str) -> Path:
        return self.load_file_by_path(self.resolve_user_root_directory(user) / filename)

    def load_file_by_path(self, path: str | os.PathLike[str]) -> Path:
        file_path = Path(path)
        if not file_path.is_file() or not os.access(file_path, os.R_OK):
            raise ArtifactNotFoundError(f"Could not read file {file_path.name}")
        return file_path

    def copy_file(self, source: str | os.PathLike[str], target_dir: Path, name: str | None = None) -> Path:
        """Copy a file into a directory as name (default: its own), replacing an existing copy."""
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / (name or Path(source).name)
        try:
            shutil.copyfile(source, target)
        except OSError as e:
            raise StorageError(f"Can't copy {source} to {target_dir}: {e}") from e
        return target

    def delete_file(self, user: User, path: str | None) -> None:
        """Delete a file if it exists. The user directory itself is never removed."""
        if path is None or not path.strip():
            return
        file_path = Path(path).absolute()
        if file_path == self.resolve_user_root_directory(user):
            return
        file_path.unlink(missing_ok=True)
        logger.debug("file_deleted", path=str(file_path))

    def delete_dir(self, path: str | os.PathLike[str] | None) -> None:
        """Recursively delete a directory tree if it exists."""
        if path is None or not str(path).strip():
            return
        dir_path = Path(path)
        if dir_path.exists():
            shutil.rmtree(dir_path)
            logger.debug("directory_deleted", path=str(dir_path))

    def delete_project_files(self, user: User, project: Project) -> list[str]:
        """Delete every file and directory the project owns.

        Best effort: failures are logged and returned, never raised.

        Returns:
            Paths that could not be deleted
        """
        failures: list[str] = []
        for path in project.owned_paths():
            try:
                self.delete_file(user, path)
            except OSError as e:
                logger.warning("project_file_delete_failed", project_id=project.id, path=path, error=str(e))
                failures.append(path)
        if project.generated_project_path:
            try:
                self.delete_dir(project.generated_project_path)
            except OSError as e:
                logger.warning(
                    "project_dir_delete_failed",
                    project_id=project.id,
                    path=project.generated_project_path,
                    error=str(e),
                )
                failures.append(project.generated_project_path)
        return failures
