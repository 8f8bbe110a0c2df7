"""Pipeline orchestrator.

Sequences the stages of each user-facing operation (add, update, generate,
execute, generate-images, delete) against one Project record. The record
is saved only after every stage of an operation succeeded; any failure
aborts the operation with a typed error and leaves the stored record as
it was. Nothing is retried.
"""

from datetime import UTC, datetime
import os
from pathlib import Path
from typing import BinaryIO, Protocol

from sqlalchemy.exc import IntegrityError
import structlog

from ..config import Settings
from ..exceptions import (
    AlreadyExistsError,
    ArtifactNotFoundError,
    ConversionError,
    NotFoundError,
    NotGeneratedError,
    NotOwnerError,
    PipelineError,
    SpawnError,
    StorageError,
)
from ..models import Project, User
from ..repository import ProjectRepository
from ..storage import StorageService
from .guard import ExecutionGuard, GuardedRun, ProcessOutcome
from .invoker import ToolInvoker
from .locks import ProjectLocks
from .stages import (
    CODE_GENERATION,
    EXECUTE,
    FORMAT_CONVERSION,
    GENERATE_IMAGES,
    MODEL_CONVERSION,
    PACKAGE,
    StageInput,
    ToolKind,
    invoke_stage,
    locate_build_artifact,
    run_stage,
)

logger = structlog.get_logger()


class UploadedFile(Protocol):
    """What the pipeline needs from an upload (FastAPI's UploadFile fits)."""

    filename: str | None
    file: BinaryIO


class ProjectPipeline:
    """Runs pipeline operations for the projects of one request."""

    def __init__(
        self,
        repository: ProjectRepository,
        storage: StorageService,
        invoker: ToolInvoker,
        settings: Settings,
        locks: ProjectLocks,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.invoker = invoker
        self.settings = settings
        self.locks = locks

    # === Lookup ===

    async def list_projects(self, user: User) -> list[Project]:
        return await self.repository.list_for_owner(user.id)

    async def get_project(self, user: User, project_id: int) -> Project:
        """Load a project and check the user owns it.

        Raises:
            NotFoundError: If no project has this id
            NotOwnerError: If the project belongs to another user
        """
        project = await self.repository.find_by_id(project_id)
        if project is None:
            raise NotFoundError("No Project found with this id")
        if project.owner_id != user.id:
            raise NotOwnerError("User is not the owner of the project")
        return project

    # === Conversion (stages 1 and 2) ===

    async def _convert(self, original: Path) -> tuple[Path, Path]:
        """Run format conversion then domain-model conversion next to original."""
        try:
            converted = await run_stage(FORMAT_CONVERSION, self.invoker, self.storage, StageInput(source=original))
        except ConversionError as e:
            raise ConversionError(f"Can't convert sirius web .xml to EMF xml format: {e.message}") from e

        try:
            model = await run_stage(
                MODEL_CONVERSION,
                self.invoker,
                self.storage,
                StageInput(source=converted, destination=original.parent),
            )
        except ConversionError as e:
            raise ConversionError(f"Can't convert to .thingml file: {e.message}") from e
        return converted, model

    async def _ingest(self, user: User, upload: UploadedFile) -> tuple[Path, Path, Path]:
        """Store and convert an upload inside a private staging directory.

        Only after both conversions succeeded are original, converted and
        model moved into the user's directory, each under a name no other
        file there uses. Nothing outside the staging directory is touched
        on failure.
        """
        staging = self.storage.create_staging_directory(user)
        moved: list[Path] = []
        try:
            original = self.storage.store_file(user, upload.filename or "", upload.file, directory=staging)
            converted, model = await self._convert(original)
            try:
                for path in (original, converted, model):
                    moved.append(self.storage.move_into_user_directory(user, path))
            except StorageError:
                self._remove_quietly(user, moved)
                raise
        finally:
            try:
                self.storage.delete_dir(staging)
            except OSError as e:
                logger.warning("staging_cleanup_failed", path=str(staging), error=str(e))
        original, converted, model = moved
        return original, converted, model

    def _remove_quietly(self, user: User, paths: list[Path]) -> None:
        for path in paths:
            try:
                self.storage.delete_file(user, str(path))
            except OSError as e:
                logger.warning("artifact_cleanup_failed", path=str(path), error=str(e))

    async def _save(self, project: Project) -> Project:
        """Persist the project; a uniqueness clash becomes AlreadyExistsError."""
        try:
            return await self.repository.save(project)
        except IntegrityError as e:
            logger.warning("project_save_conflict", project_id=project.id, error=str(e.orig))
            await self.repository.discard()
            raise AlreadyExistsError("Project already exists") from e

    # === Operations ===

    async def add(self, user: User, upload: UploadedFile) -> Project:
        """Store an uploaded model, convert it and create its project.

        Raises:
            AlreadyExistsError: If any project already uses this file name
            ConversionError: If a conversion stage fails (nothing is persisted)
        """
        filename = upload.filename or ""
        log = logger.bind(user=user.name, original_file_name=filename)
        log.info("project_add_started")

        if await self.repository.find_by_original_name(filename) is not None:
            log.warning("project_add_rejected_duplicate")
            raise AlreadyExistsError("Project already exists")

        original, converted, model = await self._ingest(user, upload)
        project = Project(
            owner_id=user.id,
            upload_date=datetime.now(UTC),
            original_file_name=filename,
            original_file_path=str(original),
            converted_file_name=converted.name,
            converted_file_path=str(converted),
            thingml_file_name=model.name,
            thingml_file_path=str(model),
        )
        try:
            project = await self._save(project)
        except AlreadyExistsError:
            self._remove_quietly(user, [original, converted, model])
            raise

        log.info("project_added", project_id=project.id)
        return project

    async def update(self, user: User, project_id: int, upload: UploadedFile) -> Project:
        """Replace a project's model with a new upload and re-run conversion.

        Files of the previous model are deleted only once the new one has
        been converted and saved, so a failed update leaves the project and
        its files as they were.
        """
        filename = upload.filename or ""
        async with self.locks.hold(project_id):
            project = await self.get_project(user, project_id)
            log = logger.bind(project_id=project_id, original_file_name=filename)
            log.info("project_update_started")

            if filename != project.original_file_name:
                if await self.repository.find_by_original_name(filename) is not None:
                    raise AlreadyExistsError("Project already exists")

            previous_paths = project.owned_paths()
            previous_dir = project.generated_project_path

            original, converted, model = await self._ingest(user, upload)

            project.upload_date = datetime.now(UTC)
            project.original_file_name = filename
            project.original_file_path = str(original)
            project.converted_file_name = converted.name
            project.converted_file_path = str(converted)
            project.thingml_file_name = model.name
            project.thingml_file_path = str(model)
            project.generated_project_name = None
            project.generated_project_path = None
            project.generated_output_path = None
            project.dataset_name = None
            project.dataset_path = None
            try:
                project = await self._save(project)
            except AlreadyExistsError:
                self._remove_quietly(user, [original, converted, model])
                raise

            self._remove_quietly(user, [Path(p) for p in previous_paths])
            try:
                self.storage.delete_dir(previous_dir)
            except OSError as e:
                log.warning("previous_project_dir_delete_failed", path=previous_dir, error=str(e))

            log.info("project_updated")
            return project

    async def generate(self, user: User, project_id: int) -> Project:
        """Generate the code project from the project's .thingml model.

        The project directory is `<user root>/<model stem>`, or the first
        free deduplicated name when another file or project already holds it.

        Raises:
            GenerationError: If the generator reports errors or creates nothing
        """
        async with self.locks.hold(project_id):
            project = await self.get_project(user, project_id)
            if not project.thingml_file_path:
                raise ArtifactNotFoundError("Project has no .thingml model to generate from")
            log = logger.bind(project_id=project_id)

            if project.generated_project_path:
                log.info("removing_previous_generated_project", path=project.generated_project_path)
                self.storage.delete_dir(project.generated_project_path)

            user_root = self.storage.resolve_user_root_directory(user)
            destination = self.storage.unique_location(user_root, project.model_stem)
            try:
                destination.mkdir(parents=True)
            except OSError as e:
                raise StorageError(f"Could not create project directory for project: {e}") from e

            try:
                generated = await run_stage(
                    CODE_GENERATION,
                    self.invoker,
                    self.storage,
                    StageInput(source=Path(project.thingml_file_path), destination=destination),
                )
            except PipelineError:
                self.storage.delete_dir(destination)
                raise

            project.generated_project_path = str(generated.absolute())
            project.generated_project_name = generated.name
            project = await self._save(project)
            log.info("project_generated", path=project.generated_project_path)
            return project

    async def execute(self, user: User, project_id: int) -> GuardedRun:
        """Package the generated project and run its artifact under the deadline.

        The captured output is persisted whether the run finished or was
        killed at the deadline.

        Raises:
            NotGeneratedError: If the project was never generated
            ArtifactNotFoundError: If packaging produced no runnable artifact
            SpawnError: If the build tool or the artifact cannot be started
        """
        async with self.locks.hold(project_id):
            project = await self.get_project(user, project_id)
            if not project.is_generated:
                raise NotGeneratedError("Cannot execute project, the project has not been generated yet")
            log = logger.bind(project_id=project_id)
            project_dir = Path(project.generated_project_path)

            log.info("packaging_project")
            package_result = await invoke_stage(
                PACKAGE,
                self.invoker,
                self.storage,
                StageInput(source=project_dir / self.settings.build_descriptor),
                on_line=lambda line: log.debug("package_output", line=line),
            )
            if package_result.exit_code != 0:
                log.warning("package_exit_nonzero", exit_code=package_result.exit_code)

            if project.dataset_path:
                copied = self.storage.copy_file(
                    project.dataset_path,
                    project_dir / self.settings.dataset_subdirectory,
                    name=project.dataset_name,
                )
                log.info("dataset_copied", target=str(copied))

            execution_dir = project_dir / self.storage.resolve_execution_subdirectory()
            artifact = locate_build_artifact(
                execution_dir, self.settings.artifact_marker, self.settings.artifact_extension
            )
            program, *args = EXECUTE.build_command(self.storage, StageInput(source=artifact))
            if project.generated_output_path:
                output_path = Path(project.generated_output_path)
            else:
                output_path = self.storage.unique_location(
                    self.storage.resolve_user_root_directory(user), f"{project_dir.name}-output.txt"
                )

            guard = ExecutionGuard(self.invoker, self.settings.execution_time_project)
            run = await guard.run(program, args, output_path, cwd=execution_dir, env=self._runtime_env())
            if run.outcome is ProcessOutcome.FAILED_TO_START:
                raise SpawnError(f"Error starting project execution: {run.error}")

            project.generated_output_path = str(output_path)
            await self._save(project)
            log.info("project_executed", outcome=run.outcome.value, output_path=str(output_path))
            return run

    async def generate_images(self, user: User, project_id: int) -> GuardedRun:
        """Run the image script under its own deadline.

        Writes an output log as a side effect; the record is not changed.
        """
        async with self.locks.hold(project_id):
            project = await self.get_project(user, project_id)
            script = Path(self.storage.resolve_tool_path(ToolKind.IMAGE_SCRIPT))
            program, *args = GENERATE_IMAGES.build_command(self.storage, StageInput(source=script))
            output_path = (
                self.storage.resolve_user_root_directory(user) / f"{project.model_stem}-images-output.txt"
            )

            guard = ExecutionGuard(self.invoker, self.settings.execution_time_images)
            run = await guard.run(
                program,
                args,
                output_path,
                cwd=project.generated_project_path,
                raise_on_read_error=False,
            )
            if run.outcome is ProcessOutcome.FAILED_TO_START:
                raise SpawnError(f"Error starting image generation: {run.error}")
            logger.info("images_generated", project_id=project_id, outcome=run.outcome.value)
            return run

    async def delete(self, user: User, project_id: int) -> None:
        """Delete every owned file and directory, then the record.

        File deletion is best effort; the record is deleted regardless.
        """
        async with self.locks.hold(project_id):
            project = await self.get_project(user, project_id)
            failures = self.storage.delete_project_files(user, project)
            if failures:
                logger.warning("project_files_left_behind", project_id=project_id, paths=failures)
            await self.repository.delete(project)
        self.locks.discard(project_id)
        logger.info("project_deleted", project_id=project_id)

    async def add_dataset(self, user: User, project_id: int, upload: UploadedFile) -> Project:
        """Attach a data file, copied into the build before each execution.

        Raises:
            AlreadyExistsError: If the name is one of the project's own model files
        """
        filename = upload.filename or ""
        async with self.locks.hold(project_id):
            project = await self.get_project(user, project_id)
            if filename in _model_file_names(project):
                raise AlreadyExistsError(f"Dataset name {filename} clashes with a file of the project")
            previous = project.dataset_path
            destination = self.storage.store_file(user, filename, upload.file)
            project.dataset_name = filename
            project.dataset_path = str(destination)
            try:
                project = await self._save(project)
            except AlreadyExistsError:
                self._remove_quietly(user, [destination])
                raise
            if previous:
                self._remove_quietly(user, [Path(previous)])
            logger.info("dataset_added", project_id=project_id, dataset=project.dataset_name)
            return project

    async def remove_dataset(self, user: User, project_id: int) -> Project:
        async with self.locks.hold(project_id):
            project = await self.get_project(user, project_id)
            self.storage.delete_file(user, project.dataset_path)
            project.dataset_name = None
            project.dataset_path = None
            project = await self._save(project)
            logger.info("dataset_removed", project_id=project_id)
            return project

    def _runtime_env(self) -> dict[str, str]:
        """Our environment with the configured runtime first on PATH."""
        env = dict(os.environ)
        runtime = str(self.storage.resolve_runtime_path())
        env["PATH"] = f"{runtime}{os.pathsep}{env.get('PATH', '')}"
        return env


def _model_file_names(project: Project) -> set[str]:
    """Logical and stored names of the files derived from the uploaded model."""
    names = {project.original_file_name, project.converted_file_name, project.thingml_file_name}
    paths = (project.original_file_path, project.converted_file_path, project.thingml_file_path)
    names.update(Path(p).name for p in paths if p)
    names.discard(None)
    return names
