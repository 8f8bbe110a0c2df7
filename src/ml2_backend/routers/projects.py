"""Projects router.

Each action maps onto one pipeline operation; domain errors are turned
into responses by the application's exception handler.
"""

from fastapi import APIRouter, Depends, File, Response, UploadFile
from fastapi.responses import FileResponse

from ..artifacts import ArtifactService
from ..dependencies import get_artifacts, get_current_user, get_pipeline
from ..models import User
from ..pipeline.orchestrator import ProjectPipeline
from ..schemas import ExecutionResponse, MessageResponse, ProjectRead

router = APIRouter(prefix="/projects", tags=["projects"])


def _attachment(path, filename: str | None = None) -> FileResponse:
    return FileResponse(path, media_type="application/octet-stream", filename=filename or path.name)


def _zip(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("", response_model=list[ProjectRead])
async def list_projects(
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
):
    return await pipeline.list_projects(user)


@router.post("", response_model=MessageResponse)
async def add_project(
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
) -> MessageResponse:
    """Upload a model file and convert it into a new project."""
    await pipeline.add(user, file)
    return MessageResponse(message="Successfully added project")


@router.get("/{project_id}", response_model=ProjectRead)
async def get_project(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
):
    return await pipeline.get_project(user, project_id)


@router.put("/{project_id}", response_model=MessageResponse)
async def update_project(
    project_id: int,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
) -> MessageResponse:
    await pipeline.update(user, project_id, file)
    return MessageResponse(message="Successfully updated project")


@router.delete("/{project_id}", response_model=MessageResponse)
async def delete_project(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
) -> MessageResponse:
    await pipeline.delete(user, project_id)
    return MessageResponse(message="Successfully deleted project")


@router.post("/{project_id}/generate", response_model=MessageResponse)
async def generate(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
) -> MessageResponse:
    await pipeline.generate(user, project_id)
    return MessageResponse(message="Successfully generated project")


@router.post("/{project_id}/execute", response_model=ExecutionResponse)
async def execute(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
) -> ExecutionResponse:
    """Package and run the generated project under the execution deadline."""
    run = await pipeline.execute(user, project_id)
    return ExecutionResponse(
        message="Successfully executed project",
        outcome=run.outcome.value,
        finished=run.finished,
    )


@router.post("/{project_id}/generateImages", response_model=ExecutionResponse)
async def generate_images(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
) -> ExecutionResponse:
    run = await pipeline.generate_images(user, project_id)
    return ExecutionResponse(
        message="Successfully generated images",
        outcome=run.outcome.value,
        finished=run.finished,
    )


@router.post("/{project_id}/uploadDataset", response_model=MessageResponse)
async def upload_dataset(
    project_id: int,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
) -> MessageResponse:
    await pipeline.add_dataset(user, project_id, file)
    return MessageResponse(message="Successfully added dataset")


@router.delete("/{project_id}/deleteDataset", response_model=MessageResponse)
async def delete_dataset(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
) -> MessageResponse:
    await pipeline.remove_dataset(user, project_id)
    return MessageResponse(message="Successfully deleted dataset")


# === Downloads ===


@router.get("/{project_id}/downloadOriginal")
async def download_original(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
    artifacts: ArtifactService = Depends(get_artifacts),
) -> FileResponse:
    project = await pipeline.get_project(user, project_id)
    return _attachment(artifacts.original_file(user, project), project.original_file_name)


@router.get("/{project_id}/downloadConverted")
async def download_converted(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
    artifacts: ArtifactService = Depends(get_artifacts),
) -> FileResponse:
    project = await pipeline.get_project(user, project_id)
    return _attachment(artifacts.converted_file(project))


@router.get("/{project_id}/downloadThingML")
async def download_thingml(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
    artifacts: ArtifactService = Depends(get_artifacts),
) -> FileResponse:
    project = await pipeline.get_project(user, project_id)
    return _attachment(artifacts.thingml_file(project))


@router.get("/{project_id}/downloadGeneratedOutput")
async def download_generated_output(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
    artifacts: ArtifactService = Depends(get_artifacts),
) -> FileResponse:
    project = await pipeline.get_project(user, project_id)
    return _attachment(artifacts.generated_output(project))


@router.get("/{project_id}/downloadGeneratedReport")
async def download_generated_report(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
    artifacts: ArtifactService = Depends(get_artifacts),
) -> FileResponse:
    project = await pipeline.get_project(user, project_id)
    return _attachment(artifacts.generated_report(project))


@router.get("/{project_id}/downloadDataset")
async def download_dataset(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
    artifacts: ArtifactService = Depends(get_artifacts),
) -> FileResponse:
    project = await pipeline.get_project(user, project_id)
    return _attachment(artifacts.dataset_file(project), project.dataset_name)


@router.get("/{project_id}/downloadThingMLProject")
async def download_generated_project(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
    artifacts: ArtifactService = Depends(get_artifacts),
) -> Response:
    """Zip of the generated project tree."""
    project = await pipeline.get_project(user, project_id)
    return _zip(artifacts.zip_generated_project(project), artifacts.archive_name(project))


@router.get("/{project_id}/downloadImages")
async def download_images(
    project_id: int,
    user: User = Depends(get_current_user),
    pipeline: ProjectPipeline = Depends(get_pipeline),
    artifacts: ArtifactService = Depends(get_artifacts),
) -> Response:
    project = await pipeline.get_project(user, project_id)
    return _zip(artifacts.zip_visualizations(project), artifacts.archive_name(project))
