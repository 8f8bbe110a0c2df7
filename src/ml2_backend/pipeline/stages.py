"""Pipeline stage descriptors and their output-parsing rules.

A stage only describes a step: which tool runs, how its argument vector is
built from the current artifacts, and how its stdout becomes the next
artifact. Stages never touch a Project record.

Tool stdout doubles as the control channel (result paths, error markers).
The rules reading it live in the small functions below so the matching
policy can change without touching orchestration.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

import structlog

from ..exceptions import (
    ArtifactNotFoundError,
    ConversionError,
    GenerationError,
    PipelineError,
    SpawnError,
    StreamReadError,
)
from .invoker import InvocationResult, LineCallback, ToolInvoker

logger = structlog.get_logger()

GENERATION_ERROR_PREFIX = "ERROR:"
GENERATION_ERROR_SUBSTRING = "Error in file"


class ToolKind(str, Enum):
    """External programs and scripts the pipeline runs."""

    JAVA = "java"
    JAVA11 = "java11"
    FORMAT_CONVERTER = "format_converter"
    MODEL_CONVERTER = "model_converter"
    GENERATOR = "generator"
    BUILD_TOOL = "build_tool"
    PYTHON = "python"
    IMAGE_SCRIPT = "image_script"


class ToolResolver(Protocol):
    def resolve_tool_path(self, kind: ToolKind) -> str: ...


@dataclass(frozen=True)
class StageInput:
    """Artifact a stage consumes and where its result should go."""

    source: Path
    destination: Path | None = None


CommandBuilder = Callable[[ToolResolver, StageInput], list[str]]
OutputInterpreter = Callable[[InvocationResult, StageInput], Path]


@dataclass(frozen=True)
class Stage:
    """One external-tool step of the pipeline."""

    name: str
    build_command: CommandBuilder
    interpret: OutputInterpreter | None = None
    failure: type[PipelineError] = PipelineError
    merge_stderr: bool = False


# === Output parsing rules ===


def last_nonempty_line(output: str) -> str | None:
    """The result-path convention: the last non-blank stdout line."""
    for line in reversed(output.splitlines()):
        if line.strip():
            return line.strip()
    return None


def generation_error_lines(output: str) -> list[str]:
    """Lines the code generator uses to report errors."""
    return [
        line
        for line in output.splitlines()
        if line.startswith(GENERATION_ERROR_PREFIX) or GENERATION_ERROR_SUBSTRING in line
    ]


def locate_build_artifact(directory: Path, marker: str, extension: str) -> Path:
    """First file (by name) in directory containing marker and ending with extension.

    Raises:
        ArtifactNotFoundError: If the directory is missing or nothing matches
    """
    if not directory.is_dir():
        raise ArtifactNotFoundError(f"No build output directory {directory}")
    matches = sorted(
        p for p in directory.iterdir() if p.is_file() and marker in p.name and p.name.endswith(extension)
    )
    if not matches:
        raise ArtifactNotFoundError(f"No {extension} with '{marker}' found in {directory}")
    if len(matches) > 1:
        logger.warning("multiple_build_artifacts", directory=str(directory), chosen=matches[0].name)
    return matches[0]


# === Command builders ===


def _format_conversion_command(tools: ToolResolver, stage_input: StageInput) -> list[str]:
    return [
        tools.resolve_tool_path(ToolKind.JAVA),
        "-jar",
        tools.resolve_tool_path(ToolKind.FORMAT_CONVERTER),
        str(stage_input.source),
    ]


def _model_conversion_command(tools: ToolResolver, stage_input: StageInput) -> list[str]:
    destination = stage_input.destination or stage_input.source.parent
    return [
        tools.resolve_tool_path(ToolKind.JAVA),
        "-jar",
        tools.resolve_tool_path(ToolKind.MODEL_CONVERTER),
        str(stage_input.source),
        f"{destination}/",
    ]


def _code_generation_command(tools: ToolResolver, stage_input: StageInput) -> list[str]:
    return [
        tools.resolve_tool_path(ToolKind.JAVA11),
        "-jar",
        tools.resolve_tool_path(ToolKind.GENERATOR),
        "-c",
        "auto",
        "-s",
        str(stage_input.source),
        "-o",
        str(stage_input.destination),
    ]


def _package_command(tools: ToolResolver, stage_input: StageInput) -> list[str]:
    return [
        tools.resolve_tool_path(ToolKind.BUILD_TOOL),
        "-f",
        str(stage_input.source),
        "clean",
        "package",
        "-DskipTests",
    ]


def _execute_command(tools: ToolResolver, stage_input: StageInput) -> list[str]:
    return [tools.resolve_tool_path(ToolKind.JAVA11), "-jar", str(stage_input.source)]


def _generate_images_command(tools: ToolResolver, stage_input: StageInput) -> list[str]:
    return [tools.resolve_tool_path(ToolKind.PYTHON), tools.resolve_tool_path(ToolKind.IMAGE_SCRIPT)]


# === Output interpreters ===


def _result_path(result: InvocationResult, stage_input: StageInput) -> Path:
    line = last_nonempty_line(result.output)
    if line is None:
        raise ConversionError(f"Conversion of {stage_input.source.name} produced no output")
    path = Path(line)
    if not path.is_absolute() and stage_input.destination is not None:
        path = stage_input.destination / path
    return path


def _generated_directory(result: InvocationResult, stage_input: StageInput) -> Path:
    error_lines = generation_error_lines(result.output)
    if error_lines:
        raise GenerationError(
            "There are errors when generating the project:\n" + "\n".join(error_lines),
            error_lines=error_lines,
        )
    destination = stage_input.destination
    if destination is None or not destination.is_dir():
        raise GenerationError("Error generating project")
    return destination


FORMAT_CONVERSION = Stage(
    name="format-conversion",
    build_command=_format_conversion_command,
    interpret=_result_path,
    failure=ConversionError,
)
MODEL_CONVERSION = Stage(
    name="model-conversion",
    build_command=_model_conversion_command,
    interpret=_result_path,
    failure=ConversionError,
)
CODE_GENERATION = Stage(
    name="code-generation",
    build_command=_code_generation_command,
    interpret=_generated_directory,
    failure=GenerationError,
    merge_stderr=True,
)
PACKAGE = Stage(name="package", build_command=_package_command, merge_stderr=True)
EXECUTE = Stage(name="execute", build_command=_execute_command, merge_stderr=True)
GENERATE_IMAGES = Stage(name="generate-images", build_command=_generate_images_command, merge_stderr=True)

CONVERSION_STAGES: tuple[Stage, ...] = (FORMAT_CONVERSION, MODEL_CONVERSION)


async def invoke_stage(
    stage: Stage,
    invoker: ToolInvoker,
    tools: ToolResolver,
    stage_input: StageInput,
    *,
    on_line: LineCallback | None = None,
) -> InvocationResult:
    """Run a stage's command to completion (no deadline).

    Spawn and read failures are re-raised as the stage's failure type.
    """
    program, *args = stage.build_command(tools, stage_input)
    log = logger.bind(stage=stage.name, source=str(stage_input.source))
    log.info("stage_started")
    try:
        result = await invoker.run(program, args, merge_stderr=stage.merge_stderr, on_line=on_line)
    except (SpawnError, StreamReadError) as e:
        log.error("stage_invocation_failed", error=e.message)
        if stage.failure is PipelineError:
            raise
        raise stage.failure(e.message) from e
    log.info("stage_finished", exit_code=result.exit_code)
    return result


async def run_stage(
    stage: Stage,
    invoker: ToolInvoker,
    tools: ToolResolver,
    stage_input: StageInput,
) -> Path:
    """Run a stage and interpret its output into the next artifact path."""
    if stage.interpret is None:
        raise ValueError(f"Stage {stage.name} produces no artifact")
    result = await invoke_stage(stage, invoker, tools, stage_input)
    artifact = stage.interpret(result, stage_input)
    logger.info("stage_artifact", stage=stage.name, artifact=str(artifact))
    return artifact
