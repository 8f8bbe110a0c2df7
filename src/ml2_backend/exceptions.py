"""Domain errors raised by the pipeline and its collaborators.

Every error carries a human-readable message and the HTTP status the API
layer answers with.
"""

from fastapi import status


class PipelineError(Exception):
    """Base class for all ML2 backend errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SpawnError(PipelineError):
    """External program could not be started."""


class StreamReadError(PipelineError):
    """Output of an external program could not be read."""


class ConversionError(PipelineError):
    """Format or domain-model conversion failed."""


class GenerationError(PipelineError):
    """Code generator reported errors."""

    def __init__(self, message: str, error_lines: list[str] | None = None) -> None:
        super().__init__(message)
        self.error_lines = error_lines or []


class ArtifactNotFoundError(PipelineError):
    """An expected artifact (build output, report, log) is missing."""

    status_code = status.HTTP_404_NOT_FOUND


class NotGeneratedError(PipelineError):
    """Operation needs a generated project but none exists yet."""

    status_code = status.HTTP_409_CONFLICT


class NotFoundError(PipelineError):
    status_code = status.HTTP_404_NOT_FOUND


class NotOwnerError(PipelineError):
    status_code = status.HTTP_403_FORBIDDEN


class AlreadyExistsError(PipelineError):
    status_code = status.HTTP_409_CONFLICT


class Unauthenticated(PipelineError):
    status_code = status.HTTP_401_UNAUTHORIZED


class StorageError(PipelineError):
    """File could not be stored or resolved."""


class OutputWriteError(PipelineError):
    """Captured process output could not be written to disk."""
