"""Execution guard for long-running stages.

Bounds a run by wall-clock time. When the deadline elapses the process is
killed and the output captured up to that moment is kept: a truncated log
is a normal result here, not an error.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
import os
from pathlib import Path

import structlog

from ..exceptions import OutputWriteError, SpawnError
from .invoker import ToolInvoker

logger = structlog.get_logger()


class ProcessOutcome(str, Enum):
    """How a guarded run ended."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED_TO_START = "failed_to_start"


@dataclass
class GuardedRun:
    """Result of a guarded run."""

    outcome: ProcessOutcome
    output: str = ""
    output_path: Path | None = None
    exit_code: int | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        """True when the process exited on its own."""
        return self.outcome is ProcessOutcome.COMPLETED


class ExecutionGuard:
    """Runs a program under a deadline and persists whatever it printed."""

    def __init__(self, invoker: ToolInvoker, duration_sec: float) -> None:
        self.invoker = invoker
        self.duration_sec = duration_sec

    async def run(
        self,
        program: str,
        args: Sequence[str],
        output_path: Path,
        *,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        raise_on_read_error: bool = True,
    ) -> GuardedRun:
        """Run the program and write its captured output to output_path.

        The file is written for completed and timed-out runs alike. A run
        that never started writes nothing.

        Raises:
            StreamReadError: If output cannot be read and raise_on_read_error is set
            OutputWriteError: If the output file cannot be written
        """
        logger.info("guarded_run_starting", program=program, deadline_sec=self.duration_sec)
        try:
            result = await self.invoker.run(
                program,
                args,
                cwd=cwd,
                env=env,
                deadline=self.duration_sec,
                merge_stderr=True,
                raise_on_read_error=raise_on_read_error,
            )
        except SpawnError as e:
            return GuardedRun(outcome=ProcessOutcome.FAILED_TO_START, error=e.message)

        outcome = ProcessOutcome.TIMED_OUT if result.timed_out else ProcessOutcome.COMPLETED
        write_output(output_path, result.output)

        logger.info(
            "guarded_run_finished",
            outcome=outcome.value,
            exit_code=result.exit_code,
            output_path=str(output_path),
        )
        return GuardedRun(
            outcome=outcome,
            output=result.output,
            output_path=output_path,
            exit_code=result.exit_code,
        )


def write_output(path: Path, text: str) -> None:
    """Write captured output, replacing an older log."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise OutputWriteError(f"Error saving project output to file: {e}") from e
