"""External tool invoker.

Spawns a program, drains its output on a background task and waits for it
to exit, optionally under a deadline. A background reader keeps the pipe
empty so the child never blocks on a full buffer while we wait.
"""

import asyncio
from collections.abc import Callable, Mapping, Sequence
import contextlib
from dataclasses import dataclass, field
import os

import structlog

from ..exceptions import SpawnError, StreamReadError

logger = structlog.get_logger()

DEFAULT_READER_GRACE_SEC = 2.0
# asyncio's default 64 KiB line limit is too small for generator stack traces
STREAM_LIMIT = 4 * 1024 * 1024

LineCallback = Callable[[str], None]


@dataclass
class InvocationResult:
    """Outcome of one external program run."""

    output: str
    exit_code: int | None
    timed_out: bool = False
    stderr: str = ""
    read_error: str | None = None

    @property
    def lines(self) -> list[str]:
        return self.output.splitlines()


@dataclass
class _StreamBuffer:
    """Lines collected by a reader task, readable at any moment."""

    lines: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def text(self) -> str:
        return "\n".join(self.lines).rstrip()


class ToolInvoker:
    """Runs external programs and captures their output."""

    def __init__(self, reader_grace_sec: float = DEFAULT_READER_GRACE_SEC) -> None:
        self.reader_grace_sec = reader_grace_sec

    async def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        deadline: float | None = None,
        merge_stderr: bool = True,
        raise_on_read_error: bool = True,
        on_line: LineCallback | None = None,
    ) -> InvocationResult:
        """Run a program to completion or until the deadline elapses.

        Args:
            program: Executable to start
            args: Arguments passed verbatim
            cwd: Working directory of the child
            env: Complete environment of the child (inherits ours when None)
            deadline: Seconds to wait before the child is killed
            merge_stderr: Capture stderr into the same stream as stdout
            raise_on_read_error: Raise StreamReadError instead of recording it
            on_line: Called with every stdout line as it arrives

        Returns:
            Captured output with trailing whitespace trimmed. On timeout the
            output captured so far and timed_out=True.

        Raises:
            SpawnError: If the program cannot be started
            StreamReadError: If output cannot be read and raise_on_read_error is set
        """
        command = [program, *args]
        logger.info("spawning_process", command=command, cwd=str(cwd) if cwd else None, deadline=deadline)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            logger.error("process_spawn_failed", command=command, error=str(e))
            raise SpawnError(f"There's an error running the following process: {command} - {e}") from e

        stdout_buffer = _StreamBuffer()
        stderr_buffer = _StreamBuffer()
        readers = [
            asyncio.create_task(
                self._drain(process.stdout, stdout_buffer, on_line),
                name=f"stdout_reader_{process.pid}",
            )
        ]
        if not merge_stderr:
            readers.append(
                asyncio.create_task(
                    self._drain(process.stderr, stderr_buffer, None),
                    name=f"stderr_reader_{process.pid}",
                )
            )

        timed_out = False
        try:
            if deadline is None:
                await process.wait()
            else:
                try:
                    await asyncio.wait_for(process.wait(), timeout=deadline)
                except TimeoutError:
                    timed_out = True
                    logger.warning("process_deadline_reached", pid=process.pid, deadline=deadline)
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()
            await self._join_readers(readers, process.pid)
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        read_error = stdout_buffer.error or stderr_buffer.error
        if read_error is not None:
            logger.warning("process_output_read_failed", pid=process.pid, error=read_error)
            if raise_on_read_error:
                raise StreamReadError(
                    f"There's an error reading the output of the process: {command} - {read_error}"
                )

        result = InvocationResult(
            output=stdout_buffer.text,
            exit_code=process.returncode,
            timed_out=timed_out,
            stderr=stderr_buffer.text,
            read_error=read_error,
        )
        logger.info(
            "process_finished",
            pid=process.pid,
            exit_code=result.exit_code,
            timed_out=timed_out,
            output_lines=len(stdout_buffer.lines),
        )
        return result

    async def _join_readers(self, readers: list[asyncio.Task], pid: int) -> None:
        """Wait for readers to hit EOF.

        A killed child may leave grandchildren holding the pipe open, so the
        wait is bounded; whatever was read by then is kept.
        """
        _done, pending = await asyncio.wait(readers, timeout=self.reader_grace_sec)
        for reader in pending:
            logger.debug("reader_cancelled", pid=pid, task=reader.get_name())
            reader.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @staticmethod
    async def _drain(
        stream: asyncio.StreamReader | None,
        buffer: _StreamBuffer,
        on_line: LineCallback | None,
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except (OSError, ValueError) as e:
                buffer.error = str(e)
                return
            if not raw:
                return
            line = raw.decode(errors="replace").rstrip("\r\n")
            buffer.lines.append(line)
            if on_line is not None:
                on_line(line)
