"""
Process Runner
==============
Runs fix and verifier commands as awaited subprocesses in the working tree.

Contract:
    - The caller always awaits completion (no fire-and-forget).
    - Arguments are passed as a list, never through a shell.
    - On timeout or cancellation the child is killed and reaped before the
      error propagates.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from ci_engine.core.errors import ProcessExecutionError, ProcessTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def output(self) -> str:
        """stdout and stderr combined, for diagnostic counting."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class ProcessRunner:
    """Async subprocess execution with a per-call timeout."""

    def __init__(self, default_timeout: float = 300.0) -> None:
        self.default_timeout = default_timeout

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ProcessResult:
        """
        Execute `command args...` in `cwd` and capture its output.

        Raises
        ------
        ProcessExecutionError
            The executable could not be started.
        ProcessTimeoutError
            The process outlived `timeout` and was killed.
        """
        timeout = timeout or self.default_timeout
        cmd_str = " ".join([command, *args])
        logger.debug("Running: %s (cwd=%s)", cmd_str, cwd)
        start = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ProcessExecutionError(
                f"Could not start '{command}': {e}",
                details={"command": cmd_str},
            ) from e
        except OSError as e:
            raise ProcessExecutionError(f"Failed to spawn '{cmd_str}': {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            await self._kill(process)
            raise ProcessTimeoutError(
                f"'{cmd_str}' timed out after {timeout}s",
                details={"command": cmd_str, "timeout": timeout},
            ) from e
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        duration = round(time.monotonic() - start, 3)
        result = ProcessResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration=duration,
        )
        logger.debug("%s exited %d in %.2fs", command, result.exit_code, duration)
        return result

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
        logger.warning("Killed subprocess pid=%s", process.pid)
