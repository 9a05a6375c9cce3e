# Vidi Server: Toolchain Process Runner
#
# Thin wrapper over asyncio subprocesses used by the build pipeline.
# A missing executable or a timeout is reported in the result rather than
# raised, so every stage is judged the same way.

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

DIAGNOSTIC_LIMIT = 4000  # characters of tool output kept on failure


@dataclass
class StageResult:
    """Outcome of one external tool invocation."""

    argv: List[str]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    launched: bool = True

    @property
    def ok(self) -> bool:
        return self.launched and not self.timed_out and self.returncode == 0

    def diagnostics(self) -> str:
        """Short human-readable reason for a failed invocation."""
        if not self.launched:
            return f"{self.argv[0]}: {self.stderr or 'could not be started'}"
        if self.timed_out:
            return f"{self.argv[0]} timed out"
        text = (self.stderr.strip() or self.stdout.strip()
                or f"{self.argv[0]} exited with status {self.returncode}")
        if len(text) > DIAGNOSTIC_LIMIT:
            text = "..." + text[-DIAGNOSTIC_LIMIT:]
        return text


async def run_command(
    argv: Sequence[str],
    cwd: Optional[Union[str, Path]] = None,
    timeout: Optional[float] = None,
) -> StageResult:
    """Run ``argv`` to completion, killing it if ``timeout`` elapses."""
    argv = [str(a) for a in argv]
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return StageResult(argv=argv, returncode=None, stderr=str(exc), launched=False)

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        _kill(proc)
        await proc.wait()
        logger.warning("%s killed after %ss", argv[0], timeout)
        return StageResult(argv=argv, returncode=proc.returncode, timed_out=True)
    except asyncio.CancelledError:
        _kill(proc)
        raise

    return StageResult(
        argv=argv,
        returncode=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def _kill(proc: asyncio.subprocess.Process):
    try:
        proc.kill()
    except ProcessLookupError:
        pass  # already exited
