"""
Supervised execution of external tools.

Every extractor and muxer invocation goes through :func:`run_process`, which
streams output line by line, enforces a wall-clock timeout and guarantees
that the child process is gone when the call returns, whether it finished,
timed out or the awaiting task was cancelled.
"""

import asyncio
import logging
import os
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from trackgrab.exceptions import ProcessTimeout

log = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0
OUTPUT_TAIL_LINES = 50
# --dump-json prints the whole info dict on one line
STREAM_LIMIT_BYTES = 32 * 1024 * 1024


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def terminate_process(process: asyncio.subprocess.Process, name: str) -> None:
    """Terminates a child process, escalating to SIGKILL after a grace period."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        log.warning(f"'{name}' ignored SIGTERM, killing it.")
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


async def run_process(
    argv: Sequence[str],
    timeout: float | None = None,
    on_line: Callable[[str], None] | None = None,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> ProcessResult:
    """
    Runs ``argv`` (no shell) with stderr merged into stdout.

    Args:
        argv: Program and arguments.
        timeout: Seconds before the process is terminated and
            :class:`ProcessTimeout` raised. ``None`` waits forever.
        on_line: Called with every decoded output line, without the newline.
        cwd: Working directory for the child.
        env: Extra environment variables layered over ``os.environ``.

    Returns:
        The exit status and the last output lines.
    """
    name = os.path.basename(argv[0])
    child_env = {**os.environ, **env} if env else None
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=cwd,
        env=child_env,
        limit=STREAM_LIMIT_BYTES,
    )
    log.debug(f"Started '{name}' (pid {process.pid})")
    tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)

    async def _pump() -> int:
        assert process.stdout is not None
        while True:
            raw = await process.stdout.readline()
            if not raw:
                break
            # yt-dlp rewrites progress lines with carriage returns
            for line in raw.decode("utf-8", errors="replace").replace("\r", "\n").splitlines():
                if not line.strip():
                    continue
                tail.append(line)
                if on_line:
                    on_line(line)
        return await process.wait()

    try:
        returncode = await asyncio.wait_for(_pump(), timeout=timeout)
    except asyncio.TimeoutError:
        await terminate_process(process, name)
        raise ProcessTimeout(f"'{name}' did not finish within {timeout:.0f}s.") from None
    finally:
        # Covers cancellation and errors raised by on_line
        await terminate_process(process, name)

    log.debug(f"'{name}' exited with status {returncode}")
    return ProcessResult(returncode, "\n".join(tail))
