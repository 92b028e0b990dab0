"""
PATCHLOOP Cancellable Tasks

Long-running external work (generation calls, check-tool subprocesses)
runs as an asyncio task with an explicit timeout. The caller always gets
back a tagged result instead of an exception:

    Succeeded(value) | TimedOut(after) | Failed(cause)

A timeout cancels the task. Subprocesses started through `run_command`
are killed when their task is cancelled.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

from loguru import logger

T = TypeVar("T")


@dataclass(frozen=True)
class Succeeded(Generic[T]):
    value: T
    elapsed: float = 0.0
    ok = True


@dataclass(frozen=True)
class TimedOut:
    after: float
    ok = False

    def describe(self) -> str:
        return f"timed out after {self.after:.1f}s"


@dataclass(frozen=True)
class Failed:
    cause: BaseException
    elapsed: float = 0.0
    ok = False

    def describe(self) -> str:
        return f"{type(self.cause).__name__}: {self.cause}"


TaskResult = Union[Succeeded[Any], TimedOut, Failed]


async def run_cancellable(
    factory: Callable[[], Awaitable[T]],
    timeout: float | None,
    label: str = "task",
) -> TaskResult:
    """
    Run `factory()` as its own task, suspending until it finishes or
    `timeout` seconds elapse. Cancellation of the caller propagates.
    """
    start = time.monotonic()
    task = asyncio.ensure_future(factory())
    try:
        value = await asyncio.wait_for(task, timeout=timeout)
    except asyncio.TimeoutError:
        elapsed = time.monotonic() - start
        logger.warning(f"[TASK] {label} timed out after {elapsed:.1f}s — cancelled")
        return TimedOut(after=elapsed)
    except asyncio.CancelledError:
        task.cancel()
        raise
    except Exception as e:
        elapsed = time.monotonic() - start
        logger.warning(f"[TASK] {label} failed: {type(e).__name__}: {e}")
        return Failed(cause=e, elapsed=elapsed)

    return Succeeded(value=value, elapsed=time.monotonic() - start)


# ---------------------------------------------------------------------------
# Subprocess helper
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommandOutput:
    """Combined output of a finished subprocess."""
    command: str
    returncode: int
    output: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


async def run_command(
    command: str | list[str],
    cwd: Path,
    env: dict[str, str] | None = None,
) -> CommandOutput:
    """
    Run a shell command (string) or argv (list) with stdout and stderr
    merged into one stream. If the awaiting task is cancelled the process
    is killed before the cancellation propagates.
    """
    merged_env = {**os.environ, **(env or {})}

    if isinstance(command, str):
        display = command
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            env=merged_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    else:
        display = " ".join(command)
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            env=merged_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )

    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        _kill(proc)
        await proc.wait()
        logger.debug(f"[TASK] Killed subprocess: {display}")
        raise

    return CommandOutput(
        command=display,
        returncode=proc.returncode if proc.returncode is not None else -1,
        output=stdout.decode("utf-8", errors="replace") if stdout else "",
    )


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the whole process group so shell children die too."""
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, 9)
    except (ProcessLookupError, PermissionError, AttributeError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass
