import asyncio
import time

from patchloop.tasks import Failed, Succeeded, TimedOut, run_cancellable, run_command


def test_succeeded():
    async def work():
        return 42

    result = asyncio.run(run_cancellable(work, timeout=1))
    assert isinstance(result, Succeeded)
    assert result.ok and result.value == 42


def test_timeout_cancels_the_task():
    cancelled = []

    async def slow():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    start = time.monotonic()
    result = asyncio.run(run_cancellable(slow, timeout=0.1, label="slow"))
    assert isinstance(result, TimedOut)
    assert not result.ok
    assert cancelled == [True]
    assert time.monotonic() - start < 5


def test_failure_is_tagged():
    async def broken():
        raise RuntimeError("nope")

    result = asyncio.run(run_cancellable(broken, timeout=1))
    assert isinstance(result, Failed)
    assert "RuntimeError: nope" in result.describe()


def test_run_command_merges_output(tmp_path):
    out = asyncio.run(run_command("echo out; echo err 1>&2; exit 3", tmp_path))
    assert out.returncode == 3
    assert not out.success
    assert "out" in out.output and "err" in out.output


def test_run_command_killed_on_timeout(tmp_path):
    start = time.monotonic()
    result = asyncio.run(run_cancellable(lambda: run_command("sleep 30", tmp_path), timeout=0.2))
    assert isinstance(result, TimedOut)
    assert time.monotonic() - start < 10
