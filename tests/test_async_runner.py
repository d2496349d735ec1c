"""Tests for AsyncDockerRunner against the fake daemon."""

import asyncio
import os

import httpx
import pytest

from boxrun import AsyncDockerRunner, DaemonError, ExecutionTimeout, MalformedResponseError
from boxrun.logs import STREAM_STDERR, STREAM_STDOUT
from tests.conftest import FakeDaemon, frame


@pytest.fixture
async def async_runner(daemon, config):
    runner = AsyncDockerRunner(config=config, transport=daemon.transport())
    yield runner
    await runner.aclose()


class TestAsyncRun:
    """Same lifecycle as the sync runner."""

    async def test_returns_trimmed_output(self, async_runner, daemon):
        """Output comes back trimmed and nothing is left behind."""
        output = await async_runner.run("php:8.2-cli", '<?php echo "Hello from Docker!";')
        assert output == "Hello from Docker!"
        assert daemon.containers == {}
        assert not os.path.exists(daemon.host_paths[0])

    async def test_execute_splits_streams(self, config):
        """execute() reports merged and per-stream text."""
        daemon = FakeDaemon(logs=frame(STREAM_STDERR, b"Warning: x\n") + frame(STREAM_STDOUT, b"Done"))
        async with AsyncDockerRunner(config=config, transport=daemon.transport()) as runner:
            result = await runner.execute("php:8.2-cli", "<?php")
        assert result.output == "Warning: x\nDone"
        assert result.stderr == "Warning: x"
        assert result.stdout == "Done"
        assert result.exit_code == 0

    async def test_concurrent_calls(self, async_runner, daemon):
        """Concurrent calls each get their own container and file."""
        outputs = await asyncio.gather(
            *(async_runner.run("php:8.2-cli", f"<?php echo {i};") for i in range(5))
        )
        assert outputs == ["Hello from Docker!"] * 5
        assert len(set(daemon.host_paths)) == 5
        assert daemon.containers == {}


class TestAsyncCleanup:
    """Failures still release the container and temp file."""

    async def test_start_fails(self, async_runner, daemon):
        """A failed start removes the container."""
        daemon.failures["start"] = (500, "boom")
        with pytest.raises(DaemonError, match="boom"):
            await async_runner.run("php:8.2-cli", "<?php")
        assert daemon.containers == {}
        assert not os.path.exists(daemon.host_paths[0])

    async def test_wait_times_out(self, async_runner, daemon):
        """An expired wait kills and removes the container."""
        daemon.failures["wait"] = httpx.ReadTimeout
        with pytest.raises(ExecutionTimeout):
            await async_runner.run("php:8.2-cli", "<?php while (true) {}", timeout=1)
        assert ("POST", daemon.requests[1][1].replace("/start", "/kill")) in daemon.requests
        assert daemon.containers == {}
        assert not os.path.exists(daemon.host_paths[0])

    async def test_failed_kill_still_removes(self, async_runner, daemon):
        """The force remove is sent even when the kill fails."""
        daemon.failures["wait"] = httpx.ReadTimeout
        daemon.failures["kill"] = (500, "kill broke")
        with pytest.raises(ExecutionTimeout):
            await async_runner.run("php:8.2-cli", "<?php while (true) {}", timeout=1)
        assert daemon.requests[-1][0] == "DELETE"
        assert daemon.containers == {}

    async def test_undecodable_logs_body(self, async_runner, daemon, monkeypatch):
        """A corrupt content-encoding surfaces as MalformedResponseError."""
        monkeypatch.setattr(
            daemon,
            "_logs",
            lambda request, cid: httpx.Response(
                200,
                headers={"Content-Encoding": "gzip"},
                stream=httpx.ByteStream(b"notgzip"),
            ),
        )
        with pytest.raises(MalformedResponseError):
            await async_runner.run("php:8.2-cli", "<?php")
        assert daemon.containers == {}
