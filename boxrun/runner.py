"""Runs source snippets in throwaway containers over the daemon HTTP API.

One call walks a single container through create, start, wait, logs and
remove. The snippet travels as a temp file bind-mounted read-only into the
container; both the file and the container are released on every exit path.

The step sequence lives once, in ``_BaseRunner._lifecycle``, as a generator
that yields the daemon calls it needs and receives their responses (or has
their errors thrown into it). DockerRunner and AsyncDockerRunner only differ
in how they send those calls.
"""

import contextlib
import logging
import os
import tempfile
import time
from typing import Any, Generator, Iterator, Optional

import httpx

from boxrun.connection import ConnectionConfig
from boxrun.errors import (
    BoxrunError,
    Conflict,
    DaemonConnectionError,
    DaemonError,
    ExecutionTimeout,
    ImageNotFound,
    MalformedResponseError,
    NotFound,
)
from boxrun.logs import LogDemuxer
from boxrun.models import ContainerHandle, ContainerSettings, ContainerState, ExecResponse

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0
CLEANUP_TIMEOUT = 30.0

_STATUS_ERRORS = {
    404: NotFound,
    409: Conflict,
}

_LOG_PARAMS = {"stdout": "true", "stderr": "true"}


class Deadline:
    """Time budget shared by every daemon call of one execution."""

    def __init__(self, timeout: Optional[float]):
        self.timeout = timeout
        self._expires_at = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return self._expires_at - time.monotonic()

    def request_timeout(self, container_id: Optional[str] = None) -> httpx.Timeout:
        """httpx timeout for the next call; raises once the budget is spent."""
        remaining = self.remaining()
        if remaining is None:
            # wait blocks until the container exits, so no read timeout
            return httpx.Timeout(None, connect=CONNECT_TIMEOUT)
        if remaining <= 0:
            raise ExecutionTimeout(self.timeout, container_id)
        return httpx.Timeout(remaining)


class _Call:
    """One daemon request. ``deadline=None`` marks a cleanup call."""

    def __init__(
        self,
        method: str,
        path: str,
        deadline: Optional[Deadline] = None,
        container_id: Optional[str] = None,
        **kwargs,
    ):
        self.method = method
        self.path = path
        self.deadline = deadline
        self.container_id = container_id
        self.kwargs = kwargs


Steps = Generator[_Call, Optional[httpx.Response], ExecResponse]


class _BaseRunner:
    """Step sequencing and response handling shared by both runners."""

    def __init__(
        self,
        config: Optional[ConnectionConfig] = None,
        settings: Optional[ContainerSettings] = None,
        timeout: Optional[float] = None,
        demuxer: Optional[LogDemuxer] = None,
    ):
        self.config = config if config is not None else ConnectionConfig.from_socket()
        self.settings = settings or ContainerSettings()
        self.timeout = timeout
        self.demuxer = demuxer or LogDemuxer()

    def _client_kwargs(self, transport, transport_cls) -> dict[str, Any]:
        client_config = self.config.client_config()
        options = client_config.pop("transport", None)
        if transport is None and options:
            transport = transport_cls(**options)
        return {
            "base_url": client_config["base_url"],
            "headers": client_config["headers"],
            "transport": transport,
            "timeout": httpx.Timeout(None, connect=CONNECT_TIMEOUT),
        }

    def _deadline(self, timeout: Optional[float]) -> Deadline:
        return Deadline(timeout if timeout is not None else self.timeout)

    def _lifecycle(self, image: str, host_path: str, deadline: Deadline) -> Steps:
        """create -> start -> wait -> logs -> remove, with cleanup on failure."""
        try:
            response = yield _Call(
                "POST",
                "/containers/create",
                deadline,
                json=self.settings.create_payload(image, host_path),
            )
        except NotFound as e:
            raise ImageNotFound(e.status_code, e.explanation, e.path) from e
        handle = ContainerHandle(self._container_id(response))
        logger.info(f"Created container {handle.short_id} from {image}")

        base = f"/containers/{handle.container_id}"
        try:
            yield _Call("POST", f"{base}/start", deadline, handle.container_id)
            handle.advance(ContainerState.RUNNING)

            response = yield _Call("POST", f"{base}/wait", deadline, handle.container_id)
            exit_code = self._exit_code(response)
            handle.advance(ContainerState.EXITED)

            response = yield _Call(
                "GET", f"{base}/logs", deadline, handle.container_id, params=_LOG_PARAMS
            )
            result = self._result(handle, exit_code, response.content)

            yield _Call("DELETE", base)
            handle.advance(ContainerState.REMOVED)
        except GeneratorExit:
            raise
        except ExecutionTimeout:
            logger.warning(f"Container {handle.short_id} ran out of time, killing it")
            yield from self._discard(handle, kill=True)
            raise
        except BaseException:
            yield from self._discard(handle)
            raise

        logger.info(f"Removed container {handle.short_id} (exit code {exit_code})")
        return result

    def _discard(self, handle: ContainerHandle, kill: bool = False) -> Generator[_Call, Any, None]:
        """Force-remove a container after a failed or expired execution.

        Errors are logged, not raised, so the original failure propagates.
        """
        if handle.state is ContainerState.REMOVED:
            return
        base = f"/containers/{handle.container_id}"
        if kill:
            try:
                yield _Call("POST", f"{base}/kill")
            except Conflict:
                pass  # not running anymore
            except BoxrunError as e:
                logger.warning(f"Failed to kill container {handle.short_id}: {e}")
        try:
            yield _Call("DELETE", base, params={"force": "true"})
        except NotFound:
            logger.warning(f"Container {handle.short_id} already gone")
        except BoxrunError as e:
            logger.error(f"Failed to remove container {handle.short_id}: {e}")
            return
        handle.discard()
        logger.info(f"Discarded container {handle.short_id}")

    def _prepare(self, call: _Call) -> tuple[str, httpx.Timeout]:
        url = self.settings.api_path(call.path)
        if call.deadline is None:
            timeout = httpx.Timeout(CLEANUP_TIMEOUT)
        else:
            timeout = call.deadline.request_timeout(call.container_id)
        logger.debug(f"{call.method} {url}")
        return url, timeout

    @staticmethod
    def _request_failure(exc: httpx.RequestError, call: _Call, url: str) -> BoxrunError:
        if isinstance(exc, httpx.TimeoutException):
            if call.deadline is not None and call.deadline.timeout is not None:
                return ExecutionTimeout(call.deadline.timeout, call.container_id)
            return DaemonConnectionError(f"{call.method} {url} timed out: {exc}")
        if isinstance(exc, httpx.DecodingError):
            return MalformedResponseError(f"{call.method} {url} sent an undecodable body: {exc}")
        return DaemonConnectionError(f"{call.method} {url} failed: {exc}")

    @staticmethod
    def _check(response: httpx.Response, url: str) -> None:
        if response.is_success:
            return
        try:
            explanation = response.json().get("message", "")
        except (ValueError, AttributeError):
            explanation = response.text
        error_cls = _STATUS_ERRORS.get(response.status_code, DaemonError)
        raise error_cls(response.status_code, explanation, url)

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Expected JSON from {response.request.url.path}: {e}"
            ) from e
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Expected a JSON object from {response.request.url.path}, got {type(data).__name__}"
            )
        return data

    def _container_id(self, response: httpx.Response) -> str:
        container_id = self._json(response).get("Id")
        if not isinstance(container_id, str) or not container_id:
            raise MalformedResponseError("Create response carries no container Id")
        return container_id

    def _exit_code(self, response: httpx.Response) -> Optional[int]:
        return self._json(response).get("StatusCode")

    @contextlib.contextmanager
    def _code_file(self, code: str) -> Iterator[str]:
        """Temp file holding the snippet, deleted on exit."""
        fd, path = tempfile.mkstemp(prefix=self.settings.file_prefix)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(code.encode("utf-8"))
            # Readable by whatever user the container runs as
            os.chmod(path, 0o644)
            yield path
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(path)

    def _result(self, handle: ContainerHandle, exit_code: Optional[int], raw: bytes) -> ExecResponse:
        logs = self.demuxer.demux(raw)
        if logs.truncated:
            logger.warning(f"Output of container {handle.short_id} may be incomplete")
        return ExecResponse(
            output=logs.output,
            stdout=logs.stdout,
            stderr=logs.stderr,
            exit_code=exit_code,
            container_id=handle.container_id,
            truncated=logs.truncated,
        )


class DockerRunner(_BaseRunner):
    """Runs snippets in isolated containers, one container per call.

    Usage:
        with DockerRunner() as runner:
            output = runner.run("php:8.2-cli", '<?php echo "hi";')

    Args:
        config: Daemon endpoint. Defaults to the local docker socket.
        settings: Command, mount path and limits applied to each container.
        timeout: Default per-call time budget in seconds; None waits forever.
        transport: Replaces the transport built from ``config``.
    """

    def __init__(
        self,
        config: Optional[ConnectionConfig] = None,
        settings: Optional[ContainerSettings] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        demuxer: Optional[LogDemuxer] = None,
    ):
        super().__init__(config, settings, timeout, demuxer)
        self._client = httpx.Client(**self._client_kwargs(transport, httpx.HTTPTransport))

    def __enter__(self) -> "DockerRunner":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def run(self, image: str, code: str, timeout: Optional[float] = None) -> str:
        """Run ``code`` in a fresh container from ``image`` and return its output."""
        return self.execute(image, code, timeout=timeout).output

    def execute(self, image: str, code: str, timeout: Optional[float] = None) -> ExecResponse:
        """Like run(), but also reports exit code, per-stream text and truncation."""
        deadline = self._deadline(timeout)
        with self._code_file(code) as host_path:
            return self._drive(self._lifecycle(image, host_path, deadline))

    def _drive(self, steps: Steps) -> ExecResponse:
        response, error = None, None
        while True:
            try:
                call = steps.send(response) if error is None else steps.throw(error)
            except StopIteration as stop:
                return stop.value
            try:
                response, error = self._request(call), None
            except BaseException as e:
                response, error = None, e

    def _request(self, call: _Call) -> httpx.Response:
        url, timeout = self._prepare(call)
        try:
            response = self._client.request(call.method, url, timeout=timeout, **call.kwargs)
        except httpx.RequestError as e:
            raise self._request_failure(e, call, url) from e
        self._check(response, url)
        return response


class AsyncDockerRunner(_BaseRunner):
    """asyncio flavour of DockerRunner.

    Concurrent ``execute`` calls on one runner share its client; each gets
    its own container and temp file.
    """

    def __init__(
        self,
        config: Optional[ConnectionConfig] = None,
        settings: Optional[ContainerSettings] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        demuxer: Optional[LogDemuxer] = None,
    ):
        super().__init__(config, settings, timeout, demuxer)
        self._client = httpx.AsyncClient(
            **self._client_kwargs(transport, httpx.AsyncHTTPTransport)
        )

    async def __aenter__(self) -> "AsyncDockerRunner":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def run(self, image: str, code: str, timeout: Optional[float] = None) -> str:
        """Run ``code`` in a fresh container from ``image`` and return its output."""
        result = await self.execute(image, code, timeout=timeout)
        return result.output

    async def execute(self, image: str, code: str, timeout: Optional[float] = None) -> ExecResponse:
        deadline = self._deadline(timeout)
        with self._code_file(code) as host_path:
            return await self._drive(self._lifecycle(image, host_path, deadline))

    async def _drive(self, steps: Steps) -> ExecResponse:
        response, error = None, None
        while True:
            try:
                call = steps.send(response) if error is None else steps.throw(error)
            except StopIteration as stop:
                return stop.value
            try:
                response, error = await self._request(call), None
            except BaseException as e:
                response, error = None, e

    async def _request(self, call: _Call) -> httpx.Response:
        url, timeout = self._prepare(call)
        try:
            response = await self._client.request(call.method, url, timeout=timeout, **call.kwargs)
        except httpx.RequestError as e:
            raise self._request_failure(e, call, url) from e
        self._check(response, url)
        return response
