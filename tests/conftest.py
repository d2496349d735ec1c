"""Shared fixtures: an in-memory fake of the daemon's container endpoints."""

import json
import struct
import uuid

import httpx
import pytest

from boxrun import ConnectionConfig, DockerRunner


def frame(stream: int, payload: bytes) -> bytes:
    """Encode one multiplexed log frame."""
    return struct.pack(">BxxxL", stream, len(payload)) + payload


class FakeDaemon:
    """Answers the container endpoints the runner uses.

    ``failures`` maps a step name (create, start, wait, logs, remove, kill)
    to either a ``(status, message)`` pair or an exception class from httpx
    to raise instead of answering.
    """

    def __init__(self, logs: bytes = b"", exit_code: int = 0):
        self.logs = logs
        self.exit_code = exit_code
        self.failures: dict = {}
        self.containers: dict[str, dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.created: list[dict] = []
        self.seen_code: list[bytes] = []
        self.host_paths: list[str] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        parts = path.strip("/").split("/")
        # ["v1.41", "containers", "create"] or ["v1.41", "containers", id, action]
        if parts[2] == "create":
            return self._answer("create", request, self._create)
        container_id = parts[2]
        if container_id not in self.containers:
            return httpx.Response(404, json={"message": f"No such container: {container_id}"})
        if request.method == "DELETE":
            return self._answer("remove", request, lambda r: self._remove(r, container_id))
        action = parts[3]
        handlers = {
            "start": self._start,
            "wait": self._wait,
            "logs": self._logs,
            "kill": self._kill,
        }
        return self._answer(action, request, lambda r: handlers[action](r, container_id))

    def _answer(self, step, request, respond):
        failure = self.failures.get(step)
        if isinstance(failure, type) and issubclass(failure, Exception):
            raise failure(f"{step} failed", request=request)
        if failure is not None:
            status, message = failure
            return httpx.Response(status, json={"message": message})
        return respond(request)

    def _create(self, request):
        body = json.loads(request.content)
        self.created.append(body)
        host_path = body["HostConfig"]["Binds"][0].split(":")[0]
        self.host_paths.append(host_path)
        with open(host_path, "rb") as f:
            self.seen_code.append(f.read())
        container_id = uuid.uuid4().hex * 2
        self.containers[container_id] = {"state": "created", "image": body["Image"]}
        return httpx.Response(201, json={"Id": container_id, "Warnings": []})

    def _start(self, request, container_id):
        self.containers[container_id]["state"] = "running"
        return httpx.Response(204)

    def _wait(self, request, container_id):
        self.containers[container_id]["state"] = "exited"
        return httpx.Response(200, json={"StatusCode": self.exit_code, "Error": None})

    def _logs(self, request, container_id):
        assert request.url.params["stdout"] == "true"
        assert request.url.params["stderr"] == "true"
        return httpx.Response(
            200,
            content=self.logs,
            headers={"Content-Type": "application/vnd.docker.multiplexed-stream"},
        )

    def _kill(self, request, container_id):
        container = self.containers[container_id]
        if container["state"] != "running":
            return httpx.Response(409, json={"message": f"Container {container_id} is not running"})
        container["state"] = "exited"
        return httpx.Response(204)

    def _remove(self, request, container_id):
        container = self.containers[container_id]
        if container["state"] == "running" and request.url.params.get("force") != "true":
            return httpx.Response(409, json={"message": "cannot remove a running container"})
        del self.containers[container_id]
        return httpx.Response(204)


@pytest.fixture
def daemon():
    return FakeDaemon(logs=frame(1, b"Hello from Docker!\n"))


@pytest.fixture
def config():
    return ConnectionConfig.from_url("http://docker")


@pytest.fixture
def runner(daemon, config):
    runner = DockerRunner(config=config, transport=daemon.transport())
    yield runner
    runner.close()
