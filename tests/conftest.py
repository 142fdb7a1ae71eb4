"""Shared fakes for the API tests: a docker-py stand-in and a compose runner recorder."""

import threading

import pytest
from docker.errors import NotFound

import compose_service as cps
import config_service as cs


class FakeStream:
    """Mimics docker-py's CancellableStream: iterable of byte chunks with close()."""

    def __init__(self, chunks, events=None, block=False, error=None):
        self._chunks = list(chunks)
        self.events = events if events is not None else []
        self.block = block
        self.error = error
        self.closed = threading.Event()
        self.cancel = None

    def __iter__(self):
        return self

    def __next__(self):
        if self._chunks and not self.closed.is_set():
            return self._chunks.pop(0)
        if self.error is not None:
            raise self.error
        if self.block:
            self.closed.wait(5)
        raise StopIteration

    def close(self):
        self.events.append(("stream", self.cancel.is_set() if self.cancel else None))
        self.closed.set()


class FakeAPI:
    def __init__(self, containers=None, stream=None, known=None, list_error=None, logs_error=None):
        self._containers = containers or []
        self.stream = stream
        self.known = set(known or [])
        self.list_error = list_error
        self.logs_error = logs_error
        self.calls = []

    def containers(self, all=False):
        self.calls.append(("containers", all))
        if self.list_error is not None:
            raise self.list_error
        return list(self._containers)

    def _check(self, id):
        if self.known and id not in self.known:
            raise NotFound(f"No such container: {id}")

    def start(self, id):
        self._check(id)
        self.calls.append(("start", id))

    def stop(self, id, timeout=None):
        self._check(id)
        self.calls.append(("stop", id, timeout))

    def restart(self, id, timeout=None):
        self._check(id)
        self.calls.append(("restart", id, timeout))

    def logs(self, id, **kwargs):
        self.calls.append(("logs", id, kwargs))
        if self.logs_error is not None:
            raise self.logs_error
        self._check(id)
        return self.stream


class FakeClient:
    def __init__(self, api=None, events=None):
        self.api = api or FakeAPI()
        self.events = events if events is not None else []
        self.closed = False

    def ping(self):
        return True

    def close(self):
        self.events.append(("client", None))
        self.closed = True


class FakeFactory:
    """Hands out one FakeClient per call, all sharing the same FakeAPI."""

    def __init__(self, api=None, error=None):
        self.api = api or FakeAPI()
        self.error = error
        self.clients = []

    def __call__(self):
        if self.error is not None:
            raise self.error
        client = FakeClient(self.api)
        self.clients.append(client)
        return client


class RecordingRunner:
    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []

    def __call__(self, args, cwd, timeout):
        self.calls.append((list(args), cwd, timeout))
        key = " ".join(args[4:]) if len(args) > 4 else ""
        return self.results.get(key, cps.CmdResult(0, f"ran {key}"))


def container(id, name, state="running", project=None, created=1700000000, image="nginx:latest"):
    labels = {"com.docker.compose.project": project} if project else {}
    return {
        "Id": id,
        "Names": [f"/{name}"],
        "Image": image,
        "State": state,
        "Status": "Up 2 minutes" if state == "running" else "Exited (0) 1 minute ago",
        "Created": created,
        "Labels": labels,
    }


def make_project(root, name, compose=True, env=False):
    d = root / name
    d.mkdir()
    if compose:
        (d / "docker-compose.yml").write_text("services:\n  web:\n    image: nginx\n")
    if env:
        (d / ".env").write_text("FOO=bar\n")
    return d


@pytest.fixture
def project_root(tmp_path):
    root = tmp_path / "production"
    root.mkdir()
    return root


@pytest.fixture
def settings(project_root, tmp_path):
    return cs.Settings(project_root=str(project_root), error_log=str(tmp_path / "log.txt"))
