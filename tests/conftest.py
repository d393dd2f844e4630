import itertools
import os
import time
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from docker.errors import APIError, NotFound

from mcp_local_engine.config import EngineSettings
from mcp_local_engine.containers.client import RuntimeClient
from mcp_local_engine.containers.images import ImageManager
from mcp_local_engine.containers.manager import ContainerManager
from mcp_local_engine.events import EventBus
from mcp_local_engine.providers.drivers import DarwinDriver
from mcp_local_engine.providers.provider import Provider


class FakeAPIClient:
    """In-memory stand-in for docker.APIClient."""

    def __init__(self):
        self.store: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.exec_frames: List[tuple] = []
        self.exec_socket = None
        self.attach_sock = None
        self.on_start = None
        self.exit_code = 0
        self.build_chunks: List[Any] = []
        self.pull_chunks: List[Any] = []
        self.build_seen: Dict[str, Any] = {}
        self.list_delay = 0.0
        self.closed = False
        self._ids = itertools.count(1)

    def add(self, name: str, running: bool = False, ports=None, cid: Optional[str] = None) -> str:
        cid = cid or f"c{next(self._ids):04d}"
        self.store[cid] = {
            "Id": cid,
            "Names": [f"/{name}"],
            "Running": running,
            "Ports": ports or {},
        }
        return cid

    def called(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    def _record(self, method, *args, **kwargs):
        self.calls.append((method, args, kwargs))

    def _get(self, cid):
        try:
            return self.store[cid]
        except KeyError:
            raise NotFound(f"No such container: {cid}")

    def containers(self, all=False):
        self._record("containers", all=all)
        if self.list_delay:
            time.sleep(self.list_delay)
        return [{"Id": c["Id"], "Names": list(c["Names"])} for c in self.store.values()]

    def inspect_container(self, cid):
        self._record("inspect_container", cid)
        container = self._get(cid)
        return {
            "Id": cid,
            "State": {"Running": container["Running"]},
            "NetworkSettings": {"Ports": container["Ports"]},
        }

    def create_container_from_config(self, config, name=None):
        self._record("create_container_from_config", config, name=name)
        cid = self.add(name or f"anon_{len(self.store)}")
        self.store[cid]["Config"] = config
        return {"Id": cid, "Warnings": []}

    def start(self, cid):
        self._record("start", cid)
        self._get(cid)["Running"] = True
        if self.on_start is not None:
            self.on_start(cid)

    def stop(self, cid):
        self._record("stop", cid)
        self._get(cid)["Running"] = False

    def remove_container(self, cid, v=False, force=False):
        self._record("remove_container", cid, v=v, force=force)
        if self._get(cid)["Running"] and not force:
            raise APIError(f"You cannot remove a running container {cid}")
        del self.store[cid]

    def exec_create(self, cid, cmd, **kwargs):
        self._record("exec_create", cid, cmd, **kwargs)
        self._get(cid)
        return {"Id": "exec-1"}

    def exec_start(self, exec_id, **kwargs):
        self._record("exec_start", exec_id, **kwargs)
        if kwargs.get("socket"):
            return self.exec_socket
        return iter(self.exec_frames)

    def attach_socket(self, cid, params=None):
        self._record("attach_socket", cid, params=params)
        return self.attach_sock

    def wait(self, cid):
        self._record("wait", cid)
        return {"StatusCode": self.exit_code, "Error": None}

    def build(self, **kwargs):
        self._record("build", **kwargs)
        self.build_seen = {
            "cwd": os.getcwd(),
            "archive": kwargs["fileobj"].name,
            "context": kwargs["fileobj"].read(),
        }
        return iter(self.build_chunks)

    def pull(self, name, stream=False):
        self._record("pull", name, stream=stream)
        return iter(self.pull_chunks)

    def close(self):
        self.closed = True


class FakeShell:
    """Scripted provider shell.

    script(pattern, *results) answers commands containing pattern with
    the results in order, repeating the last one. Exceptions are raised.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.journal: List[str] = []
        self._scripts: List[tuple] = []

    def script(self, pattern: str, *results) -> None:
        self._scripts.append((pattern, list(results)))

    def count(self, pattern: str) -> int:
        return sum(1 for cmd in self.journal if pattern in cmd)

    async def __call__(self, cmd: str, env_vars=None) -> str:
        self.calls.append((cmd, env_vars))
        self.journal.append(cmd)
        for pattern, results in self._scripts:
            if pattern in cmd:
                result = results.pop(0) if len(results) > 1 else results[0]
                if isinstance(result, BaseException):
                    raise result
                return result
        return ""


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return EngineSettings(
        src_root=tmp_path / "src",
        provider_root=tmp_path / "provider",
        provider_binary="b2d",
        retry_delay=0.0,
        list_timeout=2.0,
    )


@pytest.fixture
def api() -> FakeAPIClient:
    return FakeAPIClient()


@pytest_asyncio.fixture
async def runtime(api):
    client = RuntimeClient(api)
    try:
        yield client
    finally:
        client.close()


@pytest.fixture
def client_factory(runtime):
    async def factory() -> RuntimeClient:
        return runtime

    return factory


@pytest.fixture
def manager(settings, client_factory) -> ContainerManager:
    return ContainerManager(settings, client_factory)


@pytest.fixture
def images(settings, client_factory) -> ImageManager:
    return ImageManager(settings, client_factory)


@pytest.fixture
def shell() -> FakeShell:
    return FakeShell()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def provider(settings, shell, events) -> Provider:
    return Provider(settings, DarwinDriver(settings, shell), events)
