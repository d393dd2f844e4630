"""Container lifecycle management."""
import asyncio
import inspect
import sys
from typing import Any, Awaitable, BinaryIO, Callable, Dict, List, Optional, Sequence

from docker.errors import DockerException, NotFound

from mcp_local_engine.config import EngineSettings
from mcp_local_engine.containers.client import RuntimeClient
from mcp_local_engine.containers.names import (
    create_temp_name,
    expand_image_name,
    format_container_name,
    parse_container_name,
    strip_decoration,
)
from mcp_local_engine.containers.streams import (
    BatchExec,
    InteractiveExec,
    open_local_stdin,
    open_socket,
    pipe_to,
    raw_terminal,
)
from mcp_local_engine.errors import (
    AlreadyExistsError,
    EngineError,
    EngineTimeoutError,
    InternalInvariantError,
    InvalidSpecError,
    NotFoundError,
    RuntimeCallError,
    StillRunningError,
)
from mcp_local_engine.logging import get_logger
from mcp_local_engine.types import ContainerInfo, ContainerName, CreatedContainer, GenericContainer

logger = get_logger(__name__)

ClientFactory = Callable[[], Awaitable[RuntimeClient]]

DEFAULT_EXEC_CMD = ["bash"]
TERMINAL_CMD = ["/bin/bash"]
UNBOUND_HOST_PORT = "ERROR"
ATTACH_PARAMS = {"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1}


def _check_cid(cid: Any) -> str:
    if not isinstance(cid, str) or not cid:
        raise InvalidSpecError(f"Invalid container id: {cid!r}")
    return cid


def _with_host_config(config: Dict[str, Any], start_opts: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Fold start options into the create config's HostConfig."""
    if start_opts:
        config["HostConfig"] = {**config.get("HostConfig", {}), **start_opts}
    return config


async def _cancel(task: Optional[asyncio.Task]) -> None:
    """Cancel an output pump that is still running and wait for it to stop."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def render_ports(inspect_data: Dict[str, Any]) -> List[str]:
    """Render port bindings as containerPort=>hostPort pairs."""
    ports = (inspect_data.get("NetworkSettings") or {}).get("Ports") or {}
    rendered = []
    for container_port, bindings in ports.items():
        host_port = (bindings[0].get("HostPort") if bindings else None) or UNBOUND_HOST_PORT
        rendered.append(f"{container_port}=>{host_port}")
    return rendered


class ContainerManager:
    """Maps the generic container identity scheme onto runtime operations."""

    def __init__(self, settings: EngineSettings, client_factory: ClientFactory):
        self.settings = settings
        self._client_factory = client_factory

    async def _client(self) -> RuntimeClient:
        return await self._client_factory()

    async def _raw_list(self) -> List[Dict[str, Any]]:
        client = await self._client()
        timeout = self.settings.list_timeout
        try:
            return await asyncio.wait_for(client.call("containers", all=True), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise EngineTimeoutError("Querying runtime for list of containers", timeout) from e
        except DockerException as e:
            raise RuntimeCallError(
                f"Error querying runtime for list of containers: {e}"
            ) from e

    def to_generic(self, raw: Dict[str, Any]) -> Optional[GenericContainer]:
        """Convert a runtime container record, or None if it is not ours."""
        names = raw.get("Names") or []
        if not names:
            return None
        name = strip_decoration(names[0])
        parsed = parse_container_name(name, self.settings)
        if parsed is None:
            return None
        return GenericContainer(id=raw["Id"], name=name, app=parsed.app)

    async def list(self, app: Optional[str] = None) -> List[GenericContainer]:
        """List containers belonging to this tool, optionally for one app."""
        containers = [
            container
            for container in map(self.to_generic, await self._raw_list())
            if container is not None
        ]
        if app:
            containers = [c for c in containers if c.app == app]
        return containers

    async def find(self, cid: str) -> Optional[GenericContainer]:
        """Find a container by id or name."""
        _check_cid(cid)
        matches = [c for c in await self.list() if c.id == cid or c.name == cid]
        if len(matches) > 1:
            raise InternalInvariantError(
                f"Container identity {cid!r} matches {len(matches)} containers",
                details={"cid": cid, "ids": [c.id for c in matches]},
            )
        return matches[0] if matches else None

    async def find_or_fail(self, cid: str) -> GenericContainer:
        container = await self.find(cid)
        if container is None:
            raise NotFoundError(cid)
        return container

    async def get(self, cid: str) -> Optional[str]:
        """Runtime id for a container, or None."""
        container = await self.find(cid)
        return container.id if container else None

    async def get_or_fail(self, cid: str) -> str:
        return (await self.find_or_fail(cid)).id

    async def exists(self, cid: str) -> bool:
        return await self.find(cid) is not None

    async def _inspect_id(self, runtime_id: str, cid: str) -> Dict[str, Any]:
        client = await self._client()
        try:
            return await client.call("inspect_container", runtime_id)
        except NotFound as e:
            raise NotFoundError(cid) from e
        except DockerException as e:
            raise RuntimeCallError(f"Error inspecting container {cid}: {e}") from e

    async def inspect(self, cid: str) -> Dict[str, Any]:
        """Runtime-native inspect payload for a container."""
        container = await self.find_or_fail(cid)
        return await self._inspect_id(container.id, cid)

    async def is_running(self, cid: str) -> bool:
        data = await self.inspect(cid)
        return bool((data.get("State") or {}).get("Running", False))

    async def info(self, cid: str) -> Optional[ContainerInfo]:
        """Generic container plus ports and running state, or None."""
        container = await self.find(cid)
        if container is None:
            return None

        data = await self._inspect_id(container.id, cid)
        return ContainerInfo(
            id=container.id,
            name=container.name,
            app=container.app,
            ports=render_ports(data),
            running=bool((data.get("State") or {}).get("Running", False)),
        )

    async def create(self, opts: Dict[str, Any]) -> CreatedContainer:
        """Create a named container from a runtime create config."""
        config = dict(opts)
        name = config.pop("name", None)
        if not isinstance(name, str) or not name:
            raise InvalidSpecError(f"Container create options need a name: {opts!r}")
        if not isinstance(config.get("Image"), str):
            raise InvalidSpecError(f"Container create options need an Image: {opts!r}")
        config["Image"] = expand_image_name(config["Image"], self.settings)

        if await self.exists(name):
            raise AlreadyExistsError(name)

        logger.info("creating_container", name=name, image=config["Image"])
        client = await self._client()
        try:
            data = await client.call("create_container_from_config", config, name=name)
        except DockerException as e:
            raise RuntimeCallError(f"Creating container {name} failed: {e}") from e

        result = CreatedContainer(id=data["Id"], name=name)
        logger.info("container_created", id=result.id, name=name)
        return result

    async def start(self, cid: str, opts: Optional[Dict[str, Any]] = None) -> None:
        """Start a container; no-op when it is already running."""
        if opts:
            raise InvalidSpecError(
                "Start options are host configuration and must be given at create time",
                details={"cid": cid, "opts": opts},
            )
        logger.info("starting_container", cid=cid)
        container = await self.find_or_fail(cid)
        if await self.is_running(cid):
            logger.info("container_already_started", cid=cid)
            return

        client = await self._client()
        try:
            await client.call("start", container.id)
        except DockerException as e:
            raise RuntimeCallError(f"Error starting container {cid}: {e}") from e
        logger.info("container_started", cid=cid)

    async def stop(self, cid: str) -> None:
        """Stop a container; no-op when it is not running."""
        logger.info("stopping_container", cid=cid)
        container = await self.find_or_fail(cid)
        if not await self.is_running(cid):
            logger.info("container_already_stopped", cid=cid)
            return

        client = await self._client()
        try:
            await client.call("stop", container.id)
        except DockerException as e:
            raise RuntimeCallError(f"Error stopping container {cid}: {e}") from e
        logger.info("container_stopped", cid=cid)

    async def remove(self, cid: str, volumes: bool = True, kill: bool = False) -> None:
        """Remove a container.

        A running container is stopped first only when kill is set;
        otherwise removal fails with StillRunningError.
        """
        logger.info("removing_container", cid=cid, volumes=volumes, kill=kill)
        container = await self.find_or_fail(cid)
        if await self.is_running(cid):
            if not kill:
                raise StillRunningError(cid)
            await self.stop(cid)

        client = await self._client()
        try:
            await client.call("remove_container", container.id, v=volumes)
        except DockerException as e:
            raise RuntimeCallError(f"Error removing container {cid}: {e}") from e
        logger.info("container_removed", cid=cid)

    async def exec(
        self,
        cid: str,
        cmd: Optional[Sequence[str]] = None,
        tty: bool = False,
        stdin: Optional[asyncio.StreamReader] = None,
    ) -> BatchExec | InteractiveExec:
        """Create and start an exec session in a container.

        With tty the session is interactive and local stdin (or the given
        reader) is forwarded to it. Without tty the output is
        demultiplexed into separate stdout and stderr readers.
        """
        cmd = list(cmd or DEFAULT_EXEC_CMD)
        container = await self.find_or_fail(cid)
        client = await self._client()
        try:
            logger.debug("creating_exec", cid=cid, cmd=cmd, tty=tty)
            created = await client.call(
                "exec_create",
                container.id,
                cmd,
                stdout=True,
                stderr=True,
                stdin=tty,
                tty=tty,
            )
            exec_id = created["Id"]

            logger.debug("starting_exec", cid=cid, exec_id=exec_id)
            if tty:
                sock = await client.call("exec_start", exec_id, tty=True, socket=True)
                transport = None
                if stdin is None:
                    stdin, transport = await open_local_stdin()
                return await InteractiveExec.open(sock, stdin, transport)

            frames = await client.call("exec_start", exec_id, stream=True, demux=True)
            return BatchExec.start(client.iterate(frames))
        except DockerException as e:
            raise RuntimeCallError(
                f"Error while running command {cmd} in container {cid}: {e}"
            ) from e

    async def query(self, cid: str, cmd: Sequence[str]) -> BatchExec:
        """Run a non-interactive command in a container."""
        return await self.exec(cid, cmd=cmd)

    async def query_data(self, cid: str, cmd: Sequence[str]) -> str:
        """Run a command and return its stdout once it finishes."""
        session = await self.query(cid, cmd)
        await session.wait()
        return await session.read_stdout()

    async def terminal(self, cid: str, sink: Optional[BinaryIO] = None) -> None:
        """Open an interactive shell in a container on the local terminal."""
        sink = sink or sys.stdout.buffer
        with raw_terminal():
            session = await self.exec(cid, cmd=TERMINAL_CMD, tty=True)
            output = asyncio.create_task(pipe_to(session.stdout, sink))
            try:
                await session.wait()
                await output
            finally:
                await _cancel(output)

    async def _all_names(self) -> List[str]:
        return [
            strip_decoration(name)
            for raw in await self._raw_list()
            for name in (raw.get("Names") or [])
        ]

    async def create_temp(self) -> ContainerName:
        """Fresh throwaway identity not used by any existing container."""
        return create_temp_name(await self._all_names(), self.settings)

    async def _force_remove(
        self, runtime_id: str, primary: Optional[BaseException] = None
    ) -> None:
        """Force-remove a throwaway container.

        When another failure is already propagating, a cleanup failure is
        logged instead of raised.
        """
        logger.info("removing_adhoc_container", id=runtime_id)
        try:
            client = await self._client()
            await client.call("remove_container", runtime_id, v=True, force=True)
        except (DockerException, EngineError) as e:
            if primary is not None:
                logger.error(
                    "adhoc_cleanup_failed",
                    id=runtime_id,
                    error=str(e),
                    primary_error=str(primary),
                )
                return
            if isinstance(e, EngineError):
                raise
            raise RuntimeCallError(f"Error removing ad hoc container {runtime_id}: {e}") from e

    async def use(
        self,
        image: str,
        fn: Callable[[CreatedContainer], Any],
        create_opts: Optional[Dict[str, Any]] = None,
        start_opts: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Run fn against a throwaway container, always removing it after."""
        image = expand_image_name(image, self.settings)
        name = format_container_name(await self.create_temp(), self.settings)
        config = _with_host_config(
            {"Cmd": ["bash"], "Tty": True, "Image": image, **(create_opts or {})},
            start_opts,
        )

        client = await self._client()
        runtime_id: Optional[str] = None
        try:
            logger.info("creating_adhoc_container", image=image, name=name)
            data = await client.call("create_container_from_config", config, name=name)
            runtime_id = data["Id"]

            logger.info("starting_adhoc_container", id=runtime_id)
            await client.call("start", runtime_id)

            result = fn(CreatedContainer(id=runtime_id, name=name))
            if inspect.isawaitable(result):
                result = await result
        except DockerException as e:
            error = RuntimeCallError(f"Error running ad hoc container with {image}: {e}")
            if runtime_id is not None:
                await self._force_remove(runtime_id, primary=error)
            raise error from e
        except BaseException as e:
            if runtime_id is not None:
                await self._force_remove(runtime_id, primary=e)
            raise

        await self._force_remove(runtime_id)
        return result

    async def run(
        self,
        image: str,
        cmd: Sequence[str],
        create_opts: Optional[Dict[str, Any]] = None,
        start_opts: Optional[Dict[str, Any]] = None,
        sink: Optional[BinaryIO] = None,
    ) -> int:
        """Run cmd in a fresh attached container and return its exit code.

        The container is attached before it starts so no early output is
        lost, and it is force-removed on every exit path.
        """
        image = expand_image_name(image, self.settings)
        sink = sink or sys.stdout.buffer
        config = _with_host_config(
            {
                "AttachStdin": True,
                "AttachStdout": True,
                "AttachStderr": True,
                "Tty": True,
                "OpenStdin": True,
                "StdinOnce": False,
                "Cmd": list(cmd),
                "Image": image,
                **(create_opts or {}),
            },
            start_opts,
        )

        client = await self._client()
        try:
            logger.debug("creating_run_container", image=image, cmd=list(cmd))
            data = await client.call("create_container_from_config", config)
        except DockerException as e:
            raise RuntimeCallError(f"Error creating run container with {image}: {e}") from e
        runtime_id = data["Id"]

        writer = None
        output = None
        try:
            try:
                logger.debug("attaching_run_container", id=runtime_id)
                sock = await client.call("attach_socket", runtime_id, params=ATTACH_PARAMS)
                reader, writer = await open_socket(sock)
                output = asyncio.create_task(pipe_to(reader, sink))

                logger.debug("starting_run_container", id=runtime_id)
                await client.call("start", runtime_id)

                logger.debug("waiting_run_container", id=runtime_id)
                status = await client.call("wait", runtime_id)
                await output
            finally:
                await _cancel(output)
                if writer is not None:
                    writer.close()
        except DockerException as e:
            error = RuntimeCallError(f"Error running {list(cmd)} in {image}: {e}")
            await self._force_remove(runtime_id, primary=error)
            raise error from e
        except BaseException as e:
            await self._force_remove(runtime_id, primary=e)
            raise

        await self._force_remove(runtime_id)
        return int(status.get("StatusCode", 0))
