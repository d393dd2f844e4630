import asyncio
import gc
import io
import socket
from dataclasses import replace

import pytest

from mcp_local_engine.containers.manager import ContainerManager
from mcp_local_engine.containers.streams import BatchExec, InteractiveExec
from mcp_local_engine.errors import (
    AlreadyExistsError,
    EngineTimeoutError,
    ExecStderrError,
    InternalInvariantError,
    InvalidSpecError,
    NotFoundError,
    RuntimeCallError,
    StillRunningError,
    TransientError,
)
from mcp_local_engine.types import ContainerInfo, GenericContainer


@pytest.mark.asyncio
async def test_list_excludes_foreign_containers(manager, api):
    """Test containers with unrecognized names are invisible"""
    db = api.add("localdev_db")
    web = api.add("app_blog_web")
    api.add("random")
    api.add("app_blog")
    api.add("other_prefix_thing")

    containers = await manager.list()

    assert containers == [
        GenericContainer(id=db, name="localdev_db", app=None),
        GenericContainer(id=web, name="app_blog_web", app="blog"),
    ]
    assert api.called("containers")[0][2] == {"all": True}


@pytest.mark.asyncio
async def test_list_filters_by_app(manager, api):
    api.add("app_blog_web")
    api.add("app_blog_db")
    api.add("app_shop_web")
    api.add("localdev_dns")

    containers = await manager.list(app="blog")

    assert sorted(c.name for c in containers) == ["app_blog_db", "app_blog_web"]


@pytest.mark.asyncio
async def test_list_timeout(settings, client_factory, api):
    """Test a slow listing query fails with a timeout"""
    api.list_delay = 0.5
    manager = ContainerManager(replace(settings, list_timeout=0.05), client_factory)

    with pytest.raises(EngineTimeoutError):
        await manager.list()


@pytest.mark.asyncio
async def test_find_by_id_or_name(manager, api):
    cid = api.add("app_blog_web")

    by_id = await manager.find(cid)
    by_name = await manager.find("app_blog_web")

    assert by_id == by_name == GenericContainer(id=cid, name="app_blog_web", app="blog")
    assert await manager.find("app_blog_db") is None
    assert await manager.exists(cid)
    assert not await manager.exists("nope")


@pytest.mark.asyncio
async def test_find_duplicate_identity(manager, api):
    """Test two containers sharing a decoded name break the identity invariant"""
    api.add("localdev_db")
    api.add("localdev_db")

    with pytest.raises(InternalInvariantError):
        await manager.find("localdev_db")


@pytest.mark.asyncio
async def test_find_rejects_non_string_id(manager):
    with pytest.raises(InvalidSpecError):
        await manager.find(None)


@pytest.mark.asyncio
async def test_find_or_fail(manager, api):
    cid = api.add("localdev_db")

    assert (await manager.find_or_fail("localdev_db")).id == cid
    assert await manager.get("localdev_db") == cid
    assert await manager.get("localdev_web") is None
    with pytest.raises(NotFoundError):
        await manager.get_or_fail("localdev_web")


@pytest.mark.asyncio
async def test_create(manager, api):
    """Test create expands the image and names the container"""
    created = await manager.create({"name": "localdev_db", "Image": "mysql"})

    assert created.name == "localdev_db"
    call = api.called("create_container_from_config")[0]
    assert call[1][0] == {"Image": "localdev/mysql:latest"}
    assert call[2] == {"name": "localdev_db"}
    assert await manager.exists(created.id)


@pytest.mark.asyncio
async def test_create_existing_name(manager, api):
    """Test a name collision fails before any create call"""
    api.add("localdev_db")

    with pytest.raises(AlreadyExistsError):
        await manager.create({"name": "localdev_db", "Image": "mysql"})

    assert api.called("create_container_from_config") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("opts", [{"Image": "mysql"}, {"name": "localdev_db"}, {"name": "", "Image": "x"}])
async def test_create_invalid_options(manager, api, opts):
    with pytest.raises(InvalidSpecError):
        await manager.create(opts)


@pytest.mark.asyncio
async def test_start_already_running(manager, api):
    """Test start on a running container is a no-op"""
    api.add("localdev_db", running=True)

    await manager.start("localdev_db")

    assert api.called("start") == []


@pytest.mark.asyncio
async def test_start_stopped(manager, api):
    cid = api.add("localdev_db")

    await manager.start("localdev_db")

    assert [call[1] for call in api.called("start")] == [(cid,)]
    assert await manager.is_running(cid)


@pytest.mark.asyncio
async def test_start_rejects_host_options(manager, api):
    api.add("localdev_db")

    with pytest.raises(InvalidSpecError):
        await manager.start("localdev_db", {"Binds": ["/a:/b"]})


@pytest.mark.asyncio
async def test_start_missing(manager):
    with pytest.raises(NotFoundError):
        await manager.start("localdev_db")


@pytest.mark.asyncio
async def test_stop_already_stopped(manager, api):
    """Test stop on a stopped container is a no-op"""
    api.add("localdev_db")

    await manager.stop("localdev_db")

    assert api.called("stop") == []


@pytest.mark.asyncio
async def test_stop_running(manager, api):
    cid = api.add("localdev_db", running=True)

    await manager.stop(cid)

    assert len(api.called("stop")) == 1
    assert not await manager.is_running(cid)


@pytest.mark.asyncio
async def test_remove_running_without_kill(manager, api):
    """Test removing a running container needs kill"""
    cid = api.add("localdev_db", running=True)

    with pytest.raises(StillRunningError):
        await manager.remove(cid)

    assert api.called("remove_container") == []
    assert api.called("stop") == []
    assert api.store[cid]["Running"]


@pytest.mark.asyncio
async def test_remove_running_with_kill(manager, api):
    cid = api.add("localdev_db", running=True)

    await manager.remove(cid, kill=True)

    assert len(api.called("stop")) == 1
    assert api.called("remove_container")[0][2] == {"v": True, "force": False}
    assert cid not in api.store


@pytest.mark.asyncio
async def test_remove_keeps_volumes(manager, api):
    cid = api.add("localdev_db")

    await manager.remove(cid, volumes=False)

    assert api.called("remove_container")[0][2]["v"] is False


@pytest.mark.asyncio
async def test_inspect_missing(manager):
    with pytest.raises(NotFoundError):
        await manager.inspect("localdev_db")


@pytest.mark.asyncio
async def test_inspect_vanished_container(manager, api):
    """Test a container removed between list and inspect maps to NotFound"""
    cid = api.add("localdev_db")
    original = api.inspect_container

    def vanish(container_id):
        api.store.pop(container_id, None)
        return original(container_id)

    api.inspect_container = vanish

    with pytest.raises(NotFoundError):
        await manager.inspect(cid)


@pytest.mark.asyncio
async def test_info(manager, api):
    """Test info renders ports with ERROR for unbound host ports"""
    cid = api.add(
        "app_blog_web",
        running=True,
        ports={"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "8080"}], "443/tcp": None},
    )

    info = await manager.info("app_blog_web")

    assert info == ContainerInfo(
        id=cid,
        name="app_blog_web",
        app="blog",
        ports=["80/tcp=>8080", "443/tcp=>ERROR"],
        running=True,
    )


@pytest.mark.asyncio
async def test_info_missing(manager):
    """Test info on an unknown container is None, not an error"""
    assert await manager.info("app_blog_web") is None


@pytest.mark.asyncio
async def test_batch_exec_stderr_rejects(manager, api):
    """Test the first stderr byte fails the exec even if stdout continues"""
    api.add("localdev_db", running=True)
    api.exec_frames = [(b"partial ", None), (None, b"warning: boom"), (b"rest", None)]

    session = await manager.query("localdev_db", ["ls"])

    assert isinstance(session, BatchExec)
    with pytest.raises(ExecStderrError) as exc_info:
        await session.wait()
    assert "warning: boom" in str(exc_info.value)
    assert await session.read_stdout() == "partial rest"


@pytest.mark.asyncio
async def test_query_data(manager, api):
    api.add("localdev_db", running=True)
    api.exec_frames = [(b"hello ", None), (b"world", None)]

    assert await manager.query_data("localdev_db", ["echo", "hello world"]) == "hello world"

    created = api.called("exec_create")[0]
    assert created[1][1] == ["echo", "hello world"]
    assert created[2]["tty"] is False


@pytest.mark.asyncio
async def test_interactive_exec(manager, api):
    """Test tty exec forwards stdin and exposes one combined stream"""
    api.add("localdev_db", running=True)
    local, remote = socket.socketpair()
    api.exec_socket = local
    stdin = asyncio.StreamReader()
    stdin.feed_data(b"ls\n")

    session = await manager.exec("localdev_db", ["bash"], tty=True, stdin=stdin)
    assert isinstance(session, InteractiveExec)

    remote_reader, remote_writer = await asyncio.open_connection(sock=remote)
    assert await remote_reader.readexactly(3) == b"ls\n"
    remote_writer.write(b"file.txt\n")
    await remote_writer.drain()
    remote_writer.close()

    await session.wait()
    assert await session.stdout.read() == b"file.txt\n"
    assert api.called("exec_start")[0][2] == {"tty": True, "socket": True}


@pytest.mark.asyncio
async def test_use_removes_after_success(manager, api):
    seen = []

    async def fn(container):
        seen.append(container)
        return "done"

    result = await manager.use("busybox", fn)

    assert result == "done"
    assert seen[0].name.startswith("localdev_tmp")
    removed = api.called("remove_container")
    assert [call[1][0] for call in removed] == [seen[0].id]
    assert removed[0][2] == {"v": True, "force": True}
    assert api.store == {}


@pytest.mark.asyncio
async def test_use_removes_once_when_fn_fails(manager, api):
    """Test cleanup runs exactly once and fn's failure propagates"""
    def fn(container):
        raise ValueError("fn failed")

    with pytest.raises(ValueError, match="fn failed"):
        await manager.use("busybox", fn)

    assert len(api.called("remove_container")) == 1
    assert api.store == {}


@pytest.mark.asyncio
async def test_use_merges_start_options(manager, api):
    await manager.use(
        "busybox",
        lambda container: None,
        create_opts={"Env": ["A=1"]},
        start_opts={"Binds": ["/src:/src"]},
    )

    config = api.called("create_container_from_config")[0][1][0]
    assert config["Image"] == "localdev/busybox:latest"
    assert config["Env"] == ["A=1"]
    assert config["HostConfig"] == {"Binds": ["/src:/src"]}


@pytest.mark.asyncio
async def test_use_start_failure_keeps_primary_error(manager, api):
    """Test a failing start still force-removes the container"""
    def broken_start(cid):
        from docker.errors import APIError

        raise APIError("start failed")

    api.start = broken_start

    with pytest.raises(RuntimeCallError, match="start failed"):
        await manager.use("busybox", lambda container: None)

    assert len(api.called("remove_container")) == 1


@pytest.mark.asyncio
async def test_run(manager, api):
    """Test run attaches before start, returns the exit code and removes"""
    local, remote = socket.socketpair()
    api.attach_sock = local
    api.exit_code = 3

    def on_start(cid):
        assert api.called("attach_socket")
        remote.sendall(b"hello\n")
        remote.close()

    api.on_start = on_start
    sink = io.BytesIO()

    status = await manager.run("busybox", ["echo", "hello"], sink=sink)

    assert status == 3
    assert sink.getvalue() == b"hello\n"
    config = api.called("create_container_from_config")[0][1][0]
    assert config["Cmd"] == ["echo", "hello"]
    assert config["AttachStdout"] is True
    assert len(api.called("remove_container")) == 1
    assert api.store == {}


def pending_pipes():
    return [
        task
        for task in asyncio.all_tasks()
        if not task.done() and task.get_coro().__name__ == "pipe_to"
    ]


@pytest.mark.asyncio
async def test_run_start_failure_releases_output(manager, api):
    """Test a failed start removes the container and stops the output pump"""
    from docker.errors import APIError

    local, remote = socket.socketpair()
    api.attach_sock = local

    def on_start(cid):
        raise APIError("start failed")

    api.on_start = on_start

    with pytest.raises(RuntimeCallError, match="start failed"):
        await manager.run("busybox", ["echo", "hello"], sink=io.BytesIO())

    assert len(api.called("remove_container")) == 1
    assert api.called("remove_container")[0][2]["force"] is True
    assert pending_pipes() == []
    remote.close()


@pytest.mark.asyncio
async def test_use_cleanup_failure_keeps_primary_error(settings, client_factory, api):
    """Test an unreachable runtime during cleanup does not mask fn's failure"""
    broken = False

    async def factory():
        if broken:
            raise TransientError("engine not reachable")
        return await client_factory()

    manager = ContainerManager(settings, factory)

    def fn(container):
        nonlocal broken
        broken = True
        raise ValueError("fn failed")

    with pytest.raises(ValueError, match="fn failed"):
        await manager.use("busybox", fn)

    assert api.called("remove_container") == []


@pytest.mark.asyncio
async def test_batch_exec_stderr_without_wait(manager, api):
    """Test reading stdout alone leaves no unretrieved stderr failure behind"""
    loop = asyncio.get_running_loop()
    reported = []
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    api.add("localdev_db", running=True)
    api.exec_frames = [(b"out", None), (None, b"warning")]

    try:
        session = await manager.query("localdev_db", ["ls"])
        assert await session.read_stdout() == "out"
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        del session
        gc.collect()
    finally:
        loop.set_exception_handler(None)

    assert reported == []
