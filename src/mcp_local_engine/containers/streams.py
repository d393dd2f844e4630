"""Exec sessions and local terminal plumbing.

An exec runs in one of two shapes. Batch sessions get the runtime's
multiplexed stream split into separate stdout and stderr readers.
Interactive sessions attach a pseudo-terminal; the runtime merges both
channels into one stream, so they expose a single stdout reader and
forward local input to the remote side.
"""
import asyncio
import sys
from contextlib import contextmanager
from typing import Any, AsyncIterator, BinaryIO, Iterator, Optional, Tuple

from mcp_local_engine.errors import ExecStderrError
from mcp_local_engine.logging import get_logger

logger = get_logger(__name__)

CHUNK_SIZE = 4096

Frame = Tuple[Optional[bytes], Optional[bytes]]


def _mark_retrieved(future: asyncio.Future) -> None:
    # wait() is optional for callers that only read stdout.
    if not future.cancelled():
        future.exception()


class BatchExec:
    """Non-interactive exec with demultiplexed output.

    wait() resolves when the stream ends and fails as soon as anything
    arrives on stderr, whatever stdout does afterwards.
    """

    interactive = False

    def __init__(self) -> None:
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._done: asyncio.Future = asyncio.get_running_loop().create_future()
        self._done.add_done_callback(_mark_retrieved)
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def start(cls, frames: AsyncIterator[Frame]) -> "BatchExec":
        session = cls()
        session._task = asyncio.create_task(session._pump(frames))
        return session

    async def _pump(self, frames: AsyncIterator[Frame]) -> None:
        try:
            async for out, err in frames:
                if out:
                    self.stdout.feed_data(out)
                if err:
                    self.stderr.feed_data(err)
                    if not self._done.done():
                        self._done.set_exception(
                            ExecStderrError(err.decode("utf-8", errors="replace"))
                        )
            if not self._done.done():
                self._done.set_result(None)
        except Exception as e:
            if not self._done.done():
                self._done.set_exception(e)
        finally:
            self.stdout.feed_eof()
            self.stderr.feed_eof()

    async def wait(self) -> None:
        await self._done

    async def read_stdout(self) -> str:
        return (await self.stdout.read()).decode("utf-8", errors="replace")


class InteractiveExec:
    """TTY exec: one combined output stream, local input forwarded."""

    interactive = True

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.stdout = asyncio.StreamReader()
        self._reader = reader
        self._writer = writer
        self._closed: asyncio.Future = asyncio.get_running_loop().create_future()
        self._tasks: list[asyncio.Task] = []
        self._stdin_transport: Optional[asyncio.BaseTransport] = None

    @classmethod
    async def open(
        cls,
        sock: Any,
        stdin: Optional[asyncio.StreamReader] = None,
        stdin_transport: Optional[asyncio.BaseTransport] = None,
    ) -> "InteractiveExec":
        """Wrap the runtime's hijacked socket and start forwarding."""
        reader, writer = await open_socket(sock)
        session = cls(reader, writer)
        session._stdin_transport = stdin_transport
        session._tasks.append(asyncio.create_task(session._pump()))
        if stdin is not None:
            session._tasks.append(asyncio.create_task(session._forward(stdin)))
        return session

    async def _pump(self) -> None:
        try:
            while chunk := await self._reader.read(CHUNK_SIZE):
                self.stdout.feed_data(chunk)
            if not self._closed.done():
                self._closed.set_result(None)
        except Exception as e:
            if not self._closed.done():
                self._closed.set_exception(e)
        finally:
            self.stdout.feed_eof()

    async def _forward(self, stdin: asyncio.StreamReader) -> None:
        while chunk := await stdin.read(CHUNK_SIZE):
            self._writer.write(chunk)
            await self._writer.drain()

    async def wait(self) -> None:
        """Resolve once the remote side closes the stream."""
        try:
            await self._closed
        finally:
            for task in self._tasks[1:]:
                task.cancel()
            if self._stdin_transport is not None:
                self._stdin_transport.close()
            self._writer.close()


async def open_socket(sock: Any) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Adopt a blocking socket returned by the runtime client."""
    raw = getattr(sock, "_sock", sock)
    return await asyncio.open_connection(sock=raw)


async def open_local_stdin() -> Tuple[asyncio.StreamReader, asyncio.BaseTransport]:
    """Expose this process' stdin as an asyncio reader."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    transport, _ = await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
    )
    return reader, transport


async def pipe_to(reader: asyncio.StreamReader, sink: BinaryIO) -> None:
    """Copy a reader to a local binary sink until EOF."""
    while chunk := await reader.read(CHUNK_SIZE):
        sink.write(chunk)
        sink.flush()


@contextmanager
def raw_terminal(stream=None) -> Iterator[None]:
    """Put a local TTY in raw mode and restore it on exit."""
    stream = stream or sys.stdin
    if sys.platform == "win32" or not stream.isatty():
        yield
        return

    import termios
    import tty

    fd = stream.fileno()
    saved = termios.tcgetattr(fd)
    tty.setraw(fd)
    try:
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        logger.debug("terminal_restored")
