"""Async adapter over the container runtime API client."""
import asyncio
from typing import Any, AsyncIterator, Iterable, TypeVar

import aiohttp
import docker
from docker.errors import DockerException

from mcp_local_engine.errors import TransientError
from mcp_local_engine.logging import get_logger
from mcp_local_engine.retry import retry
from mcp_local_engine.types import EngineConfig, RetryPolicy

logger = get_logger(__name__)

T = TypeVar("T")

_DONE = object()
PING_TIMEOUT = 5.0


class RuntimeClient:
    """Runs blocking docker API calls off the event loop."""

    def __init__(self, api: Any):
        self.api = api

    async def call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke an APIClient method in a worker thread."""
        return await asyncio.to_thread(getattr(self.api, method), *args, **kwargs)

    async def iterate(self, iterable: Iterable[T]) -> AsyncIterator[T]:
        """Consume a blocking iterator (progress or exec stream) chunk by chunk."""
        iterator = iter(iterable)
        while True:
            item = await asyncio.to_thread(next, iterator, _DONE)
            if item is _DONE:
                return
            yield item

    def close(self) -> None:
        self.api.close()


async def ping_engine(config: EngineConfig, policy: RetryPolicy) -> None:
    """Wait until the runtime endpoint answers its health check."""
    url = f"{config.base_url}/_ping"

    async def attempt(counter: int) -> None:
        logger.debug("engine_ping", url=url, attempt=counter)
        try:
            timeout = aiohttp.ClientTimeout(total=PING_TIMEOUT)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise TransientError(
                            f"Engine ping to {url} returned status {response.status}",
                            details={"url": url, "status": response.status},
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(
                f"Engine at {url} is not reachable: {e}", details={"url": url}
            ) from e

    await retry(attempt, policy, "engine_ping")


async def connect(config: EngineConfig, policy: RetryPolicy) -> RuntimeClient:
    """Build a runtime client once the endpoint is confirmed reachable."""
    await ping_engine(config, policy)
    try:
        api = await asyncio.to_thread(
            docker.APIClient, base_url=config.base_url, version="auto"
        )
    except DockerException as e:
        raise TransientError(
            f"Error initializing runtime client for {config.base_url}: {e}",
            details=config.to_dict(),
        ) from e

    logger.info("runtime_client_ready", **config.to_dict())
    return RuntimeClient(api)
