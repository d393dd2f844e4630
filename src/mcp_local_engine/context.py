"""Process-wide engine context.

Built once at startup and handed to every component. It owns the only
runtime client: the first successful connection is kept, a failed one
is not, so a later call may try again.
"""
import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Optional

from mcp_local_engine.config import EngineSettings, load_settings
from mcp_local_engine.containers.client import RuntimeClient, connect
from mcp_local_engine.containers.images import ImageManager
from mcp_local_engine.containers.manager import ContainerManager
from mcp_local_engine.events import EventBus
from mcp_local_engine.logging import get_logger
from mcp_local_engine.providers.commands import Shell, run_command
from mcp_local_engine.providers.drivers import select_driver
from mcp_local_engine.providers.provider import Provider
from mcp_local_engine.types import EngineConfig, LifecycleEvent, RetryPolicy

logger = get_logger(__name__)

Connector = Callable[[EngineConfig, RetryPolicy], Awaitable[RuntimeClient]]


class EngineContext:
    """Wires settings, provider and runtime-facing managers together."""

    def __init__(
        self,
        settings: EngineSettings,
        shell: Shell = run_command,
        system: Optional[str] = None,
        connector: Connector = connect,
    ):
        self.settings = settings
        self.events = EventBus()
        self.driver = select_driver(settings, shell, system)
        self.provider = Provider(settings, self.driver, self.events)
        self.containers = ContainerManager(settings, self.runtime_client)
        self.images = ImageManager(settings, self.runtime_client)

        self._connector = connector
        self._client: Optional[RuntimeClient] = None
        self._lock = asyncio.Lock()

        self.events.on(LifecycleEvent.POST_DOWN, self._drop_client)

    async def runtime_client(self) -> RuntimeClient:
        async with self._lock:
            if self._client is None:
                config = await self.provider.get_engine_config()
                policy = RetryPolicy(
                    max_attempts=self.settings.ping_attempts,
                    delay=self.settings.retry_delay,
                )
                self._client = await self._connector(config, policy)
            return self._client

    def _drop_client(self, event: LifecycleEvent) -> None:
        # The engine went away with the VM.
        if self._client is not None:
            logger.debug("runtime_client_dropped", lifecycle=event.name.lower())
            self.close()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def create_context(config_path: Optional[Path] = None, **kwargs) -> EngineContext:
    """Load settings and build the context."""
    return EngineContext(load_settings(config_path), **kwargs)
