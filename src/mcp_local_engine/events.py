"""Provider lifecycle notifications."""
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, DefaultDict, List, Union

from mcp_local_engine.logging import get_logger
from mcp_local_engine.types import LifecycleEvent

logger = get_logger(__name__)

Listener = Callable[[LifecycleEvent], Union[None, Awaitable[Any]]]


class EventBus:
    """Ordered listener registry for lifecycle events.

    Listeners are awaited one after another in registration order. A
    failing listener fails the emit, and with it the operation that
    emitted.
    """

    def __init__(self) -> None:
        self._listeners: DefaultDict[LifecycleEvent, List[Listener]] = defaultdict(list)

    def on(self, event: LifecycleEvent, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: LifecycleEvent, listener: Listener) -> None:
        if listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    async def emit(self, event: LifecycleEvent) -> None:
        logger.debug("lifecycle_event", lifecycle=event.name.lower())
        for listener in list(self._listeners[event]):
            result = listener(event)
            if inspect.isawaitable(result):
                await result
