"""MCP Local Engine package."""

__version__ = "0.1.0"

from mcp_local_engine.types import (
    ContainerInfo,
    ContainerName,
    CreatedContainer,
    EngineConfig,
    GenericContainer,
    ImageDescriptor,
    LifecycleEvent,
    NameScheme,
    ProviderState,
    RetryPolicy,
)
from mcp_local_engine.config import EngineSettings, load_settings
from mcp_local_engine.context import EngineContext, create_context
from mcp_local_engine.retry import retry
from mcp_local_engine.errors import (
    EngineError,
    NotFoundError,
    AlreadyExistsError,
    StillRunningError,
    InvalidSpecError,
    EngineTimeoutError,
    TransientError,
    ConfigurationError,
    InternalInvariantError,
    RuntimeCallError,
    CommandError,
    ProviderError,
    ExecStderrError,
    ImageStreamError,
)

__all__ = [
    # Data types
    "ContainerInfo",
    "ContainerName",
    "CreatedContainer",
    "EngineConfig",
    "GenericContainer",
    "ImageDescriptor",
    "LifecycleEvent",
    "NameScheme",
    "ProviderState",
    "RetryPolicy",

    # Configuration and wiring
    "EngineSettings",
    "load_settings",
    "EngineContext",
    "create_context",
    "retry",

    # Error types
    "EngineError",
    "NotFoundError",
    "AlreadyExistsError",
    "StillRunningError",
    "InvalidSpecError",
    "EngineTimeoutError",
    "TransientError",
    "ConfigurationError",
    "InternalInvariantError",
    "RuntimeCallError",
    "CommandError",
    "ProviderError",
    "ExecStderrError",
    "ImageStreamError",
]
