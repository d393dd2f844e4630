"""Core type definitions"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

NameScheme = Enum('NameScheme', ['MANAGER', 'APP'])
ProviderState = Enum('ProviderState', ['RUNNING', 'DOWN', 'UNKNOWN'])
LifecycleEvent = Enum('LifecycleEvent', ['PRE_UP', 'POST_UP', 'PRE_DOWN', 'POST_DOWN'])

@dataclass(frozen=True)
class ContainerName:
    """Decoded container name"""
    scheme: NameScheme
    name: str
    app: Optional[str] = None

@dataclass(frozen=True)
class GenericContainer:
    """Tool view of a runtime container"""
    id: str
    name: str
    app: Optional[str]

@dataclass(frozen=True)
class ContainerInfo:
    """Generic container merged with live inspect data"""
    id: str
    name: str
    app: Optional[str]
    ports: List[str]
    running: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "app": self.app,
            "ports": self.ports,
            "running": self.running,
        }

@dataclass(frozen=True)
class CreatedContainer:
    """Result of a container create"""
    id: str
    name: str

@dataclass(frozen=True)
class ImageName:
    """Parsed image reference"""
    namespace: Optional[str]
    repo: str
    tag: Optional[str] = None

    def __str__(self) -> str:
        base = f"{self.namespace}/{self.repo}" if self.namespace else self.repo
        return f"{base}:{self.tag}" if self.tag else base

@dataclass(frozen=True)
class ImageDescriptor:
    """Validated image description"""
    name: str
    build: bool
    src: Optional[Path] = None
    create_opts: Dict[str, Any] = field(default_factory=dict)
    start_opts: Dict[str, Any] = field(default_factory=dict)
    post_provider_opts: Dict[str, Any] = field(default_factory=dict)

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded-attempt retry configuration"""
    max_attempts: int = 3
    delay: float = 0.0
    backoff: Optional[Callable[[int], float]] = None

    def delay_for(self, attempt: int) -> float:
        if self.backoff is not None:
            return self.backoff(attempt)
        return self.delay

@dataclass(frozen=True)
class EngineConfig:
    """Connection parameters for the container runtime"""
    protocol: str
    host: str
    port: int

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {"protocol": self.protocol, "host": self.host, "port": self.port}
