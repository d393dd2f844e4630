"""Engine settings."""
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import appdirs
import tomli

from mcp_local_engine.errors import ConfigurationError
from mcp_local_engine.logging import get_logger

logger = get_logger(__name__)

APP_NAME = "mcp-local-engine"
DATA_DIR = Path(appdirs.user_data_dir(APP_NAME))
CONFIG_FILE = Path(appdirs.user_config_dir(APP_NAME)) / "config.toml"


@dataclass(frozen=True)
class EngineSettings:
    """Static configuration shared by every engine component"""

    # Container naming
    manager_prefix: str = "localdev"
    app_prefix: str = "app"
    separator: str = "_"

    # Images
    image_namespace: str = "localdev"
    image_tag: str = "latest"
    src_root: Path = field(default_factory=lambda: DATA_DIR / "src")
    build_local: bool = False

    # Provider VM
    provider_root: Path = field(default_factory=lambda: DATA_DIR / "provider")
    provider_binary: Optional[str] = None
    vm_name: str = "localdev"
    host_only_ip: str = "10.13.37.1"
    default_ip: str = "10.13.37.42"
    netmask: str = "255.255.255.0"
    vm_interface: str = "eth1"
    share_name: str = "Users"
    share_host_path: str = "/home"

    # Runtime endpoint
    engine_protocol: str = "http"
    engine_port: int = 2375

    # Retries and timeouts
    retry_attempts: int = 3
    down_attempts: int = 3
    retry_delay: float = 1.0
    ip_repair_attempts: int = 1
    ping_attempts: int = 3
    list_timeout: float = 30.0

    @property
    def profile_path(self) -> Path:
        return self.provider_root / "profile"


_PATH_FIELDS = {"src_root", "provider_root"}


def settings_from_dict(values: Dict[str, Any]) -> EngineSettings:
    """Build settings from a flat mapping, rejecting unknown keys."""
    known = {f.name for f in fields(EngineSettings)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown engine settings: {', '.join(unknown)}",
            details={"unknown": unknown},
        )

    overrides = {
        key: Path(value).expanduser() if key in _PATH_FIELDS else value
        for key, value in values.items()
    }
    return replace(EngineSettings(), **overrides)


def load_settings(path: Optional[Path] = None) -> EngineSettings:
    """Load settings from the [engine] table of a TOML file.

    An explicit path must exist. The default config file is optional.
    """
    config_file = path or CONFIG_FILE
    if not config_file.exists():
        if path is not None:
            raise ConfigurationError(f"Config file not found: {config_file}")
        return EngineSettings()

    try:
        with open(config_file, "rb") as f:
            data = tomli.load(f)
    except tomli.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid config file {config_file}: {e}") from e

    logger.debug("settings_loaded", path=str(config_file))
    return settings_from_dict(data.get("engine", {}))
