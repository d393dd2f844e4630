"""Provider network profile.

The profile is a line-oriented KEY=VALUE file shipped with the provider
VM. Blank lines and #-comments are ignored; quoted values are unquoted.
"""
from pathlib import Path
from types import MappingProxyType
from typing import List, Mapping

from mcp_local_engine.errors import InternalInvariantError, ProviderError
from mcp_local_engine.logging import get_logger

logger = get_logger(__name__)

UPPER_IP_KEY = "UpperIP"
LOWER_IP_KEY = "LowerIP"


def parse_profile(text: str) -> Mapping[str, str]:
    """Parse profile text into an immutable mapping."""
    profile = {}
    for line in text.splitlines():
        if not line.strip() or line.startswith("#") or "=" not in line:
            continue
        parts = [part.strip() for part in line.split("=")]
        if len(parts) != 2:
            continue
        key, value = parts
        profile[key] = value.strip('"').strip("'")
    return MappingProxyType(profile)


def read_profile(path: Path) -> Mapping[str, str]:
    """Read and parse the profile file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ProviderError(f"Error reading provider profile {str(path)!r}: {e}") from e

    profile = parse_profile(text)
    logger.debug("profile_loaded", path=str(path), keys=sorted(profile))
    return profile


def server_ips(profile: Mapping[str, str]) -> List[str]:
    """Every address in the profile's inclusive LowerIP..UpperIP range."""
    try:
        upper = profile[UPPER_IP_KEY].split(".")
        lower = profile[LOWER_IP_KEY].split(".")
    except KeyError as e:
        raise ProviderError(f"Provider profile is missing {e.args[0]}") from e

    if len(upper) != 4 or len(lower) != 4 or upper[:3] != lower[:3]:
        raise InternalInvariantError(
            "Provider profile UpperIP and LowerIP must share their first three octets",
            details={"upper": profile[UPPER_IP_KEY], "lower": profile[LOWER_IP_KEY]},
        )

    prefix = ".".join(upper[:3])
    try:
        first, last = int(lower[3]), int(upper[3])
    except ValueError as e:
        raise ProviderError(
            f"Provider profile has a malformed IP range: {e}",
            details={"upper": profile[UPPER_IP_KEY], "lower": profile[LOWER_IP_KEY]},
        ) from e
    return [f"{prefix}.{octet}" for octet in range(first, last + 1)]
