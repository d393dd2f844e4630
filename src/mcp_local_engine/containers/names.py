"""Container and image naming conventions.

Containers owned by this tool are recognized purely by name:

    <manager_prefix>_<name>          not owned by an application
    <app_prefix>_<app>_<name>        owned by application <app>

Anything else is invisible to the engine's listings.
"""
from typing import Iterable, Optional

from fuuid import b58_fuuid

from mcp_local_engine.config import EngineSettings
from mcp_local_engine.errors import InvalidSpecError
from mcp_local_engine.types import ContainerName, ImageName, NameScheme

# Leading characters the runtime prepends to container names.
DECORATION_CHARS = ("/", " ")
TEMP_NAME_PREFIX = "tmp"


def strip_decoration(raw: str) -> str:
    """Remove one leading runtime decoration character, if present."""
    if raw and raw[0] in DECORATION_CHARS:
        return raw[1:]
    return raw


def parse_container_name(raw: str, settings: EngineSettings) -> Optional[ContainerName]:
    """Decode a container name, or None when it is not one of ours."""
    if not isinstance(raw, str):
        return None

    parts = raw.split(settings.separator)
    if not all(parts):
        return None

    match parts:
        case [prefix, name] if prefix == settings.manager_prefix:
            return ContainerName(scheme=NameScheme.MANAGER, name=name)
        case [prefix, app, name] if prefix == settings.app_prefix:
            return ContainerName(scheme=NameScheme.APP, name=name, app=app)
        case _:
            return None


def format_container_name(parts: ContainerName, settings: EngineSettings) -> str:
    """Encode name parts; inverse of parse_container_name."""
    components = [parts.name] if parts.scheme == NameScheme.MANAGER else [parts.app, parts.name]
    for component in components:
        if not component or settings.separator in component:
            raise InvalidSpecError(
                f"Invalid container name component: {component!r}",
                details={"parts": repr(parts)},
            )
    if parts.scheme == NameScheme.MANAGER and parts.app is not None:
        raise InvalidSpecError(
            "Manager container names cannot carry an app",
            details={"parts": repr(parts)},
        )

    match parts.scheme:
        case NameScheme.MANAGER:
            head = [settings.manager_prefix]
        case NameScheme.APP:
            head = [settings.app_prefix]
    return settings.separator.join(head + components)


def create_temp_name(taken: Iterable[str], settings: EngineSettings) -> ContainerName:
    """Generate a throwaway container identity not present in taken."""
    taken = set(taken)
    while True:
        parts = ContainerName(
            scheme=NameScheme.MANAGER, name=f"{TEMP_NAME_PREFIX}{b58_fuuid()}"
        )
        if format_container_name(parts, settings) not in taken:
            return parts


def parse_image_name(raw: str) -> ImageName:
    """Split [namespace/]repo[:tag] into its parts."""
    if not isinstance(raw, str) or not raw:
        raise InvalidSpecError(f"Invalid image name: {raw!r}")

    namespace, _, rest = raw.rpartition("/")
    repo, sep, tag = rest.partition(":")
    if not repo or (sep and not tag):
        raise InvalidSpecError(f"Invalid image name: {raw!r}")

    return ImageName(namespace=namespace or None, repo=repo, tag=tag or None)


def expand_image_name(raw: str, settings: EngineSettings) -> str:
    """Qualify an image name with the default namespace and tag."""
    image = parse_image_name(raw)
    return str(
        ImageName(
            namespace=image.namespace or settings.image_namespace,
            repo=image.repo,
            tag=image.tag or settings.image_tag,
        )
    )
