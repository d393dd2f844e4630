"""Image build and pull."""
import json
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, Union

from docker.errors import DockerException

from mcp_local_engine.config import EngineSettings
from mcp_local_engine.containers.manager import ClientFactory
from mcp_local_engine.containers.names import expand_image_name, parse_image_name
from mcp_local_engine.errors import (
    ConfigurationError,
    ImageStreamError,
    InvalidSpecError,
    RuntimeCallError,
)
from mcp_local_engine.logging import get_logger
from mcp_local_engine.types import ImageDescriptor
from mcp_local_engine.utils.fs import packed_directory, working_directory

logger = get_logger(__name__)

VALID_IMAGE_KEYS = frozenset(
    {
        "build",
        "create_opts",
        "force_pull",
        "name",
        "post_provider_opts",
        "src",
        "src_root",
        "start_opts",
    }
)
BUILD_FILE_NAME = "Dockerfile"
BUILD_FILES_DIR = "dockerfiles"

Chunk = Union[bytes, str, Dict[str, Any]]


def default_build_file(name: str, src_root: Path) -> Path:
    """<src_root>/dockerfiles/<repo>/Dockerfile for an image name."""
    return Path(src_root) / BUILD_FILES_DIR / parse_image_name(name).repo / BUILD_FILE_NAME


def decorate(raw: Dict[str, Any], settings: EngineSettings) -> ImageDescriptor:
    """Validate a raw image description and decide between build and pull."""
    if not isinstance(raw, dict):
        raise InvalidSpecError(f"Invalid image object: {raw!r}")

    unknown = sorted(set(raw) - VALID_IMAGE_KEYS)
    if unknown:
        raise InvalidSpecError(
            f"Invalid image keys {unknown}: {raw!r}", details={"unknown": unknown}
        )

    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise InvalidSpecError(f"Invalid image name: {raw!r}")

    force_pull = raw.get("force_pull", False)
    if not isinstance(force_pull, bool):
        raise InvalidSpecError(f"Invalid image force_pull: {raw!r}")
    if force_pull and raw.get("build"):
        raise InvalidSpecError(f"Image force_pull and build are both set: {raw!r}")

    should_build = not force_pull and bool(raw.get("build") or settings.build_local)

    src = None
    if should_build:
        if raw.get("src"):
            src = Path(raw["src"]).expanduser().resolve()
        else:
            src_root = raw.get("src_root") or settings.src_root
            if not isinstance(src_root, (str, Path)):
                raise InvalidSpecError(f"Invalid image src_root: {raw!r}")
            src = default_build_file(name, Path(src_root).expanduser()).resolve()

        if not src.is_file():
            raise ConfigurationError(
                f"Could not find image build file: {src}",
                details={"image": name, "src": str(src)},
            )

    return ImageDescriptor(
        name=expand_image_name(name, settings),
        build=should_build,
        src=src,
        create_opts=raw.get("create_opts") or {},
        start_opts=raw.get("start_opts") or {},
        post_provider_opts=raw.get("post_provider_opts") or {},
    )


def _records(chunk: Chunk) -> Iterator[Union[Dict[str, Any], str]]:
    """Split a progress chunk into parsed records or opaque lines."""
    if isinstance(chunk, dict):
        yield chunk
        return
    text = chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else chunk
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except ValueError:
            yield line
            continue
        yield record if isinstance(record, dict) else line


async def consume_progress_stream(chunks: AsyncIterator[Chunk], description: str) -> None:
    """Drain a build or pull progress stream.

    The first embedded error is remembered and raised once the stream
    ends, so all of the output still reaches the log.
    """
    error = None
    async for chunk in chunks:
        for record in _records(chunk):
            if isinstance(record, str):
                logger.info("image_output", output=record)
            elif "error" in record:
                message = record.get("error") or json.dumps(record.get("errorDetail"))
                logger.error("image_stream_error", error=message)
                error = error or message
            elif "stream" in record:
                if output := str(record["stream"]).rstrip():
                    logger.info("image_output", output=output)
            elif "status" in record:
                logger.info(
                    "image_status",
                    status=record["status"],
                    id=record.get("id"),
                    progress=record.get("progress"),
                )
            else:
                logger.info("image_record", record=record)

    if error:
        raise ImageStreamError(f"{description}: {error}", details={"error": error})


class ImageManager:
    """Builds images from local sources or pulls them from a registry."""

    def __init__(self, settings: EngineSettings, client_factory: ClientFactory):
        self.settings = settings
        self._client_factory = client_factory

    def decorate(self, raw: Dict[str, Any]) -> ImageDescriptor:
        return decorate(raw, self.settings)

    async def build(self, raw: Dict[str, Any]) -> ImageDescriptor:
        """Build or pull an image from its raw description."""
        image = self.decorate(raw)
        if image.build:
            await self.build_from_source(image)
        else:
            await self.pull(image)
        return image

    async def build_from_source(self, image: ImageDescriptor) -> None:
        """Send the build file's directory to the runtime as a build context."""
        if image.src is None:
            raise InvalidSpecError(f"Image {image.name} has no build file")

        logger.info("building_image", image=image.name, src=str(image.src))
        description = f"Error while building image {image.name!r}"
        client = await self._client_factory()
        try:
            with working_directory(image.src.parent) as context_dir:
                with packed_directory(context_dir) as archive_path:
                    with open(archive_path, "rb") as context:
                        stream = await client.call(
                            "build",
                            fileobj=context,
                            custom_context=True,
                            tag=image.name,
                            dockerfile=image.src.name,
                            rm=True,
                        )
                        await consume_progress_stream(client.iterate(stream), description)
        except (DockerException, OSError) as e:
            raise RuntimeCallError(f"{description}: {e}", details={"image": image.name}) from e

        logger.info("image_built", image=image.name)

    async def pull(self, image: ImageDescriptor) -> None:
        """Pull an image from its registry."""
        logger.info("pulling_image", image=image.name)
        description = f"Error pulling image {image.name!r}"
        client = await self._client_factory()
        try:
            stream = await client.call("pull", image.name, stream=True)
            await consume_progress_stream(client.iterate(stream), description)
        except DockerException as e:
            raise RuntimeCallError(f"{description}: {e}", details={"image": image.name}) from e

        logger.info("image_pulled", image=image.name)
