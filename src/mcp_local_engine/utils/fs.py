import os
import tarfile
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from mcp_local_engine.logging import get_logger

logger = get_logger(__name__)


@contextmanager
def working_directory(path: Path) -> Iterator[Path]:
    """Temporarily change the process working directory."""
    previous = Path.cwd()
    os.chdir(path)
    logger.debug("cwd_changed", cwd=str(path), previous=str(previous))
    try:
        yield path
    finally:
        os.chdir(previous)
        logger.debug("cwd_restored", cwd=str(previous))


@contextmanager
def packed_directory(src_dir: Path) -> Iterator[Path]:
    """Pack the contents of src_dir into a temporary tar archive.

    The archive lives outside src_dir and is deleted on exit.
    """
    fd, name = tempfile.mkstemp(prefix="build-context-", suffix=".tar")
    os.close(fd)
    archive_path = Path(name)
    try:
        with tarfile.open(archive_path, "w") as archive:
            for entry in sorted(src_dir.iterdir()):
                archive.add(entry, arcname=entry.name)

        logger.debug(
            "directory_packed",
            src=str(src_dir),
            archive=str(archive_path),
            size=archive_path.stat().st_size,
        )
        yield archive_path
    finally:
        archive_path.unlink(missing_ok=True)
