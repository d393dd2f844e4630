"""External command execution for provider control."""

import asyncio
import os
from typing import Awaitable, Dict, Optional, Protocol

from mcp_local_engine.errors import CommandError
from mcp_local_engine.logging import get_logger

logger = get_logger(__name__)


class Shell(Protocol):
    def __call__(
        self, cmd: str, env_vars: Optional[Dict[str, str]] = None
    ) -> Awaitable[str]: ...


async def run_command(cmd: str, env_vars: Optional[Dict[str, str]] = None) -> str:
    """Run a shell command and return its trimmed stdout.

    Raises CommandError on a non-zero exit status.
    """
    cmd_env = {**os.environ, **(env_vars or {})}

    logger.debug("cmd_exec", cmd=cmd)

    process = await asyncio.create_subprocess_shell(
        cmd,
        env=cmd_env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    stdout, stderr = await process.communicate()
    out = stdout.decode(errors="replace") if stdout else ""
    err = stderr.decode(errors="replace") if stderr else ""

    if out:
        logger.debug("cmd_stdout", cmd=cmd, output=out)
    if err:
        logger.debug("cmd_stderr", cmd=cmd, output=err)

    logger.debug("cmd_complete", cmd=cmd, returncode=process.returncode)

    if process.returncode != 0:
        raise CommandError(cmd, process.returncode, out, err)

    return out.strip()
