"""Error taxonomy for the container engine and provider."""
from typing import Any, Dict, Optional

from mcp.types import (
    ErrorData,
    INVALID_PARAMS,
    INVALID_REQUEST,
    INTERNAL_ERROR,
)

from mcp_local_engine.logging import get_logger

logger = get_logger(__name__)


def log_error(error: Exception, context: Optional[Dict[str, Any]] = None) -> None:
    """Log an error with context."""
    error_info: Dict[str, Any] = {
        "error_type": error.__class__.__name__,
        "error_message": str(error),
    }
    if context:
        error_info["context"] = context
    if isinstance(error, EngineError):
        error_info["code"] = error.code
        error_info["details"] = error.details

    logger.error("engine_error", **error_info)


class EngineError(Exception):
    """Base error class for engine operations."""

    def __init__(
        self,
        message: str,
        code: int = INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_error_data(self) -> ErrorData:
        """Convert to ErrorData format."""
        return ErrorData(code=self.code, message=str(self), data=self.details)


class NotFoundError(EngineError):
    """Container id or name did not resolve."""

    def __init__(self, cid: str):
        super().__init__(
            f"The container {cid!r} does not exist",
            code=INVALID_PARAMS,
            details={"cid": cid},
        )


class AlreadyExistsError(EngineError):
    """Container name collision on create."""

    def __init__(self, name: str):
        super().__init__(
            f"The container {name!r} already exists",
            code=INVALID_REQUEST,
            details={"name": name},
        )


class StillRunningError(EngineError):
    """Remove requested on a running container without kill permission."""

    def __init__(self, cid: str):
        super().__init__(
            f"The container {cid!r} is still running, stop it first or remove with kill",
            code=INVALID_REQUEST,
            details={"cid": cid},
        )


class InvalidSpecError(EngineError):
    """Malformed image or container options."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=INVALID_PARAMS, details=details)


class EngineTimeoutError(EngineError):
    """A bounded runtime query did not answer in time."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"{operation} timed out after {timeout}s",
            details={"operation": operation, "timeout": timeout},
        )


class TransientError(EngineError):
    """Retryable failure of a shell command or network probe."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class ConfigurationError(EngineError):
    """Fatal configuration problem, not recoverable by retrying."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=INVALID_REQUEST, details=details)


class InternalInvariantError(EngineError):
    """A tool invariant was violated, e.g. duplicate container identity."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class RuntimeCallError(EngineError):
    """An underlying container runtime API call failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class ProviderError(EngineError):
    """A provider VM operation failed after retries and repairs."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class CommandError(EngineError):
    """External command exited with a non-zero status."""

    def __init__(self, cmd: str, returncode: int, stdout: str, stderr: str):
        super().__init__(
            f"Command {cmd!r} failed with code {returncode}: {stderr.strip() or stdout.strip()}",
            details={"cmd": cmd, "returncode": returncode},
        )
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


class ExecStderrError(EngineError):
    """Batch exec received data on stderr."""

    def __init__(self, stderr: str):
        super().__init__(stderr, details={"stderr": stderr})
        self.stderr = stderr


class ImageStreamError(EngineError):
    """A build or pull progress stream reported an embedded error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
