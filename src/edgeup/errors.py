"""Error handling for edgeup."""
from typing import Any, Dict, Optional

from edgeup.logging import get_logger

# Pipeline stages an error can originate from
STAGE_PLATFORM = "platform"
STAGE_RESOLVE = "resolve"
STAGE_FETCH = "fetch"
STAGE_VERIFY = "verify"
STAGE_EXTRACT = "extract"
STAGE_COMMIT = "commit"
STAGE_STATE = "state"


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    logger: Optional[Any] = None
) -> None:
    """Log an error with context."""
    logger = logger or get_logger(__name__)

    error_info = {
        "error_type": error.__class__.__name__,
        "error_message": str(error)
    }
    if context:
        error_info["context"] = context
    if isinstance(error, EdgeupError):
        error_info["stage"] = error.stage
        error_info["details"] = error.details

    logger.error("edgeup_error", **error_info)


class EdgeupError(Exception):
    """Base error class for edgeup."""
    def __init__(
        self,
        message: str,
        stage: str = STAGE_STATE,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.stage = stage
        self.details = details or {}


class UnsupportedPlatform(EdgeupError):
    """No artifact mapping exists for the platform."""
    def __init__(self, os_name: str, arch: str, libc: Optional[str] = None, reason: str = ""):
        message = f"Unsupported platform: os={os_name} arch={arch} libc={libc or '-'}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            stage=STAGE_PLATFORM,
            details={"os": os_name, "arch": arch, "libc": libc}
        )


class NoMatchingVersion(EdgeupError):
    """No catalog tag satisfies a constraint."""
    def __init__(self, constraint: str, candidates: int = 0):
        super().__init__(
            f"No version matching '{constraint}' ({candidates} candidates considered)",
            stage=STAGE_RESOLVE,
            details={"constraint": constraint, "candidates": candidates}
        )


class NetworkError(EdgeupError):
    """Transport failure or unexpected HTTP status.

    ``retryable`` separates transient failures (5xx, timeouts, dropped
    connections) from permanent ones so callers can decide on retries.
    """
    def __init__(
        self,
        message: str,
        url: str,
        status: Optional[int] = None,
        retryable: bool = False,
        stage: str = STAGE_FETCH,
    ):
        super().__init__(
            message,
            stage=stage,
            details={"url": url, "status": status, "retryable": retryable}
        )
        self.url = url
        self.status = status
        self.retryable = retryable


class AssetNotFound(NetworkError):
    """The artifact URL does not exist upstream."""
    def __init__(self, url: str, status: int = 404):
        super().__init__(
            f"Asset not found: {url}",
            url=url,
            status=status,
            retryable=False
        )


class ChecksumMismatch(EdgeupError):
    """Downloaded bytes do not hash to the published checksum."""
    def __init__(self, url: str, expected: str, actual: str):
        super().__init__(
            f"Checksum mismatch for {url}",
            stage=STAGE_VERIFY,
            details={"url": url, "expected": expected, "actual": actual}
        )


class ExtractionFailed(EdgeupError):
    """Archive could not be unpacked; the destination was rolled back."""
    def __init__(self, archive: str, reason: str, dest: Optional[str] = None):
        super().__init__(
            f"Failed to extract {archive}: {reason}",
            stage=STAGE_EXTRACT,
            details={"archive": archive, "dest": dest, "reason": reason}
        )


class VersionNotInstalled(EdgeupError):
    """No installed version record matches."""
    def __init__(self, version: str):
        super().__init__(
            f"Version {version} is not installed",
            stage=STAGE_STATE,
            details={"version": version}
        )


class PluginNotInstalled(EdgeupError):
    """No plugin record matches."""
    def __init__(self, name: str, runtime_version: str):
        super().__init__(
            f"Plugin {name} is not installed for runtime {runtime_version}",
            stage=STAGE_STATE,
            details={"plugin": name, "runtime_version": runtime_version}
        )


class NoActiveVersion(EdgeupError):
    """An operation needs an active runtime and none is set."""
    def __init__(self):
        super().__init__(
            "No active version; install one or run 'edgeup use <version>' first",
            stage=STAGE_STATE
        )


class LockContention(EdgeupError):
    """Another edgeup process holds the state directory lock."""
    def __init__(self, lock_path: str, attempts: int):
        super().__init__(
            f"State directory is locked by another process: {lock_path}",
            stage=STAGE_COMMIT,
            details={"lock": lock_path, "attempts": attempts}
        )


class InvalidConstraint(EdgeupError):
    """A version constraint could not be parsed."""
    def __init__(self, constraint: str, reason: str = ""):
        super().__init__(
            f"Invalid version constraint '{constraint}'" + (f": {reason}" if reason else ""),
            stage=STAGE_RESOLVE,
            details={"constraint": constraint}
        )


class FilesystemError(EdgeupError):
    """A filesystem operation under the install root failed."""
    def __init__(self, action: str, path: Any, error: OSError, stage: str = STAGE_COMMIT):
        super().__init__(
            f"Failed to {action} {path}: {error.strerror or error}",
            stage=stage,
            details={"path": str(path), "errno": error.errno}
        )
