"""Exception hierarchy for singleport."""

from __future__ import annotations


class SingleportError(Exception):
    """Base error carrying a short machine-readable code."""

    code = "SINGLEPORT_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ConfigError(SingleportError):
    """Configuration file could not be loaded."""

    code = "CONFIG_ERROR"


class ListenerBindError(SingleportError):
    """The public port could not be bound. Fatal to the process."""

    code = "BIND_FAILED"

    def __init__(self, host: str | None, port: int, reason: str) -> None:
        where = f"{host or '*'}:{port}"
        super().__init__(f"Cannot listen on {where}: {reason}")
        self.host = host
        self.port = port


class HostnameAlreadyResolvedError(SingleportError):
    """A hostname was published twice."""

    code = "HOSTNAME_ALREADY_RESOLVED"


def format_error_for_user(error: BaseException) -> str:
    """Render an unexpected exception as a one-line message."""
    if isinstance(error, SingleportError):
        return error.message
    if isinstance(error, PermissionError):
        return f"Permission denied: {error}"
    if isinstance(error, OSError) and error.strerror:
        return error.strerror
    return str(error) or type(error).__name__
