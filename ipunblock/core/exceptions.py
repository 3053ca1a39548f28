"""Error taxonomy for firewall checks and remediation."""

from __future__ import annotations


class UnblockError(Exception):
    """Base class for every error raised by ipunblock."""


class InvalidInput(UnblockError):
    """Malformed IP or domain, unknown requester or host. Raised before any SSH."""


class UnsupportedPanel(InvalidInput):
    """No analyzer is registered for the host's panel."""


class AccessDenied(UnblockError):
    """The requester is not allowed to operate on the host."""


class FirewallError(UnblockError):
    """A remote or analysis step failed after validation passed."""


class ConnectionFailed(FirewallError):
    """SSH handshake, authentication or connect timeout failure.

    Retried by the task queue; also triggers the admin/requester
    dual notification.
    """

    def __init__(self, message: str, host: str | None = None) -> None:
        super().__init__(message)
        self.host = host


class CommandExecutionFailed(FirewallError):
    """A single remote command failed or timed out on a live connection."""

    def __init__(
        self, message: str, command: str | None = None, exit_status: int | None = None
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_status = exit_status


class LockUnavailable(FirewallError):
    """The shared lock store for anonymous requests could not be reached."""


class ReportPersistenceFailed(UnblockError):
    """The report and its audit event could not be committed."""
