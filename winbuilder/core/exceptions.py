"""Custom exception hierarchy for the Windows builder.

All builder-specific exceptions inherit from BuilderError, so the entrypoint
can log and abort on any of them with a single except clause.
"""

from __future__ import annotations


class BuilderError(Exception):
    """Base exception for all builder errors."""


class ConfigurationError(BuilderError):
    """Raised for invalid configuration or missing required settings."""


class BuildCancelled(BuilderError):
    """Raised when a wait observes the build's cancellation signal."""


class PollTimeout(BuilderError, TimeoutError):
    """Raised by the polling primitive when its deadline passes."""


# =============================================================================
# Compute Engine
# =============================================================================


class ProvisioningError(BuilderError):
    """Raised when instance creation is rejected or the instance dies while booting."""


class OperationTimeout(BuilderError, TimeoutError):
    """Raised when a zone operation (or a state wait) never completes."""

    def __init__(self, name: str, timeout: float) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(f"Operation {name} timed out after {timeout:.0f}s")


class OperationFailedError(BuilderError):
    """Raised when a zone operation finishes with an error payload."""


class InstanceLookupError(BuilderError):
    """Raised when the instance cannot be read back from Compute Engine."""


class DeletionError(BuilderError):
    """Raised when instance deletion is rejected."""


class FirewallError(BuilderError):
    """Raised when the WinRM ingress rule cannot be created."""


# =============================================================================
# Credential handshake
# =============================================================================


class HandshakeError(BuilderError):
    """Raised when the Windows password reset fails."""


class HandshakeTimeout(HandshakeError, TimeoutError):
    """Raised when no matching password response arrives before the deadline."""

    def __init__(self, instance: str, timeout: float) -> None:
        self.instance = instance
        self.timeout = timeout
        super().__init__(
            f"No password response from {instance} within {timeout:.0f}s"
        )


class DecodeError(BuilderError):
    """Raised for a malformed response line or ciphertext. Recovered locally."""


# =============================================================================
# Remote session and workspace
# =============================================================================


class TransportError(BuilderError):
    """Raised when the WinRM connection, authentication or protocol fails."""


class NonZeroExitError(BuilderError):
    """Raised when a caller inspects an exit code and it is not zero."""

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"Command {command!r} exited with {exit_code}{detail}")


class ArchiveError(BuilderError):
    """Raised when the workspace tree cannot be archived or extracted."""


class StorageError(BuilderError):
    """Raised when an object cannot be read from or written to Cloud Storage."""
