"""Plugin error types.

Each error carries a message for the ADD failure result and whether the
orchestrator can expect a retry to succeed. The failure result itself
always reports CNI error code 1.
"""

from __future__ import annotations

# CNI error code reported for every failed ADD
CODE_GENERIC = 1


class PluginError(Exception):
    """Base class for all plugin failures."""

    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class ConfigError(PluginError):
    """Invocation environment or network configuration is unusable."""


class DecodeError(PluginError):
    """Network configuration on stdin is not valid JSON."""


class MetadataError(PluginError):
    """Instance metadata service unreachable or returned unusable data."""

    retryable = True


class ProvisionError(PluginError):
    """ENI creation failed."""


class AttachError(PluginError):
    """ENI attachment failed or the device never appeared on the host."""


class AttachLimitExceededError(AttachError):
    """Instance has no free interface attachment slot."""

    retryable = False


class DetachError(PluginError):
    """ENI detachment failed. Never fatal."""


class DeleteError(PluginError):
    """ENI deletion failed. Never fatal."""


class NamespaceError(PluginError):
    """An ip(8) operation needed to wire the namespace failed."""

    def __init__(self, message: str, *, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.stderr = stderr
