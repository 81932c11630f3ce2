"""Error types raised by ai-toolbox."""

from __future__ import annotations


class ToolboxError(Exception):
    """Base class for every error this package raises on purpose."""


class ValidationError(ToolboxError):
    """Input has the wrong shape (bad reorder list, duplicate mapping, ...)."""


class NotFoundError(ToolboxError):
    """A record does not exist, or exists but cannot be used (disabled)."""


class InUseError(ToolboxError):
    """The record is currently applied and cannot be deleted or disabled."""


class CodecError(ToolboxError):
    """A stored or native blob could not be decoded.

    ``path`` names the offending field (``env.ANTHROPIC_BASE_URL``,
    ``config``, ``line 3``) when it is known.
    """

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        if path:
            message = f"{path}: {message}"
        super().__init__(message)


class IoError(ToolboxError):
    """A filesystem operation failed. ``path`` is the file involved."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        if path:
            message = f"{message} ({path})"
        super().__init__(message)


class RemoteFileError(IoError):
    """A single remote file operation failed while the session is alive."""


class RemoteConnectionError(ToolboxError):
    """The remote session could not be opened or was lost."""


class AlreadyRunningError(ToolboxError):
    """A sync run for the same remote target is already in flight."""


class CancelledError(ToolboxError):
    """A sync run was cancelled by its caller."""
