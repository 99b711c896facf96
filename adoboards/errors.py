from __future__ import annotations

from typing import Optional


class AdoBoardsError(Exception):
    """Base class for every error raised by adoboards."""


class ConfigError(AdoBoardsError):
    """Invalid configuration: bad keybindings, no boards, unreadable file."""


class ApiError(AdoBoardsError):
    """A request against the Azure DevOps REST API failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthError(ApiError):
    """No usable credential, or the credential was rejected twice."""


class NetworkError(ApiError):
    """Transient I/O failure; the user can retry with a manual refresh."""


class NotFound(ApiError):
    """The referenced work item no longer exists remotely."""
