from __future__ import annotations

from typing import Optional


class FeedrankError(Exception):
    """Base error. `code` and `status_code` drive the HTTP error payload."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(message or self.__class__.__doc__ or self.code)


class InvalidCursor(FeedrankError):
    """Malformed continuation cursor."""

    code = "INVALID_CURSOR"
    status_code = 400


# ---------- Engagement ----------


class EngagementError(FeedrankError):
    """Engagement toggle failed."""

    code = "ENGAGEMENT_ERROR"


class Unauthenticated(EngagementError):
    """Authentication required."""

    code = "UNAUTHORIZED"
    status_code = 401


class RateLimited(EngagementError):
    """Too many requests for this item."""

    code = "RATE_LIMITED"
    status_code = 429


class ItemNotFound(EngagementError):
    """Item not found."""

    code = "ITEM_NOT_FOUND"
    status_code = 404


class ToggleConflict(EngagementError):
    """Concurrent write conflict."""

    code = "CONFLICT"
    status_code = 409


class NetworkError(EngagementError):
    """Network error."""

    code = "NETWORK_ERROR"
    status_code = 503


class ServerError(EngagementError):
    """Server error."""

    code = "SERVER_ERROR"
    status_code = 500


ENGAGEMENT_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (Unauthenticated, RateLimited, ItemNotFound, ToggleConflict, NetworkError, ServerError)
}


# ---------- Configuration ----------


class ConfigError(FeedrankError):
    """Configuration error."""

    code = "CONFIG_ERROR"


class ConfigVersionExists(ConfigError):
    """Configuration version already exists."""

    code = "CONFIG_VERSION_EXISTS"
    status_code = 409


class ConfigNotFound(ConfigError):
    """Configuration version not found."""

    code = "CONFIG_NOT_FOUND"
    status_code = 404


class InvalidConfig(ConfigError):
    """Configuration document failed validation."""

    code = "INVALID_CONFIG"
    status_code = 422
