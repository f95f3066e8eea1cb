from __future__ import annotations

from typing import Optional


class StreamGrabError(RuntimeError):
    """Base error carrying a user-facing message and an operator-facing detail."""

    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, user_message: Optional[str] = None, *, detail: Optional[str] = None) -> None:
        self.user_message = user_message or self.default_message
        self.detail = detail or self.user_message
        super().__init__(self.detail)


class ConfigurationError(StreamGrabError):
    default_message = "The server is not configured correctly."


class UpstreamError(StreamGrabError):
    """A failure reported by the source site or the network path to it."""

    UNAVAILABLE = "unavailable"
    AGE_RESTRICTED = "age_restricted"
    PRIVATE = "private"
    CANNOT_CONNECT = "cannot_connect"
    INVALID_URL = "invalid_url"
    UNKNOWN = "unknown"

    _MESSAGES = {
        UNAVAILABLE: "Video unavailable. It may be deleted, private, or blocked in your region.",
        AGE_RESTRICTED: "Video requires age verification. We cannot download this without authentication.",
        PRIVATE: "This video is private.",
        CANNOT_CONNECT: "Cannot connect to the source. Check your internet connection.",
        INVALID_URL: "Invalid URL. Please enter a valid video URL.",
        UNKNOWN: "Failed to fetch video info.",
    }
    _STATUS = {
        UNAVAILABLE: 404,
        AGE_RESTRICTED: 403,
        PRIVATE: 403,
        CANNOT_CONNECT: 503,
        INVALID_URL: 400,
        UNKNOWN: 502,
    }

    def __init__(self, kind: str, *, detail: Optional[str] = None) -> None:
        if kind not in self._MESSAGES:
            kind = self.UNKNOWN
        self.kind = kind
        self.status_code = self._STATUS[kind]
        super().__init__(self._MESSAGES[kind], detail=detail)


class ConversionFailedError(StreamGrabError):
    default_message = "Download failed."

    def __init__(self, user_message: Optional[str] = None, *, detail: Optional[str] = None, exit_code: Optional[int] = None) -> None:
        self.exit_code = exit_code
        super().__init__(user_message, detail=detail)


class ConversionTimeoutError(ConversionFailedError):
    status_code = 504
    default_message = "Download took too long and was stopped."


class InsufficientStorageError(StreamGrabError):
    status_code = 507
    default_message = "The server is low on disk space. Please try again later."


class ActiveJobError(StreamGrabError):
    status_code = 409
    default_message = "A download is already running for this client."


class JobCancelledError(StreamGrabError):
    status_code = 409
    default_message = "Download cancelled."
