"""Generation error taxonomy and user-facing error sanitization."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from services.admission import Decision


GENERIC_ERROR_MESSAGE = "An error occurred while processing your request. Please try again later."
UPLOAD_FAILED_MESSAGE = (
    "Video was generated but failed to upload to storage. Please contact support."
)
NO_VIDEO_MESSAGE = "No video generated"

_MODERATION_MARKERS = (
    "sensitive words",
    "Responsible AI practices",
    "violate",
    "content policy",
)

_SENSITIVE_PATTERNS = (
    re.compile(r"projects/[^/\s]+"),
    re.compile(r"[A-Za-z0-9._-]+@[A-Za-z0-9-]+\.iam\.gserviceaccount\.com"),
    re.compile(r"gs://[^/\s]+"),
    re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*"),
    re.compile(r"AIza[0-9A-Za-z\-_]{35}"),
    re.compile(r"[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}", re.IGNORECASE),
)

_FRIENDLY_MESSAGES = (
    (("PERMISSION_DENIED", "403"), "Service configuration error. Please contact support."),
    (("QUOTA_EXCEEDED", "RESOURCE_EXHAUSTED", "429"), "Service is temporarily busy. Please try again in a few minutes."),
    (("INVALID_ARGUMENT", "400"), "Invalid request. Please check your input and try again."),
    (("NOT_FOUND", "404"), "Resource not found. Please try again."),
)


def redact_sensitive(message: str) -> str:
    """Replace project ids, credentials, bucket paths and raw ids with a marker."""
    redacted = message
    for pattern in _SENSITIVE_PATTERNS:
        redacted = pattern.sub("[REDACTED]", redacted)
    return redacted


def is_moderation_message(message: str) -> bool:
    return any(marker in message for marker in _MODERATION_MARKERS)


def sanitize_error(error: Any) -> str:
    """Map a provider or transport error to a message safe to show an end user.

    Content-moderation rejections are returned verbatim so the user can fix
    their prompt. Everything else is redacted and collapsed onto a short list
    of generic phrases.
    """
    if isinstance(error, BaseException):
        message = str(error) or ""
    else:
        message = str(error or "")
    if not message:
        return GENERIC_ERROR_MESSAGE

    if is_moderation_message(message):
        return message

    redacted = redact_sensitive(message)
    for markers, friendly in _FRIENDLY_MESSAGES:
        if any(marker in redacted for marker in markers):
            return friendly
    return GENERIC_ERROR_MESSAGE


class AdmissionDenied(Exception):
    """Raised by the request layer when an admission decision is a denial."""

    def __init__(self, decision: "Decision"):
        self.decision = decision
        super().__init__(decision.user_message())


class SubmissionFailed(RuntimeError):
    """The provider rejected a generation request. Message is already sanitized."""


class PollTransientError(RuntimeError):
    """A poll request could not reach the provider or got no usable answer."""


class ProviderRequestError(RuntimeError):
    """The provider answered a request with an error response."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, raw: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.raw = raw


class ProviderConfigError(RuntimeError):
    """Provider credentials or project settings are missing."""


class StorageUploadError(RuntimeError):
    """Durable object storage rejected or failed an upload."""


class WatermarkError(RuntimeError):
    """The watermark tool is missing or failed to render."""


class GenerationTimeout(TimeoutError):
    """Client-side polling gave up before the job reached a terminal state."""
