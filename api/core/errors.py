"""
Error taxonomy for the render pipeline and upstream error classification.

The image-edit service reports most failures as free text, so the category of an
upstream error is derived from its message. All of that guessing lives in
UPSTREAM_ERROR_PATTERNS below; when the provider changes its wording, this table
is the only thing that needs to change.
"""
from enum import Enum
from typing import List, Optional, Tuple

LIMIT_REACHED_CODE = "LIMIT_REACHED"


class UpstreamErrorCategory(str, Enum):
    MASK_FORMAT = "MASK_FORMAT"
    BILLING = "BILLING"
    API_KEY = "API_KEY"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


# Checked in order, first match wins. Lower-cased substrings.
UPSTREAM_ERROR_PATTERNS: List[Tuple[str, UpstreamErrorCategory]] = [
    ("mask", UpstreamErrorCategory.MASK_FORMAT),
    ("billing hard limit", UpstreamErrorCategory.BILLING),
    ("insufficient_quota", UpstreamErrorCategory.BILLING),
    ("invalid api key", UpstreamErrorCategory.API_KEY),
    ("incorrect api key", UpstreamErrorCategory.API_KEY),
    ("rate limit", UpstreamErrorCategory.RATE_LIMIT),
]

# category -> (http status, user-facing message)
UPSTREAM_ERROR_RESPONSES = {
    UpstreamErrorCategory.BILLING: (402, "Image service credit limit reached. Check billing for the service account."),
    UpstreamErrorCategory.API_KEY: (502, "Image service rejected the server API key."),
    UpstreamErrorCategory.RATE_LIMIT: (503, "Too many requests to the image service. Wait a moment and try again."),
    UpstreamErrorCategory.NETWORK: (504, "Image service did not respond in time."),
    UpstreamErrorCategory.MASK_FORMAT: (502, "Image service rejected the floor mask."),
    UpstreamErrorCategory.UNKNOWN: (502, "Render failed."),
}


def classify_upstream_error(message: Optional[str]) -> UpstreamErrorCategory:
    """Map an upstream error message to a category using UPSTREAM_ERROR_PATTERNS."""
    text = (message or "").lower()
    for pattern, category in UPSTREAM_ERROR_PATTERNS:
        if pattern in text:
            return category
    return UpstreamErrorCategory.UNKNOWN


def user_message_for(category: UpstreamErrorCategory) -> str:
    return UPSTREAM_ERROR_RESPONSES[category][1]


def truncate_error(message: Optional[str], limit: int = 300) -> str:
    """Shorten an error message for storage on a render attempt."""
    if not message:
        return "Render failed"
    return message[:limit]


class RenderPipelineError(Exception):
    """Base class for errors raised by the render pipeline."""

    status_code = 500
    code = "INTERNAL"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(RenderPipelineError):
    """Missing or unreadable input images."""

    status_code = 400
    code = "VALIDATION"


class UpstreamServiceError(RenderPipelineError):
    """The image-edit service failed or returned nothing usable."""

    def __init__(self, message: str, category: Optional[UpstreamErrorCategory] = None):
        super().__init__(message)
        self.category = category or classify_upstream_error(message)
        self.status_code = UPSTREAM_ERROR_RESPONSES[self.category][0]
        self.code = self.category.value

    @property
    def user_message(self) -> str:
        if self.category == UpstreamErrorCategory.UNKNOWN and self.message:
            return self.message
        return user_message_for(self.category)


class LimitReachedError(RenderPipelineError):
    """The caller has no credit left for the requested amount."""

    status_code = 429
    code = LIMIT_REACHED_CODE

    def __init__(self, message: str = "Daily limit reached."):
        super().__init__(message)


class InternalError(RenderPipelineError):
    """Unexpected failure inside the pipeline."""

    def __init__(self, message: str = "Render failed.", attempt_id: Optional[str] = None):
        super().__init__(message)
        self.attempt_id = attempt_id
