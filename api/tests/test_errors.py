"""
Tests for upstream error classification and pipeline error types.
"""
import pytest
from core.errors import (
    InternalError,
    LimitReachedError,
    UpstreamErrorCategory,
    UpstreamServiceError,
    ValidationError,
    classify_upstream_error,
    truncate_error,
    user_message_for,
)


class TestClassifyUpstreamError:
    @pytest.mark.parametrize(
        "message,category",
        [
            ("Invalid mask image: must have an alpha channel", UpstreamErrorCategory.MASK_FORMAT),
            ("Billing hard limit has been reached.", UpstreamErrorCategory.BILLING),
            ("You exceeded your current quota (insufficient_quota)", UpstreamErrorCategory.BILLING),
            ("Invalid API key provided", UpstreamErrorCategory.API_KEY),
            ("Incorrect API key provided: sk-abc", UpstreamErrorCategory.API_KEY),
            ("Rate limit reached for gpt-image-1", UpstreamErrorCategory.RATE_LIMIT),
            ("The server had an error while processing your request", UpstreamErrorCategory.UNKNOWN),
            ("", UpstreamErrorCategory.UNKNOWN),
            (None, UpstreamErrorCategory.UNKNOWN),
        ],
    )
    def test_patterns(self, message, category):
        assert classify_upstream_error(message) == category

    def test_mask_wins_over_later_patterns(self):
        assert classify_upstream_error("rate limit hit while validating mask") == UpstreamErrorCategory.MASK_FORMAT


class TestUpstreamServiceError:
    @pytest.mark.parametrize(
        "category,status",
        [
            (UpstreamErrorCategory.BILLING, 402),
            (UpstreamErrorCategory.API_KEY, 502),
            (UpstreamErrorCategory.RATE_LIMIT, 503),
            (UpstreamErrorCategory.NETWORK, 504),
            (UpstreamErrorCategory.UNKNOWN, 502),
        ],
    )
    def test_status_per_category(self, category, status):
        error = UpstreamServiceError("boom", category)

        assert error.status_code == status
        assert error.code == category.value

    def test_category_inferred_from_message(self):
        error = UpstreamServiceError("insufficient_quota")

        assert error.category == UpstreamErrorCategory.BILLING
        assert error.user_message == user_message_for(UpstreamErrorCategory.BILLING)

    def test_unknown_error_surfaces_provider_text(self):
        error = UpstreamServiceError("Content policy violation")

        assert error.user_message == "Content policy violation"


def test_limit_reached_body_fields():
    error = LimitReachedError()

    assert (error.status_code, error.code, error.message) == (429, "LIMIT_REACHED", "Daily limit reached.")


def test_validation_and_internal_status():
    assert ValidationError("bad").status_code == 400
    assert InternalError().status_code == 500
    assert InternalError(attempt_id="abc").attempt_id == "abc"


@pytest.mark.parametrize(
    "message,expected",
    [("short", "short"), ("y" * 301, "y" * 300), ("", "Render failed"), (None, "Render failed")],
)
def test_truncate_error(message, expected):
    assert truncate_error(message) == expected
