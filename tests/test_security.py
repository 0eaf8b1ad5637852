"""Tests for security utilities (formhook/utils/security.py)."""

import pytest

from formhook.utils.security import (
    is_valid_header_name,
    is_valid_header_value,
    mask_headers,
    mask_sensitive,
    sanitize_log_message,
)


class TestSanitizeLogMessage:
    """Test suite for sanitize_log_message()."""

    def test_removes_newlines_and_control_chars(self):
        assert sanitize_log_message("line1\nline2\r\x00end") == "line1line2end"

    def test_handles_none_and_numbers(self):
        assert sanitize_log_message(None) == ""
        assert sanitize_log_message(42) == "42"


class TestMaskSensitive:
    """Test suite for mask_sensitive()."""

    def test_shows_last_four(self):
        assert mask_sensitive("sk_live_1234567890abcdef") == "***cdef"

    @pytest.mark.parametrize("value", [None, "", "abc", "abcd"])
    def test_short_values_fully_masked(self, value):
        assert mask_sensitive(value) == "***"


class TestMaskHeaders:
    """Test suite for mask_headers()."""

    def test_keeps_scheme_prefix(self):
        masked = mask_headers({"Authorization": "Bearer tok_secret_value"})
        assert masked == {"Authorization": "Bearer ***alue"}

    def test_masks_other_sensitive_headers(self):
        masked = mask_headers({"X-API-Key": "key-123456", "X-Tenant": "acme"})
        assert masked == {"X-API-Key": "***3456", "X-Tenant": "acme"}

    def test_does_not_mutate_input(self):
        headers = {"authorization": "Basic YWxpY2U6c2VjcmV0"}
        mask_headers(headers)
        assert headers == {"authorization": "Basic YWxpY2U6c2VjcmV0"}


class TestHeaderValidation:
    """Test suite for custom header checks."""

    @pytest.mark.parametrize("name", ["X-Tenant", "x_custom", "Accept"])
    def test_valid_names(self, name):
        assert is_valid_header_name(name) is True

    @pytest.mark.parametrize("name", ["", "Bad Header", "X:Colon", "Ümlaut"])
    def test_invalid_names(self, name):
        assert is_valid_header_name(name) is False

    def test_values_reject_crlf(self):
        assert is_valid_header_value("ok value") is True
        assert is_valid_header_value("evil\r\nInjected: 1") is False
