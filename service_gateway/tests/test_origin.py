"""
Unit tests for same-origin validation.
"""

import pytest

from service_gateway.app.domain.origin import is_allowed_source, validate_request_origin


class TestOriginValidation:
    """Test cases for validate_request_origin."""

    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
    def test_safe_methods_pass(self, method):
        headers = {"host": "vivk.app", "origin": "https://evil.example"}
        assert validate_request_origin(method, headers) is True

    def test_same_origin_post(self):
        headers = {"host": "vivk.app", "origin": "https://vivk.app"}
        assert validate_request_origin("POST", headers) is True

    def test_cross_origin_post_rejected(self):
        headers = {"host": "vivk.app", "origin": "https://evil.example"}
        assert validate_request_origin("POST", headers) is False

    def test_origin_takes_precedence_over_referer(self):
        headers = {
            "host": "vivk.app",
            "origin": "https://evil.example",
            "referer": "https://vivk.app/chat",
        }
        assert validate_request_origin("DELETE", headers) is False

    def test_referer_checked_without_origin(self):
        assert validate_request_origin("PUT", {"host": "vivk.app", "referer": "https://vivk.app/settings"}) is True
        assert validate_request_origin("PUT", {"host": "vivk.app", "referer": "https://evil.example/x"}) is False

    def test_neither_header_passes(self):
        assert validate_request_origin("PATCH", {"host": "vivk.app"}) is True

    def test_port_must_match(self):
        headers = {"host": "localhost:3000", "origin": "http://localhost:4000"}
        assert validate_request_origin("POST", headers) is False

    def test_allowed_origins(self):
        headers = {"host": "api.vivk.app", "origin": "https://vivk.app"}
        assert validate_request_origin("POST", headers, ["https://vivk.app/"]) is True

    def test_opaque_origin_rejected(self):
        assert is_allowed_source("null", "vivk.app") is False
