"""
Unit tests for rate-limit identity resolution.
"""

from unittest.mock import MagicMock

from service_gateway.app.ratelimit.identity import (
    ANONYMOUS_IDENTITY,
    SCOPE_IP,
    SCOPE_USER,
    RequestMetadata,
    client_ip,
    first_public_ip,
    resolve_identity,
)


class TestRequestMetadata:
    """Test cases for RequestMetadata."""

    def test_from_request_reads_socket_and_headers(self):
        request = MagicMock()
        request.client.host = "10.0.0.5"
        request.headers = {
            "x-forwarded-for": "203.0.113.7, 10.0.0.1",
            "x-real-ip": "198.51.100.2",
        }

        metadata = RequestMetadata.from_request(request)

        assert metadata.remote_ip == "10.0.0.5"
        assert metadata.forwarded_for == "203.0.113.7, 10.0.0.1"
        assert metadata.real_ip == "198.51.100.2"
        assert metadata.cf_connecting_ip is None

    def test_from_request_without_client(self):
        request = MagicMock()
        request.client = None
        request.headers = {}

        assert RequestMetadata.from_request(request).remote_ip is None

    def test_candidates_order(self):
        metadata = RequestMetadata(
            forwarded_for=" 203.0.113.7 , 10.0.0.1,",
            real_ip="198.51.100.2",
            cf_connecting_ip="192.0.2.44",
        )

        assert metadata.candidates() == ["203.0.113.7", "10.0.0.1", "198.51.100.2", "192.0.2.44"]


class TestClientIp:
    """Test cases for client address selection."""

    def test_first_public_ip_skips_private_and_garbage(self):
        assert first_public_ip(["not-an-ip", "10.1.2.3", "192.168.0.1", "8.8.8.8"]) == "8.8.8.8"

    def test_first_public_ip_none_when_all_private(self):
        assert first_public_ip(["10.1.2.3", "127.0.0.1"]) is None

    def test_public_forwarded_address_wins_over_socket(self):
        metadata = RequestMetadata(remote_ip="10.0.0.5", forwarded_for="10.0.0.9, 8.8.4.4")
        assert client_ip(metadata) == "8.8.4.4"

    def test_socket_address_when_chain_is_private(self):
        metadata = RequestMetadata(remote_ip="10.0.0.5", forwarded_for="10.0.0.9")
        assert client_ip(metadata) == "10.0.0.5"

    def test_private_chain_address_without_socket(self):
        metadata = RequestMetadata(forwarded_for="garbage, 172.16.0.4")
        assert client_ip(metadata) == "172.16.0.4"

    def test_ipv6_public_address(self):
        metadata = RequestMetadata(forwarded_for="2001:4860:4860::8888")
        assert client_ip(metadata) == "2001:4860:4860::8888"

    def test_nothing_usable(self):
        assert client_ip(RequestMetadata(forwarded_for="unknown")) is None


class TestResolveIdentity:
    """Test cases for resolve_identity."""

    def test_user_scope_with_user(self):
        metadata = RequestMetadata(remote_ip="8.8.8.8")
        assert resolve_identity(SCOPE_USER, metadata, "u-42") == "user:u-42"

    def test_user_scope_without_user_falls_back_to_ip(self):
        metadata = RequestMetadata(remote_ip="8.8.8.8")
        assert resolve_identity(SCOPE_USER, metadata) == "ip:8.8.8.8"

    def test_ip_scope_ignores_user(self):
        metadata = RequestMetadata(remote_ip="8.8.8.8")
        assert resolve_identity(SCOPE_IP, metadata, "u-42") == "ip:8.8.8.8"

    def test_anonymous_without_signal(self):
        assert resolve_identity(SCOPE_IP, RequestMetadata()) == ANONYMOUS_IDENTITY
        assert resolve_identity(SCOPE_USER, None) == ANONYMOUS_IDENTITY
