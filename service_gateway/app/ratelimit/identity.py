"""
Rate-limit identity resolution for inbound requests.
"""

import ipaddress
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from starlette.requests import Request

ANONYMOUS_IDENTITY = "anonymous"

SCOPE_IP = "ip"
SCOPE_USER = "user"


@dataclass(frozen=True)
class RequestMetadata:
    """Connection metadata used to identify a caller."""
    remote_ip: Optional[str] = None
    forwarded_for: Optional[str] = None
    real_ip: Optional[str] = None
    cf_connecting_ip: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestMetadata":
        return cls(
            remote_ip=request.client.host if request.client else None,
            forwarded_for=request.headers.get("x-forwarded-for"),
            real_ip=request.headers.get("x-real-ip"),
            cf_connecting_ip=request.headers.get("cf-connecting-ip"),
        )

    def candidates(self) -> list:
        """Proxy-supplied addresses, nearest to the original client first."""
        chain = []
        if self.forwarded_for:
            chain.extend(part.strip() for part in self.forwarded_for.split(","))
        chain.extend(ip.strip() for ip in (self.real_ip, self.cf_connecting_ip) if ip)
        return [ip for ip in chain if ip]


def _parse_ip(value: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        return None


def first_public_ip(chain: Iterable[str]) -> Optional[str]:
    """Return the first globally routable address in a forwarded chain."""
    for candidate in chain:
        address = _parse_ip(candidate)
        if address is not None and address.is_global:
            return str(address)
    return None


def client_ip(metadata: RequestMetadata) -> Optional[str]:
    """Best guess at the caller address, or None when nothing usable is known."""
    chain = metadata.candidates()

    public = first_public_ip(chain)
    if public:
        return public

    if metadata.remote_ip:
        return metadata.remote_ip

    # No socket address (e.g. some test transports): private proxy hops still
    # separate callers better than the shared anonymous bucket
    for candidate in chain:
        address = _parse_ip(candidate)
        if address is not None:
            return str(address)
    return None


def resolve_identity(scope: str, metadata: Optional[RequestMetadata], user_id: Optional[str] = None) -> str:
    """Derive the counter identity for a policy scope.

    Never raises: with no usable signal every such caller shares the
    anonymous bucket.
    """
    if scope == SCOPE_USER and user_id:
        return f"user:{user_id}"

    ip = client_ip(metadata) if metadata is not None else None
    if ip:
        return f"ip:{ip}"

    return ANONYMOUS_IDENTITY
