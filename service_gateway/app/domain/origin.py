"""
Same-origin validation for state-changing requests.
"""

from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _source(value: str) -> Optional[str]:
    """scheme://host[:port] of an Origin or Referer value, None if unparsable."""
    try:
        parts = urlsplit(value.strip())
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def is_allowed_source(value: str, host: Optional[str], allowed_origins: Iterable[str] = ()) -> bool:
    source = _source(value)
    if source is None:
        return False

    if host and source.split("://", 1)[1] == host.strip().lower():
        return True

    allowed = {origin.strip().rstrip("/").lower() for origin in allowed_origins}
    return source in allowed


def validate_request_origin(method: str, headers: Mapping[str, str],
                            allowed_origins: Iterable[str] = ()) -> bool:
    """Reject cross-origin mutations.

    Origin decides when present, Referer otherwise. Requests carrying
    neither (server-to-server calls) pass.
    """
    if method.upper() not in STATE_CHANGING_METHODS:
        return True

    host = headers.get("host")
    origin = headers.get("origin")
    if origin:
        return is_allowed_source(origin, host, allowed_origins)

    referer = headers.get("referer")
    if referer:
        return is_allowed_source(referer, host, allowed_origins)

    return True
