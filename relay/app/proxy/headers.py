"""
Header Filtering
================

Blocklists and filters applied to messages crossing the relay.

Headers are handled as raw ``(name, value)`` byte pairs so repeated headers
keep their order and multiplicity. Names are compared case-insensitively.
"""

from typing import Iterable, List, Tuple

RawHeaders = List[Tuple[bytes, bytes]]

# Client -> upstream. Hop-by-hop headers plus the headers that identify the
# browser-facing origin; the HTTP client regenerates Host and framing itself.
REQUEST_HEADERS_BLOCKLIST = frozenset(
    {
        b"host",
        b"connection",
        b"keep-alive",
        b"proxy-authenticate",
        b"proxy-authorization",
        b"te",
        b"trailer",
        b"transfer-encoding",
        b"upgrade",
        b"origin",
        b"referer",
    }
)

# Upstream -> client. CORS headers are dropped so the CORS middleware is the
# only source of them.
RESPONSE_HEADERS_BLOCKLIST = frozenset(
    {
        b"connection",
        b"keep-alive",
        b"proxy-authenticate",
        b"proxy-authorization",
        b"te",
        b"trailer",
        b"transfer-encoding",
        b"upgrade",
    }
)

CORS_HEADER_PREFIX = b"access-control-"

AUTHORIZATION = b"authorization"
CONTENT_LENGTH = b"content-length"


def _as_bytes(value) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("latin-1")


def filter_request_headers(headers: Iterable[Tuple[bytes, bytes]]) -> RawHeaders:
    """
    Drop every request header named in the request blocklist.

    Args:
        headers: Raw inbound header pairs (ASGI ``scope["headers"]`` shape)

    Returns:
        The remaining pairs, in their original order
    """
    return [
        (name, value)
        for name, value in headers
        if name.lower() not in REQUEST_HEADERS_BLOCKLIST
    ]


def filter_response_headers(headers: Iterable[Tuple[bytes, bytes]]) -> RawHeaders:
    """
    Drop hop-by-hop and ``Access-Control-*`` headers from an upstream response.
    """
    filtered = []
    for name, value in headers:
        lowered = name.lower()
        if lowered in RESPONSE_HEADERS_BLOCKLIST or lowered.startswith(CORS_HEADER_PREFIX):
            continue
        filtered.append((name, value))
    return filtered


def has_header(headers: Iterable[Tuple[bytes, bytes]], name: bytes) -> bool:
    return any(key.lower() == name for key, _ in headers)


def without_header(headers: Iterable[Tuple[bytes, bytes]], name: bytes) -> RawHeaders:
    return [(key, value) for key, value in headers if key.lower() != name]


def apply_credential(headers: RawHeaders, authorization: str, overwrite: bool = False) -> RawHeaders:
    """
    Inject the upstream credential.

    An inbound Authorization header is passed through untouched unless
    ``overwrite`` is set, in which case every copy of it is replaced.

    Args:
        headers: Filtered request header pairs
        authorization: Header value to inject, e.g. ``"Bearer sk-..."``
        overwrite: Replace an existing Authorization header

    Returns:
        Header pairs carrying exactly the credential the upstream should see
    """
    if has_header(headers, AUTHORIZATION):
        if not overwrite:
            return headers
        headers = without_header(headers, AUTHORIZATION)

    return headers + [(b"Authorization", _as_bytes(authorization))]
