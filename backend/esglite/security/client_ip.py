from __future__ import annotations

from fastapi import Request

from esglite.core.settings import get_settings

UNKNOWN_IP = "unknown"


def get_client_ip(request: Request) -> str:
    """
    Resolve the caller's IP address.

    Behind a reverse proxy the first ``X-Forwarded-For`` hop is the client;
    ``X-Real-IP`` is the nginx fallback. Proxy headers are ignored when
    TRUST_PROXY_HEADERS is off, since a direct client can forge them.
    """
    if get_settings().trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
        real_ip = request.headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip
    client = request.client
    return client.host if client and client.host else UNKNOWN_IP
