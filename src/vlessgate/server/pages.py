"""Plain HTTP responses served next to the tunnel endpoint.

Health check, welcome text, session stats, Prometheus metrics and the client
configuration text shown at /<uuid>.
"""

from __future__ import annotations

import base64
import json
import secrets
from http import HTTPStatus
from typing import Any
from urllib.parse import quote

from vlessgate.core.config import GatewayConfig
from vlessgate.observability.metrics import HTTP_REQUESTS, generate_metrics, get_content_type
from vlessgate.protocol.handshake import UpgradeRequest

TEXT_PLAIN = "text/plain;charset=utf-8"
APPLICATION_JSON = "application/json"

HEALTH_TEXT = "OK"
WELCOME_TEXT = "Welcome to the VLESS gateway!"

ADMIN_REALM = 'Basic realm="vlessgate admin"'

# Dropped from /stats unless the caller passed admin auth.
_PRIVATE_SESSION_FIELDS = frozenset({"peer", "destination"})

_RULE = "#" * 64
_SEPARATOR = "-" * 63


def render_client_config(uuid: str, host: str, path: str = "/", port: int = 443) -> str:
    """Render the share link and clash-meta entry for a gateway host.

    Clients are expected to reach the gateway through a TLS-terminating
    front on `port`. Stock VLESS clients read a [version, 0] response
    before any destination bytes, so the gateway they point at must run
    with response_header enabled (`vlessgate-server --response-header`).
    """
    encoded_path = quote(path, safe="")
    link = (
        f"vless://{uuid}@{host}:{port}?encryption=none&security=tls&sni={host}"
        f"&fp=randomized&type=ws&host={host}&path={encoded_path}#{host}"
    )
    return f"""
{_RULE}
v2ray
{_SEPARATOR}
{link}
{_SEPARATOR}
{_RULE}
clash-meta
{_SEPARATOR}
- type: vless
  name: {host}
  server: {host}
  port: {port}
  uuid: {uuid}
  network: ws
  tls: true
  udp: false
  sni: {host}
  client-fingerprint: chrome
  ws-opts:
    path: "{path}"
    headers:
      host: {host}
{_SEPARATOR}
{_RULE}
"""


def build_http_response(
    status: int,
    body: bytes | str = b"",
    content_type: str = TEXT_PLAIN,
    headers: dict[str, str] | None = None,
    include_body: bool = True,
) -> bytes:
    """Build a complete HTTP/1.1 response that closes the connection."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    phrase = HTTPStatus(status).phrase
    lines = [
        f"HTTP/1.1 {status} {phrase}",
        f"Content-Type: {content_type}",
        f"Content-Length: {len(body)}",
        "Connection: close",
    ]
    for name, value in (headers or {}).items():
        lines.append(f"{name}: {value}")
    head = ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")
    return head + body if include_body else head


def _request_host(request: UpgradeRequest, config: GatewayConfig) -> str:
    if config.public_host:
        return config.public_host
    host = request.header("host") or "localhost"
    # Drop any port; the share link always points at the TLS front.
    if host.startswith("["):
        return host.split("]", 1)[0] + "]"
    return host.rsplit(":", 1)[0] if host.count(":") == 1 else host


def check_admin_auth(request: UpgradeRequest, config: GatewayConfig) -> bool | None:
    """Check auth for admin endpoints (/stats, /metrics).

    Returns None when no admin credentials are configured, otherwise
    whether the request carries matching Basic credentials.
    """
    if not config.admin_enabled:
        return None
    assert config.admin_user is not None and config.admin_password is not None

    auth_header = request.header("authorization") or ""
    if not auth_header.startswith("Basic "):
        return False
    try:
        decoded = base64.b64decode(auth_header[6:], validate=True).decode("utf-8")
        username, password = decoded.split(":", 1)
    except (ValueError, UnicodeDecodeError):
        return False
    user_ok = secrets.compare_digest(username.encode(), config.admin_user.encode())
    password_ok = secrets.compare_digest(password.encode(), config.admin_password.encode())
    return user_ok and password_ok


def redact_stats(stats: dict[str, Any]) -> dict[str, Any]:
    """Strip client addresses and destinations from a stats snapshot."""
    sessions = [
        {key: value for key, value in session.items() if key not in _PRIVATE_SESSION_FIELDS}
        for session in stats.get("sessions", [])
    ]
    return {**stats, "sessions": sessions}


def route_request(
    request: UpgradeRequest,
    config: GatewayConfig,
    stats: dict[str, Any] | None = None,
) -> bytes:
    """Serve a non-upgrade request.

    /stats is only served when the caller passes a stats snapshot. With
    admin credentials configured, /stats and /metrics answer 401 to anyone
    else; without them, /stats leaves out peers and destinations.
    """
    include_body = request.method != "HEAD"
    admin_path = request.path in ("/metrics", "/stats")
    authorized = check_admin_auth(request, config) if admin_path else None
    if request.method not in ("GET", "HEAD"):
        route, response = "other", build_http_response(
            405, HTTPStatus.METHOD_NOT_ALLOWED.phrase, headers={"Allow": "GET, HEAD"}
        )
    elif admin_path and authorized is False:
        route = request.path.lstrip("/")
        response = build_http_response(
            401, "Unauthorized", headers={"WWW-Authenticate": ADMIN_REALM}, include_body=include_body
        )
    elif request.path == "/health":
        route, response = "health", build_http_response(200, HEALTH_TEXT, include_body=include_body)
    elif request.path == "/metrics":
        route, response = "metrics", build_http_response(
            200, generate_metrics(), content_type=get_content_type(), include_body=include_body
        )
    elif request.path == "/stats" and stats is not None:
        body = stats if authorized else redact_stats(stats)
        route, response = "stats", build_http_response(
            200, json.dumps(body), content_type=APPLICATION_JSON, include_body=include_body
        )
    elif request.path == f"/{config.uuid}":
        text = render_client_config(config.uuid, _request_host(request, config), config.tunnel_path)
        route, response = "config", build_http_response(200, text, include_body=include_body)
    elif request.path == "/":
        route, response = "root", build_http_response(200, WELCOME_TEXT, include_body=include_body)
    else:
        route, response = "other", build_http_response(404, "Not Found", include_body=include_body)

    status = response.split(b" ", 2)[1].decode("ascii")
    HTTP_REQUESTS.labels(route=route, status=status).inc()
    return response
