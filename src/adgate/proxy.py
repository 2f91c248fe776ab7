import logging
import threading
from dataclasses import dataclass, field

import httpx

from adgate.errors import UpstreamForwardFailure, ValidationError
from adgate.pipeline import TARGET_HEADER, Target, parse_target

logger = logging.getLogger("adgate.proxy")

HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

# Never sent upstream
REQUEST_STRIP = HOP_BY_HOP | {"host", "content-length", TARGET_HEADER.lower()}

# Never returned to the client; the body is delivered already decoded
RESPONSE_STRIP = HOP_BY_HOP | {
    "set-cookie",
    "server",
    "x-powered-by",
    "x-aspnet-version",
    "x-aspnetmvc-version",
    "content-encoding",
    "content-length",
}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Target-URL",
}


@dataclass
class ForwardResponse:
    status: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""


def build_upstream_headers(
    headers,
    client_ip: str,
    proto: str = "http",
) -> dict[str, str]:
    """Copy inbound headers for the origin, adding X-Forwarded-* headers."""
    out: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() in REQUEST_STRIP:
            continue
        out[name] = value
    forwarded_for = next(
        (v for k, v in out.items() if k.lower() == "x-forwarded-for"), None
    )
    out = {k: v for k, v in out.items() if k.lower() not in ("x-forwarded-for", "x-forwarded-proto")}
    out["X-Forwarded-For"] = f"{forwarded_for}, {client_ip}" if forwarded_for else client_ip
    out["X-Forwarded-Proto"] = proto
    return out


def sanitize_response_headers(headers: list[tuple[str, str]]) -> list[tuple[str, str]]:
    """Drop cookies, fingerprinting and hop-by-hop headers; add CORS headers."""
    cors = {k.lower() for k in CORS_HEADERS}
    clean = [
        (k, v) for k, v in headers
        if k.lower() not in RESPONSE_STRIP and k.lower() not in cors
    ]
    clean.extend(CORS_HEADERS.items())
    return clean


class ProxyForwarder:
    """Forwards allowed requests to their origin over a persistent client."""

    def __init__(self, timeout: float | None = None, verify: bool = True) -> None:
        self.timeout = timeout
        self.verify = verify
        self._client: httpx.Client | None = None
        self._lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(
                    timeout=self.timeout,
                    verify=self.verify,
                    follow_redirects=False,
                )
            return self._client

    def close(self) -> None:
        """Close the persistent client."""
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def forward(
        self,
        target: Target | str,
        method: str = "GET",
        headers=None,
        body: bytes | None = None,
        client_ip: str = "",
        proto: str = "http",
    ) -> ForwardResponse:
        """Send a request to ``target`` and return the sanitized response.

        Raises ValidationError for a malformed target (no network call is
        made) and UpstreamForwardFailure when the origin is unreachable.
        """
        if isinstance(target, str):
            target = parse_target(target)

        upstream_headers = build_upstream_headers(headers or {}, client_ip, proto)
        logger.debug("Proxying %s request to: %s", method, target.url)
        try:
            response = self._get_client().request(
                method,
                target.url,
                headers=upstream_headers,
                content=body or None,
            )
        except httpx.TransportError as e:
            logger.error("Proxy error for %s: %s", target.url, e)
            raise UpstreamForwardFailure(f"Failed to proxy request to {target.origin}") from e
        except httpx.InvalidURL as e:
            raise ValidationError(f"The provided target URL is invalid: {e}") from e

        return ForwardResponse(
            status=response.status_code,
            headers=sanitize_response_headers(list(response.headers.multi_items())),
            body=response.content,
        )
