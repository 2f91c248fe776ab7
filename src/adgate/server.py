import json
import logging
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from urllib.parse import parse_qs, urlparse

from adgate.blocklist import BlockEngine, validate_domain
from adgate.config import Config, get_version
from adgate.errors import UpstreamForwardFailure, ValidationError, public_error_message
from adgate.pipeline import Action, RequestPipeline
from adgate.proxy import CORS_HEADERS, ForwardResponse, ProxyForwarder
from adgate.stats import Stats

logger = logging.getLogger("adgate.server")


def _int_param(params: dict, name: str, default: int, lo: int = 1, hi: int = 1000) -> int:
    """Read a positive integer query parameter, falling back to the default."""
    try:
        value = int(params.get(name, [str(default)])[0])
    except (TypeError, ValueError):
        return default
    if value < lo:
        return default
    return min(value, hi)


class AdgateHandler(BaseHTTPRequestHandler):
    """HTTP request handler: administrative API plus proxy traffic."""

    server_version = "adgate"

    engine: BlockEngine = None
    stats: Stats = None
    pipeline: RequestPipeline = None
    forwarder: ProxyForwarder = None
    config: Config = None

    def do_GET(self):
        self._dispatch("GET")

    def do_HEAD(self):
        self._dispatch("HEAD")

    def do_POST(self):
        self._dispatch("POST")

    def do_PUT(self):
        self._dispatch("PUT")

    def do_PATCH(self):
        self._dispatch("PATCH")

    def do_DELETE(self):
        self._dispatch("DELETE")

    def do_OPTIONS(self):
        self.send_response(204)
        for name, value in CORS_HEADERS.items():
            self.send_header(name, value)
        self.send_header("Access-Control-Max-Age", "86400")
        self.end_headers()

    def version_string(self):
        return self.server_version

    # --- Routing ---

    def _routes(self) -> dict:
        return {
            ("GET", "/health"): self._serve_health,
            ("GET", "/api/blocklist/status"): self._serve_blocklist_status,
            ("POST", "/api/blocklist/check"): self._handle_check,
            ("POST", "/api/blocklist/domain"): self._handle_domain_add,
            ("DELETE", "/api/blocklist/domain"): self._handle_domain_remove,
            ("POST", "/api/blocklist/whitelist"): self._handle_whitelist_add,
            ("POST", "/api/blocklist/update"): self._handle_update,
            ("GET", "/api/stats"): self._serve_stats,
            ("GET", "/api/stats/daily"): self._serve_daily,
            ("GET", "/api/stats/top-blocked"): self._serve_top_blocked,
            ("GET", "/api/stats/recent"): self._serve_recent,
            ("POST", "/api/stats/reset"): self._handle_stats_reset,
        }

    def _dispatch(self, method: str) -> None:
        try:
            # Absolute-form request targets are always proxy traffic
            if self.path.startswith("/"):
                parsed = urlparse(self.path)
                path = parsed.path.rstrip("/") or "/"
                handler = self._routes().get((method, path))
                if handler:
                    handler(parse_qs(parsed.query))
                    return
                if path == "/health" or path == "/api" or path.startswith("/api/"):
                    self._error_response(404, "Not found", "The requested resource was not found")
                    return
            self._handle_proxy(method)
        except Exception as e:
            logger.exception("Unhandled error: %s", e)
            self._error_response(
                500,
                "Internal server error",
                public_error_message(e, expose=self.config.development),
            )

    # --- Helpers ---

    def _read_body(self) -> bytes:
        length = int(self.headers.get("Content-Length", 0) or 0)
        return self.rfile.read(length) if length > 0 else b""

    def _read_json_body(self) -> dict | None:
        """Read and parse JSON request body. Returns None and sends 400 on failure."""
        try:
            raw = self._read_body() or b"{}"
            data = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            self._error_response(400, "Invalid JSON body")
            return None
        if not isinstance(data, dict):
            self._error_response(400, "Invalid JSON body")
            return None
        return data

    def _json_response(self, data: dict | list, status: int = 200) -> None:
        body = b"" if status == 204 else json.dumps(data).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        if body and self.command != "HEAD":
            self.wfile.write(body)

    def _error_response(self, status: int, error: str, message: str | None = None) -> None:
        data = {"error": error}
        if message:
            data["message"] = message
        self._json_response(data, status=status)

    # --- Health & blocklist API ---

    def _serve_health(self, params: dict) -> None:
        self._json_response({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": get_version(),
        })

    def _serve_blocklist_status(self, params: dict) -> None:
        self._json_response(self.engine.get_status())

    def _handle_check(self, params: dict) -> None:
        body = self._read_json_body()
        if body is None:
            return
        url = body.get("url")
        if not url or not isinstance(url, str):
            self._error_response(400, "URL is required")
            return
        verdict = self.engine.classify(
            url, user_agent=body.get("userAgent"), referer=body.get("referer")
        )
        self._json_response({
            "url": url,
            "blocked": verdict.blocked,
            "reason": verdict.reason.value,
        })

    def _handle_domain_add(self, params: dict) -> None:
        body = self._read_json_body()
        if body is None:
            return
        try:
            domain = self.engine.add_domain(body.get("domain"))
        except ValidationError as e:
            self._error_response(400, str(e))
            return
        self._json_response({
            "status": "ok",
            "domain": domain,
            "message": f"Domain {domain} added to blocklist",
        })

    def _handle_domain_remove(self, params: dict) -> None:
        body = self._read_json_body()
        if body is None:
            return
        try:
            domain = validate_domain(body.get("domain"))
            removed = self.engine.remove_domain(domain)
        except ValidationError as e:
            self._error_response(400, str(e))
            return
        if not removed:
            self._error_response(404, "Domain not found in blocklist")
            return
        self._json_response({
            "status": "ok",
            "domain": domain,
            "message": f"Domain {domain} removed from blocklist",
        })

    def _handle_whitelist_add(self, params: dict) -> None:
        body = self._read_json_body()
        if body is None:
            return
        try:
            domain = self.engine.add_whitelist_domain(body.get("domain"))
        except ValidationError as e:
            self._error_response(400, str(e))
            return
        self._json_response({
            "status": "ok",
            "domain": domain,
            "message": f"Domain {domain} added to whitelist",
        })

    def _handle_update(self, params: dict) -> None:
        result = self.engine.refresh()
        if not result.ok:
            self._error_response(502, "Failed to update blocklists", result.error)
            return
        self._json_response({
            "status": "ok",
            "message": "Blocklists updated successfully",
            "added": result.added,
            "lastUpdate": self.engine.get_status()["lastUpdate"],
        })

    # --- Stats API ---

    def _serve_stats(self, params: dict) -> None:
        self._json_response(self.stats.to_dict())

    def _serve_daily(self, params: dict) -> None:
        days = _int_param(params, "days", 7, hi=366)
        self._json_response({
            "period": f"{days} days",
            "stats": self.stats.daily_stats(days),
        })

    def _serve_top_blocked(self, params: dict) -> None:
        limit = _int_param(params, "limit", 10)
        self._json_response(self.stats.top_blocked_domains(limit))

    def _serve_recent(self, params: dict) -> None:
        limit = _int_param(params, "limit", 50)
        self._json_response(self.stats.recent(limit))

    def _handle_stats_reset(self, params: dict) -> None:
        self.stats.reset()
        self._json_response({"status": "ok", "message": "Statistics reset successfully"})

    # --- Proxy traffic ---

    def _handle_proxy(self, method: str) -> None:
        result = self.pipeline.handle(self.path, self.headers)

        if result.action == Action.PASSTHROUGH:
            self._error_response(
                400,
                "Bad Request",
                "Target URL required. Use ?url=<target> query parameter or X-Target-URL header",
            )
            return
        if result.action == Action.INVALID:
            self._error_response(400, "Invalid URL", result.error)
            return
        if result.action == Action.BLOCKED:
            self._json_response(result.block_body(), status=self.config.block_status)
            return

        body = self._read_body()
        try:
            response = self.forwarder.forward(
                result.target,
                method=method,
                headers=self.headers,
                body=body,
                client_ip=self.client_address[0],
                proto="http",
            )
        except UpstreamForwardFailure:
            self._error_response(502, "Proxy Error", "Failed to proxy request to target URL")
            return
        except ValidationError as e:
            self._error_response(400, "Invalid URL", str(e))
            return
        self._send_forwarded(response, head=(method == "HEAD"))

    def _send_forwarded(self, response: ForwardResponse, head: bool = False) -> None:
        self.send_response(response.status)
        for name, value in response.headers:
            if name.lower() == "date":
                continue
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        if not head:
            self.wfile.write(response.body)

    def log_message(self, format, *args):
        # Suppress default stderr logging from http.server
        pass


class _ThreadedHTTPServer(ThreadingMixIn, HTTPServer):
    """HTTPServer that handles each request in a new thread."""
    daemon_threads = True


def make_handler(
    config: Config,
    engine: BlockEngine,
    stats: Stats,
    pipeline: RequestPipeline,
    forwarder: ProxyForwarder,
) -> type[AdgateHandler]:
    """Bind the shared components to a handler class for one server."""
    return type(
        "BoundAdgateHandler",
        (AdgateHandler,),
        {
            "config": config,
            "engine": engine,
            "stats": stats,
            "pipeline": pipeline,
            "forwarder": forwarder,
        },
    )


def create_server(
    config: Config,
    engine: BlockEngine,
    stats: Stats,
    request_logger=None,
    forwarder: ProxyForwarder | None = None,
) -> HTTPServer:
    """Create (but don't start) the gateway HTTP server."""
    if forwarder is None:
        forwarder = ProxyForwarder(
            timeout=config.upstream_timeout or None,
            verify=config.verify_tls,
        )
    pipeline = RequestPipeline(engine, stats, request_logger)
    handler = make_handler(config, engine, stats, pipeline, forwarder)
    server = _ThreadedHTTPServer((config.listen_address, config.listen_port), handler)
    server.forwarder = forwarder
    return server


def start_server(
    config: Config,
    engine: BlockEngine,
    stats: Stats,
    request_logger=None,
) -> HTTPServer:
    """Start the gateway in a background thread and begin engine initialization.

    Requests that arrive before initialization completes wait for it.
    """
    server = create_server(config, engine, stats, request_logger)
    threading.Thread(target=engine.initialize, name="adgate-init", daemon=True).start()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    logger.info("adgate listening on %s:%d", host, port)
    return server


def stop_server(server: HTTPServer) -> None:
    server.shutdown()
    server.server_close()
    forwarder = getattr(server, "forwarder", None)
    if forwarder is not None:
        forwarder.close()
