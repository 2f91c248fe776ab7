import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from urllib.parse import parse_qs, urlsplit

from adgate.errors import ValidationError
from adgate.filtering import Verdict
from adgate.logging_config import RequestLogger
from adgate.stats import Stats

logger = logging.getLogger("adgate.pipeline")

TARGET_PARAM = "url"
TARGET_HEADER = "X-Target-URL"

_ABSOLUTE_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")


@dataclass(frozen=True)
class Target:
    scheme: str
    host: str
    port: int | None
    path: str
    query: str

    @property
    def netloc(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}" if self.port else host

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.netloc}"

    @property
    def path_and_query(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    @property
    def url(self) -> str:
        return self.origin + self.path_and_query


def parse_target(raw: str) -> Target:
    """Parse a proxy target, defaulting the scheme to http.

    Raises ValidationError for anything that cannot be forwarded.
    """
    if not raw or not raw.strip():
        raise ValidationError("Target URL required")
    raw = raw.strip()
    if not _ABSOLUTE_RE.match(raw):
        raw = "http://" + raw
    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as e:
        raise ValidationError(f"The provided target URL is invalid: {e}") from e
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise ValidationError(f"Unsupported target scheme: {scheme}")
    if not parts.hostname:
        raise ValidationError("The provided target URL has no host")
    return Target(
        scheme=scheme,
        host=parts.hostname.rstrip("."),
        port=port,
        path=parts.path or "/",
        query=parts.query,
    )


def resolve_target(path: str, headers: dict[str, str]) -> str | None:
    """Find the target URL of a request.

    Priority: the ``url`` query parameter, the X-Target-URL header, then the
    request path itself when it is an absolute URL. ``headers`` must have
    lower-case keys.
    """
    parsed = urlsplit(path)
    values = parse_qs(parsed.query).get(TARGET_PARAM)
    if values and values[0].strip():
        return values[0].strip()
    header = headers.get(TARGET_HEADER.lower(), "").strip()
    if header:
        return header
    candidate = path.lstrip("/")
    if _ABSOLUTE_RE.match(candidate):
        return candidate
    return None


class Action(str, Enum):
    PASSTHROUGH = "passthrough"
    INVALID = "invalid"
    BLOCKED = "blocked"
    FORWARD = "forward"


@dataclass(frozen=True)
class PipelineResult:
    action: Action
    raw_url: str | None = None
    target: Target | None = None
    verdict: Verdict | None = None
    error: str | None = None

    def block_body(self) -> dict:
        return {
            "blocked": True,
            "reason": self.verdict.reason.value if self.verdict else "none",
            "url": self.raw_url,
        }


class RequestPipeline:
    """Classifies proxy requests and records their outcome.

    Metrics are committed here, before any upstream call is made.
    """

    def __init__(
        self,
        engine,
        stats: Stats,
        request_logger: RequestLogger | None = None,
    ) -> None:
        self.engine = engine
        self.stats = stats
        self.request_logger = request_logger

    def handle(self, path: str, headers) -> PipelineResult:
        lowered = {k.lower(): v for k, v in headers.items()}
        raw = resolve_target(path, lowered)
        if raw is None:
            return PipelineResult(Action.PASSTHROUGH)

        try:
            target = parse_target(raw)
        except ValidationError as e:
            logger.info("Rejected target %r: %s", raw, e)
            return PipelineResult(Action.INVALID, raw_url=raw, error=str(e))

        started = time.perf_counter()
        verdict = self.engine.classify(
            target.url,
            user_agent=lowered.get("user-agent", ""),
            referer=lowered.get("referer", ""),
        )
        elapsed_ms = (time.perf_counter() - started) * 1000
        if verdict.error is not None:
            logger.warning("Classification error for %s, allowing: %s", raw, verdict.error)

        if self.request_logger:
            self.request_logger.log_request(
                raw,
                verdict.reason.value,
                verdict.blocked,
                host=target.host,
                elapsed_ms=elapsed_ms,
            )

        if verdict.blocked:
            self.stats.record_blocked(target.host)
            logger.info("Blocked ad request: %s (%s, %.2fms)", raw, verdict.reason.value, elapsed_ms)
            return PipelineResult(Action.BLOCKED, raw_url=raw, target=target, verdict=verdict)

        self.stats.record_allowed()
        logger.debug("Allowed request: %s (%.2fms)", raw, elapsed_ms)
        return PipelineResult(Action.FORWARD, raw_url=raw, target=target, verdict=verdict)
