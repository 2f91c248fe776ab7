import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable
from urllib.parse import urlsplit

from adgate.errors import ClassificationError

logger = logging.getLogger("adgate.filtering")

SUSPICIOUS_AGENTS = (
    re.compile(r"bot", re.IGNORECASE),
    re.compile(r"crawler", re.IGNORECASE),
    re.compile(r"scraper", re.IGNORECASE),
    re.compile(r"spider", re.IGNORECASE),
)


class Reason(str, Enum):
    WHITELISTED = "whitelisted"
    DOMAIN_MATCH = "domain-match"
    PATTERN_MATCH = "pattern-match"
    SUSPICIOUS_AGENT = "suspicious-agent"
    NONE = "none"


@dataclass(frozen=True)
class Verdict:
    """Outcome of classifying one URL.

    A verdict with ``error`` set means the URL could not be classified and
    is always an allow.
    """
    blocked: bool
    reason: Reason = Reason.NONE
    error: str | None = None

    @property
    def outcome(self) -> str:
        if self.error is not None:
            return "classification-error"
        return "blocked" if self.blocked else "allowed"


ALLOWED = Verdict(blocked=False)


@dataclass(frozen=True)
class _FilterState:
    """Immutable snapshot of all filter collections.

    Assigned atomically to UrlFilter._state so reader threads always
    see a consistent view without locks.
    """
    blocked: frozenset
    whitelist: frozenset
    patterns: tuple


_EMPTY_STATE = _FilterState(blocked=frozenset(), whitelist=frozenset(), patterns=())


def normalize_domain(domain: str) -> str:
    return domain.strip().lower().strip(".")


def _normalize_all(domains: Iterable[str]) -> frozenset:
    return frozenset(filter(None, (normalize_domain(d) for d in domains if d)))


def parse_url(url: str):
    """Split a URL, defaulting the scheme to http for bare hosts.

    Raises ClassificationError when the URL cannot be parsed or has no host.
    """
    if not isinstance(url, str) or not url.strip():
        raise ClassificationError("empty URL")
    url = url.strip()
    if not url.lower().startswith(("http://", "https://")) and "://" not in url:
        url = "http://" + url
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        # Accessing .port validates the authority section
        parts.port
    except ValueError as e:
        raise ClassificationError(f"invalid URL {url!r}: {e}") from e
    if not hostname:
        raise ClassificationError(f"no hostname in {url!r}")
    return parts, hostname.rstrip(".")


def compile_patterns(patterns: Iterable[str]) -> tuple[list[re.Pattern], list[str]]:
    """Compile URL patterns case-insensitively.

    Returns (compiled, rejected). Invalid patterns are skipped one by one.
    """
    compiled: list[re.Pattern] = []
    rejected: list[str] = []
    for p in patterns:
        p = p.strip()
        if not p:
            continue
        try:
            compiled.append(re.compile(p, re.IGNORECASE))
        except re.error as e:
            logger.warning("Skipping invalid pattern %r: %s", p, e)
            rejected.append(p)
    return compiled, rejected


class UrlFilter:
    """URL classification engine over domain sets and compiled patterns.

    Thread-safe via snapshot-swap: every read grabs a local reference to
    the immutable _FilterState; every mutation builds a new state and
    assigns it in a single reference write.

    ``match_mode`` selects how hostnames are compared with list entries:
    "substring" matches when either string contains the other (suffix for
    the whitelist), "suffix" only matches the entry itself or its subdomains.
    """

    def __init__(self, match_mode: str = "substring") -> None:
        if match_mode not in ("substring", "suffix"):
            raise ValueError(f"Unknown match mode: {match_mode}")
        self.match_mode = match_mode
        self._state: _FilterState = _EMPTY_STATE

    # --- Mutations ---

    def merge_domains(self, domains: Iterable[str]) -> int:
        """Add domains to the block set. Returns how many were new."""
        new = _normalize_all(domains)
        state = self._state
        merged = state.blocked | new
        self._state = _FilterState(
            blocked=merged,
            whitelist=state.whitelist,
            patterns=state.patterns,
        )
        return len(merged) - len(state.blocked)

    def add_domain(self, domain: str) -> None:
        self.merge_domains([domain])

    def remove_domain(self, domain: str) -> bool:
        """Remove a domain from the block set. Returns True if it was present."""
        domain = normalize_domain(domain)
        state = self._state
        if domain not in state.blocked:
            return False
        self._state = _FilterState(
            blocked=state.blocked - {domain},
            whitelist=state.whitelist,
            patterns=state.patterns,
        )
        return True

    def add_whitelist(self, domains: Iterable[str]) -> None:
        new = _normalize_all(domains)
        state = self._state
        self._state = _FilterState(
            blocked=state.blocked,
            whitelist=state.whitelist | new,
            patterns=state.patterns,
        )

    def add_whitelist_domain(self, domain: str) -> None:
        self.add_whitelist([domain])

    def load_patterns(self, patterns: Iterable[str]) -> list[str]:
        """Compile and append URL patterns. Returns the rejected sources."""
        compiled, rejected = compile_patterns(patterns)
        state = self._state
        self._state = _FilterState(
            blocked=state.blocked,
            whitelist=state.whitelist,
            patterns=state.patterns + tuple(compiled),
        )
        return rejected

    def clear(self) -> None:
        """Clear all domains, whitelist entries and patterns."""
        self._state = _EMPTY_STATE

    # --- Classification ---

    def classify(
        self,
        url: str,
        user_agent: str | None = None,
        referer: str | None = None,
    ) -> Verdict:
        """Decide whether a URL should be blocked.

        Order: whitelist, domain set, URL patterns, user agent. Never raises;
        an unparseable URL yields an allow verdict carrying the error.
        """
        try:
            parts, hostname = parse_url(url)
        except ClassificationError as e:
            logger.warning("Classification failed, allowing: %s", e)
            return Verdict(blocked=False, reason=Reason.NONE, error=str(e))

        # Local reference: one consistent snapshot per call
        state = self._state
        if self._is_whitelisted(hostname, state.whitelist):
            return Verdict(blocked=False, reason=Reason.WHITELISTED)
        if self._is_domain_blocked(hostname, state.blocked):
            return Verdict(blocked=True, reason=Reason.DOMAIN_MATCH)
        full_url = parts.geturl()
        if any(p.search(full_url) for p in state.patterns):
            return Verdict(blocked=True, reason=Reason.PATTERN_MATCH)
        if isinstance(user_agent, str) and is_suspicious_agent(user_agent):
            return Verdict(blocked=True, reason=Reason.SUSPICIOUS_AGENT)
        return ALLOWED

    def _is_whitelisted(self, hostname: str, whitelist: frozenset) -> bool:
        if hostname in whitelist:
            return True
        if self.match_mode == "suffix":
            return self._check_set(hostname, whitelist)
        return any(
            hostname.endswith(entry) or entry.endswith(hostname)
            for entry in whitelist
        )

    def _is_domain_blocked(self, hostname: str, blocked: frozenset) -> bool:
        if hostname in blocked:
            return True
        if self.match_mode == "suffix":
            return self._check_set(hostname, blocked)
        return any(entry in hostname or hostname in entry for entry in blocked)

    @staticmethod
    def _check_set(domain: str, domain_set: frozenset) -> bool:
        """Walk up the domain hierarchy checking against a set."""
        parts = domain.split(".")
        for i in range(len(parts)):
            candidate = ".".join(parts[i:])
            if candidate in domain_set:
                return True
        return False

    # --- Counters ---

    @property
    def blocked_count(self) -> int:
        return len(self._state.blocked)

    @property
    def whitelist_count(self) -> int:
        return len(self._state.whitelist)

    @property
    def pattern_count(self) -> int:
        return len(self._state.patterns)

    def has_domain(self, domain: str) -> bool:
        return normalize_domain(domain) in self._state.blocked


def is_suspicious_agent(user_agent: str) -> bool:
    """Check a User-Agent against known bot/crawler signatures."""
    return any(p.search(user_agent) for p in SUSPICIOUS_AGENTS)
