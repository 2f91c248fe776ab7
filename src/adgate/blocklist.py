import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import httpx

from adgate.config import (
    DOMAINS_FILENAME,
    PATTERNS_FILENAME,
    REMOTE_CACHE_FILENAME,
    WHITELIST_FILENAME,
    Config,
)
from adgate.errors import ConfigurationMissing, RemoteFetchFailure, ValidationError
from adgate.filtering import UrlFilter, Verdict, normalize_domain

logger = logging.getLogger("adgate.blocklist")

DEFAULT_DOMAINS = [
    "doubleclick.net",
    "googlesyndication.com",
    "googleadservices.com",
    "google-analytics.com",
    "googletagmanager.com",
    "ads.twitter.com",
    "amazon-adsystem.com",
    "adsystem.com",
    "adsense.com",
    "adnxs.com",
    "outbrain.com",
    "taboola.com",
    "scorecardresearch.com",
    "quantserve.com",
    "chartbeat.com",
]

DEFAULT_PATTERNS = [
    "/ads/",
    "/advertising/",
    "/banner/",
    "/popup/",
    "/tracking/",
    "googleads",
    r"facebook\.com/tr",
    "facebook.*ads",
    "amazon.*ads",
    "twitter.*ads",
]

_DOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9\-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9\-]*[a-z0-9])?)+$")


def validate_domain(domain) -> str:
    """Normalize a domain for an administrative call.

    Raises ValidationError when the value is missing or not a hostname.
    """
    if not isinstance(domain, str) or not domain.strip():
        raise ValidationError("Domain is required")
    normalized = normalize_domain(domain)
    if not _DOMAIN_RE.match(normalized):
        raise ValidationError(f"Invalid domain: {domain}")
    return normalized


def read_list(path: Path) -> list[str]:
    """Read a flat list file, skipping blanks and '#' comments.

    Raises ConfigurationMissing when the file does not exist.
    """
    if not path.exists():
        raise ConfigurationMissing(str(path))
    entries = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8", errors="replace").splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "\ufffd" in line:
            logger.warning("Skipping undecodable line %d in %s", lineno, path)
            continue
        entries.append(line)
    return entries


def write_list(path: Path, entries: list[str], header: str | None = None) -> None:
    lines = [f"# {header}"] if header else []
    lines.extend(entries)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n")


def append_to_list(path: Path, entry: str) -> bool:
    """Append an entry unless it is already listed. Returns True if written."""
    existing = set()
    if path.exists():
        existing = {e.lower() for e in read_list(path)}
    if entry.lower() in existing:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as f:
        f.write(entry + "\n")
    return True


def remove_from_list(path: Path, entry: str) -> bool:
    """Remove an entry from a list file. Returns True if found and removed."""
    if not path.exists():
        return False
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    filtered = [l for l in lines if l.strip().lower().strip(".") != entry]
    if len(filtered) < len(lines):
        path.write_text("\n".join(filtered) + "\n" if filtered else "")
        return True
    return False


def load_or_create(path: Path, defaults: list[str], what: str) -> list[str]:
    """Load a list file, writing the built-in defaults if it is missing."""
    try:
        return read_list(path)
    except ConfigurationMissing:
        logger.warning("No local %s list found at %s, creating default", what, path)
        write_list(path, defaults, header=f"Default {what} list")
        return list(defaults)


def parse_filter_list(content: str) -> set[str]:
    """Extract blocked domains from adblock-style filter list text.

    Only domain-anchor rules (``||domain^``) are used; the domain is the
    token before the first '/' or '^'. Comments ('!') and section markers
    ('[') are skipped.
    """
    domains: set[str] = set()
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("!") or line.startswith("["):
            continue
        if not line.startswith("||") or "^" not in line:
            continue
        token = re.split(r"[/^]", line[2:], maxsplit=1)[0]
        domain = normalize_domain(token)
        if domain and _DOMAIN_RE.match(domain):
            domains.add(domain)
    return domains


def download_list(url: str, timeout: float = 30.0) -> str:
    """Download a filter list."""
    with httpx.Client(timeout=timeout, follow_redirects=True) as client:
        response = client.get(url)
        response.raise_for_status()
        return response.text


@dataclass
class RemoteListSource:
    url: str
    last_fetch_time: datetime | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class RefreshResult:
    added: int = 0
    parsed: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemoteListUpdater:
    """Fetches the remote filter list and merges its domains into a filter."""

    def __init__(
        self,
        domain_filter: UrlFilter,
        url: str,
        timeout: float = 30.0,
        cache_path: Path | None = None,
    ) -> None:
        self.filter = domain_filter
        self.source = RemoteListSource(url=url)
        self.timeout = timeout
        self.cache_path = cache_path

    def fetch(self) -> str:
        try:
            return download_list(self.source.url, self.timeout)
        except httpx.HTTPError as e:
            raise RemoteFetchFailure(f"{type(e).__name__}: {e}") from e

    def refresh(self) -> RefreshResult:
        """Fetch, parse and merge the remote list.

        Never raises: failures leave the filter untouched and are recorded
        on the source.
        """
        if not self.source.url:
            self.source.last_error = "No remote list configured"
            return RefreshResult(error=self.source.last_error)
        logger.info("Updating remote blocklist from %s", self.source.url)
        try:
            content = self.fetch()
            domains = parse_filter_list(content)
        except Exception as e:
            self.source.last_error = str(e) or type(e).__name__
            logger.warning("Failed to update remote blocklist: %s", self.source.last_error)
            return RefreshResult(error=self.source.last_error)

        added = self.filter.merge_domains(domains)
        self.source.last_fetch_time = datetime.now(timezone.utc)
        self.source.last_error = None
        if self.cache_path is not None:
            try:
                self.cache_path.write_text(content)
            except OSError as e:
                logger.debug("Could not write remote list cache: %s", e)
        logger.info("Updated blocklist: %d domains parsed, %d new", len(domains), added)
        return RefreshResult(added=added, parsed=len(domains))

    def load_cached(self) -> RefreshResult:
        """Merge the last successfully downloaded copy, if any."""
        if self.cache_path is None or not self.cache_path.exists():
            return RefreshResult(error="No cached remote list")
        try:
            domains = parse_filter_list(self.cache_path.read_text(encoding="utf-8", errors="replace"))
        except OSError as e:
            return RefreshResult(error=str(e))
        added = self.filter.merge_domains(domains)
        logger.info("Loaded cached remote list: %d domains", len(domains))
        return RefreshResult(added=added, parsed=len(domains))


class BlockEngine:
    """Owns the URL filter, its flat list files and the remote updater.

    State is built by initialize(): local lists are loaded (defaults are
    written when missing) and the remote list is fetched once. classify()
    waits for that to finish on first use.
    """

    def __init__(self, config: Config, remote: bool = True) -> None:
        self.config = config
        self.lists_dir = config.lists_path
        self.filter = UrlFilter(match_mode=config.match_mode)
        self.updater = RemoteListUpdater(
            self.filter,
            config.remote_url if remote else "",
            timeout=config.remote_timeout,
            cache_path=self.lists_dir / REMOTE_CACHE_FILENAME,
        )
        self.rejected_patterns: list[str] = []
        self._init_lock = threading.Lock()
        self._initialized = False

    @property
    def domains_file(self) -> Path:
        return self.lists_dir / DOMAINS_FILENAME

    @property
    def patterns_file(self) -> Path:
        return self.lists_dir / PATTERNS_FILENAME

    @property
    def whitelist_file(self) -> Path:
        return self.lists_dir / WHITELIST_FILENAME

    @property
    def initialized(self) -> bool:
        return self._initialized

    def load_local(self) -> None:
        """Load the three local lists into the filter."""
        self.lists_dir.mkdir(parents=True, exist_ok=True)
        domains = load_or_create(self.domains_file, DEFAULT_DOMAINS, "domains")
        self.filter.merge_domains(domains)
        logger.info("Loaded %d blocked domains", len(domains))

        patterns = load_or_create(self.patterns_file, DEFAULT_PATTERNS, "patterns")
        self.rejected_patterns = self.filter.load_patterns(patterns)
        if self.rejected_patterns:
            logger.warning("Skipped %d invalid patterns", len(self.rejected_patterns))
        logger.info("Loaded %d blocked patterns", self.filter.pattern_count)

        try:
            whitelist = read_list(self.whitelist_file)
        except ConfigurationMissing:
            logger.info("No whitelist found")
            whitelist = []
        self.filter.add_whitelist(whitelist)
        logger.info("Loaded %d whitelisted domains", len(whitelist))

    def initialize(self) -> None:
        """Load local lists and perform the first remote refresh, once."""
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            try:
                self.load_local()
            except (OSError, ValueError) as e:
                logger.error("Error loading local blocklists: %s", e)
            if self.updater.source.url:
                result = self.updater.refresh()
                if not result.ok:
                    self.updater.load_cached()
            self._initialized = True
            logger.info("Block engine initialized")

    def classify(
        self,
        url: str,
        user_agent: str | None = None,
        referer: str | None = None,
    ) -> Verdict:
        if not self._initialized:
            self.initialize()
        return self.filter.classify(url, user_agent=user_agent, referer=referer)

    def refresh(self) -> RefreshResult:
        return self.updater.refresh()

    # --- Administrative operations ---

    def add_domain(self, domain) -> str:
        domain = validate_domain(domain)
        self.filter.add_domain(domain)
        if self.config.persist_changes:
            self._persist(append_to_list, self.domains_file, domain)
        logger.info("Added %s to blocklist", domain)
        return domain

    def remove_domain(self, domain) -> bool:
        """Remove a domain from the filter and the domains file.

        Returns True if it was found in either.
        """
        domain = validate_domain(domain)
        removed = self.filter.remove_domain(domain)
        if self.config.persist_changes:
            removed = self._persist(remove_from_list, self.domains_file, domain) or removed
        if removed:
            logger.info("Removed %s from blocklist", domain)
        return removed

    def add_whitelist_domain(self, domain) -> str:
        domain = validate_domain(domain)
        self.filter.add_whitelist_domain(domain)
        if self.config.persist_changes:
            self._persist(append_to_list, self.whitelist_file, domain)
        logger.info("Added %s to whitelist", domain)
        return domain

    @staticmethod
    def _persist(fn, path: Path, domain: str) -> bool:
        try:
            return fn(path, domain)
        except OSError as e:
            logger.warning("Could not update %s: %s", path, e)
            return False

    def get_status(self) -> dict:
        source = self.updater.source
        return {
            "blockedDomains": self.filter.blocked_count,
            "blockedPatterns": self.filter.pattern_count,
            "whitelistedDomains": self.filter.whitelist_count,
            "lastUpdate": source.last_fetch_time.isoformat() if source.last_fetch_time else None,
            "initialized": self._initialized,
            "lastError": source.last_error,
        }
