import threading
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from adgate.blocklist import (
    DEFAULT_DOMAINS,
    DEFAULT_PATTERNS,
    BlockEngine,
    RemoteListUpdater,
    append_to_list,
    load_or_create,
    parse_filter_list,
    read_list,
    remove_from_list,
    validate_domain,
    write_list,
)
from adgate.config import Config
from adgate.errors import ConfigurationMissing, ValidationError
from adgate.filtering import Reason, UrlFilter

FIXTURES = Path(__file__).parent / "fixtures"


class TestParseFilterList:
    def test_fixture(self):
        content = FIXTURES.joinpath("sample_easylist.txt").read_text()
        assert parse_filter_list(content) == {
            "adserver.example.com",
            "tracker.example.net",
            "cdn.adnetwork.org",
            "pixel.metrics.io",
            "mixed-case.example.com",
        }

    def test_skips_comments_and_headers(self):
        content = "[Adblock Plus 2.0]\n! Title: test\n||ads.com^\n"
        assert parse_filter_list(content) == {"ads.com"}

    def test_requires_caret(self):
        assert parse_filter_list("||no-caret.com\n") == set()

    def test_token_stops_at_slash(self):
        assert parse_filter_list("||cdn.example.org/path^\n") == {"cdn.example.org"}

    def test_rejects_non_domains(self):
        content = "||localhost^\n||*.wild.com^\n||under_score.com^\n"
        assert parse_filter_list(content) == set()

    def test_ignores_exceptions_and_cosmetic_rules(self):
        content = "@@||good.com^\nexample.com##.ad\n/banner/*/img^\n"
        assert parse_filter_list(content) == set()

    def test_empty(self):
        assert parse_filter_list("") == set()


class TestValidateDomain:
    def test_normalizes(self):
        assert validate_domain("  Evil-Ads.COM. ") == "evil-ads.com"

    @pytest.mark.parametrize("value", [None, "", "   ", 42])
    def test_missing(self, value):
        with pytest.raises(ValidationError, match="Domain is required"):
            validate_domain(value)

    @pytest.mark.parametrize("value", ["nodot", "bad domain.com", "http://x.com", "-lead.com"])
    def test_invalid(self, value):
        with pytest.raises(ValidationError, match="Invalid domain"):
            validate_domain(value)


class TestListFiles:
    def test_read_list_skips_comments(self, tmp_path):
        path = tmp_path / "domains.txt"
        path.write_text("# header\n\nads.com\n  tracker.net  \n")
        assert read_list(path) == ["ads.com", "tracker.net"]

    def test_read_list_skips_undecodable_lines(self, tmp_path):
        path = tmp_path / "domains.txt"
        path.write_bytes(b"ads.example.com\n\xff\xfe caf\xe9.com\ntracker.net\n")
        assert read_list(path) == ["ads.example.com", "tracker.net"]

    def test_read_list_missing(self, tmp_path):
        with pytest.raises(ConfigurationMissing):
            read_list(tmp_path / "nope.txt")

    def test_write_list_with_header(self, tmp_path):
        path = tmp_path / "sub" / "list.txt"
        write_list(path, ["a.com", "b.com"], header="Default domains list")
        assert path.read_text() == "# Default domains list\na.com\nb.com\n"

    def test_append_deduplicates(self, tmp_path):
        path = tmp_path / "list.txt"
        assert append_to_list(path, "ads.com") is True
        assert append_to_list(path, "ADS.com") is False
        assert read_list(path) == ["ads.com"]

    def test_remove(self, tmp_path):
        path = tmp_path / "list.txt"
        path.write_text("# keep\nads.com\ntracker.net\n")
        assert remove_from_list(path, "ads.com") is True
        assert path.read_text() == "# keep\ntracker.net\n"
        assert remove_from_list(path, "ads.com") is False

    def test_remove_missing_file(self, tmp_path):
        assert remove_from_list(tmp_path / "nope.txt", "ads.com") is False

    def test_load_or_create_writes_defaults(self, tmp_path):
        path = tmp_path / "domains.txt"
        entries = load_or_create(path, ["a.com"], "domains")
        assert entries == ["a.com"]
        assert read_list(path) == ["a.com"]

    def test_load_or_create_reads_existing(self, tmp_path):
        path = tmp_path / "domains.txt"
        path.write_text("mine.com\n")
        assert load_or_create(path, ["a.com"], "domains") == ["mine.com"]


class TestRemoteListUpdater:
    def setup_method(self):
        self.filter = UrlFilter()
        self.filter.merge_domains(["local.com"])

    def test_refresh_merges(self, tmp_path):
        cache = tmp_path / "remote-cache.txt"
        updater = RemoteListUpdater(self.filter, "https://lists.test/easylist.txt", cache_path=cache)
        content = FIXTURES.joinpath("sample_easylist.txt").read_text()
        with patch("adgate.blocklist.download_list", return_value=content):
            result = updater.refresh()
        assert result.ok
        assert result.parsed == 5
        assert result.added == 5
        assert self.filter.has_domain("local.com")
        assert self.filter.has_domain("adserver.example.com")
        assert updater.source.last_fetch_time is not None
        assert cache.read_text() == content

    def test_refresh_failure_keeps_filter(self):
        updater = RemoteListUpdater(self.filter, "https://lists.test/easylist.txt")
        with patch(
            "adgate.blocklist.download_list",
            side_effect=httpx.ConnectError("connection refused"),
        ):
            result = updater.refresh()
        assert not result.ok
        assert "connection refused" in result.error
        assert updater.source.last_error == result.error
        assert updater.source.last_fetch_time is None
        assert self.filter.blocked_count == 1

    def test_refresh_without_url(self):
        updater = RemoteListUpdater(self.filter, "")
        with patch("adgate.blocklist.download_list") as mock_dl:
            result = updater.refresh()
        assert result.error == "No remote list configured"
        assert updater.source.last_error == "No remote list configured"
        mock_dl.assert_not_called()

    def test_load_cached(self, tmp_path):
        cache = tmp_path / "remote-cache.txt"
        cache.write_text("||cached.example.com^\n")
        updater = RemoteListUpdater(self.filter, "https://lists.test/x", cache_path=cache)
        result = updater.load_cached()
        assert result.ok
        assert self.filter.has_domain("cached.example.com")

    def test_load_cached_missing(self, tmp_path):
        updater = RemoteListUpdater(self.filter, "https://lists.test/x", cache_path=tmp_path / "none.txt")
        assert not updater.load_cached().ok


class TestBlockEngine:
    def _engine(self, tmp_path, **kwargs) -> BlockEngine:
        config = Config(lists_dir=str(tmp_path), remote_url="", **kwargs)
        return BlockEngine(config)

    def test_initialize_creates_defaults(self, tmp_path):
        engine = self._engine(tmp_path)
        engine.initialize()
        assert engine.initialized
        assert read_list(engine.domains_file) == DEFAULT_DOMAINS
        assert read_list(engine.patterns_file) == DEFAULT_PATTERNS
        assert not engine.whitelist_file.exists()
        status = engine.get_status()
        assert status["blockedDomains"] == len(DEFAULT_DOMAINS)
        assert status["blockedPatterns"] == len(DEFAULT_PATTERNS)
        assert status["whitelistedDomains"] == 0
        assert status["lastUpdate"] is None
        assert status["initialized"] is True

    def test_loads_existing_lists(self, tmp_path):
        (tmp_path / "domains.txt").write_text("mine.com\n")
        (tmp_path / "patterns.txt").write_text("/promo/\n(bad\n")
        (tmp_path / "whitelist.txt").write_text("# ok\nfriend.org\n")
        engine = self._engine(tmp_path)
        engine.initialize()
        assert engine.filter.blocked_count == 1
        assert engine.filter.pattern_count == 1
        assert engine.rejected_patterns == ["(bad"]
        assert engine.filter.whitelist_count == 1

    def test_patterns_fixture(self, tmp_path):
        (tmp_path / "patterns.txt").write_text(
            FIXTURES.joinpath("sample_patterns.txt").read_text()
        )
        engine = self._engine(tmp_path)
        engine.initialize()
        assert engine.filter.pattern_count == 4
        assert engine.rejected_patterns == ["(unclosed"]
        assert engine.classify("https://cdn.example.org/tracking/pixel").reason == Reason.PATTERN_MATCH

    def test_classify_initializes_on_first_use(self, tmp_path):
        engine = self._engine(tmp_path)
        assert not engine.initialized
        verdict = engine.classify("https://doubleclick.net/ad.js")
        assert engine.initialized
        assert verdict.blocked
        assert verdict.reason == Reason.DOMAIN_MATCH

    def test_default_pattern_blocks_facebook_pixel(self, tmp_path):
        engine = self._engine(tmp_path)
        verdict = engine.classify("https://www.facebook.com/tr?id=1")
        assert verdict.reason == Reason.PATTERN_MATCH

    def test_google_allowed(self, tmp_path):
        engine = self._engine(tmp_path)
        assert engine.classify("https://www.google.com").blocked is False

    def test_initialize_runs_once(self, tmp_path):
        config = Config(lists_dir=str(tmp_path), remote_url="https://lists.test/x")
        engine = BlockEngine(config)
        with patch("adgate.blocklist.download_list", return_value="||remote.com^\n") as mock_dl:
            threads = [threading.Thread(target=engine.initialize) for _ in range(5)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
        assert mock_dl.call_count == 1
        assert engine.filter.has_domain("remote.com")

    def test_undecodable_domains_file_still_initializes(self, tmp_path):
        (tmp_path / "domains.txt").write_bytes(b"\xff\xfe")
        engine = self._engine(tmp_path)
        verdict = engine.classify("https://www.google.com")
        assert verdict.blocked is False
        assert verdict.error is None
        assert engine.initialized is True

    def test_failed_local_load_is_not_retried(self, tmp_path):
        engine = self._engine(tmp_path)
        with patch("adgate.blocklist.read_list", side_effect=ValueError("bad list")):
            engine.classify("https://www.google.com")
            engine.classify("https://www.google.com")
        assert engine.initialized is True
        assert engine.filter.pattern_count == 0

    def test_whitelist_error_does_not_duplicate_patterns(self, tmp_path):
        engine = self._engine(tmp_path)
        with patch.object(engine.filter, "add_whitelist", side_effect=ValueError("bad")):
            engine.classify("https://www.google.com")
            engine.classify("https://www.google.com")
        assert engine.filter.pattern_count == len(DEFAULT_PATTERNS)

    def test_initialize_falls_back_to_cache(self, tmp_path):
        (tmp_path / "remote-cache.txt").write_text("||cached.com^\n")
        config = Config(lists_dir=str(tmp_path), remote_url="https://lists.test/x")
        engine = BlockEngine(config)
        with patch("adgate.blocklist.download_list", side_effect=httpx.ConnectTimeout("timed out")):
            engine.initialize()
        assert engine.initialized
        assert engine.filter.has_domain("cached.com")
        assert engine.get_status()["lastError"] is not None

    def test_remote_disabled(self, tmp_path):
        config = Config(lists_dir=str(tmp_path), remote_url="https://lists.test/x")
        engine = BlockEngine(config, remote=False)
        with patch("adgate.blocklist.download_list") as mock_dl:
            engine.initialize()
        mock_dl.assert_not_called()

    def test_add_domain_persists(self, tmp_path):
        engine = self._engine(tmp_path)
        engine.initialize()
        assert engine.add_domain("Evil-Ads.com") == "evil-ads.com"
        assert engine.classify("https://evil-ads.com/banner.js").blocked
        assert "evil-ads.com" in read_list(engine.domains_file)

    def test_add_domain_without_persist(self, tmp_path):
        engine = self._engine(tmp_path, persist_changes=False)
        engine.initialize()
        engine.add_domain("evil-ads.com")
        assert engine.classify("https://evil-ads.com/").blocked
        assert "evil-ads.com" not in read_list(engine.domains_file)

    def test_add_invalid_domain(self, tmp_path):
        engine = self._engine(tmp_path)
        with pytest.raises(ValidationError):
            engine.add_domain("")

    def test_remove_domain(self, tmp_path):
        engine = self._engine(tmp_path)
        engine.initialize()
        assert engine.remove_domain("outbrain.com") is True
        assert engine.classify("https://outbrain.com/").blocked is False
        assert "outbrain.com" not in read_list(engine.domains_file)
        assert engine.remove_domain("outbrain.com") is False

    def test_remove_domain_only_in_file(self, tmp_path):
        engine = self._engine(tmp_path)
        engine.initialize()
        append_to_list(engine.domains_file, "file-only.com")
        assert engine.remove_domain("file-only.com") is True
        assert "file-only.com" not in read_list(engine.domains_file)

    def test_whitelist_overrides(self, tmp_path):
        engine = self._engine(tmp_path)
        engine.initialize()
        engine.add_whitelist_domain("doubleclick.net")
        verdict = engine.classify("https://doubleclick.net/ad.js")
        assert verdict.blocked is False
        assert verdict.reason == Reason.WHITELISTED
        assert read_list(engine.whitelist_file) == ["doubleclick.net"]

    def test_refresh_updates_status(self, tmp_path):
        config = Config(lists_dir=str(tmp_path), remote_url="https://lists.test/x")
        engine = BlockEngine(config)
        with patch("adgate.blocklist.download_list", return_value="||fresh.com^\n"):
            result = engine.refresh()
        assert result.added == 1
        assert engine.get_status()["lastUpdate"] is not None
