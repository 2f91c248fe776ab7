import logging
from unittest.mock import MagicMock, patch

from adgate.logging_config import RequestLogger, setup_logging


class TestRequestLoggerInit:
    def test_creates_logger_with_handler(self, tmp_path):
        log_file = tmp_path / "requests.log"
        rl = RequestLogger(log_file)
        assert rl.logger.name == "adgate.requests"
        assert rl.logger.level == logging.INFO
        assert rl.logger.propagate is False
        assert len(rl.logger.handlers) >= 1
        # Clean up handlers to avoid leaking across tests
        rl.logger.handlers.clear()

    def test_no_duplicate_handlers_on_reinit(self, tmp_path):
        log_file = tmp_path / "requests.log"
        rl1 = RequestLogger(log_file)
        handler_count = len(rl1.logger.handlers)
        rl2 = RequestLogger(log_file)
        assert len(rl2.logger.handlers) == handler_count
        rl1.logger.handlers.clear()

    def test_writes_to_file(self, tmp_path):
        log_file = tmp_path / "requests.log"
        rl = RequestLogger(log_file)
        try:
            rl.log_request(
                "https://doubleclick.net/ad.js", "domain-match", blocked=True,
                host="doubleclick.net", elapsed_ms=0.42,
            )
            for handler in rl.logger.handlers:
                handler.flush()
            assert (
                "BLOCKED domain-match doubleclick.net 0.42ms https://doubleclick.net/ad.js"
                in log_file.read_text()
            )
        finally:
            for handler in rl.logger.handlers:
                handler.close()
            rl.logger.handlers.clear()


class TestLogRequest:
    def setup_method(self):
        self.mock_logger = MagicMock()
        self.mock_logger.handlers = []

    @patch("adgate.logging_config.logging.getLogger")
    def test_logs_blocked(self, mock_get_logger, tmp_path):
        mock_get_logger.return_value = self.mock_logger
        rl = RequestLogger(tmp_path / "requests.log")
        rl.log_request(
            "https://ads.example.com/x", "pattern-match", blocked=True,
            host="ads.example.com", elapsed_ms=1.5,
        )
        self.mock_logger.info.assert_called_once_with(
            "%s %s %s %.2fms %s", "BLOCKED", "pattern-match", "ads.example.com", 1.5,
            "https://ads.example.com/x",
        )

    @patch("adgate.logging_config.logging.getLogger")
    def test_logs_allowed(self, mock_get_logger, tmp_path):
        mock_get_logger.return_value = self.mock_logger
        rl = RequestLogger(tmp_path / "requests.log")
        rl.log_request("https://github.com", "none", blocked=False)
        self.mock_logger.info.assert_called_once_with(
            "%s %s %s %.2fms %s", "ALLOWED", "none", "-", 0.0, "https://github.com"
        )


class TestSetupLogging:
    def teardown_method(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)

    def test_file_and_stream(self, tmp_path):
        setup_logging(tmp_path / "adgate.log", foreground=True)
        kinds = {type(h) for h in logging.getLogger().handlers}
        assert logging.FileHandler in kinds
        assert logging.StreamHandler in kinds

    def test_file_only(self, tmp_path):
        setup_logging(tmp_path / "adgate.log", foreground=False)
        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.FileHandler)

    def test_level(self, tmp_path):
        setup_logging(None, foreground=True, level=logging.DEBUG)
        assert logging.getLogger().level == logging.DEBUG
