import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"


def setup_logging(log_path: Path | None, foreground: bool = True, level: int = logging.INFO) -> None:
    """Configure the root logger with a file and/or stream handler."""
    handlers: list[logging.Handler] = []

    if log_path is not None:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    if foreground:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(stream_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)


class RequestLogger:
    """Logs classified proxy requests to a rotating file."""

    def __init__(self, log_path: Path, max_bytes: int = 50 * 1024 * 1024) -> None:
        self.logger = logging.getLogger("adgate.requests")
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        # Avoid duplicate handlers on reload
        if not self.logger.handlers:
            handler = RotatingFileHandler(
                log_path, maxBytes=max_bytes, backupCount=3
            )
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
            )
            self.logger.addHandler(handler)

    def log_request(
        self,
        url: str,
        reason: str,
        blocked: bool,
        host: str = "-",
        elapsed_ms: float = 0.0,
    ) -> None:
        """Write one line: status, reason, host, classification time, URL."""
        status = "BLOCKED" if blocked else "ALLOWED"
        self.logger.info("%s %s %s %.2fms %s", status, reason, host, elapsed_ms, url)
