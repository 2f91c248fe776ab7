import logging
import signal
import sys
import threading
import time

from adgate.blocklist import BlockEngine
from adgate.config import Config
from adgate.stats import Stats

logger = logging.getLogger("adgate.daemon")

# Flag set by SIGHUP handler to trigger a refresh in the main loop (signal-safe)
_refresh_requested = threading.Event()

STATS_TRIM_INTERVAL = 3600


def setup_signal_handlers(cleanup_fn) -> None:
    """Set up signal handlers for graceful shutdown and on-demand refresh."""

    def shutdown_handler(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        cleanup_fn()
        sys.exit(0)

    def refresh_handler(signum, frame):
        # Only set a flag: no I/O in signal context
        _refresh_requested.set()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, refresh_handler)


def run_once(
    config: Config,
    engine: BlockEngine,
    stats: Stats,
    now: float,
    last_update: float,
    last_stats_trim: float,
) -> tuple[float, float]:
    """One pass of periodic housekeeping. Returns updated timestamps."""
    update_interval = config.update_interval_hours * 3600 if engine.updater.source.url else 0

    if _refresh_requested.is_set():
        _refresh_requested.clear()
        logger.info("Refreshing remote blocklist (SIGHUP)...")
        engine.refresh()
        last_update = now

    if update_interval > 0 and (now - last_update) >= update_interval:
        logger.info("Auto-updating remote blocklist...")
        result = engine.refresh()
        if not result.ok:
            logger.warning("Auto-update failed: %s", result.error)
        last_update = now

    if (now - last_stats_trim) >= STATS_TRIM_INTERVAL:
        stats.trim()
        last_stats_trim = now

    return last_update, last_stats_trim


def main_loop(
    config: Config,
    engine: BlockEngine,
    stats: Stats,
    stop_event: threading.Event | None = None,
    tick: float = 60,
) -> None:
    """Main loop: periodic remote refresh and stats trimming.

    Runs until ``stop_event`` is set (forever when None).
    """
    stop_event = stop_event or threading.Event()
    last_update = time.time()
    last_stats_trim = time.time()

    while not stop_event.wait(tick):
        last_update, last_stats_trim = run_once(
            config, engine, stats, time.time(), last_update, last_stats_trim
        )


def request_refresh() -> None:
    _refresh_requested.set()
