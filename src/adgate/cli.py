import json
import threading

import click
import httpx

from adgate.blocklist import (
    BlockEngine,
    append_to_list,
    read_list,
    remove_from_list,
    validate_domain,
)
from adgate.config import (
    CONFIG_DIR,
    LOG_FILE,
    REQUEST_LOG_FILE,
    ensure_dirs,
    load_config,
)
from adgate.daemon import main_loop, setup_signal_handlers
from adgate.errors import ConfigurationMissing, ValidationError
from adgate.logging_config import RequestLogger, setup_logging
from adgate.server import start_server, stop_server
from adgate.stats import Stats


@click.group()
@click.version_option(package_name="adgate")
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.pass_context
def main(ctx, json_mode):
    """adgate - ad/tracker filtering HTTP gateway."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_mode
    ensure_dirs()


def _emit(ctx, data, human_lines):
    """Output JSON or human-readable text based on mode."""
    if ctx.obj.get("json"):
        click.echo(json.dumps(data))
    else:
        for line in human_lines:
            click.echo(line)


def _fail(ctx, msg):
    _emit(ctx, {"status": "error", "message": msg}, [f"Error: {msg}"])
    ctx.exit(1)


def _count_entries(path) -> int | None:
    try:
        return len(read_list(path))
    except ConfigurationMissing:
        return None


@main.command()
@click.option("--host", default=None, help="Listen address (overrides config)")
@click.option("--port", type=int, default=None, help="Listen port (overrides config)")
@click.option("--no-remote", is_flag=True, help="Don't fetch the remote filter list")
@click.option("--dev", is_flag=True, help="Development mode: expose error details")
@click.pass_context
def run(ctx, host, port, no_remote, dev):
    """Run the filtering gateway in the foreground."""
    config = load_config()
    if host:
        config.listen_address = host
    if port:
        config.listen_port = port
    if dev:
        config.environment = "development"
    ensure_dirs(config)

    setup_logging(LOG_FILE, foreground=not ctx.obj.get("json"))
    engine = BlockEngine(config, remote=not no_remote)
    stats = Stats()
    request_logger = None
    if config.log_requests:
        request_logger = RequestLogger(
            REQUEST_LOG_FILE, max_bytes=config.log_max_size_mb * 1024 * 1024
        )

    try:
        server = start_server(config, engine, stats, request_logger)
    except OSError as e:
        _fail(ctx, f"Failed to start server on {config.listen_address}:{config.listen_port}: {e}")
        return

    stop_event = threading.Event()

    def cleanup():
        if stop_event.is_set():
            return
        stop_event.set()
        stop_server(server)

    setup_signal_handlers(cleanup)
    _emit(ctx,
        {"status": "ok", "address": config.listen_address, "port": config.listen_port},
        [f"adgate running on {config.listen_address}:{config.listen_port}. Press Ctrl+C to stop."])

    try:
        main_loop(config, engine, stats, stop_event)
    except (KeyboardInterrupt, SystemExit):
        cleanup()


@main.command()
@click.argument("url")
@click.option("--user-agent", default=None, help="User-Agent to classify with")
@click.pass_context
def check(ctx, url, user_agent):
    """Check whether a URL would be blocked by the local lists."""
    config = load_config()
    engine = BlockEngine(config, remote=False)
    engine.load_local()
    engine.updater.load_cached()
    verdict = engine.filter.classify(url, user_agent=user_agent)
    status = "BLOCKED" if verdict.blocked else "ALLOWED"
    _emit(ctx,
        {"url": url, "blocked": verdict.blocked, "reason": verdict.reason.value},
        [f"{status} ({verdict.reason.value}): {url}"])


def _edit_list(ctx, domain, path, fn, done, unchanged):
    try:
        domain = validate_domain(domain)
    except ValidationError as e:
        _fail(ctx, str(e))
        return
    changed = fn(path, domain)
    msg = (done if changed else unchanged).format(domain=domain)
    _emit(ctx,
        {"status": "ok", "domain": domain, "changed": changed},
        [msg, "Restart adgate to apply."] if changed else [msg])


@main.command()
@click.argument("domain")
@click.pass_context
def block(ctx, domain):
    """Add a domain to the blocklist."""
    engine = BlockEngine(load_config(), remote=False)
    _edit_list(ctx, domain, engine.domains_file, append_to_list,
               "Added '{domain}' to blocklist.", "'{domain}' is already in blocklist.")


@main.command()
@click.argument("domain")
@click.pass_context
def unblock(ctx, domain):
    """Remove a domain from the blocklist."""
    engine = BlockEngine(load_config(), remote=False)
    _edit_list(ctx, domain, engine.domains_file, remove_from_list,
               "Removed '{domain}' from blocklist.", "'{domain}' is not in blocklist.")


@main.command()
@click.argument("domain")
@click.pass_context
def allow(ctx, domain):
    """Add a domain to the whitelist."""
    engine = BlockEngine(load_config(), remote=False)
    _edit_list(ctx, domain, engine.whitelist_file, append_to_list,
               "Added '{domain}' to whitelist.", "'{domain}' is already in whitelist.")


@main.command()
@click.pass_context
def update(ctx):
    """Download the remote filter list into the local cache."""
    config = load_config()
    engine = BlockEngine(config)
    engine.lists_dir.mkdir(parents=True, exist_ok=True)
    if not ctx.obj.get("json"):
        click.echo(f"Updating from {config.remote_url}...")
    result = engine.refresh()
    if not result.ok:
        _fail(ctx, f"Update failed: {result.error}")
        return
    _emit(ctx,
        {"status": "ok", "domains_count": result.parsed},
        [f"Updated. {result.parsed:,} domains in remote list."])


@main.command()
@click.pass_context
def status(ctx):
    """Show list sizes and whether a gateway is answering locally."""
    config = load_config()
    engine = BlockEngine(config, remote=False)
    counts = {
        "domains": _count_entries(engine.domains_file),
        "patterns": _count_entries(engine.patterns_file),
        "whitelist": _count_entries(engine.whitelist_file),
    }
    cache = engine.updater.cache_path
    remote_cached = cache is not None and cache.exists()

    running = None
    try:
        response = httpx.get(
            f"http://127.0.0.1:{config.listen_port}/api/blocklist/status", timeout=2.0
        )
        response.raise_for_status()
        running = response.json()
    except (httpx.HTTPError, ValueError):
        running = None

    data = {
        "status": "ok",
        "config_dir": str(CONFIG_DIR),
        "lists_dir": str(engine.lists_dir),
        "lists": counts,
        "remote_cached": remote_cached,
        "running": running is not None,
        "gateway": running,
    }
    lines = [
        f"Config: {CONFIG_DIR}",
        f"Lists:  {engine.lists_dir}",
        "",
    ]
    for name, count in counts.items():
        shown = f"{count:,}" if count is not None else "missing (defaults on first run)"
        lines.append(f"  {name + ':':<11}{shown}")
    lines.append(f"  {'remote:':<11}{'cached' if remote_cached else 'not downloaded'}")
    lines.append("")
    if running:
        lines.append(
            f"Gateway running on port {config.listen_port}: "
            f"{running.get('blockedDomains', 0):,} domains loaded"
        )
    else:
        lines.append("Gateway is not running.")
    _emit(ctx, data, lines)
