import sys
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path
from typing import Any

import tomli_w

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

CONFIG_DIR = Path.home() / ".config" / "adgate"
LOG_FILE = CONFIG_DIR / "adgate.log"
REQUEST_LOG_FILE = CONFIG_DIR / "requests.log"
BLOCKLISTS_DIR = CONFIG_DIR / "blocklists"
CONFIG_FILE = CONFIG_DIR / "config.toml"

DOMAINS_FILENAME = "domains.txt"
PATTERNS_FILENAME = "patterns.txt"
WHITELIST_FILENAME = "whitelist.txt"
REMOTE_CACHE_FILENAME = "remote-cache.txt"

DEFAULT_REMOTE_URL = "https://easylist.to/easylist/easylist.txt"

MATCH_MODES = ("substring", "suffix")
ENVIRONMENTS = ("production", "development")


@dataclass
class Config:
    # Server
    listen_address: str = "0.0.0.0"
    listen_port: int = 3000
    environment: str = "production"  # "development" exposes error details

    # Local lists
    lists_dir: str = str(BLOCKLISTS_DIR)
    persist_changes: bool = True
    match_mode: str = "substring"  # "substring" keeps legacy overmatching, "suffix" is label-anchored

    # Remote filter list
    remote_url: str = DEFAULT_REMOTE_URL
    remote_timeout: float = 30.0
    update_interval_hours: int = 24  # 0 = disabled

    # Forwarding
    upstream_timeout: float = 0.0  # 0 = no timeout
    verify_tls: bool = True
    block_status: int = 403

    # Logging
    log_requests: bool = True
    log_max_size_mb: int = 50

    @property
    def lists_path(self) -> Path:
        return Path(self.lists_dir).expanduser()

    @property
    def development(self) -> bool:
        return self.environment == "development"


def ensure_dirs(config: Config | None = None) -> None:
    """Create the config and list directories."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    lists_path = config.lists_path if config else BLOCKLISTS_DIR
    lists_path.mkdir(parents=True, exist_ok=True)


def _config_to_dict(config: Config) -> dict[str, Any]:
    return {
        "server": {
            "listen_address": config.listen_address,
            "listen_port": config.listen_port,
            "environment": config.environment,
        },
        "lists": {
            "directory": config.lists_dir,
            "persist_changes": config.persist_changes,
            "match_mode": config.match_mode,
        },
        "remote": {
            "url": config.remote_url,
            "timeout": config.remote_timeout,
            "update_interval_hours": config.update_interval_hours,
        },
        "proxy": {
            "upstream_timeout": config.upstream_timeout,
            "verify_tls": config.verify_tls,
            "block_status": config.block_status,
        },
        "logging": {
            "log_requests": config.log_requests,
            "log_max_size_mb": config.log_max_size_mb,
        },
    }


def _dict_to_config(data: dict[str, Any]) -> Config:
    config = Config()
    if "server" in data:
        s = data["server"]
        config.listen_address = s.get("listen_address", config.listen_address)
        config.listen_port = s.get("listen_port", config.listen_port)
        env = s.get("environment", config.environment)
        if env in ENVIRONMENTS:
            config.environment = env
    if "lists" in data:
        lst = data["lists"]
        config.lists_dir = lst.get("directory", config.lists_dir)
        config.persist_changes = lst.get("persist_changes", config.persist_changes)
        mode = lst.get("match_mode", config.match_mode)
        if mode in MATCH_MODES:
            config.match_mode = mode
    if "remote" in data:
        r = data["remote"]
        config.remote_url = r.get("url", config.remote_url)
        config.remote_timeout = r.get("timeout", config.remote_timeout)
        config.update_interval_hours = r.get(
            "update_interval_hours", config.update_interval_hours
        )
    if "proxy" in data:
        p = data["proxy"]
        config.upstream_timeout = p.get("upstream_timeout", config.upstream_timeout)
        config.verify_tls = p.get("verify_tls", config.verify_tls)
        config.block_status = p.get("block_status", config.block_status)
    if "logging" in data:
        lg = data["logging"]
        config.log_requests = lg.get("log_requests", config.log_requests)
        config.log_max_size_mb = lg.get("log_max_size_mb", config.log_max_size_mb)
    return config


def load_config() -> Config:
    """Load config from disk, creating defaults if it doesn't exist."""
    ensure_dirs()
    if not CONFIG_FILE.exists():
        config = Config()
        save_config(config)
        return config
    data = tomllib.loads(CONFIG_FILE.read_text())
    return _dict_to_config(data)


def save_config(config: Config) -> None:
    """Save config to disk."""
    ensure_dirs()
    CONFIG_FILE.write_bytes(tomli_w.dumps(_config_to_dict(config)).encode())


def get_version() -> str:
    try:
        return metadata.version("adgate")
    except metadata.PackageNotFoundError:
        return "0.0.0"
