"""
Configuration management for the Tally dashboard client.

Two layers:
- DashboardSettings: process settings read from environment variables
  (a .env file is honoured), fixed for the life of the process.
- ConnectionConfig: the server address/port and active company the user
  picked. Persisted to a single JSON file under one well-known key and
  resolved into a base URL by ConfigResolver.
"""
from __future__ import annotations
import json
import os
import tempfile
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse
from dotenv import load_dotenv
from loguru import logger

from .errors import ValidationError

load_dotenv()

CONFIG_KEY = "tally_dashboard_config"
DEFAULT_PORT = 9000
DEFAULT_DEV_PROXY_URL = "http://127.0.0.1:5173/api/tally"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _default_config_file() -> str:
    return str(Path.home() / ".tally_dashboard" / "config.json")


@dataclass
class DashboardSettings:
    """Process-level settings for the dashboard client."""

    # Development mode routes every request through the local proxy
    dev_mode: bool = field(default_factory=lambda: _env_bool("TALLY_DEV_MODE", "false"))
    dev_proxy_url: str = field(
        default_factory=lambda: os.getenv("TALLY_DEV_PROXY_URL", DEFAULT_DEV_PROXY_URL)
    )

    # Seed values used when nothing has been persisted yet
    tally_url: Optional[str] = field(default_factory=lambda: os.getenv("TALLY_URL"))
    tally_company: Optional[str] = field(default_factory=lambda: os.getenv("TALLY_COMPANY"))

    # Tally is slow on large exports; a request is bounded by this many seconds
    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("TALLY_REQUEST_TIMEOUT", "60"))
    )

    # Cache lifetimes, in seconds
    cache_ttl: float = field(default_factory=lambda: float(os.getenv("TALLY_CACHE_TTL", "300")))
    count_ttl: float = field(default_factory=lambda: float(os.getenv("TALLY_COUNT_TTL", "300")))
    inventory_cache_ttl: float = field(
        default_factory=lambda: float(os.getenv("TALLY_INVENTORY_CACHE_TTL", "600"))
    )

    page_size: int = field(default_factory=lambda: int(os.getenv("TALLY_PAGE_SIZE", "100")))
    prefetch: bool = field(default_factory=lambda: _env_bool("TALLY_PREFETCH", "true"))

    # Service-level retry; 1 means a single attempt
    retry_attempts: int = field(
        default_factory=lambda: int(os.getenv("TALLY_RETRY_ATTEMPTS", "1"))
    )
    retry_delay: float = field(
        default_factory=lambda: float(os.getenv("TALLY_RETRY_DELAY", "1.0"))
    )

    config_file: str = field(
        default_factory=lambda: os.getenv("TALLY_CONFIG_FILE") or _default_config_file()
    )

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(
        default_factory=lambda: os.getenv("TALLY_DASHBOARD_LOG_FILE")
    )

    @classmethod
    def from_env(cls) -> "DashboardSettings":
        """Create settings from environment variables."""
        return cls()

    def validate(self) -> list[str]:
        """Validate settings and return list of errors."""
        errors = []
        if self.request_timeout <= 0:
            errors.append("TALLY_REQUEST_TIMEOUT must be positive")
        if self.cache_ttl <= 0 or self.count_ttl <= 0 or self.inventory_cache_ttl <= 0:
            errors.append("Cache TTLs must be positive")
        if self.page_size <= 0:
            errors.append("TALLY_PAGE_SIZE must be positive")
        if self.retry_attempts < 1:
            errors.append("TALLY_RETRY_ATTEMPTS must be at least 1")
        if self.dev_mode and not self.dev_proxy_url:
            errors.append("TALLY_DEV_PROXY_URL is required in dev mode")
        return errors


@dataclass
class ConnectionConfig:
    """Server location and the company currently selected."""

    server_address: Optional[str] = None
    server_port: int = DEFAULT_PORT
    active_company: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.server_address)

    @property
    def server_url(self) -> Optional[str]:
        if not self.server_address:
            return None
        address = self.server_address
        if "://" not in address:
            address = f"http://{address}"
        return f"{address.rstrip('/')}:{self.server_port}"

    @classmethod
    def from_url(cls, url: str, company: Optional[str] = None) -> "ConnectionConfig":
        """Build from 'host', 'host:port' or 'http://host:port'."""
        address, port = split_server(url)
        return cls(server_address=address, server_port=port, active_company=company)


def split_server(server: str) -> tuple[str, int]:
    """
    Split a user-entered server string into (address, port).

    Accepts "192.168.1.2", "192.168.1.2:9000" and "http://192.168.1.2:9000".
    """
    server = (server or "").strip()
    if not server:
        raise ValidationError("Server address is empty")

    parsed = urlparse(server if "://" in server else f"//{server}")
    if not parsed.hostname:
        raise ValidationError(f"Cannot read a host name from '{server}'")
    try:
        port = parsed.port or DEFAULT_PORT
    except ValueError as e:
        raise ValidationError(f"Invalid port in '{server}'") from e
    return parsed.hostname, port


class ConfigStore:
    """
    Durable storage for ConnectionConfig.

    The whole configuration lives under CONFIG_KEY in one JSON file. Writes go
    to a temporary file that is then renamed over the target, so a reader never
    sees a half-written file.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Optional[ConnectionConfig]:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable config file {self.path}: {e}")
            return None

        data = payload.get(CONFIG_KEY) if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            return None
        try:
            return ConnectionConfig(
                server_address=data.get("server_address"),
                server_port=int(data.get("server_port") or DEFAULT_PORT),
                active_company=data.get("active_company"),
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed config in {self.path}: {e}")
            return None

    def save(self, config: ConnectionConfig) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        body = json.dumps({CONFIG_KEY: asdict(config)}, indent=2)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".config-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(body)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug(f"Saved connection config to {self.path}")

    def reset(self) -> None:
        try:
            self.path.unlink()
            logger.debug(f"Removed connection config {self.path}")
        except FileNotFoundError:
            pass


class ConfigResolver:
    """
    Resolves where requests go and which company they target.

    Owned by the composition root and handed to the transport and services;
    nothing reads configuration from module globals.
    """

    def __init__(self, settings: DashboardSettings, store: ConfigStore):
        self.settings = settings
        self.store = store
        self._config = store.load() or self._seed_from_settings()

    def _seed_from_settings(self) -> ConnectionConfig:
        if self.settings.tally_url:
            return ConnectionConfig.from_url(self.settings.tally_url, self.settings.tally_company)
        return ConnectionConfig(active_company=self.settings.tally_company)

    @property
    def config(self) -> ConnectionConfig:
        return ConnectionConfig(**asdict(self._config))

    def resolve_base_url(self) -> str:
        """
        URL every request is posted to.

        In dev mode this is always the local proxy path; otherwise it is the
        configured address:port.
        """
        if self.settings.dev_mode:
            return self.settings.dev_proxy_url
        url = self._config.server_url
        if not url:
            raise ValidationError(
                "Server configuration not available",
                remedies=["Run `python -m tally_dashboard configure HOST:PORT COMPANY` first"],
            )
        return url

    def configure(self, server: str, port: Optional[int] = None) -> ConnectionConfig:
        address, parsed_port = split_server(server)
        self._config = ConnectionConfig(
            server_address=address,
            server_port=port or parsed_port,
            active_company=self._config.active_company,
        )
        self.store.save(self._config)
        logger.info(f"Tally server set to {self._config.server_url}")
        return self.config

    def set_active_company(self, name: str) -> None:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Company name is empty")
        self._config = ConnectionConfig(
            server_address=self._config.server_address,
            server_port=self._config.server_port,
            active_company=name,
        )
        self.store.save(self._config)
        logger.info(f"Active company set to '{name}'")

    def get_active_company(self) -> Optional[str]:
        return self._config.active_company

    def require_company(self, company: Optional[str] = None) -> str:
        """Return the explicit company, else the active one, else raise."""
        name = (company or self._config.active_company or "").strip()
        if not name:
            raise ValidationError(
                "No company selected",
                remedies=["Pick a company with `python -m tally_dashboard configure` or pass one explicitly"],
            )
        return name

    def reset(self) -> None:
        self.store.reset()
        self._config = ConnectionConfig()
        logger.info("Connection configuration cleared")
