"""Configuration handling for the mailhub engine."""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml  # type: ignore
from dotenv import load_dotenv

from mailhub.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# Load environment variables from .env file if it exists
load_dotenv()


@dataclass
class ImapConfig:
    """IMAP server configuration."""

    host: str
    port: int
    username: str
    password: Optional[str] = None
    use_ssl: bool = True
    folders: List[str] = field(default_factory=lambda: ["INBOX", "Sent"])
    sent_folders: List[str] = field(default_factory=lambda: ["Sent", "Sent Items"])
    timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImapConfig":
        """Create configuration from dictionary."""
        # Password can be specified in environment variable
        password = data.get("password") or os.environ.get("IMAP_PASSWORD")

        if not password:
            logger.warning(
                "IMAP password not configured - server will start but email sync disabled"
            )

        kwargs: Dict[str, Any] = {}
        if data.get("folders"):
            kwargs["folders"] = list(data["folders"])
        if data.get("sent_folders"):
            kwargs["sent_folders"] = list(data["sent_folders"])

        return cls(
            host=data["host"],
            port=data.get("port", 993 if data.get("use_ssl", True) else 143),
            username=data["username"],
            password=password,
            use_ssl=data.get("use_ssl", True),
            timeout=float(data.get("timeout", 30.0)),
            **kwargs,
        )


@dataclass
class DatabaseConfig:
    """SQLite storage configuration."""

    path: str = "config/mailhub.db"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        return cls(
            path=data.get("path") or os.environ.get("MAILHUB_DB_PATH", cls.path),
        )


class LeaseMode(Enum):
    """What a second concurrent refresh for the same account does."""

    REJECT = "reject"
    QUEUE = "queue"

    @classmethod
    def from_string(cls, value: str) -> "LeaseMode":
        try:
            return cls(value.lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Invalid lease mode '{value}'. Must be one of: {valid}")


@dataclass
class SyncConfig:
    """Sync engine policy."""

    account_id: str = "default"
    batch_size: int = 50
    lookback_days: int = 60
    refresh_cooldown_seconds: int = 30
    interval_seconds: int = 300
    retry_attempts: int = 5
    retry_base_delay: float = 2.0
    retry_max_delay: float = 300.0
    lease_ttl_seconds: int = 600
    lease_mode: LeaseMode = LeaseMode.REJECT
    lease_wait_seconds: float = 30.0

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if not 1 <= self.lookback_days <= 365:
            raise ValueError("lookback_days must be between 1 and 365")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        defaults = cls()
        return cls(
            account_id=str(data.get("account_id", defaults.account_id)),
            batch_size=int(data.get("batch_size", defaults.batch_size)),
            lookback_days=int(data.get("lookback_days", defaults.lookback_days)),
            refresh_cooldown_seconds=int(
                data.get("refresh_cooldown_seconds", defaults.refresh_cooldown_seconds)
            ),
            interval_seconds=int(
                data.get("interval_seconds", defaults.interval_seconds)
            ),
            retry_attempts=int(data.get("retry_attempts", defaults.retry_attempts)),
            retry_base_delay=float(
                data.get("retry_base_delay", defaults.retry_base_delay)
            ),
            retry_max_delay=float(data.get("retry_max_delay", defaults.retry_max_delay)),
            lease_ttl_seconds=int(
                data.get("lease_ttl_seconds", defaults.lease_ttl_seconds)
            ),
            lease_mode=LeaseMode.from_string(
                data.get("lease_mode", defaults.lease_mode.value)
            ),
            lease_wait_seconds=float(
                data.get("lease_wait_seconds", defaults.lease_wait_seconds)
            ),
        )


@dataclass
class ApiConfig:
    """HTTP API configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    default_page_size: int = 50
    max_page_size: int = 200

    def __post_init__(self):
        if not 1 <= self.default_page_size <= self.max_page_size:
            raise ValueError("default_page_size must be between 1 and max_page_size")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiConfig":
        return cls(
            host=data.get("host") or os.environ.get("MAILHUB_HOST", "0.0.0.0"),
            port=int(data.get("port") or os.environ.get("MAILHUB_PORT", "8000")),
            default_page_size=int(data.get("default_page_size", 50)),
            max_page_size=int(data.get("max_page_size", 200)),
        )


@dataclass
class ServerConfig:
    """Top-level configuration."""

    imap: Optional[ImapConfig] = None
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        imap_data = data.get("imap")
        return cls(
            imap=ImapConfig.from_dict(imap_data) if imap_data else None,
            database=DatabaseConfig.from_dict(data.get("database") or {}),
            sync=SyncConfig.from_dict(data.get("sync") or {}),
            api=ApiConfig.from_dict(data.get("api") or {}),
        )


def _config_from_env() -> Dict[str, Any]:
    config_data: Dict[str, Any] = {
        "database": {"path": os.environ.get("MAILHUB_DB_PATH")},
        "sync": {},
    }

    if os.environ.get("IMAP_HOST"):
        config_data["imap"] = {
            "host": os.environ.get("IMAP_HOST"),
            "port": int(os.environ.get("IMAP_PORT", "993")),
            "username": os.environ.get("IMAP_USERNAME") or os.environ.get("IMAP_USER"),
            "password": os.environ.get("IMAP_PASSWORD") or os.environ.get("IMAP_PASS"),
            "use_ssl": os.environ.get("IMAP_USE_SSL", "true").lower() == "true",
        }
        if os.environ.get("IMAP_FOLDERS"):
            config_data["imap"]["folders"] = os.environ["IMAP_FOLDERS"].split(",")

    if os.environ.get("MAILHUB_ACCOUNT_ID"):
        config_data["sync"]["account_id"] = os.environ["MAILHUB_ACCOUNT_ID"]
    if os.environ.get("MAILHUB_LOOKBACK_DAYS"):
        config_data["sync"]["lookback_days"] = int(os.environ["MAILHUB_LOOKBACK_DAYS"])

    return config_data


def load_config(config_path: Optional[str] = None) -> ServerConfig:
    """Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file

    Returns:
        Server configuration

    Raises:
        ConfigurationError: If configuration is invalid
    """
    default_locations = [
        Path("/app/config/config.yaml"),
        Path("config/config.yaml"),
        Path("config/config.yml"),
        Path("config.yaml"),
        Path("~/.config/mailhub/config.yaml"),
        Path("/etc/mailhub/config.yaml"),
    ]

    config_data: Dict[str, Any] = {}

    if config_path:
        try:
            with open(config_path, "r") as f:
                config_data = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {config_path}")
        except FileNotFoundError:
            logger.warning(f"Configuration file not found: {config_path}")
    else:
        for path in default_locations:
            expanded_path = path.expanduser()
            if expanded_path.exists():
                with open(expanded_path, "r") as f:
                    config_data = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {expanded_path}")
                break

    if not config_data:
        logger.info("No configuration file found, using environment variables")
        config_data = _config_from_env()

    try:
        return ServerConfig.from_dict(config_data)
    except KeyError as e:
        raise ConfigurationError(f"Missing required configuration: {e}")
    except ValueError as e:
        raise ConfigurationError(str(e))
