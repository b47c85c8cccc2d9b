"""Configuration management system for Browse Digest.

This module provides a hierarchical configuration system using YAML files and
Python dataclasses. It supports loading, saving, and updating configuration
values at runtime, and notifies subscribers whenever the configuration
changes so that long-lived components can reload explicitly.

Configuration Sections:
- tracking: Dwell-time thresholds and content-capture window
- storage: Data directory, retention and write batching
- privacy: Tracking switch, incognito handling and domain blocklist
- digest: Daily digest schedule and report limits
- webhook: Agent webhook delivery endpoint
- logger: Logger endpoint delivery
- web: Local HTTP API

Example:
    >>> from browsedigest.config import ConfigManager
    >>> config_mgr = ConfigManager()
    >>> print(config_mgr.config.digest.time)
    20:00
    >>> config_mgr.update('digest', 'time', '21:30')
"""

import dataclasses
import logging
import math
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Callable, List, Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class TrackingConfig:
    """Time-on-page tracking configuration.

    Attributes:
        min_duration_seconds: Ignore sessions shorter than this (default: 3)
        max_duration_seconds: Cap a single session at this (default: 1800)
        content_min_seconds: Minimum visit length for content capture (default: 30)
        content_max_seconds: Maximum visit length for content capture (default: 1800)
        extraction_timeout_seconds: Give up on a content capture after this (default: 10)
        content_wait_seconds: How long a capture waits for the extension to
            push the page's text (default: 5)
        fetch_fallback: Re-fetch the page over HTTP when nothing was pushed.
            Makes an outbound request per captured page (default: False)
        snapshot_interval_seconds: How often tracker state is snapshotted (default: 30)
    """
    min_duration_seconds: float = 3.0
    max_duration_seconds: float = 1800.0
    content_min_seconds: float = 30.0
    content_max_seconds: float = 1800.0
    extraction_timeout_seconds: float = 10.0
    content_wait_seconds: float = 5.0
    fetch_fallback: bool = False
    snapshot_interval_seconds: int = 30


@dataclass
class StorageConfig:
    """Event log storage and retention configuration.

    Attributes:
        data_dir: Directory holding the state database (default: ~/browsedigest-data)
        retention_days: Drop events older than this (default: 90)
        persist_every: Persist the log after this many appends (default: 5)
        persist_interval_seconds: Periodic flush interval (default: 300)
        quota_bytes: Maximum size of a single stored blob, 0 = unlimited (default: 10MB)
        quota_tail_size: Events kept when the quota is hit (default: 1000)
        page_content_cap: Extracted pages kept per day (default: 50)
        title_max_length: Titles are truncated to this many characters (default: 200)
    """
    data_dir: str = "~/browsedigest-data"
    retention_days: int = 90
    persist_every: int = 5
    persist_interval_seconds: int = 300
    quota_bytes: int = 10 * 1024 * 1024
    quota_tail_size: int = 1000
    page_content_cap: int = 50
    title_max_length: int = 200


@dataclass
class PrivacyConfig:
    """Privacy controls and exclusion rules.

    Attributes:
        enabled: Master tracking switch (default: True)
        track_incognito: Record signals from private windows (default: False)
        domain_blocklist: Hostname substrings that are never tracked
        keep_query_params: Query parameters preserved by URL sanitization
    """
    enabled: bool = True
    track_incognito: bool = False
    domain_blocklist: List[str] = field(default_factory=lambda: [
        "bank",
        "chase.com",
        "wellsfargo.com",
        "bankofamerica.com",
        "paypal.com",
        "venmo.com",
        "health",
        "patient",
        "medical",
        "pharmacy",
    ])
    keep_query_params: List[str] = field(default_factory=lambda: [
        "q", "query", "search", "search_query", "tbm", "type",
    ])


@dataclass
class DigestConfig:
    """Daily digest configuration.

    Attributes:
        time: Local time the digest is sent, HH:MM (default: 20:00)
        top_sites: Number of domains listed under Top Sites (default: 15)
        max_content_pages: Extracted pages rendered in the digest (default: 20)
        comeback_minutes: Idle minutes that count as a break (default: 30)
    """
    time: str = "20:00"
    top_sites: int = 15
    max_content_pages: int = 20
    comeback_minutes: int = 30


@dataclass
class WebhookConfig:
    """Agent webhook configuration.

    Attributes:
        url: Webhook endpoint (empty = not configured)
        token: Bearer token
        session_key: Session key sent with every message
        enabled: Delivery switch (default: False)
        send_bookmarks: Notify immediately on bookmark creation (default: True)
        send_downloads: Notify immediately on completed downloads (default: True)
        send_comeback: Notify when the user returns from a break (default: True)
        timeout_seconds: HTTP timeout (default: 15)
    """
    url: str = ""
    token: str = ""
    session_key: str = "browsedigest"
    enabled: bool = False
    send_bookmarks: bool = True
    send_downloads: bool = True
    send_comeback: bool = True
    timeout_seconds: float = 15.0


@dataclass
class LoggerConfig:
    """Logger endpoint configuration.

    Attributes:
        url: Logger endpoint (empty = not configured)
        token: Bearer token
        enabled: Delivery switch (default: False)
        timeout_seconds: HTTP timeout (default: 10)
    """
    url: str = ""
    token: str = ""
    enabled: bool = False
    timeout_seconds: float = 10.0


@dataclass
class WebConfig:
    """Local HTTP API configuration.

    Attributes:
        host: Host address to bind to (default: 127.0.0.1)
        port: Port number (default: 55566)
    """
    host: str = "127.0.0.1"
    port: int = 55566


@dataclass
class Config:
    """Top-level configuration container."""
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    digest: DigestConfig = field(default_factory=DigestConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    logger: LoggerConfig = field(default_factory=LoggerConfig)
    web: WebConfig = field(default_factory=WebConfig)


_SECTIONS = {
    'tracking': TrackingConfig,
    'storage': StorageConfig,
    'privacy': PrivacyConfig,
    'digest': DigestConfig,
    'webhook': WebhookConfig,
    'logger': LoggerConfig,
    'web': WebConfig,
}

_TRUE_STRINGS = {'true', 'yes', 'on', '1'}
_FALSE_STRINGS = {'false', 'no', 'off', '0'}
SECRET_PLACEHOLDER = '***configured***'


def coerce_value(field_type, value):
    """Convert a value to a config field's declared type.

    Strings from the HTTP API or a hand-edited YAML file are accepted where
    they parse unambiguously ("30" for an int, "false" for a bool).

    Raises:
        ValueError: If the value cannot be represented as field_type.
    """
    if field_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS:
            return True
        if isinstance(value, str) and value.strip().lower() in _FALSE_STRINGS:
            return False
        raise ValueError(f"expected a boolean, got {value!r}")

    if field_type in (int, float):
        if isinstance(value, bool):
            raise ValueError(f"expected a number, got {value!r}")
        try:
            number = float(value.strip()) if isinstance(value, str) else float(value)
        except (TypeError, ValueError):
            raise ValueError(f"expected a number, got {value!r}") from None
        if not math.isfinite(number):
            raise ValueError(f"expected a finite number, got {value!r}")
        if field_type is int:
            if not number.is_integer():
                raise ValueError(f"expected an integer, got {value!r}")
            return int(number)
        return number

    if field_type is str:
        if not isinstance(value, str):
            raise ValueError(f"expected a string, got {value!r}")
        return value

    # List[str]
    if isinstance(value, str):
        value = [item.strip() for item in value.split(',') if item.strip()]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"expected a list of strings, got {value!r}")
    return list(value)


class ConfigManager:
    """Manages configuration loading, saving, updates and change notification.

    Handles YAML configuration file I/O with merging of user settings with
    defaults. Components that cache configuration register a callback with
    subscribe() and are told about every update() and reload().

    Attributes:
        DEFAULT_PATH: Default configuration file location
        path: Actual configuration file path being used
        config: Current configuration object

    Example:
        >>> config_mgr = ConfigManager()
        >>> config_mgr.subscribe(lambda cfg: print(cfg.digest.time))
        >>> config_mgr.update('digest', 'time', '07:30')
        07:30
    """

    DEFAULT_PATH = Path("~/.config/browsedigest/config.yaml").expanduser()

    def __init__(self, path: Optional[Path] = None):
        """Initialize ConfigManager.

        Args:
            path: Custom config file path (uses DEFAULT_PATH if None)
        """
        self.path = Path(path).expanduser() if path else self.DEFAULT_PATH
        self._subscribers: List[Callable[[Config], None]] = []
        self.config = self._load()

    def _load(self) -> Config:
        """Load configuration from YAML file.

        Returns:
            Config object with loaded or default values

        Note:
            Missing fields use defaults from dataclass definitions.
            Invalid YAML returns default Config.
        """
        if self.path.exists():
            try:
                with open(self.path) as f:
                    data = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {self.path}")
                return self._dict_to_config(data)
            except (yaml.YAMLError, OSError, TypeError) as e:
                logger.warning(f"Failed to load config from {self.path}: {e}")
                logger.info("Using default configuration")
                return Config()
        else:
            logger.info(f"No config file at {self.path}, using defaults")
            return Config()

    def _dict_to_config(self, data: dict) -> Config:
        """Construct Config from a dictionary, merging with defaults.

        Unknown keys are ignored. A value of the wrong type is logged and
        replaced by the field's default, so a typo in one setting never
        reaches the components that read it.
        """
        if not isinstance(data, dict):
            logger.warning(f"Config file {self.path} is not a mapping, using defaults")
            return Config()

        def section_values(name, dataclass_type) -> dict:
            raw = data.get(name) or {}
            if not isinstance(raw, dict):
                logger.warning(f"Config section '{name}' is not a mapping, using defaults")
                return {}
            values = {}
            for f in dataclasses.fields(dataclass_type):
                if f.name not in raw:
                    continue
                try:
                    values[f.name] = coerce_value(f.type, raw[f.name])
                except ValueError as e:
                    logger.warning(f"Ignoring {name}.{f.name}: {e}")
            unknown = set(raw) - {f.name for f in dataclasses.fields(dataclass_type)}
            if unknown:
                logger.debug(f"Ignoring unknown config fields: {unknown}")
            return values

        return Config(**{
            name: section_type(**section_values(name, section_type))
            for name, section_type in _SECTIONS.items()
        })

    def save(self) -> None:
        """Save current configuration to YAML file.

        Raises:
            OSError: If file write fails
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                yaml.dump(
                    asdict(self.config),
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    indent=2
                )
            logger.info(f"Saved configuration to {self.path}")
        except OSError as e:
            logger.error(f"Failed to save config to {self.path}: {e}")
            raise

    def coerce(self, section: str, key: str, value):
        """Validate a setting and convert the value to the field's type.

        Raises:
            ValueError: Unknown section or key, or a value of the wrong type
        """
        section_type = _SECTIONS.get(section)
        if section_type is None:
            raise ValueError(f"Invalid config section: {section}")
        fields = {f.name: f for f in dataclasses.fields(section_type)}
        if key not in fields:
            raise ValueError(f"Invalid config key: {section}.{key}")
        try:
            return coerce_value(fields[key].type, value)
        except ValueError as e:
            raise ValueError(f"Invalid value for {section}.{key}: {e}") from None

    def update(self, section: str, key: str, value) -> bool:
        """Set one value, save, and notify subscribers.

        Subscribers push the new value straight into live components, so it
        is converted to the field's type first and rejected if it can't be.

        Returns:
            True if the value changed, False if unchanged or invalid
        """
        try:
            value = self.coerce(section, key, value)
        except ValueError as e:
            logger.warning(str(e))
            return False

        section_obj = getattr(self.config, section)
        old_value = getattr(section_obj, key)
        if old_value == value:
            logger.debug(f"No change for {section}.{key} (already {value})")
            return False

        setattr(section_obj, key, value)
        self.save()
        if key == 'token':
            logger.info(f"Updated {section}.{key}")
        else:
            logger.info(f"Updated {section}.{key}: {old_value} -> {value}")
        self._notify()
        return True

    def to_dict(self, mask_secrets: bool = False) -> dict:
        """Convert configuration to a dictionary.

        Args:
            mask_secrets: Replace configured tokens with a placeholder
        """
        data = asdict(self.config)
        if mask_secrets:
            for section in data.values():
                if section.get('token'):
                    section['token'] = SECRET_PLACEHOLDER
        return data

    def reload(self) -> None:
        """Reload configuration from file and notify subscribers.

        Useful for picking up external changes to the config file.
        """
        self.config = self._load()
        logger.info("Configuration reloaded")
        self._notify()

    def subscribe(self, callback: Callable[[Config], None]) -> None:
        """Register a callback invoked with the new Config after every change."""
        self._subscribers.append(callback)

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self.config)
            except Exception as e:
                logger.error(f"Config subscriber error: {e}")

    def create_default_file(self) -> None:
        """Create default configuration file if it doesn't exist."""
        if not self.path.exists():
            self.save()
            logger.info(f"Created default configuration at {self.path}")
        else:
            logger.warning(f"Configuration file already exists at {self.path}")


# Singleton instance for the CLI and web entry points
_default_config_manager: Optional[ConfigManager] = None


def get_config_manager(path: Optional[Path] = None) -> ConfigManager:
    """Get or create the default ConfigManager instance.

    Args:
        path: Optional custom config path (only used on first call)

    Returns:
        ConfigManager singleton instance
    """
    global _default_config_manager
    if _default_config_manager is None:
        _default_config_manager = ConfigManager(path)
    return _default_config_manager
