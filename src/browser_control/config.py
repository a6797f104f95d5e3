"""Configuration management for browser-control.

Stores user preferences in ~/.config/browser-control/config.toml
(or $BROWSER_CONTROL_HOME/config.toml).
"""

from __future__ import annotations

import ipaddress
import os
import re
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import tomli_w

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


DEFAULT_CONTROL_URL = "http://127.0.0.1:18791"
DEFAULT_CONTROL_PORT = 18791
DEFAULT_COLOR = "#FF4500"
DEFAULT_PROFILE = "default"

_COLOR_RE = re.compile(r"^#?([0-9a-fA-F]{6})$")


def config_home() -> Path:
    """Directory holding config, logs, media and browser profiles."""
    override = os.environ.get("BROWSER_CONTROL_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "browser-control"


def config_file() -> Path:
    return config_home() / "config.toml"


@dataclass
class BrowserConfig:
    """Browser and control server settings."""

    enabled: bool = True
    control_url: str = DEFAULT_CONTROL_URL
    cdp_port: int = 0  # 0 = control port + 1
    color: str = DEFAULT_COLOR
    headless: bool = False
    attach_only: bool = False
    executable_path: str = ""
    profile: str = DEFAULT_PROFILE


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "INFO"
    file: bool = True


@dataclass
class AppConfig:
    """Root configuration object."""

    browser: BrowserConfig = field(default_factory=BrowserConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass(frozen=True)
class ResolvedBrowserConfig:
    """Browser settings with derived values filled in."""

    enabled: bool
    control_url: str
    control_host: str
    control_port: int
    cdp_port: int
    color: str
    headless: bool
    attach_only: bool
    executable_path: str | None
    profile: str


def _dataclass_from_dict(cls: type, data: dict[str, Any]) -> Any:
    """Recursively create a dataclass instance from a dict."""
    nested_types: dict[str, type] = {
        "browser": BrowserConfig,
        "logging": LoggingConfig,
    }
    valid_fields = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in valid_fields:
            continue
        if key in nested_types and isinstance(value, dict):
            kwargs[key] = _dataclass_from_dict(nested_types[key], value)
        else:
            kwargs[key] = value
    return cls(**kwargs)


def _dataclass_to_dict(obj: Any) -> dict[str, Any]:
    """Recursively convert a dataclass to a dict."""
    result: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if hasattr(value, "__dataclass_fields__"):
            result[f.name] = _dataclass_to_dict(value)
        else:
            result[f.name] = value
    return result


def load_config() -> AppConfig:
    """Load config from disk, returning defaults if file doesn't exist."""
    path = config_file()
    if not path.exists():
        return AppConfig()

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
        return _dataclass_from_dict(AppConfig, data)
    except (OSError, tomllib.TOMLDecodeError, TypeError):
        # Corrupted config, fall back to defaults
        return AppConfig()


def save_config(config: AppConfig) -> None:
    """Save config to disk."""
    path = config_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        tomli_w.dump(_dataclass_to_dict(config), f)


def reset_config() -> AppConfig:
    """Reset config to defaults."""
    config = AppConfig()
    save_config(config)
    return config


def dump_config(config: AppConfig) -> str:
    """Render a config as TOML text."""
    return tomli_w.dumps(_dataclass_to_dict(config))


def _normalize_color(raw: str | None) -> str:
    match = _COLOR_RE.match((raw or "").strip())
    if not match:
        return DEFAULT_COLOR
    return f"#{match.group(1).upper()}"


def resolve_browser_config(raw: BrowserConfig | None) -> ResolvedBrowserConfig:
    """Fill in derived values (ports, colour) for a browser config.

    Raises:
        ValueError: If the control URL is not an http(s) URL.
    """
    raw = raw or BrowserConfig()
    control_url = (raw.control_url or DEFAULT_CONTROL_URL).strip().rstrip("/")
    parts = urlsplit(control_url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"browser.control_url must be http(s): {control_url}")

    try:
        port = parts.port
    except ValueError as err:
        raise ValueError(f"browser.control_url has an invalid port: {control_url}") from err
    if port is None:
        port = DEFAULT_CONTROL_PORT if parts.scheme == "http" else 443

    cdp_port = int(raw.cdp_port or 0) or port + 1
    if not 0 < cdp_port < 65536:
        raise ValueError(f"browser.cdp_port out of range: {cdp_port}")

    return ResolvedBrowserConfig(
        enabled=bool(raw.enabled),
        control_url=control_url,
        control_host=parts.hostname,
        control_port=port,
        cdp_port=cdp_port,
        color=_normalize_color(raw.color),
        headless=bool(raw.headless),
        attach_only=bool(raw.attach_only),
        executable_path=raw.executable_path.strip() or None,
        profile=(raw.profile or DEFAULT_PROFILE).strip() or DEFAULT_PROFILE,
    )


def is_loopback_host(host: str) -> bool:
    host = host.strip().strip("[]").lower()
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def should_start_local_server(resolved: ResolvedBrowserConfig) -> bool:
    """A local control server only runs when the control URL is loopback."""
    return is_loopback_host(resolved.control_host)
