"""Configuration types with environment variable support.

All settings can be configured via environment variables with the SINGLEPORT_ prefix.
Example: SINGLEPORT_LISTEN_PORT=9000 sets listen_port to 9000.
"""

from __future__ import annotations

import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from singleport.core.exceptions import ConfigError


class SniffPolicy(str, Enum):
    """Strategy used to tell plain HTTP apart from tunnel traffic."""

    HTTP_MARKERS = "http-markers"
    WEBSOCKET_PATH = "websocket-path"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        ConfigError: If the file is missing, has encoding errors, invalid syntax,
            or an unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ConfigError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ConfigError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


_SECTIONS = ("listener", "discovery", "keepalive", "link")


def section_overrides(file_config: dict[str, Any]) -> dict[str, Any]:
    """Map a flattened config file onto flat field names.

    Section prefixes are dropped, so ``listener_listen_port`` and
    ``listen_port`` both address ``ListenerConfig.listen_port``.
    """
    result: dict[str, Any] = {}
    for key, value in file_config.items():
        for section in _SECTIONS:
            if key.startswith(section + "_"):
                key = key[len(section) + 1 :]
                break
        result[key] = value
    return result


class ListenerConfig(BaseSettings):
    """Public listener, classifier and relay settings."""

    model_config = SettingsConfigDict(
        env_prefix="SINGLEPORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    listen_host: str | None = Field(
        default=None,
        description="Bind address. None binds every interface (IPv4 and IPv6).",
    )
    listen_port: int = Field(
        default=8080,
        ge=0,
        le=65535,
        description="Public TCP port shared by HTTP and tunnel traffic.",
    )
    backend_host: str = Field(
        default="127.0.0.1",
        description="Host of the private backend that receives tunnel traffic.",
    )
    backend_port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Private backend port. Defaults to listen_port + 1.",
    )
    sniff_policy: SniffPolicy = Field(
        default=SniffPolicy.WEBSOCKET_PATH,
        description="Classification strategy: 'websocket-path' or 'http-markers'.",
    )
    upgrade_path: str = Field(
        default="/king",
        description="Path marker that identifies tunnel upgrades.",
    )
    health_path: str = Field(
        default="/health",
        description="Liveness route answered with 200 OK.",
    )
    metrics_path: str | None = Field(
        default=None,
        description="Route serving Prometheus metrics. Disabled when unset.",
    )
    classify_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Abort connections that send nothing for this long (seconds). None waits forever.",
    )
    backend_connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for connecting to the backend (seconds).",
    )
    relay_close_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Grace period before a closing relay is aborted (seconds).",
    )

    @property
    def effective_backend_port(self) -> int:
        """Backend port, falling back to the port next to the listener."""
        if self.backend_port is not None:
            return self.backend_port
        return self.listen_port + 1


class DiscoveryConfig(BaseSettings):
    """Public hostname discovery settings."""

    model_config = SettingsConfigDict(
        env_prefix="SINGLEPORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    fixed_hostname: str | None = Field(
        default=None,
        description="Known public hostname. Skips discovery and keepalive.",
    )
    artifact_path: str = Field(
        default="boot.log",
        description="Log file written by the tunnel agent.",
    )
    poll_interval: float = Field(
        default=2.0,
        gt=0,
        description="Delay between artifact reads (seconds).",
    )
    max_retries: int = Field(
        default=10,
        ge=1,
        description="Artifact reads before giving up.",
    )
    domain_suffix: str = Field(
        default="trycloudflare.com",
        description="Domain under which the tunnel agent assigns hostnames.",
    )
    fallback_hostname: str = Field(
        default="unknown.trycloudflare.com",
        description="Placeholder hostname used when discovery gives up.",
    )
    public_scheme: str = Field(
        default="https",
        description="Scheme of the public URL.",
    )


class KeepaliveConfig(BaseSettings):
    """Keepalive probe settings."""

    model_config = SettingsConfigDict(
        env_prefix="SINGLEPORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    keepalive_interval: float = Field(
        default=30.0,
        gt=0,
        description="Delay between probes (seconds).",
    )
    keepalive_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Probe request timeout (seconds).",
    )
    keepalive_path: str = Field(
        default="/health",
        description="Path probed on the public hostname.",
    )
    keepalive_user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/113.0.0.0 Safari/537.36"
        ),
        description="User-Agent header sent with probes.",
    )


class ShareLinkConfig(BaseSettings):
    """Client share link settings."""

    model_config = SettingsConfigDict(
        env_prefix="SINGLEPORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    link_uuid: str | None = Field(
        default=None,
        repr=False,
        description="Backend user id. No link is generated when unset.",
    )
    link_name: str = Field(
        default="app.koyeb.com",
        description="Display name of the link.",
    )
    link_entry_host: str = Field(
        default="www.visa.com.tw",
        description="CDN entry address clients connect to.",
    )
    link_entry_port: int = Field(
        default=443,
        ge=1,
        le=65535,
        description="CDN entry port.",
    )
    link_early_data: int = Field(
        default=2048,
        ge=0,
        description="Early data size advertised in the link path.",
    )
    link_file: str | None = Field(
        default=None,
        description="File the link is written to.",
    )


class SingleportConfig(BaseSettings):
    """Master configuration combining all settings.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.listener.listen_port)
        print(config.discovery.poll_interval)
    """

    model_config = SettingsConfigDict(
        env_prefix="SINGLEPORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def listener(self) -> ListenerConfig:
        """Get listener configuration."""
        return ListenerConfig()

    @property
    def discovery(self) -> DiscoveryConfig:
        """Get discovery configuration."""
        return DiscoveryConfig()

    @property
    def keepalive(self) -> KeepaliveConfig:
        """Get keepalive configuration."""
        return KeepaliveConfig()

    @property
    def link(self) -> ShareLinkConfig:
        """Get share link configuration."""
        return ShareLinkConfig()

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        return {
            "listener": self.listener.model_dump(mode="json"),
            "discovery": self.discovery.model_dump(mode="json"),
            "keepalive": self.keepalive.model_dump(mode="json"),
            "link": self.link.model_dump(mode="json", exclude={"link_uuid"}),
        }


_config: SingleportConfig | None = None


def get_config() -> SingleportConfig:
    """Get the global configuration instance.

    The instance is created once and cached for the lifetime of the process.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = SingleportConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration."""
    global _config
    _config = None
