"""Configuration system for the browser relay.

This module provides configuration management for the relay, including
YAML loading, validation, and environment-specific overrides.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator


CONFIG_PATH_ENV = "BROWSER_RELAY_CONFIG"
ENVIRONMENT_ENV = "BROWSER_RELAY_ENV"

SERVICE_NAME = "Browser Relay"


class ServerSettings(BaseModel):
    """HTTP server binding."""

    host: str = Field(default="127.0.0.1", description="Interface the relay binds to")
    port: int = Field(default=3025, ge=1, le=65535, description="Preferred port")
    port_range: int = Field(
        default=3,
        ge=1,
        description="Number of consecutive ports tried when the preferred one is taken"
    )
    service_name: str = Field(default=SERVICE_NAME, description="Name reported by /.identity")
    log_level: str = Field(default="INFO")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()


class DiscoverySettings(BaseModel):
    """Candidate set probed when locating a running relay."""

    hosts: List[str] = Field(default_factory=lambda: ["127.0.0.1", "localhost"])
    port_start: int = Field(default=3025, ge=1, le=65535)
    port_count: int = Field(default=3, ge=1)
    probe_timeout: float = Field(default=0.5, gt=0, description="Per-attempt timeout in seconds")
    expected_name: Optional[str] = Field(
        default=None,
        description="Require this service name in the identity response"
    )

    @property
    def ports(self) -> List[int]:
        return list(range(self.port_start, self.port_start + self.port_count))


class ConnectionSettings(BaseModel):
    """Agent channel liveness and reconnect policy."""

    liveness_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Close the channel after this many seconds without inbound traffic"
    )
    connect_timeout: Optional[float] = Field(
        default=None,
        description="Maximum wait for a channel when connecting (None waits indefinitely)"
    )
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    agent_url: Optional[str] = Field(
        default=None,
        description="Dial out to this WebSocket URL instead of waiting for the agent"
    )


class CorrelatorSettings(BaseModel):
    """Request/response correlation."""

    default_timeout: float = Field(default=10.0, gt=0)
    screenshot_timeout: float = Field(default=15.0, gt=0)


class AuditSettings(BaseModel):
    """Headless browser pool and audit engine."""

    idle_timeout: float = Field(default=60.0, gt=0, description="Seconds an idle browser is kept")
    launch_timeout: float = Field(default=30.0, gt=0)
    audit_timeout: float = Field(default=120.0, gt=0)
    headless: bool = Field(default=True)
    browser_args: List[str] = Field(
        default_factory=lambda: ["--no-sandbox", "--disable-gpu", "--disable-dev-shm-usage"]
    )
    lighthouse_command: List[str] = Field(default_factory=lambda: ["lighthouse"])


class SanitizerSettings(BaseModel):
    """Limits applied to every outbound payload."""

    max_string_length: int = Field(default=500, ge=1)
    max_collection_items: int = Field(default=50, ge=1)
    max_duplicate_samples: int = Field(default=10, ge=1)
    max_depth: int = Field(default=10, ge=1)
    redact_value_patterns: bool = Field(default=True)
    extra_sensitive_keys: List[str] = Field(default_factory=list)


class LogBufferSettings(BaseModel):
    """In-memory buffers for unsolicited agent messages."""

    buffer_size: int = Field(default=50, ge=1)


class ScreenshotSettings(BaseModel):
    """Where captured screenshots are written."""

    directory: Path = Field(default_factory=lambda: Path.home() / "Downloads" / "mcp-screenshots")


class PasteSettings(BaseModel):
    """Automatic paste of screenshots into an external application."""

    enabled: bool = Field(default=False)
    target: str = Field(default="cursor")
    custom_app_name: Optional[str] = Field(default=None)
    timeout: float = Field(default=30.0, gt=0)


class RelayConfig(BaseModel):
    """Root configuration for the relay."""

    environment: str = Field(default="production", description="Environment name")
    server: ServerSettings = Field(default_factory=ServerSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    correlator: CorrelatorSettings = Field(default_factory=CorrelatorSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    sanitizer: SanitizerSettings = Field(default_factory=SanitizerSettings)
    logs: LogBufferSettings = Field(default_factory=LogBufferSettings)
    screenshots: ScreenshotSettings = Field(default_factory=ScreenshotSettings)
    paste: PasteSettings = Field(default_factory=PasteSettings)
    environments: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Environment-specific overrides"
    )

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        valid_environments = {'production', 'staging', 'development', 'test'}
        if v not in valid_environments:
            raise ValueError(f"Environment must be one of: {valid_environments}")
        return v

    def resolved(self) -> "RelayConfig":
        """Return a copy with the active environment's overrides applied."""
        overrides = self.environments.get(self.environment)
        if not overrides:
            return self

        data = self.model_dump()
        for section, values in overrides.items():
            if isinstance(values, dict) and isinstance(data.get(section), dict):
                data[section].update(values)
            else:
                data[section] = values
        data['environments'] = {}
        return RelayConfig(**data)


class RelayConfigManager:
    """Manager for relay configuration loading and caching."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to a relay config YAML file. Defaults to
                $BROWSER_RELAY_CONFIG, then config/relay.yaml
        """
        self._explicit = config_path is not None or CONFIG_PATH_ENV in os.environ
        if config_path is None:
            config_path = os.environ.get(CONFIG_PATH_ENV)
        if config_path is None:
            project_root = Path(__file__).parent.parent
            config_path = project_root / "config" / "relay.yaml"

        self.config_path = Path(config_path)
        self._config: Optional[RelayConfig] = None
        self._loaded_env = None

    def load_config(self, force_reload: bool = False) -> RelayConfig:
        """Load configuration from YAML file.

        Args:
            force_reload: Force reload even if already cached

        Returns:
            Loaded and validated configuration with environment overrides applied

        Raises:
            FileNotFoundError: If an explicitly requested config file doesn't exist
            yaml.YAMLError: If YAML is invalid
            ValueError: If configuration validation fails
        """
        current_env = os.environ.get(ENVIRONMENT_ENV, 'production')

        if self._config is not None and not force_reload and current_env == self._loaded_env:
            return self._config

        if not self.config_path.exists():
            if self._explicit:
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
            config_data: Dict[str, Any] = {}
        else:
            try:
                with open(self.config_path, 'r') as f:
                    config_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in {self.config_path}: {e}")

        # Override environment from env var if set
        if current_env != 'production':
            config_data['environment'] = current_env

        try:
            self._config = RelayConfig(**config_data).resolved()
        except Exception as e:
            raise ValueError(f"Configuration validation failed: {e}")
        self._loaded_env = current_env

        return self._config

    @property
    def config(self) -> RelayConfig:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            return self.load_config()
        return self._config

    @property
    def environment(self) -> str:
        """Get current environment."""
        return self.config.environment


def load_config(config_path: Optional[Union[str, Path]] = None) -> RelayConfig:
    """Load relay configuration.

    Args:
        config_path: Path to relay config YAML file

    Returns:
        Resolved RelayConfig instance
    """
    return RelayConfigManager(config_path).load_config()
