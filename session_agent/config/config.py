"""
Configuration models for the session agent.

Uses Pydantic for validation and type safety. Values come from
session_agent/config/config.yaml with ${VAR} expansion; nested environment
overrides use the `__` delimiter (e.g. ORCHESTRATOR__SETTLE_DELAY_SECONDS).
"""
import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from session_agent import constants
from session_agent.exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


class LedgerConfig(BaseSettings):
    """Endpoints for the durable ledger and the execution context."""
    model_config = SettingsConfigDict(extra="ignore")

    durable_rpc_url: str = constants.DEFAULT_DURABLE_RPC_URL
    execution_rpc_url: str = constants.DEFAULT_EXECUTION_RPC_URL
    program_id: str = constants.AGENT_PROGRAM_ID
    delegation_program_id: str = constants.DELEGATION_PROGRAM_ID
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"

    request_timeout_seconds: float = Field(default=30.0, ge=1.0, le=120.0)
    confirm_timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    confirm_poll_interval_seconds: float = Field(default=0.5, ge=0.05, le=10.0)

    durable_explorer_url: str = constants.DEFAULT_DURABLE_EXPLORER_URL
    execution_explorer_url: str = constants.DEFAULT_EXECUTION_EXPLORER_URL


class SessionConfig(BaseSettings):
    """The delegated session this agent acts for."""
    model_config = SettingsConfigDict(extra="ignore")

    session_address: Optional[str] = None
    monitor_address: Optional[str] = None
    device_key: Optional[str] = None
    device_secret: Optional[str] = Field(default=None, description="Base64 HMAC secret for the device key")
    device_key_file: Optional[str] = Field(default=None, description="File holding the device secret; must live under $HOME")

    instrument: Optional[str] = None
    position: Optional[str] = None
    oracle_url: Optional[str] = None
    oracle_timeout_seconds: float = Field(default=20.0, ge=1.0, le=120.0)


class OrchestratorConfig(BaseSettings):
    """Delegation workflow timing and action parameters."""
    model_config = SettingsConfigDict(extra="ignore")

    settle_delay_seconds: float = Field(default=constants.SETTLE_DELAY_SECONDS, ge=0.0, le=60.0)
    poll_interval_seconds: float = Field(default=constants.RECONCILE_POLL_INTERVAL_SECONDS, ge=0.0, le=60.0)
    max_poll_attempts: int = Field(default=constants.RECONCILE_MAX_POLL_ATTEMPTS, ge=1, le=240)
    action_amount: int = Field(default=constants.DEFAULT_ACTION_AMOUNT, ge=0)
    default_action: str = "lp_rebalance"


class MonitorConfig(BaseSettings):
    """Periodic position monitor."""
    model_config = SettingsConfigDict(extra="ignore")

    check_interval_seconds: int = Field(
        default=constants.DEFAULT_CHECK_INTERVAL_SECONDS,
        ge=constants.MIN_CHECK_INTERVAL_SECONDS,
        le=constants.MAX_CHECK_INTERVAL_SECONDS,
    )
    memory_path: str = "data/MEMORY.md"
    memory_tail_lines: int = Field(default=constants.MEMORY_TAIL_LINES, ge=1, le=1000)
    deferral_alert_ticks: int = Field(default=10, ge=1, le=1000, description="Consecutive deferred ticks before flagging a stalled reconciliation")


class ServerConfig(BaseSettings):
    """Push-channel WebSocket server."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=constants.WS_PORT, ge=1, le=65535)
    secret: Optional[str] = None
    auth_timeout_seconds: float = Field(default=constants.WS_AUTH_TIMEOUT_SECONDS, gt=0.0, le=60.0)
    max_payload_bytes: int = Field(default=constants.WS_MAX_PAYLOAD_BYTES, ge=1024, le=1024 * 1024)
    min_trigger_interval_seconds: float = Field(default=2.0, ge=0.0, le=300.0)

    @field_validator("secret")
    @classmethod
    def empty_secret_is_none(cls, v):
        return v or None


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = "logs/agent.log"


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "paper", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} / $VAR references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        raw_content = yaml_path.read_text()
        pattern = re.compile(r"\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)")

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, "")

        config_dict = yaml.safe_load(pattern.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        return cls(**config_dict)

    def validate_for_live(self) -> None:
        """Checks that only matter when talking to real endpoints."""
        missing = [
            name
            for name, value in (
                ("session.session_address", self.session.session_address),
                ("session.monitor_address", self.session.monitor_address),
                ("session.device_key", self.session.device_key),
                ("session.oracle_url", self.session.oracle_url),
                ("session.instrument", self.session.instrument),
                ("session.position", self.session.position),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
        if not (self.session.device_secret or self.session.device_key_file):
            raise ConfigurationError("Either session.device_secret or session.device_key_file must be set")
        if self.environment == "prod" and not self.server.secret and self.server.enabled:
            raise ConfigurationError("server.secret is required in prod; the push channel accepts action triggers")


def load_device_secret(path: str, home: Optional[Path] = None) -> str:
    """Read the device secret from a file that must resolve inside the user's home directory."""
    home_dir = (home or Path.home()).resolve()
    resolved = Path(path).expanduser().resolve()
    if resolved != home_dir and home_dir not in resolved.parents:
        raise ConfigurationError(
            f"Device key file must be within your home directory.\n"
            f"  Resolved path: {resolved}\n"
            f"  Home directory: {home_dir}"
        )
    if not resolved.exists():
        raise ConfigurationError(f"Device key file not found: {resolved}")
    secret = resolved.read_text().strip()
    if not secret:
        raise ConfigurationError(f"Device key file is empty: {resolved}")
    return secret


def load_config(config_path: str | Path | None = None, *, live: bool = False) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml. If None, uses session_agent/config/config.yaml
        live: Also enforce the settings real endpoints need

    Raises:
        FileNotFoundError: If config file not found
        ConfigurationError: If live settings are missing or invalid
    """
    config = Config.from_yaml(config_path or DEFAULT_CONFIG_PATH)
    if live:
        config.validate_for_live()
    return config
