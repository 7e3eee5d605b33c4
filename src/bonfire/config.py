"""Configuration loading and validation for Bonfire."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


class ConfigurationError(Exception):
    """Raised when required configuration is missing at startup.

    Fatal: the process must not continue without it.
    """


class OperatorsConfig(BaseModel):
    """Operators configuration for command access control."""

    user_ids: list[str] = Field(default_factory=list)
    role_id: str | None = None


class DiscordConfig(BaseModel):
    """Discord configuration."""

    channel_id: str | None = None
    ack_emoji: str = "✅"
    ignore_bots: bool = True
    operators: OperatorsConfig = Field(default_factory=OperatorsConfig)

    @field_validator("channel_id", mode="before")
    @classmethod
    def coerce_channel_id(cls, v: object) -> object:
        """Accept snowflakes written as YAML integers."""
        if isinstance(v, int):
            return str(v)
        return v


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "bonfire.db"


class SyncConfig(BaseModel):
    """Synchronization engine tuning."""

    watch_interval_seconds: float = Field(1.0, gt=0)
    internal_update_clear_delay_seconds: float = Field(1.0, ge=0)
    auto_update_on_content_change: bool = False
    roster_id: str = "roams"
    roster_max_retries: int = Field(5, ge=1)
    identity_cache_ttl_seconds: float = Field(300.0, gt=0)
    identity_cache_sweep_seconds: float = Field(600.0, gt=0)
    sweep_cron: str = "*/30 * * * *"
    sweep_on_startup: bool = True


class SchedulerConfig(BaseModel):
    """Scheduler configuration."""

    timezone: str = "UTC"


class ApiConfig(BaseModel):
    """HTTP API configuration."""

    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:3001"]
    )


class Config(BaseModel):
    """Root configuration for Bonfire."""

    data_dir: Path = Path("./data")
    log_level: str = "INFO"
    log_json: bool = True

    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log_level is valid."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @property
    def database_path(self) -> Path:
        """Get full path to database file."""
        return self.data_dir / self.database.path

    @property
    def discord_token(self) -> str | None:
        """Get Discord token from environment."""
        return os.environ.get("DISCORD_TOKEN")

    def require_channel_id(self) -> str:
        """Return the target channel id or fail startup.

        Raises:
            ConfigurationError: If no channel id is configured.
        """
        if not self.discord.channel_id:
            raise ConfigurationError(
                "discord.channel_id is not set (config file or DISCORD_CHANNEL_ID)"
            )
        return self.discord.channel_id

    def require_discord_token(self) -> str:
        """Return the bot token or fail startup.

        Raises:
            ConfigurationError: If DISCORD_TOKEN is not set.
        """
        token = self.discord_token
        if not token:
            raise ConfigurationError("DISCORD_TOKEN environment variable not set")
        return token

    @classmethod
    def load(cls, config_path: Path | str = Path("config.yaml")) -> "Config":
        """Load configuration from YAML file with env var overlay.

        Args:
            config_path: Path to YAML configuration file.

        Returns:
            Validated Config instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ValueError: If config is invalid.
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        return cls.model_validate(_apply_env_overrides(yaml_config))

    @classmethod
    def load_or_default(cls, config_path: Path | str | None = None) -> "Config":
        """Load configuration, falling back to defaults if file not found.

        Environment overrides apply in both cases.

        Args:
            config_path: Optional path to YAML configuration file.

        Returns:
            Config instance (from file or defaults).
        """
        if config_path is None:
            for path in [Path("config.yaml"), Path("config.yml")]:
                if path.exists():
                    return cls.load(path)
            return cls.model_validate(_apply_env_overrides({}))

        try:
            return cls.load(config_path)
        except FileNotFoundError:
            return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(yaml_config: dict) -> dict:
    """Overlay BONFIRE_* and DISCORD_CHANNEL_ID environment variables."""
    if "BONFIRE_DATA_DIR" in os.environ:
        yaml_config["data_dir"] = os.environ["BONFIRE_DATA_DIR"]
    if "BONFIRE_LOG_LEVEL" in os.environ:
        yaml_config["log_level"] = os.environ["BONFIRE_LOG_LEVEL"]
    if "BONFIRE_LOG_JSON" in os.environ:
        yaml_config["log_json"] = os.environ["BONFIRE_LOG_JSON"].lower() == "true"
    if "DISCORD_CHANNEL_ID" in os.environ:
        discord_section = yaml_config.setdefault("discord", {}) or {}
        discord_section["channel_id"] = os.environ["DISCORD_CHANNEL_ID"]
        yaml_config["discord"] = discord_section
    return yaml_config
