"""Configuration management for steerline."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.steerline/config.yaml").expanduser()
DEFAULT_SESSIONS_DIR = Path("~/.steerline/sessions").expanduser()
DEFAULT_HISTORY_PATH = Path("~/.steerline/history.db").expanduser()
DEFAULT_PENDING_STEERING_PATH = Path("~/.steerline/pending-steering.json").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class SteeringConfig(BaseModel):
    """Steering buffer and auto-continue behavior."""

    max_messages: int = 20
    max_auto_continue_rounds: int = 5
    settle_seconds: float = 0.5


class SessionConfig(BaseModel):
    """Session lifecycle and persistence configuration."""

    sessions_dir: str = str(DEFAULT_SESSIONS_DIR)
    working_dir: str = "."
    default_tenant: str = "default"
    ttl_hours: float = 24.0
    max_sessions: int = 100
    processing_timeout_seconds: float = 60.0
    stop_wait_seconds: float = 5.0
    interrupt_wait_seconds: float = 6.0
    steering_idle_wait_seconds: float = 2.0


class ChoiceConfig(BaseModel):
    """Interactive choice configuration."""

    direct_input_ttl_seconds: float = 300.0


class RateLimitConfig(BaseModel):
    """Rate-limit fallback configuration."""

    failure_threshold: int = 3
    cooldown_seconds: float = 300.0
    utilization_threshold: float = 0.8
    fallback_model: str = "claude-sonnet-4-5"


class ContextConfig(BaseModel):
    """Context window accounting."""

    window_size: int = 200000
    warn_thresholds: list[float] = Field(default_factory=lambda: [0.70, 0.85, 0.95])
    save_threshold: float = 0.90
    restore_cooldown_messages: int = 50


class RecoveryConfig(BaseModel):
    """Lost-message recovery configuration."""

    history_limit: int = 10
    pending_steering_path: str = str(DEFAULT_PENDING_STEERING_PATH)


class HistoryConfig(BaseModel):
    """Chat history storage."""

    enabled: bool = True
    path: str = str(DEFAULT_HISTORY_PATH)


class TelegramConfig(BaseModel):
    """Telegram bot channel configuration."""

    enabled: bool = False
    bot_token: str = ""
    api_base_url: str = "https://api.telegram.org"
    poll_timeout_seconds: int = 25
    allowed_users: list[int] = Field(default_factory=list)
    rate_limit_messages: int = 20
    rate_limit_window_seconds: float = 60.0


class ModelConfig(BaseModel):
    """Agent provider configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    base_url: str = ""
    api_key: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    system_prompt: str = ""


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for steerline."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    steering: SteeringConfig = Field(default_factory=SteeringConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    choice: ChoiceConfig = Field(default_factory=ChoiceConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="STEERLINE_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; environment variables are merged by BaseSettings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_sessions_dir(self) -> Path:
        return Path(self.session.sessions_dir).expanduser()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
