"""Configuration management for Coding Agent."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.coding-agent/config.yaml").expanduser()
DEFAULT_DB_PATH = "./sessions.db"
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "openai"
    model: str = "gpt-4.1"
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    timeout: float = 120.0

    def resolved_api_key(self) -> str:
        """Return the configured key, falling back to OPENAI_API_KEY."""
        return self.api_key or os.environ.get("OPENAI_API_KEY", "")


class SessionConfig(BaseModel):
    """Session configuration."""

    storage: Literal["sqlite", "memory"] = "sqlite"
    path: str = DEFAULT_DB_PATH


class OrchestratorConfig(BaseModel):
    """Turn orchestration limits."""

    max_tool_rounds: int = Field(default=16, ge=1)
    parallel_tool_calls: bool = False
    model_timeout_seconds: float | None = None


class ToolsConfig(BaseModel):
    """Tools configuration."""

    base_path: str = "."
    timeout_seconds: float = 30.0


class UIConfig(BaseModel):
    """UI configuration."""

    colors: bool = True
    show_tool_calls: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Coding Agent."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    ui: UIConfig = Field(default_factory=UIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CODING_AGENT_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
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

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML; environment variables fill what the file leaves unset."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_tools_base_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve the tool base path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.tools.base_path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


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
