"""Configuration management for codeloop."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.codeloop/config.yaml").expanduser()
DEFAULT_RECOVERY_DB_PATH = Path("~/.codeloop/recovery.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

ApprovalClassName = Literal["edits", "terminal", "dangerous", "none"]


class ModelConfig(BaseModel):
    """Model provider configuration."""

    provider: str = "ollama"
    model: str = "qwen3:32b"
    temperature: float = 0.7
    max_tokens: int = 8192
    api_key: str = ""
    base_url: str = ""
    timeout_seconds: float = 300.0
    max_retries: int = 2
    retry_delay_seconds: float = 1.0
    retry_backoff: float = 2.0


class LoopConfig(BaseModel):
    """Agent loop limits."""

    max_iterations: int = 25
    max_history_messages: int = 50
    max_tool_result_chars: int = 10000
    halt_on_rejection: bool = False
    max_parallel_tools: int = 8
    system_prompt: str = (
        "You are a coding assistant working inside the user's workspace. "
        "Use the available tools to inspect and change files, and stop calling "
        "tools once the task is complete."
    )


class AutoApproveConfig(BaseModel):
    """Per-class auto-approval switches."""

    edits: bool = True
    terminal: bool = False
    dangerous: bool = False


class ToolsConfig(BaseModel):
    """Tool execution configuration."""

    timeout_seconds: float = 60.0
    max_attempts: int = 3
    retry_delay_seconds: float = 1.0
    approval_overrides: dict[str, ApprovalClassName] = Field(default_factory=dict)
    auto_approve: AutoApproveConfig = Field(default_factory=AutoApproveConfig)


class LoopDetectionConfig(BaseModel):
    """Repetition detection thresholds."""

    window_size: int = 20
    repeat_threshold: int = 3
    max_cycle_length: int = 4
    min_cycle_repeats: int = 2


class CompactionConfig(BaseModel):
    """Context compaction thresholds."""

    message_threshold: int = 40
    char_threshold: int = 80000
    keep_recent_messages: int = 10
    max_summary_chars: int = 4000
    summary_max_tokens: int = 1000
    summary_temperature: float = 0.3


class RecoveryConfig(BaseModel):
    """Stream recovery journal configuration."""

    max_points: int = 5
    ttl_seconds: float = 30 * 60
    auto_save_interval_seconds: float = 5.0
    max_resume_attempts: int = 3
    persisted_messages: int = 10
    storage: Literal["memory", "sqlite"] = "memory"
    path: str = str(DEFAULT_RECOVERY_DB_PATH)


class WorkspaceConfig(BaseModel):
    """Workspace root configuration."""

    path: str = "."


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for codeloop."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    loop_detection: LoopDetectionConfig = Field(default_factory=LoopDetectionConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CODELOOP_",
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

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; env vars are layered on by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(exclude_none=True)
        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workspace.path).expanduser()
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
