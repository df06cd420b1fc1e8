"""Service configuration.

Reads from the process environment and an optional ``.env`` file.
"""

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PACKAGE_ROOT = Path(__file__).resolve().parent.parent
_DEFAULT_AGENT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Webhook ingress
    bitbucket_webhook_secret: Optional[str] = Field(default=None)
    allowed_workspace: str = Field(default="")
    process_only_created: bool = Field(default=False)

    # Review agent
    claude_command: str = Field(default="claude")
    claude_model: str = Field(default="sonnet")
    claude_timeout_minutes: float = Field(
        default=10,
        gt=0,
        validation_alias=AliasChoices("claude_timeout_minutes", "claude_timeout_config"),
    )
    claude_max_buffer_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    claude_terminate_grace_seconds: float = Field(default=5, ge=0)
    agent_shell: str = Field(default="/bin/bash")
    agent_path: str = Field(default=_DEFAULT_AGENT_PATH)
    agent_home: str = Field(default_factory=lambda: str(Path.home()))
    agent_env_passthrough: str = Field(
        default="ANTHROPIC_API_KEY,ANTHROPIC_AUTH_TOKEN,ANTHROPIC_BASE_URL"
    )
    mcp_config_path: str = Field(default="/app/.mcp.json")

    # Working copies
    projects_dir: str = Field(default="/app/projects")
    git_timeout_seconds: int = Field(default=300, gt=0)
    diff_size_threshold_kb: int = Field(default=50, ge=0)

    # Prompt templates
    templates_dir: str = Field(default=str(_PACKAGE_ROOT / "reviewagent" / "templates"))
    template_config_path: str = Field(
        default=str(_PACKAGE_ROOT / "reviewagent" / "config" / "template-config.json")
    )

    # Metrics persistence
    metrics_persistence_enabled: bool = Field(default=False)
    metrics_persistence_type: str = Field(default="filesystem")
    metrics_persistence_path: str = Field(default="./metrics-storage")
    metrics_persistence_save_interval_ms: int = Field(default=30000, gt=0)

    # Server
    log_level: str = Field(default="INFO")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    @property
    def allowed_workspaces(self) -> list[str]:
        return _split_csv(self.allowed_workspace)

    @property
    def agent_env_passthrough_names(self) -> list[str]:
        return _split_csv(self.agent_env_passthrough)

    @property
    def claude_timeout_seconds(self) -> float:
        return self.claude_timeout_minutes * 60

    @property
    def diff_size_threshold_bytes(self) -> int:
        return self.diff_size_threshold_kb * 1024

    @property
    def metrics_save_interval_seconds(self) -> float:
        return self.metrics_persistence_save_interval_ms / 1000
