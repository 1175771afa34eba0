"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded once at startup and passed down explicitly."""

    app_name: str = "nexus-bridge"
    log_level: str = "INFO"

    db_path: Path = Path("data/nexus_bridge.db")
    database_url: str = ""
    session_ttl_hours: float = Field(default=24.0, gt=0)

    credentials_file: Path = Path(".nexus-bridge-credentials.json")
    interactive_auth: bool = False
    auth_email: str = ""
    auth_password: str = ""
    auth_action: str = "login"
    auto_provision: bool = True

    remote_command: list[str] = Field(default_factory=lambda: ["npx", "flow-nexus@latest"])
    remote_timeout_s: float = Field(default=30.0, ge=0.1)
    remote_max_retries: int = Field(default=2, ge=0)
    remote_backoff_s: float = Field(default=0.5, ge=0.0)

    relay_command: list[str] = Field(default_factory=lambda: ["npx", "flow-nexus", "mcp"])
    relay_mode_var: str = "MCP_MODE"
    relay_mode_value: str = "stdio"

    model_config = SettingsConfigDict(
        env_prefix="NEXUS_BRIDGE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def has_env_credentials(self) -> bool:
        return bool(self.auth_email and self.auth_password)

    def relay_env(self) -> dict[str, str]:
        return {self.relay_mode_var: self.relay_mode_value}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
