"""Agent settings loaded from environment variables and .env."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from bundlenudge.models.status import InstallMode, Tier

DEFAULT_API_URL = "https://api.bundlenudge.com"


class Settings(BaseSettings):
    """
    Update agent settings.

    Every field maps to a BUNDLENUDGE_* environment variable, e.g.:
    - BUNDLENUDGE_APP_ID=app_123
    - BUNDLENUDGE_TIER=team
    - BUNDLENUDGE_RESTART_COMMAND='["systemctl", "restart", "myapp"]'
    """

    model_config = SettingsConfigDict(
        env_prefix="BUNDLENUDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_id: str = ""
    api_url: str = DEFAULT_API_URL
    data_dir: Path = Path("./data")
    tier: Tier = Tier.FREE
    install_mode: InstallMode = InstallMode.NEXT_LAUNCH
    check_on_launch: bool = True

    verification_window_seconds: float = Field(default=60.0, gt=0)
    crash_threshold: int = Field(default=3, ge=1)
    crash_window_seconds: float = Field(default=10.0, gt=0)
    route_timeout_seconds: float = Field(default=300.0, gt=0)

    restart_command: list[str] = Field(default_factory=list)
    app_version: Optional[str] = None
    build_number: Optional[str] = None

    log_file: str = "./logs/bundlenudge.log"
    log_level: str = "INFO"
    agent_host: str = "127.0.0.1"
    agent_port: int = 12316

    @property
    def metadata_path(self) -> Path:
        return self.data_dir / "metadata.json"

    @property
    def bundles_dir(self) -> Path:
        return self.data_dir / "bundles"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()
