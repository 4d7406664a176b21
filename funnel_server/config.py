"""Runtime settings for the funnel server, read from the environment or ``.env``."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_INSTANCES = "D01,D02,D03,D04,D05,D06,D07,D08,D10"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    log_level: str = Field(default="INFO")

    # Evolution API
    evolution_base_url: str = Field(default="https://evo.flowzap.fun")
    evolution_api_key: str = Field(default="SUA_API_KEY_AQUI")
    instances: str = Field(default=DEFAULT_INSTANCES)
    request_timeout: float = Field(default=15.0, gt=0)

    # Storage
    data_dir: Path = Field(default=BASE_DIR / "data")
    public_dir: Path = Field(default=Path("public"))
    event_capacity: int = Field(default=500, ge=1)

    # Funnel timing
    pix_timeout_seconds: float = Field(default=7 * 60, ge=0)
    step_gap_seconds: float = Field(default=1.0, ge=0)

    # Kirvano
    kirvano_webhook_token: Optional[str] = Field(default=None)

    @property
    def instance_names(self) -> List[str]:
        names = [name.strip() for name in self.instances.split(",")]
        return [name for name in names if name]

    @property
    def funnels_file(self) -> Path:
        return self.data_dir / "funnels.json"

    @property
    def conversations_file(self) -> Path:
        return self.data_dir / "conversations.json"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
