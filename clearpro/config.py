import logging
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CLEARPRO_", env_file=".env", extra="ignore")

    app_name: str = "ClearPro Aligner API"
    database_url: str = "sqlite+aiosqlite:///./clearpro.db"
    storage_backend: Literal["sql", "memory"] = Field(default="sql", description="Chosen once at startup, never switched at runtime")
    api_prefix: str = ""
    cors_origins: List[str] = ["*"]
    case_id_prefix: str = "CP"
    log_level: str = "INFO"

settings = Settings()

def configure_logging(level: str | None = None):
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
