# apiplan/config.py
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Env-driven defaults for a suite run.
    Override via APIPLAN_* environment variables or a .env file at repo root.
    """
    host: str = Field(default="localhost")
    port: Optional[int] = Field(default=None)
    scheme: str = Field(default="http")
    timeout_s: float = Field(default=30.0)  # per request
    verify_ssl: bool = Field(default=True)
    repeats: int = Field(default=1, ge=1)
    stop_on_failure: bool = Field(default=False)
    trace_timings: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    oas_path: Optional[str] = Field(default=None)
    disable_reaper_shutdowns: bool = Field(default=False)

    # Pydantic v2 config: ignore unknown envs, load .env in UTF-8
    model_config = SettingsConfigDict(
        env_prefix="APIPLAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
