"""Application configuration via environment variables."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration for SCassist pipelines and LLM backends."""

    default_backend: str = Field(default="hosted")

    hosted_model: str = Field(default="gemini-1.5-flash-latest")
    hosted_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    hosted_seed: int = Field(default=123456)

    local_model: str = Field(default="llama3")
    local_base_url: str = Field(default="http://localhost:11434")
    local_seed: int = Field(default=42)
    local_num_gpu: int = Field(default=0)

    temperature: float = Field(default=0.0)
    max_output_tokens: int = Field(default=10048)
    request_timeout_seconds: float = Field(default=120.0)
    requests_per_minute: int = Field(default=0)
    api_key_file: str = Field(default="api_keys.txt", alias="SCASSIST_API_KEY_FILE")

    network_header_lines: int = Field(default=4)
    annotation_column_prefix: str = Field(default="scassist_annotation")

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        populate_by_name = True
        extra = "ignore"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
