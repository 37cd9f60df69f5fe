"""Process settings read from the environment (and an optional `.env` file)."""

from pathlib import Path
from typing import Any, Optional

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_LM_STUDIO_BASE_URL = "http://localhost:1234/v1"


class KBSettings(BaseSettings):
    """
    Deployment settings that do not belong in `rag.yaml`.

    Field names match the environment variables case-insensitively, e.g.
    `KB_DATABASE_PATH` fills `kb_database_path`. Empty variables count as unset.
    """

    persona_kb_config: Optional[Path] = None

    lm_studio_base_url: str = DEFAULT_LM_STUDIO_BASE_URL
    # Embeddings may be served by a separate endpoint (e.g. KoboldCpp)
    embedding_base_url: Optional[str] = None
    openai_api_key: Optional[str] = None

    kb_storage_path: Path = Field(default=Path("data") / "knowledge-base")
    kb_database_path: Path = Field(default=Path("data") / "persona_kb.db")
    kb_queue_database_path: Path = Field(default=Path("data") / "persona_kb_jobs.db")

    test_retry_attempts: Optional[int] = None
    test_retry_delay_ms: Optional[int] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    @field_validator("test_retry_attempts", "test_retry_delay_ms", mode="before")
    @classmethod
    def ignore_non_integer(cls, value: Any, info) -> Any:
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                logger.warning(
                    f"⚠️ Ignoring non-integer value for {info.field_name.upper()}: {value!r}"
                )
                return None
        return value
