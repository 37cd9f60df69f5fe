"""Loading helpers for the knowledge base configuration."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger
from pydantic import ValidationError

from .knowledge_base import RagConfig
from .settings import KBSettings

DEFAULT_CONFIG_PATH = Path("config") / "rag.yaml"


def read_yaml(config_path: str | Path) -> Dict[str, Any]:
    """
    Read a YAML file into a dictionary.

    Args:
        config_path: Path to the YAML file

    Returns:
        Parsed mapping (empty if the file is empty)

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the file is not valid YAML
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    content = path.read_text(encoding="utf-8")
    data = yaml.safe_load(content)
    return data or {}


def validate_config(config_data: Dict[str, Any]) -> RagConfig:
    """Validate raw configuration data against the `RagConfig` model."""
    return RagConfig.model_validate(config_data)


def apply_env_overrides(config: RagConfig, settings: KBSettings) -> RagConfig:
    """
    Apply retry overrides from TEST_RETRY_ATTEMPTS / TEST_RETRY_DELAY_MS.

    The overrides bypass validation so test runs can use delays below the
    production minimum.
    """
    updates: Dict[str, int] = {}
    if settings.test_retry_attempts is not None:
        updates["retry_attempts"] = max(1, settings.test_retry_attempts)
    if settings.test_retry_delay_ms is not None:
        updates["retry_delay_ms"] = max(0, settings.test_retry_delay_ms)

    if not updates:
        return config

    embedding = config.embedding.model_copy(update=updates)
    return config.model_copy(update={"embedding": embedding})


def load_rag_config(
    config_path: str | Path | None = None,
    settings: Optional[KBSettings] = None,
) -> RagConfig:
    """
    Load the RAG configuration, falling back to defaults.

    Resolution order for the path: explicit argument, PERSONA_KB_CONFIG,
    then config/rag.yaml. A missing or invalid file logs an error and yields
    the default configuration.

    Args:
        config_path: Optional explicit path to a YAML file
        settings: Environment settings; read fresh when omitted

    Returns:
        Validated RagConfig with environment overrides applied
    """
    settings = settings or KBSettings()
    path = Path(config_path or settings.persona_kb_config or DEFAULT_CONFIG_PATH)

    config = RagConfig()
    if path.exists():
        try:
            config = validate_config(read_yaml(path))
            logger.info(f"⚙️ Loaded RAG config from: {path}")
        except (yaml.YAMLError, ValidationError) as e:
            logger.error(f"❌ Invalid RAG config at '{path}', using defaults: {e}")
    else:
        logger.debug(f"⚙️ No RAG config at '{path}', using defaults")

    return apply_env_overrides(config, settings)
