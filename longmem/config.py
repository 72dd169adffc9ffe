"""longmem configuration management."""

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .lexicon import ANTONYM_PAIRS, EMPHASIS_KEYWORDS, STOP_WORDS, SYNONYMS

logger = logging.getLogger(__name__)

APP_NAME = "longmem"
CONFIG_FILENAME = "config.json"
DB_FILENAME = "memories.duckdb"


class MemoryConfig(BaseModel):
    """Memory engine configuration.

    Passed explicitly to each component at composition time.
    """

    model_config = ConfigDict(
        extra="allow",
        str_strip_whitespace=True,
    )

    db_path: Optional[Path] = None
    retrieval_limit: int = Field(default=10, ge=0)
    surprise_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    max_age_days: Optional[int] = Field(default=90, ge=0)
    max_count: Optional[int] = Field(default=10_000, ge=0)
    include_global: bool = True
    injection_format: Literal["system", "assistant_preamble"] = "system"
    decay_enabled: bool = False
    recency_time_constant_days: float = Field(default=7.0, gt=0)
    recent_window_days: float = Field(default=7.0, ge=0)
    important_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    stop_words: List[str] = Field(default_factory=lambda: sorted(STOP_WORDS))
    antonym_pairs: List[Tuple[str, str]] = Field(default_factory=lambda: list(ANTONYM_PAIRS))
    emphasis_keywords: List[str] = Field(default_factory=lambda: list(EMPHASIS_KEYWORDS))
    synonyms: Dict[str, List[str]] = Field(default_factory=lambda: {k: list(v) for k, v in SYNONYMS.items()})

    @field_validator("stop_words", "emphasis_keywords", mode="after")
    @classmethod
    def lowercase_words(cls, v: List[str]) -> List[str]:
        return [w.lower() for w in v]

    def resolved_db_path(self) -> Path:
        """Database path, defaulting to memories.duckdb in the data directory."""
        if self.db_path is not None:
            return self.db_path
        return get_data_dir() / DB_FILENAME


def _base_dir(env_var: str, fallback: Path) -> Path:
    value = os.environ.get(env_var)
    return Path(value) if value else fallback


def get_config_path() -> Path:
    """$XDG_CONFIG_HOME/longmem/config.json, or ~/.config/longmem/config.json."""
    return _base_dir("XDG_CONFIG_HOME", Path.home() / ".config") / APP_NAME / CONFIG_FILENAME


def get_data_dir() -> Path:
    """$XDG_DATA_HOME/longmem, or ~/.local/share/longmem."""
    return _base_dir("XDG_DATA_HOME", Path.home() / ".local" / "share") / APP_NAME


def load_config(path: Optional[Path] = None) -> MemoryConfig:
    """Load memory configuration from a JSON file.

    Args:
        path: Path to config.json file. If None, uses default path

    Returns:
        MemoryConfig with loaded settings. Returns defaults if the file doesn't exist
        or cannot be parsed.
    """
    if path is None:
        path = get_config_path()

    if not path.exists():
        return MemoryConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        if data.get("db_path"):
            data["db_path"] = Path(data["db_path"])

        return MemoryConfig.model_validate(data)

    except json.JSONDecodeError as e:
        logger.warning("Failed to parse config at %s: %s", path, e)
        return MemoryConfig()
    except Exception as e:
        logger.warning("Failed to load config from %s: %s", path, e)
        return MemoryConfig()


def save_config(config: MemoryConfig, path: Optional[Path] = None) -> None:
    """Save memory configuration to a JSON file.

    Args:
        config: MemoryConfig to save
        path: Path to config.json file. If None, uses default path

    Raises:
        IOError: If file cannot be written
    """
    if path is None:
        path = get_config_path()

    path.parent.mkdir(parents=True, exist_ok=True)

    # None is meaningful for the pruning limits, so it is written out
    config_data = config.model_dump(mode="json")

    with open(path, "w", encoding="utf-8") as f:
        json.dump(config_data, f, indent=2)
