"""Unified configuration loaded from .geomigrate.toml and env vars.

Loading order: defaults → TOML file → env vars.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".geomigrate.toml"
CONFIG_SEARCH_PATHS = [
    Path("."),
]
GLOBAL_CONFIG_PATH = Path.home() / ".config" / "geomigrate" / "config.toml"


class DatabaseConfig(BaseModel):
    """[database] section."""

    url: str = ""
    embedding_dim: int = 1536
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0


class QueueConfig(BaseModel):
    """[queue] section.

    ``url`` defaults to the database URL; the durable queue shares the
    relational store unless pointed elsewhere.
    """

    url: str = ""
    poll_interval_seconds: float = 1.0
    visibility_timeout_seconds: int = 600


class BrowserConfig(BaseModel):
    """[browser] section."""

    headless: bool = True
    navigation_timeout_ms: int = 60_000
    settle_ms: int = 2_000
    page_timeout_seconds: float = 90.0
    user_agent: str = ""


class CrawlSectionConfig(BaseModel):
    """[crawl] section: defaults applied when a job payload omits them."""

    max_depth: int = 3
    max_pages: int = 100
    rate_limit_ms: int = 1_000
    max_refetch_per_url: int = 1
    scanned_window: int = 100
    error_window: int = 50
    metadata_every: int = 2


class EmbeddingConfig(BaseModel):
    """[embedding] section."""

    voyage_api_key: str = ""
    openai_api_key: str = ""
    voyage_model: str = "voyage-2"
    openai_model: str = "text-embedding-3-small"
    timeout_seconds: float = 60.0


class LLMConfig(BaseModel):
    """[llm] section."""

    model: str | None = None
    analysis_model: str | None = "haiku"
    timeout: int = 360


class MatchingConfig(BaseModel):
    """[matching] section."""

    min_relevance: float = 0.7
    max_results: int = 100


class GeomigrateConfig(BaseModel):
    """Top-level configuration for the migration workers."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    crawl: CrawlSectionConfig = Field(default_factory=CrawlSectionConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)

    @property
    def queue_url(self) -> str:
        """Queue connection string, falling back to the database URL."""
        return self.queue.url or self.database.url

    @property
    def has_embedding_key(self) -> bool:
        return bool(self.embedding.voyage_api_key or self.embedding.openai_api_key)


def load_config(path: str | Path | None = None) -> GeomigrateConfig:
    """Load configuration from a TOML file.

    Search order:
    1. Explicit path (if provided)
    2. .geomigrate.toml in CWD
    3. ~/.config/geomigrate/config.toml

    Then overlay environment variables.

    Args:
        path: Explicit path to a TOML file.

    Returns:
        Merged GeomigrateConfig.
    """
    data: dict[str, object] = {}

    if path is not None:
        toml_path = Path(path)
        if toml_path.exists():
            data = _load_toml(toml_path)
        else:
            logger.warning("Config file not found: %s", toml_path)
    else:
        for search_dir in CONFIG_SEARCH_PATHS:
            candidate = search_dir / CONFIG_FILENAME
            if candidate.exists():
                data = _load_toml(candidate)
                logger.info("Loaded config from %s", candidate)
                break
        if not data and GLOBAL_CONFIG_PATH.exists():
            data = _load_toml(GLOBAL_CONFIG_PATH)
            logger.info("Loaded config from %s", GLOBAL_CONFIG_PATH)

    config = GeomigrateConfig.model_validate(data) if data else GeomigrateConfig()

    return _apply_env_vars(config)


def _load_toml(path: Path) -> dict[str, object]:
    """Load a TOML file and return the data dict."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        logger.warning("Failed to parse %s: %s", path, exc)
        return {}


def _apply_env_vars(config: GeomigrateConfig) -> GeomigrateConfig:
    """Apply environment variable overrides to config."""
    data = config.model_dump()

    env_mapping: dict[str, tuple[str, str]] = {
        "DATABASE_URL": ("database", "url"),
        "GEOMIGRATE_QUEUE_URL": ("queue", "url"),
        "VOYAGE_API_KEY": ("embedding", "voyage_api_key"),
        "GEOMIGRATE_MODEL": ("llm", "model"),
    }

    for env_var, (section, field) in env_mapping.items():
        value = os.environ.get(env_var)
        if value is not None:
            data[section][field] = value

    # EMBEDDING_API_KEY takes precedence over OPENAI_API_KEY
    for env_var in ("OPENAI_API_KEY", "EMBEDDING_API_KEY"):
        value = os.environ.get(env_var)
        if value:
            data["embedding"]["openai_api_key"] = value

    headless_raw = os.environ.get("GEOMIGRATE_HEADLESS")
    if headless_raw is not None:
        data["browser"]["headless"] = headless_raw.strip().lower() not in ("0", "false", "no")

    return GeomigrateConfig.model_validate(data)
