"""
Configuration helpers for the Reading Feed Pipeline.

Components:
- PipelineSettings: validated runtime settings
- ConfigLoader: reads settings from the environment (and a .env file)
  and source lists from disk
- parse_source_urls: turns a newline-separated URL list into clean URLs
"""

import json
import logging
import os
from typing import Any, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .types import Source

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "reading_feed.db"
)


class PipelineSettings(BaseModel):
    """Runtime settings for fetching, storage and AI filtering."""
    db_path: str = DEFAULT_DB_PATH
    fetch_connect_timeout: float = Field(30.0, gt=0)
    fetch_read_timeout: float = Field(30.0, gt=0)
    ai_api_key: Optional[str] = None
    ai_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    ai_model: str = "gemini-2.0-flash-lite"
    ai_request_timeout: float = Field(60.0, gt=0)
    ai_min_request_interval: float = Field(4.5, ge=0)
    ai_max_chars_per_request: int = Field(5000, gt=0)
    ai_cache_max_age_days: int = Field(7, gt=0)
    refresh_interval_minutes: int = Field(30, ge=0)

    @property
    def ai_configured(self) -> bool:
        return bool(self.ai_api_key and self.ai_api_key.strip())


# environment variable -> settings field
_ENV_FIELDS = {
    "FEED_DB_PATH": "db_path",
    "FETCH_CONNECT_TIMEOUT": "fetch_connect_timeout",
    "FETCH_READ_TIMEOUT": "fetch_read_timeout",
    "AI_FILTER_BASE_URL": "ai_base_url",
    "AI_FILTER_MODEL": "ai_model",
    "AI_REQUEST_TIMEOUT": "ai_request_timeout",
    "AI_MIN_REQUEST_INTERVAL": "ai_min_request_interval",
    "AI_MAX_CHARS_PER_REQUEST": "ai_max_chars_per_request",
    "AI_CACHE_MAX_AGE_DAYS": "ai_cache_max_age_days",
    "REFRESH_INTERVAL_MINUTES": "refresh_interval_minutes",
}


def parse_source_urls(text: str) -> list[str]:
    """Split an import text into trimmed, non-blank URLs (order kept)."""
    return [line.strip() for line in text.splitlines() if line.strip()]


class ConfigLoader:
    """Load pipeline configuration from the environment and from files."""

    def load_settings(
        self, environ: Optional[Mapping[str, str]] = None, use_dotenv: bool = True
    ) -> PipelineSettings:
        """Build settings from environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``.
            use_dotenv: Whether to load a ``.env`` file first.

        Returns:
            PipelineSettings: Validated settings.

        Raises:
            pydantic.ValidationError: If a value cannot be converted.
        """
        if use_dotenv and environ is None:
            load_dotenv()
        env = os.environ if environ is None else environ

        values: dict[str, Any] = {}
        for env_name, field_name in _ENV_FIELDS.items():
            if env.get(env_name):
                values[field_name] = env[env_name]

        api_key = env.get("AI_FILTER_API_KEY") or env.get("OPENAI_API_KEY")
        if api_key:
            values["ai_api_key"] = api_key

        settings = PipelineSettings(**values)
        logger.info(
            "Loaded settings (db=%s, ai configured=%s)", settings.db_path, settings.ai_configured
        )
        return settings

    def load_sources_file(self, path: str) -> list[str]:
        """Read a plain-text file of newline-separated feed URLs."""
        if not os.path.exists(path):
            raise FileNotFoundError(f"Sources file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            urls = parse_source_urls(f.read())
        logger.info("Loaded %d source URLs from %s", len(urls), path)
        return urls

    def load_news_sources(self, path: str) -> list[Source]:
        """Read a JSON list of ``{"name": ..., "url": ...}`` source entries."""
        if not os.path.exists(path):
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        sources = [
            Source(name=entry.get("name", ""), rss_url=entry["url"])
            for entry in raw
            if entry.get("url")
        ]
        logger.info("Loaded %d news sources from config file", len(sources))
        return sources
