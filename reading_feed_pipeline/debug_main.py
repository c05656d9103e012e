"""
Standalone version of the reading feed pipeline for debugging without Airflow.
Refreshes a reading feed and prints its filtered items.

Environment:
    FEED_DB_PATH          database file (see core.utils.PipelineSettings)
    SOURCES_FILE          optional URL list to import (plain text, or a JSON
                          list of {"name", "url"} entries when it ends in .json)
    READING_FEED_ID       feed to show (default: the default feed, created if missing)
    AGE_THRESHOLD_MINUTES optional age threshold
    UNREAD_ONLY           "1" to show unread items only
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

from reading_feed_pipeline.core.ai_filter import AiDecisionCache, AiFilterGateway
from reading_feed_pipeline.core.fetch_rss_news import RssFetcher
from reading_feed_pipeline.core.orchestrator import FeedFilterOrchestrator
from reading_feed_pipeline.core.store_news import FeedRepository
from reading_feed_pipeline.core.utils import ConfigLoader, PipelineSettings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("reading_feed_debug.log", encoding="utf-8"),
    ],
)
logger: logging.Logger = logging.getLogger(__name__)


def initialize_store(settings: PipelineSettings, sources_file: Optional[str]) -> FeedRepository:
    """Create the schema and import sources from a file if given."""
    repo = FeedRepository(settings.db_path)
    repo.initialize_db()
    if not sources_file:
        return repo

    loader = ConfigLoader()
    if sources_file.endswith(".json"):
        known = {source.rss_url.strip().lower() for source in repo.get_all_sources()}
        for source in loader.load_news_sources(sources_file):
            if source.rss_url.strip().lower() not in known:
                repo.add_source(source)
                known.add(source.rss_url.strip().lower())
    else:
        repo.import_sources("\n".join(loader.load_sources_file(sources_file)))
    return repo


def resolve_feed_id(repo: FeedRepository, requested: Optional[str]) -> int:
    """Pick the requested feed, else the default one (created with every source)."""
    if requested:
        return int(requested)

    default_feed = repo.get_default_reading_feed()
    if default_feed is not None:
        return default_feed.id

    feed_id = repo.create_reading_feed("All sources", is_default=True)
    for source in repo.get_all_sources():
        repo.add_source_to_feed(feed_id, source.id)
    logger.info("Created default reading feed %d", feed_id)
    return feed_id


def build_orchestrator(repo: FeedRepository, settings: PipelineSettings) -> FeedFilterOrchestrator:
    cache = AiDecisionCache(repo)
    return FeedFilterOrchestrator(
        store=repo,
        fetcher=RssFetcher(
            connect_timeout=settings.fetch_connect_timeout,
            read_timeout=settings.fetch_read_timeout,
        ),
        ai_gateway=AiFilterGateway.from_settings(settings, cache),
        refresh_interval_minutes=settings.refresh_interval_minutes,
    )


async def run(feed_id: int, orchestrator: FeedFilterOrchestrator) -> None:
    fetch_result = await orchestrator.refresh_feed(feed_id, force=True)
    if fetch_result.partially_failed:
        for url, reason in fetch_result.errors.items():
            logger.warning("Source failed: %s (%s)", url, reason)

    age_threshold = os.getenv("AGE_THRESHOLD_MINUTES")
    view = await orchestrator.get_items_for_feed(
        feed_id,
        unread_only=os.getenv("UNREAD_ONLY") == "1",
        age_threshold_minutes=int(age_threshold) if age_threshold else None,
        ai_enabled=True,
    )

    print(f"\nReading feed {feed_id}: {len(view.items)} items\n")
    for item in view.items:
        published = datetime.fromtimestamp(item.publish_date_utc / 1000, tz=timezone.utc)
        matched = view.matched_keywords.get(item.link)
        suffix = f"  [{', '.join(matched)}]" if matched else ""
        print(f"- {published:%Y-%m-%d %H:%M} {item.title}{suffix}\n  {item.link}")


def main() -> None:
    settings = ConfigLoader().load_settings()
    repo = initialize_store(settings, os.getenv("SOURCES_FILE"))
    feed_id = resolve_feed_id(repo, os.getenv("READING_FEED_ID"))
    asyncio.run(run(feed_id, build_orchestrator(repo, settings)))


if __name__ == "__main__":
    main()
