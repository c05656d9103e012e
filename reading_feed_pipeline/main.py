"""
Reading Feed Refresh DAG.

This DAG keeps the reading feed store up to date:
1. Initializes the SQLite database holding sources, items and filter rules
2. Refreshes every reading feed whose refresh interval has elapsed, merging
   fetched items without losing read / saved-for-later state
3. Prunes AI decisions older than the configured cache age

Filtering itself happens on demand through FeedFilterOrchestrator; this DAG
is only the periodic trigger. It runs every 30 minutes.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Any

from airflow.decorators import dag, task
from airflow.sdk import Variable

from reading_feed_pipeline.core.ai_filter import AiDecisionCache
from reading_feed_pipeline.core.fetch_rss_news import RssFetcher
from reading_feed_pipeline.core.log_handler import task_db_logger
from reading_feed_pipeline.core.orchestrator import FeedFilterOrchestrator
from reading_feed_pipeline.core.store_news import FeedRepository
from reading_feed_pipeline.core.utils import ConfigLoader

logger = logging.getLogger(__name__)

# --- Configuration ---
config_loader = ConfigLoader()
settings = config_loader.load_settings()
LOG_DB_PATH = os.path.join(os.path.dirname(settings.db_path), "pipeline_logs.db")
SOURCES_IMPORT_FILE = Variable.get(key="READING_FEED_SOURCES_FILE", default=None)

default_args = {
    "owner": "airflow",
    "depends_on_past": False,
    "email_on_failure": False,
    "email_on_retry": False,
    "retries": 1,
    "retry_delay": timedelta(minutes=5),
}


@dag(
    dag_id="reading_feed_refresh",
    default_args=default_args,
    description="Refresh RSS reading feeds and maintain the AI decision cache.",
    start_date=datetime(2024, 1, 1),
    tags=["news", "rss", "data_pipeline"],
    catchup=False,
    schedule="*/30 * * * *",
    max_active_runs=1,
)
def reading_feed_refresh() -> None:
    """Define the reading feed refresh DAG."""

    @task
    def initialize_db_task() -> str:
        """Create the database schema and import new sources if a list is configured.

        Returns:
            str: Path to the initialized database.
        """
        repo = FeedRepository(settings.db_path)
        repo.initialize_db()

        if SOURCES_IMPORT_FILE:
            urls = config_loader.load_sources_file(SOURCES_IMPORT_FILE)
            summary = repo.import_sources("\n".join(urls))
            logger.info(
                "Imported %d sources (%d duplicates skipped)", summary.imported, summary.duplicates
            )
        return settings.db_path

    @task
    def refresh_feeds_task(db_path: str, ti=None) -> dict[str, Any]:
        """Refresh all reading feeds that are due.

        Args:
            db_path: Path to the SQLite database.
            ti: Airflow task instance, injected by Airflow.

        Returns:
            Per-feed summary with the number of items fetched and failed URLs.
        """
        with task_db_logger(LOG_DB_PATH, ti=ti):
            repo = FeedRepository(db_path)
            orchestrator = FeedFilterOrchestrator(
                store=repo,
                fetcher=RssFetcher(
                    connect_timeout=settings.fetch_connect_timeout,
                    read_timeout=settings.fetch_read_timeout,
                ),
                refresh_interval_minutes=settings.refresh_interval_minutes,
            )
            results = asyncio.run(orchestrator.refresh_all_feeds())

        summary = {
            str(feed_id): {"items": len(result.items), "failed_urls": result.failed_urls}
            for feed_id, result in results.items()
        }
        failed = sum(len(entry["failed_urls"]) for entry in summary.values())
        logger.info("Refreshed %d reading feeds, %d failed sources", len(summary), failed)
        return summary

    @task
    def prune_ai_cache_task(db_path: str) -> int:
        """Delete cached AI decisions older than the configured age.

        Returns:
            Number of deleted decisions.
        """
        cache = AiDecisionCache(FeedRepository(db_path))
        deleted = cache.prune(settings.ai_cache_max_age_days * 24 * 60 * 60 * 1000)
        logger.info("Pruned %d AI decisions", deleted)
        return deleted

    db_path = initialize_db_task()
    refreshed = refresh_feeds_task(db_path)
    pruned = prune_ai_cache_task(db_path)
    refreshed >> pruned


# Instantiate the DAG
reading_feed_refresh()
