"""
Reading feed orchestration.

This module ties the pipeline together:
- refresh_feed: fetch a feed's sources and merge the items into the store
- get_items_for_feed: keyword rules -> age threshold -> AI rules, in that order
"""

import asyncio
import logging
from typing import Optional

from .age_filter import filter_by_age
from .ai_filter import AiFilterGateway
from .fetch_rss_news import RssFetcher
from .keyword_filter import filter_items_by_keywords, split_rules
from .rate_limiter import Clock, RefreshRateLimiter, current_time_ms
from .store_news import FeedRepository
from .types import FeedViewResult, FetchResult, RepeatedSession

logger = logging.getLogger(__name__)


def refresh_key(feed_id: int) -> str:
    return f"reading_feed:{feed_id}"


class FeedFilterOrchestrator:
    """Serve filtered reading feeds and run their refresh cycles.

    ``matched_keywords`` holds the whitelist terms matched during the most
    recent ``get_items_for_feed`` call; it is replaced on every call.
    """

    def __init__(
        self,
        store: FeedRepository,
        fetcher: Optional[RssFetcher] = None,
        ai_gateway: Optional[AiFilterGateway] = None,
        rate_limiter: Optional[RefreshRateLimiter] = None,
        refresh_interval_minutes: int = 0,
        clock: Clock = current_time_ms,
    ) -> None:
        self.store = store
        self.fetcher = fetcher or RssFetcher(clock=clock)
        self.ai_gateway = ai_gateway
        self.rate_limiter = rate_limiter or RefreshRateLimiter(clock=clock, store=store)
        self.refresh_interval_minutes = refresh_interval_minutes
        self.clock = clock
        self.matched_keywords: dict[str, list[str]] = {}

    async def refresh_feed(self, feed_id: int, force: bool = False) -> FetchResult:
        """Fetch the sources of a reading feed and merge new items into the store.

        Args:
            feed_id: Reading feed to refresh.
            force: Ignore the refresh interval.

        Returns:
            FetchResult of the cycle; empty when nothing was due or configured.
        """
        key = refresh_key(feed_id)
        if not force and not await asyncio.to_thread(
            self.rate_limiter.should_refresh, key, self.refresh_interval_minutes
        ):
            logger.info("Reading feed %d was refreshed recently, skipping", feed_id)
            return FetchResult()

        source_ids = await asyncio.to_thread(self.store.get_source_ids_for_feed, feed_id)
        sources = await asyncio.to_thread(self.store.get_sources_by_ids, source_ids)
        endpoints = {s.rss_url.strip(): s.id for s in sources if s.rss_url.strip()}
        if not endpoints:
            logger.info("Reading feed %d has no sources to fetch", feed_id)
            return FetchResult()

        result = await self.fetcher.fetch_all(endpoints)
        if result.items:
            await asyncio.to_thread(self.store.merge_upsert, result.items)
            await asyncio.to_thread(self.rate_limiter.mark_refreshed, key)

        if result.partially_failed:
            logger.warning(
                "Reading feed %d refreshed with %d failed sources: %s",
                feed_id,
                len(result.failed_urls),
                ", ".join(result.failed_urls),
            )
        return result

    async def refresh_all_feeds(self, force: bool = False) -> dict[int, FetchResult]:
        """Refresh every reading feed one after the other."""
        feeds = await asyncio.to_thread(self.store.get_all_reading_feeds)
        results = {}
        for feed in feeds:
            results[feed.id] = await self.refresh_feed(feed.id, force=force)
        return results

    async def get_items_for_feed(
        self,
        feed_id: int,
        unread_only: bool = False,
        age_threshold_minutes: Optional[int] = None,
        ai_enabled: bool = False,
    ) -> FeedViewResult:
        """Filtered items of a reading feed.

        Args:
            feed_id: Reading feed to read.
            unread_only: Only consider unread items.
            age_threshold_minutes: Drop items older than this; None or 0 keeps all.
            ai_enabled: Run the feed's AI rules as the last stage.

        Returns:
            FeedViewResult with the surviving items (newest first) and the
            whitelist terms each item matched in the keyword stage.
        """
        self.matched_keywords = {}

        source_ids = await asyncio.to_thread(self.store.get_source_ids_for_feed, feed_id)
        if not source_ids:
            logger.info("No sources found for reading feed %d", feed_id)
            return FeedViewResult()

        items = await asyncio.to_thread(self.store.query_items, source_ids, unread_only)
        logger.info(
            "Retrieved %d items for reading feed %d (unread only: %s)", len(items), feed_id, unread_only
        )

        keyword_rules = await asyncio.to_thread(self.store.get_keyword_rules_for_feed, feed_id)
        if keyword_rules:
            whitelist, blacklist = split_rules(keyword_rules)
            items, self.matched_keywords = filter_items_by_keywords(items, whitelist, blacklist)
        else:
            logger.debug("No keyword rules for reading feed %d, skipping keyword filtering", feed_id)

        items = filter_by_age(items, age_threshold_minutes, now_ms=self.clock())

        if ai_enabled and self.ai_gateway is not None:
            whitelist_rule = await asyncio.to_thread(self.store.get_whitelist_ai_rule_for_feed, feed_id)
            blacklist_rule = await asyncio.to_thread(self.store.get_blacklist_ai_rule_for_feed, feed_id)
            items = await self.ai_gateway.classify(
                items,
                whitelist_rule.rule_text if whitelist_rule else None,
                blacklist_rule.rule_text if blacklist_rule else None,
            )

        return FeedViewResult(items=items, matched_keywords=dict(self.matched_keywords))

    async def get_items_for_session(
        self, session: RepeatedSession, unread_only: bool = True
    ) -> FeedViewResult:
        """Items a repeated reading session would read, capped at its headline count."""
        result = await self.get_items_for_feed(
            session.feed_id,
            unread_only=unread_only,
            age_threshold_minutes=session.article_age_threshold_minutes,
            ai_enabled=True,
        )
        result.items = result.items[: session.headlines_per_session]
        return result
