# pylint: disable=redefined-outer-name
"""
Unit tests for the orchestrator module.

This module tests FeedFilterOrchestrator, ensuring refreshes merge fetched
items and respect the refresh interval, and that the filter stages run in
order: keyword rules, age threshold, AI rules.
"""

import logging
import sqlite3
import threading
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import requests

from reading_feed_pipeline.core.fetch_rss_news import RssFetcher
from reading_feed_pipeline.core.log_handler import task_db_logger
from reading_feed_pipeline.core.orchestrator import FeedFilterOrchestrator, refresh_key
from reading_feed_pipeline.core.store_news import FeedRepository
from reading_feed_pipeline.core.types import (
    FetchResult,
    Item,
    KeywordItem,
    RepeatedSession,
    Source,
)

NOW_MS = 1_736_164_800_000  # Mon, 06 Jan 2025 12:00:00 GMT
MINUTE_MS = 60_000

RSS_DOCUMENT = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Tech</title>
    <item>
      <title>Python 4 announced</title>
      <link>http://example.com/python4</link>
      <description>Big news for developers</description>
      <pubDate>Mon, 06 Jan 2025 11:50:00 GMT</pubDate>
    </item>
    <item>
      <title>Football results</title>
      <link>http://example.com/football</link>
      <description>Weekend scores</description>
      <pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""

# --- Fixtures ---


@pytest.fixture
def repo(tmp_path: Path) -> FeedRepository:
    repository = FeedRepository(str(tmp_path / "feeds.db"))
    repository.initialize_db()
    return repository


@pytest.fixture
def feed_id(repo: FeedRepository) -> int:
    """A reading feed with one source."""
    source_id = repo.add_source(Source(name="Tech", rss_url="http://example.com/rss"))
    new_feed_id = repo.create_reading_feed("Tech", is_default=True)
    repo.add_source_to_feed(new_feed_id, source_id)
    return new_feed_id


def make_item(link: str, title: str, minutes_old: int, source_id: int = 1) -> Item:
    return Item(
        link=link,
        source_id=source_id,
        title=title,
        description="",
        publish_date_utc=NOW_MS - minutes_old * MINUTE_MS,
    )


def make_orchestrator(repo: FeedRepository, **kwargs) -> FeedFilterOrchestrator:
    return FeedFilterOrchestrator(store=repo, clock=lambda: NOW_MS, **kwargs)


# --- Tests for refresh ---


@pytest.mark.asyncio
@patch("reading_feed_pipeline.core.fetch_rss_news.requests.get")
async def test_refresh_then_filter_end_to_end(
    mock_get: MagicMock, repo: FeedRepository, feed_id: int
) -> None:
    """Fetched items are merged, then served through keyword and age filters."""
    mock_get.return_value = MagicMock(ok=True, status_code=200, content=RSS_DOCUMENT)
    orchestrator = make_orchestrator(repo, fetcher=RssFetcher(clock=lambda: NOW_MS))

    result = await orchestrator.refresh_feed(feed_id)

    assert len(result.items) == 2
    assert not result.partially_failed
    assert repo.get_last_refresh(refresh_key(feed_id)) == NOW_MS

    view = await orchestrator.get_items_for_feed(feed_id)
    assert [item.link for item in view.items] == [
        "http://example.com/python4",
        "http://example.com/football",
    ]

    recent = await orchestrator.get_items_for_feed(feed_id, age_threshold_minutes=60)
    assert [item.link for item in recent.items] == ["http://example.com/python4"]

    repo.mark_read("http://example.com/python4")
    await orchestrator.refresh_feed(feed_id, force=True)
    unread = await orchestrator.get_items_for_feed(feed_id, unread_only=True)
    assert [item.link for item in unread.items] == ["http://example.com/football"]


@pytest.mark.asyncio
async def test_refresh_respects_interval(repo: FeedRepository, feed_id: int) -> None:
    fetcher = MagicMock()
    fetcher.fetch_all = AsyncMock(
        return_value=FetchResult(items=[make_item("http://a", "A", 1)])
    )
    orchestrator = make_orchestrator(repo, fetcher=fetcher, refresh_interval_minutes=30)

    await orchestrator.refresh_feed(feed_id)
    skipped = await orchestrator.refresh_feed(feed_id)
    await orchestrator.refresh_feed(feed_id, force=True)

    assert skipped.items == []
    assert fetcher.fetch_all.await_count == 2
    fetcher.fetch_all.assert_awaited_with({"http://example.com/rss": 1})


@pytest.mark.asyncio
async def test_refresh_without_items_does_not_mark(repo: FeedRepository, feed_id: int) -> None:
    """A cycle where every source failed leaves the feed due for refresh."""
    fetcher = MagicMock()
    fetcher.fetch_all = AsyncMock(
        return_value=FetchResult(
            failed_urls=["http://example.com/rss"], errors={"http://example.com/rss": "timeout"}
        )
    )
    orchestrator = make_orchestrator(repo, fetcher=fetcher, refresh_interval_minutes=30)

    result = await orchestrator.refresh_feed(feed_id)

    assert result.partially_failed
    assert repo.get_last_refresh(refresh_key(feed_id)) is None


@pytest.mark.asyncio
async def test_refresh_all_feeds(repo: FeedRepository, feed_id: int) -> None:
    empty_feed = repo.create_reading_feed("Empty")
    fetcher = MagicMock()
    fetcher.fetch_all = AsyncMock(return_value=FetchResult())
    orchestrator = make_orchestrator(repo, fetcher=fetcher)

    results = await orchestrator.refresh_all_feeds()

    assert set(results) == {feed_id, empty_feed}
    fetcher.fetch_all.assert_awaited_once()


# --- Tests for get_items_for_feed ---


@pytest.mark.asyncio
async def test_feed_without_sources_is_empty(repo: FeedRepository) -> None:
    empty_feed = repo.create_reading_feed("Empty")
    repo.merge_upsert([make_item("http://a", "A", 1)])

    view = await make_orchestrator(repo).get_items_for_feed(empty_feed)

    assert view.items == []
    assert view.matched_keywords == {}


@pytest.mark.asyncio
async def test_matched_keywords_replaced_per_call(repo: FeedRepository, feed_id: int) -> None:
    repo.merge_upsert(
        [
            make_item("http://python", "Python release", 5),
            make_item("http://gossip", "Python gossip", 6),
            make_item("http://cooking", "Cooking", 7),
        ]
    )
    rule_id = repo.create_keyword_rule("Tech", True, [KeywordItem(keyword="python")])
    block_id = repo.create_keyword_rule("Noise", False, [KeywordItem(keyword="gossip")])
    repo.add_keyword_rule_to_feed(feed_id, rule_id)
    repo.add_keyword_rule_to_feed(feed_id, block_id)
    orchestrator = make_orchestrator(repo)

    view = await orchestrator.get_items_for_feed(feed_id)

    assert [item.link for item in view.items] == ["http://python"]
    assert view.matched_keywords == {"http://python": ["python"]}
    assert orchestrator.matched_keywords == {"http://python": ["python"]}

    repo.remove_keyword_rule_from_feed(feed_id, rule_id)
    repo.remove_keyword_rule_from_feed(feed_id, block_id)
    unfiltered = await orchestrator.get_items_for_feed(feed_id)

    assert len(unfiltered.items) == 3
    assert orchestrator.matched_keywords == {}


@pytest.mark.asyncio
async def test_ai_stage_runs_last_with_feed_rules(repo: FeedRepository, feed_id: int) -> None:
    repo.merge_upsert([make_item("http://new", "New", 5), make_item("http://old", "Old", 500)])
    whitelist = repo.create_ai_rule("Tech", "About technology", True)
    repo.set_feed_ai_rule(feed_id, whitelist, is_whitelist=True)
    gateway = MagicMock()
    gateway.classify = AsyncMock(side_effect=lambda items, wl, bl: items)
    orchestrator = make_orchestrator(repo, ai_gateway=gateway)

    view = await orchestrator.get_items_for_feed(feed_id, age_threshold_minutes=60, ai_enabled=True)

    assert [item.link for item in view.items] == ["http://new"]
    classified_items, wl, bl = gateway.classify.await_args.args
    assert [item.link for item in classified_items] == ["http://new"]
    assert wl == "About technology"
    assert bl is None

    await orchestrator.get_items_for_feed(feed_id, ai_enabled=False)
    assert gateway.classify.await_count == 1


@pytest.mark.asyncio
async def test_items_for_session_truncated(repo: FeedRepository, feed_id: int) -> None:
    repo.merge_upsert([make_item(f"http://{n}", f"Item {n}", n) for n in range(1, 6)])
    session = RepeatedSession(
        name="Morning", feed_id=feed_id, headlines_per_session=2, article_age_threshold_minutes=4
    )

    view = await make_orchestrator(repo).get_items_for_session(session)

    assert [item.link for item in view.items] == ["http://1", "http://2"]


# --- Tests for running under the task logger ---


@pytest.mark.asyncio
@patch("reading_feed_pipeline.core.fetch_rss_news.requests.get")
async def test_refresh_inside_task_db_logger(
    mock_get: MagicMock, repo: FeedRepository, feed_id: int, tmp_path: Path
) -> None:
    """Records logged from fetch worker threads reach the task log database."""
    down_source = repo.add_source(Source(name="Down", rss_url="http://example.com/down"))
    repo.add_source_to_feed(feed_id, down_source)

    def fake_get(url, **kwargs):
        if url == "http://example.com/down":
            raise requests.exceptions.ConnectionError("connection refused")
        return MagicMock(ok=True, status_code=200, content=RSS_DOCUMENT)

    mock_get.side_effect = fake_get
    log_db = str(tmp_path / "pipeline_logs.db")
    ti = SimpleNamespace(dag_id="reading_feed_refresh", task_id="refresh_feeds_task")
    root_logger = logging.getLogger()
    previous_level = root_logger.level
    root_logger.setLevel(logging.INFO)

    try:
        with task_db_logger(log_db, ti=ti):
            result = await make_orchestrator(
                repo, fetcher=RssFetcher(clock=lambda: NOW_MS)
            ).refresh_feed(feed_id, force=True)
    finally:
        root_logger.setLevel(previous_level)

    assert len(result.items) == 2
    assert result.failed_urls == ["http://example.com/down"]
    assert repo.get_item("http://example.com/python4") is not None
    with sqlite3.connect(log_db) as conn:
        messages = [row[0] for row in conn.execute("SELECT message FROM logs")]
    assert any("Processed RSS feed from http://example.com/rss" in m for m in messages)
    assert any("Error processing http://example.com/down" in m for m in messages)


@pytest.mark.asyncio
async def test_refresh_bookkeeping_runs_off_the_event_loop(
    repo: FeedRepository, feed_id: int
) -> None:
    loop_thread = threading.get_ident()
    calls: list[int] = []
    rate_limiter = MagicMock()
    rate_limiter.should_refresh.side_effect = lambda *args: calls.append(threading.get_ident()) or True
    rate_limiter.mark_refreshed.side_effect = lambda *args: calls.append(threading.get_ident())
    fetcher = MagicMock()
    fetcher.fetch_all = AsyncMock(return_value=FetchResult(items=[make_item("http://a", "A", 1)]))

    await make_orchestrator(repo, fetcher=fetcher, rate_limiter=rate_limiter).refresh_feed(feed_id)

    assert len(calls) == 2
    assert loop_thread not in calls
