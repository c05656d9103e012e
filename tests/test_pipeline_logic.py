# pylint: disable=redefined-outer-name
"""
Unit tests for the feed store.

This module tests:
- FeedRepository.merge_upsert: read flag and saved-for-later preservation
- FeedRepository.query_items: source and unread filtering, ordering
- FeedRepository.import_sources: duplicate handling
- Reading feed, keyword rule and AI rule associations
- The AI decision cache table
"""

import sqlite3
from pathlib import Path

import pytest

from reading_feed_pipeline.core.store_news import FeedRepository
from reading_feed_pipeline.core.types import (
    Item,
    KeywordItem,
    RepeatedSession,
    RepeatedSessionRule,
    RuleType,
    ScheduledReading,
    Source,
)

# --- Fixtures ---


@pytest.fixture
def repo(tmp_path: Path) -> FeedRepository:
    """Create a repository on a temporary SQLite database."""
    repository = FeedRepository(str(tmp_path / "data" / "test_feeds.db"))
    repository.initialize_db()
    return repository


@pytest.fixture
def sample_items() -> list[Item]:
    return [
        Item(
            link="http://example.com/python",
            source_id=1,
            title="Python takes over the world",
            description="A new study shows Python is the most popular language.",
            publish_date_utc=3_000,
        ),
        Item(
            link="http://example.com/pandas",
            source_id=1,
            title="Data Science with Pandas",
            description="How to use pandas for data analysis.",
            publish_date_utc=2_000,
        ),
        Item(
            link="http://example.com/js",
            source_id=2,
            title="A guide to JavaScript frameworks",
            description="React vs. Vue vs. Angular.",
            publish_date_utc=1_000,
        ),
    ]


# --- Tests for merge_upsert ---


def test_merge_upsert_inserts_new_items(repo: FeedRepository, sample_items: list[Item]) -> None:
    repo.merge_upsert(sample_items)

    stored = repo.query_items([1, 2])
    assert [item.link for item in stored] == [item.link for item in sample_items]


def test_merge_upsert_preserves_read_flag(repo: FeedRepository, sample_items: list[Item]) -> None:
    """Re-fetching an item keeps the user's read flag but refreshes its content."""
    repo.merge_upsert(sample_items)
    repo.mark_read("http://example.com/python")

    refetched = sample_items[0].model_copy(
        update={"title": "Python still on top", "description": "Updated", "publish_date_utc": 9_000}
    )
    repo.merge_upsert([refetched])
    repo.merge_upsert([refetched])

    stored = repo.get_item("http://example.com/python")
    assert stored is not None
    assert stored.is_read is True
    assert stored.title == "Python still on top"
    assert stored.description == "Updated"
    assert stored.publish_date_utc == 9_000


def test_merge_upsert_keeps_unread_when_stored_unread(
    repo: FeedRepository, sample_items: list[Item]
) -> None:
    """The stored flag wins even if the incoming item claims to be read."""
    repo.merge_upsert(sample_items)

    repo.merge_upsert([sample_items[1].model_copy(update={"is_read": True})])

    assert repo.get_item("http://example.com/pandas").is_read is False


def test_merge_upsert_never_touches_read_later(
    repo: FeedRepository, sample_items: list[Item]
) -> None:
    repo.merge_upsert(sample_items)
    repo.mark_read_later("http://example.com/js", True, feed_id=4)

    repo.merge_upsert([sample_items[2]])

    stored = repo.get_item("http://example.com/js")
    assert stored.is_read_later is True
    assert stored.read_later_feed_id == 4
    assert [item.link for item in repo.get_read_later_items(feed_id=4)] == ["http://example.com/js"]


def test_merge_upsert_is_one_row_per_link(repo: FeedRepository, sample_items: list[Item]) -> None:
    repo.merge_upsert(sample_items)
    repo.merge_upsert(sample_items)

    with sqlite3.connect(repo.db_path) as conn:
        count = conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]
    assert count == 3


# --- Tests for queries ---


def test_query_items_unread_only(repo: FeedRepository, sample_items: list[Item]) -> None:
    repo.merge_upsert(sample_items)
    repo.mark_read("http://example.com/pandas")

    unread = repo.query_items([1], unread_only=True)

    assert [item.link for item in unread] == ["http://example.com/python"]
    assert repo.query_items([]) == []


def test_mark_all_read_before_timestamp(repo: FeedRepository, sample_items: list[Item]) -> None:
    repo.merge_upsert(sample_items)

    changed = repo.mark_all_read([1, 2], before_timestamp=2_500)

    assert changed == 2
    assert [item.link for item in repo.query_items([1, 2], unread_only=True)] == [
        "http://example.com/python"
    ]


# --- Tests for sources ---


def test_import_sources_skips_duplicates(repo: FeedRepository) -> None:
    """Blank lines are ignored and URLs are compared case-insensitively."""
    repo.add_source(Source(name="Existing", rss_url="https://news.example.com/rss"))

    summary = repo.import_sources(
        "https://NEWS.example.com/rss\n\n  https://other.example.com/feed  \n"
        "https://other.example.com/FEED\n   \n"
    )

    assert summary.imported == 1
    assert summary.duplicates == 2
    sources = repo.get_all_sources()
    assert [source.rss_url for source in sources] == [
        "https://news.example.com/rss",
        "https://other.example.com/feed",
    ]
    assert sources[1].name == ""


# --- Tests for reading feed associations ---


def test_keyword_rules_for_feed(repo: FeedRepository) -> None:
    source_id = repo.add_source(Source(name="S", rss_url="http://s"))
    feed_id = repo.create_reading_feed("Tech", is_default=True)
    repo.add_source_to_feed(feed_id, source_id)
    rule_id = repo.create_keyword_rule(
        "Languages", True, [KeywordItem(keyword="python"), KeywordItem(keyword="Rust", is_case_sensitive=True)]
    )
    repo.create_keyword_rule("Unattached", False, [KeywordItem(keyword="sports")])
    repo.add_keyword_rule_to_feed(feed_id, rule_id)

    rules = repo.get_keyword_rules_for_feed(feed_id)

    assert repo.get_source_ids_for_feed(feed_id) == [source_id]
    assert repo.get_default_reading_feed().id == feed_id
    assert len(rules) == 1
    assert rules[0].is_whitelist is True
    assert [k.keyword for k in rules[0].keywords] == ["python", "Rust"]
    assert rules[0].keywords[1].is_case_sensitive is True


def test_set_feed_ai_rule_replaces_same_polarity(repo: FeedRepository) -> None:
    """A feed holds at most one whitelist and one blacklist AI rule."""
    feed_id = repo.create_reading_feed("World")
    first = repo.create_ai_rule("Politics", "About politics", True)
    second = repo.create_ai_rule("Economy", "About the economy", True)
    blacklist = repo.create_ai_rule("Celebrities", "Celebrity gossip", False)

    repo.set_feed_ai_rule(feed_id, first, is_whitelist=True)
    repo.set_feed_ai_rule(feed_id, second, is_whitelist=True)
    repo.set_feed_ai_rule(feed_id, blacklist, is_whitelist=False)

    assert repo.get_whitelist_ai_rule_for_feed(feed_id).rule_text == "About the economy"
    assert repo.get_blacklist_ai_rule_for_feed(feed_id).rule_text == "Celebrity gossip"

    repo.clear_feed_ai_rule(feed_id, is_whitelist=False)
    assert repo.get_blacklist_ai_rule_for_feed(feed_id) is None


def test_deleting_feed_removes_associations(repo: FeedRepository) -> None:
    source_id = repo.add_source(Source(rss_url="http://s"))
    feed_id = repo.create_reading_feed("Temp")
    repo.add_source_to_feed(feed_id, source_id)

    repo.delete_reading_feed(feed_id)

    assert repo.get_source_ids_for_feed(feed_id) == []


# --- Tests for the AI decision cache table ---


def test_cached_decisions_last_write_wins_and_prune(repo: FeedRepository) -> None:
    repo.put_cached_decision("http://a", False, timestamp=100)
    repo.put_cached_decision("http://a", True, timestamp=500)
    repo.put_cached_decisions({"http://b": False}, timestamp=200)

    assert repo.get_cached_decision("http://a").passes_filter is True
    assert repo.get_cached_decision("http://a").filter_timestamp == 500

    deleted = repo.prune_cached_decisions(older_than_timestamp=300)

    assert deleted == 1
    assert repo.get_all_cached_decisions() == {"http://a": True}
    assert repo.get_cached_decision("http://missing") is None


# --- Tests for session records ---


def test_repeated_session_round_trip(repo: FeedRepository) -> None:
    feed_id = repo.create_reading_feed("Morning")
    session = RepeatedSession(
        name="Commute",
        feed_id=feed_id,
        headlines_per_session=5,
        article_age_threshold_minutes=90,
        rules=[RepeatedSessionRule(type=RuleType.INTERVAL, is_active=True, interval_minutes=30)],
    )

    session_id = repo.save_repeated_session(session)
    stored = repo.get_repeated_session(session_id)

    assert stored.article_age_threshold_minutes == 90
    assert stored.rules[0].type is RuleType.INTERVAL
    assert stored.rules[0].interval_minutes == 30

    stored.rules = []
    repo.save_repeated_session(stored)
    assert repo.get_repeated_session(session_id).rules == []

    repo.save_scheduled_reading(
        ScheduledReading(
            feed_id=feed_id,
            days_of_week="Mon,Fri",
            times_of_day="08:00",
            headlines_limit=10,
            delay_between_articles_sec=3,
        )
    )
    assert repo.get_scheduled_readings_for_feed(feed_id)[0].days_of_week == "Mon,Fri"
