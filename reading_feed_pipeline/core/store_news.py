"""
Feed storage module.

This module persists sources, items, reading feeds, filter rules and the
AI decision cache in a SQLite database.

Components:
- FeedRepository: keyed store used by the fetch cycle and the filter pipeline
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Generator, Iterable, Optional

from .types import (
    AiFilterResult,
    AiRule,
    ImportSummary,
    Item,
    KeywordItem,
    KeywordRule,
    ReadingFeed,
    RepeatedSession,
    RepeatedSessionRule,
    RuleType,
    ScheduledReading,
    Source,
)
from .utils import parse_source_urls

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sources (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL DEFAULT '',
        rss_url TEXT NOT NULL,
        timezone_offset_minutes INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS items (
        link TEXT PRIMARY KEY,
        source_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        publish_date_utc INTEGER NOT NULL,
        is_read INTEGER NOT NULL DEFAULT 0,
        is_read_later INTEGER NOT NULL DEFAULT 0,
        read_later_feed_id INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_items_source ON items (source_id, publish_date_utc)",
    """
    CREATE TABLE IF NOT EXISTS reading_feeds (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        is_default INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reading_feed_sources (
        feed_id INTEGER NOT NULL REFERENCES reading_feeds (id) ON DELETE CASCADE,
        source_id INTEGER NOT NULL REFERENCES sources (id) ON DELETE CASCADE,
        PRIMARY KEY (feed_id, source_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS keyword_rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        is_whitelist INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS keyword_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        rule_id INTEGER NOT NULL REFERENCES keyword_rules (id) ON DELETE CASCADE,
        keyword TEXT NOT NULL,
        is_case_sensitive INTEGER NOT NULL DEFAULT 0,
        is_full_word_match INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reading_feed_keyword_rules (
        feed_id INTEGER NOT NULL REFERENCES reading_feeds (id) ON DELETE CASCADE,
        rule_id INTEGER NOT NULL REFERENCES keyword_rules (id) ON DELETE CASCADE,
        PRIMARY KEY (feed_id, rule_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        rule_text TEXT NOT NULL,
        is_whitelist INTEGER NOT NULL
    )
    """,
    # one whitelist and one blacklist rule per feed at most
    """
    CREATE TABLE IF NOT EXISTS reading_feed_ai_rules (
        feed_id INTEGER NOT NULL REFERENCES reading_feeds (id) ON DELETE CASCADE,
        rule_id INTEGER NOT NULL REFERENCES ai_rules (id) ON DELETE CASCADE,
        is_whitelist INTEGER NOT NULL,
        PRIMARY KEY (feed_id, is_whitelist)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_filter_results (
        article_link TEXT PRIMARY KEY,
        passes_filter INTEGER NOT NULL,
        filter_timestamp INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_log (
        refresh_key TEXT PRIMARY KEY,
        last_refresh INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS repeated_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        feed_id INTEGER NOT NULL REFERENCES reading_feeds (id) ON DELETE CASCADE,
        headlines_per_session INTEGER NOT NULL DEFAULT 10,
        delay_between_headlines_sec INTEGER NOT NULL DEFAULT 4,
        read_body INTEGER NOT NULL DEFAULT 0,
        article_age_threshold_minutes INTEGER,
        announce_article_age INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS repeated_session_rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL REFERENCES repeated_sessions (id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 0,
        interval_minutes INTEGER,
        time_of_day TEXT,
        days_of_week TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_readings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        feed_id INTEGER NOT NULL REFERENCES reading_feeds (id) ON DELETE CASCADE,
        days_of_week TEXT NOT NULL,
        times_of_day TEXT NOT NULL,
        headlines_limit INTEGER NOT NULL,
        delay_between_articles_sec INTEGER NOT NULL
    )
    """,
)


def _placeholders(values: Iterable) -> str:
    return ",".join("?" for _ in values)


def _row_to_item(row: sqlite3.Row) -> Item:
    return Item(
        link=row["link"],
        source_id=row["source_id"],
        title=row["title"],
        description=row["description"],
        publish_date_utc=row["publish_date_utc"],
        is_read=bool(row["is_read"]),
        is_read_later=bool(row["is_read_later"]),
        read_later_feed_id=row["read_later_feed_id"],
    )


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        name=row["name"],
        rss_url=row["rss_url"],
        timezone_offset_minutes=row["timezone_offset_minutes"],
    )


def _row_to_ai_rule(row: sqlite3.Row) -> AiRule:
    return AiRule(
        id=row["id"],
        name=row["name"],
        rule_text=row["rule_text"],
        is_whitelist=bool(row["is_whitelist"]),
    )


def _row_to_keyword(row: sqlite3.Row) -> KeywordItem:
    return KeywordItem(
        id=row["id"],
        rule_id=row["rule_id"],
        keyword=row["keyword"],
        is_case_sensitive=bool(row["is_case_sensitive"]),
        is_full_word_match=bool(row["is_full_word_match"]),
    )


class FeedRepository:
    """Handle all database operations for the reading feed pipeline.

    Every public method opens its own connection and runs in a single
    transaction, so a batch passed to ``merge_upsert`` is applied as one unit.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the repository with a database path.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = db_path
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Provide a transactional database connection.

        Yields:
            SQLite connection object.

        Raises:
            sqlite3.Error: If database operation fails.
        """
        conn = sqlite3.connect(self.db_path, timeout=15)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.error("Database error: %s", e)
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize_db(self) -> None:
        """Create all tables if they don't exist."""
        with self._get_connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info("Database initialized successfully at %s", self.db_path)

    # --- Sources ---

    def add_source(self, source: Source) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO sources (name, rss_url, timezone_offset_minutes) VALUES (?, ?, ?)",
                (source.name, source.rss_url, source.timezone_offset_minutes),
            )
            return int(cursor.lastrowid)

    def get_all_sources(self) -> list[Source]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM sources ORDER BY id").fetchall()
        return [_row_to_source(row) for row in rows]

    def get_sources_by_ids(self, source_ids: list[int]) -> list[Source]:
        if not source_ids:
            return []
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM sources WHERE id IN ({_placeholders(source_ids)}) ORDER BY id",
                source_ids,
            ).fetchall()
        return [_row_to_source(row) for row in rows]

    def delete_source(self, source_id: int) -> int:
        with self._get_connection() as conn:
            return conn.execute("DELETE FROM sources WHERE id = ?", (source_id,)).rowcount

    def import_sources(self, text: str) -> ImportSummary:
        """Create a source (with an empty name) for every new URL in ``text``.

        Lines are trimmed; blank lines are ignored; URLs already present,
        compared case-insensitively, are counted as duplicates.
        """
        summary = ImportSummary()
        with self._get_connection() as conn:
            known = {
                row["rss_url"].strip().lower()
                for row in conn.execute("SELECT rss_url FROM sources").fetchall()
            }
            for url in parse_source_urls(text):
                if url.lower() in known:
                    summary.duplicates += 1
                    continue
                conn.execute("INSERT INTO sources (name, rss_url) VALUES ('', ?)", (url,))
                known.add(url.lower())
                summary.imported += 1

        logger.info(
            "Imported %d sources, skipped %d duplicates", summary.imported, summary.duplicates
        )
        return summary

    # --- Items ---

    def get_item(self, link: str) -> Optional[Item]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM items WHERE link = ? LIMIT 1", (link,)).fetchone()
        return _row_to_item(row) if row else None

    def upsert_item(self, item: Item) -> None:
        """Insert or fully replace one item."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO items
                    (link, source_id, title, description, publish_date_utc,
                     is_read, is_read_later, read_later_feed_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.link,
                    item.source_id,
                    item.title,
                    item.description,
                    item.publish_date_utc,
                    int(item.is_read),
                    int(item.is_read_later),
                    item.read_later_feed_id,
                ),
            )

    def merge_upsert(self, new_items: list[Item]) -> None:
        """Merge freshly fetched items into the store.

        Existing items keep their read flag and saved-for-later state; every
        other field takes the fetched value. Unknown items are inserted as-is.
        """
        if not new_items:
            return

        inserted = 0
        with self._get_connection() as conn:
            for item in new_items:
                row = conn.execute(
                    "SELECT is_read FROM items WHERE link = ?", (item.link,)
                ).fetchone()
                is_read = bool(row["is_read"]) if row else item.is_read
                if row is None:
                    inserted += 1

                conn.execute(
                    """
                    INSERT INTO items
                        (link, source_id, title, description, publish_date_utc,
                         is_read, is_read_later, read_later_feed_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(link) DO UPDATE SET
                        source_id = excluded.source_id,
                        title = excluded.title,
                        description = excluded.description,
                        publish_date_utc = excluded.publish_date_utc,
                        is_read = excluded.is_read
                    """,
                    (
                        item.link,
                        item.source_id,
                        item.title,
                        item.description,
                        item.publish_date_utc,
                        int(is_read),
                        int(item.is_read_later),
                        item.read_later_feed_id,
                    ),
                )

        logger.info(
            "Merged %d fetched items (%d new, %d updated)",
            len(new_items),
            inserted,
            len(new_items) - inserted,
        )

    def query_items(self, source_ids: list[int], unread_only: bool = False) -> list[Item]:
        """Items of the given sources, newest first."""
        if not source_ids:
            return []
        query = f"SELECT * FROM items WHERE source_id IN ({_placeholders(source_ids)})"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY publish_date_utc DESC"

        with self._get_connection() as conn:
            rows = conn.execute(query, source_ids).fetchall()
        return [_row_to_item(row) for row in rows]

    def mark_read(self, link: str, is_read: bool = True) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "UPDATE items SET is_read = ? WHERE link = ?", (int(is_read), link)
            ).rowcount

    def mark_read_later(self, link: str, is_read_later: bool, feed_id: Optional[int] = None) -> int:
        """Save or unsave an item for later, remembering the feed it was saved from."""
        with self._get_connection() as conn:
            return conn.execute(
                "UPDATE items SET is_read_later = ?, read_later_feed_id = ? WHERE link = ?",
                (int(is_read_later), feed_id if is_read_later else None, link),
            ).rowcount

    def get_read_later_items(
        self, unread_only: bool = False, feed_id: Optional[int] = None
    ) -> list[Item]:
        query = "SELECT * FROM items WHERE is_read_later = 1"
        params: list = []
        if unread_only:
            query += " AND is_read = 0"
        if feed_id is not None:
            query += " AND read_later_feed_id = ?"
            params.append(feed_id)
        query += " ORDER BY publish_date_utc DESC"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_item(row) for row in rows]

    def mark_all_read(
        self, source_ids: list[int], is_read: bool = True, before_timestamp: Optional[int] = None
    ) -> int:
        """Set the read flag on every item of the sources, optionally only older ones."""
        if not source_ids:
            return 0
        query = f"UPDATE items SET is_read = ? WHERE source_id IN ({_placeholders(source_ids)})"
        params: list = [int(is_read), *source_ids]
        if before_timestamp is not None:
            query += " AND publish_date_utc < ?"
            params.append(before_timestamp)

        with self._get_connection() as conn:
            return conn.execute(query, params).rowcount

    def delete_item(self, link: str) -> int:
        with self._get_connection() as conn:
            return conn.execute("DELETE FROM items WHERE link = ?", (link,)).rowcount

    # --- Reading feeds ---

    def create_reading_feed(self, name: str, is_default: bool = False) -> int:
        with self._get_connection() as conn:
            if is_default:
                conn.execute("UPDATE reading_feeds SET is_default = 0")
            cursor = conn.execute(
                "INSERT INTO reading_feeds (name, is_default) VALUES (?, ?)",
                (name, int(is_default)),
            )
            return int(cursor.lastrowid)

    def get_reading_feed(self, feed_id: int) -> Optional[ReadingFeed]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM reading_feeds WHERE id = ?", (feed_id,)).fetchone()
        if row is None:
            return None
        return ReadingFeed(id=row["id"], name=row["name"], is_default=bool(row["is_default"]))

    def get_all_reading_feeds(self) -> list[ReadingFeed]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM reading_feeds ORDER BY id").fetchall()
        return [
            ReadingFeed(id=row["id"], name=row["name"], is_default=bool(row["is_default"]))
            for row in rows
        ]

    def get_default_reading_feed(self) -> Optional[ReadingFeed]:
        return next((feed for feed in self.get_all_reading_feeds() if feed.is_default), None)

    def delete_reading_feed(self, feed_id: int) -> int:
        with self._get_connection() as conn:
            return conn.execute("DELETE FROM reading_feeds WHERE id = ?", (feed_id,)).rowcount

    def add_source_to_feed(self, feed_id: int, source_id: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO reading_feed_sources (feed_id, source_id) VALUES (?, ?)",
                (feed_id, source_id),
            )

    def remove_source_from_feed(self, feed_id: int, source_id: int) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "DELETE FROM reading_feed_sources WHERE feed_id = ? AND source_id = ?",
                (feed_id, source_id),
            ).rowcount

    def get_source_ids_for_feed(self, feed_id: int) -> list[int]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT source_id FROM reading_feed_sources WHERE feed_id = ? ORDER BY source_id",
                (feed_id,),
            ).fetchall()
        return [row["source_id"] for row in rows]

    # --- Keyword rules ---

    def create_keyword_rule(
        self, name: str, is_whitelist: bool, keywords: Optional[list[KeywordItem]] = None
    ) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO keyword_rules (name, is_whitelist) VALUES (?, ?)",
                (name, int(is_whitelist)),
            )
            rule_id = int(cursor.lastrowid)
            for keyword in keywords or []:
                self._insert_keyword(conn, rule_id, keyword)
        return rule_id

    def _insert_keyword(self, conn: sqlite3.Connection, rule_id: int, keyword: KeywordItem) -> int:
        cursor = conn.execute(
            """
            INSERT INTO keyword_items (rule_id, keyword, is_case_sensitive, is_full_word_match)
            VALUES (?, ?, ?, ?)
            """,
            (rule_id, keyword.keyword, int(keyword.is_case_sensitive), int(keyword.is_full_word_match)),
        )
        return int(cursor.lastrowid)

    def add_keyword(self, rule_id: int, keyword: KeywordItem) -> int:
        with self._get_connection() as conn:
            return self._insert_keyword(conn, rule_id, keyword)

    def get_keywords_for_rule(self, rule_id: int) -> list[KeywordItem]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM keyword_items WHERE rule_id = ? ORDER BY id", (rule_id,)
            ).fetchall()
        return [_row_to_keyword(row) for row in rows]

    def _load_keyword_rules(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[KeywordRule]:
        rules = []
        for row in rows:
            keyword_rows = conn.execute(
                "SELECT * FROM keyword_items WHERE rule_id = ? ORDER BY id", (row["id"],)
            ).fetchall()
            rules.append(
                KeywordRule(
                    id=row["id"],
                    name=row["name"],
                    is_whitelist=bool(row["is_whitelist"]),
                    keywords=[_row_to_keyword(k) for k in keyword_rows],
                )
            )
        return rules

    def get_all_keyword_rules(self) -> list[KeywordRule]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM keyword_rules ORDER BY id").fetchall()
            return self._load_keyword_rules(conn, rows)

    def delete_keyword_rule(self, rule_id: int) -> int:
        with self._get_connection() as conn:
            return conn.execute("DELETE FROM keyword_rules WHERE id = ?", (rule_id,)).rowcount

    def add_keyword_rule_to_feed(self, feed_id: int, rule_id: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO reading_feed_keyword_rules (feed_id, rule_id) VALUES (?, ?)",
                (feed_id, rule_id),
            )

    def remove_keyword_rule_from_feed(self, feed_id: int, rule_id: int) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "DELETE FROM reading_feed_keyword_rules WHERE feed_id = ? AND rule_id = ?",
                (feed_id, rule_id),
            ).rowcount

    def get_keyword_rules_for_feed(self, feed_id: int) -> list[KeywordRule]:
        """Keyword rules attached to a feed, each with its keyword items."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT kr.* FROM keyword_rules kr
                INNER JOIN reading_feed_keyword_rules rfkr ON kr.id = rfkr.rule_id
                WHERE rfkr.feed_id = ?
                ORDER BY kr.id
                """,
                (feed_id,),
            ).fetchall()
            return self._load_keyword_rules(conn, rows)

    # --- AI rules ---

    def create_ai_rule(self, name: str, rule_text: str, is_whitelist: bool) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO ai_rules (name, rule_text, is_whitelist) VALUES (?, ?, ?)",
                (name, rule_text, int(is_whitelist)),
            )
            return int(cursor.lastrowid)

    def get_all_ai_rules(self) -> list[AiRule]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM ai_rules ORDER BY id").fetchall()
        return [_row_to_ai_rule(row) for row in rows]

    def delete_ai_rule(self, rule_id: int) -> int:
        with self._get_connection() as conn:
            return conn.execute("DELETE FROM ai_rules WHERE id = ?", (rule_id,)).rowcount

    def set_feed_ai_rule(self, feed_id: int, rule_id: int, is_whitelist: bool) -> None:
        """Attach an AI rule to a feed, replacing the previous one of the same polarity."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO reading_feed_ai_rules (feed_id, rule_id, is_whitelist)
                VALUES (?, ?, ?)
                """,
                (feed_id, rule_id, int(is_whitelist)),
            )

    def clear_feed_ai_rule(self, feed_id: int, is_whitelist: bool) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "DELETE FROM reading_feed_ai_rules WHERE feed_id = ? AND is_whitelist = ?",
                (feed_id, int(is_whitelist)),
            ).rowcount

    def _get_feed_ai_rule(self, feed_id: int, is_whitelist: bool) -> Optional[AiRule]:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT ar.* FROM ai_rules ar
                INNER JOIN reading_feed_ai_rules rfar ON ar.id = rfar.rule_id
                WHERE rfar.feed_id = ? AND rfar.is_whitelist = ?
                LIMIT 1
                """,
                (feed_id, int(is_whitelist)),
            ).fetchone()
        return _row_to_ai_rule(row) if row else None

    def get_whitelist_ai_rule_for_feed(self, feed_id: int) -> Optional[AiRule]:
        return self._get_feed_ai_rule(feed_id, True)

    def get_blacklist_ai_rule_for_feed(self, feed_id: int) -> Optional[AiRule]:
        return self._get_feed_ai_rule(feed_id, False)

    # --- AI decision cache ---

    def get_cached_decision(self, link: str) -> Optional[AiFilterResult]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM ai_filter_results WHERE article_link = ?", (link,)
            ).fetchone()
        if row is None:
            return None
        return AiFilterResult(
            article_link=row["article_link"],
            passes_filter=bool(row["passes_filter"]),
            filter_timestamp=row["filter_timestamp"],
        )

    def put_cached_decision(self, link: str, decision: bool, timestamp: int) -> None:
        self.put_cached_decisions({link: decision}, timestamp)

    def put_cached_decisions(self, decisions: dict[str, bool], timestamp: int) -> None:
        """Write decisions keyed by link; an existing record is replaced."""
        if not decisions:
            return
        with self._get_connection() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO ai_filter_results (article_link, passes_filter, filter_timestamp)
                VALUES (?, ?, ?)
                """,
                [(link, int(decision), timestamp) for link, decision in decisions.items()],
            )

    def get_all_cached_decisions(self) -> dict[str, bool]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT article_link, passes_filter FROM ai_filter_results").fetchall()
        return {row["article_link"]: bool(row["passes_filter"]) for row in rows}

    def prune_cached_decisions(self, older_than_timestamp: int) -> int:
        with self._get_connection() as conn:
            deleted = conn.execute(
                "DELETE FROM ai_filter_results WHERE filter_timestamp < ?", (older_than_timestamp,)
            ).rowcount
        if deleted:
            logger.info("Pruned %d cached AI decisions", deleted)
        return deleted

    def clear_cached_decisions(self) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM ai_filter_results")

    # --- Refresh bookkeeping ---

    def get_last_refresh(self, key: str) -> Optional[int]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT last_refresh FROM refresh_log WHERE refresh_key = ?", (key,)
            ).fetchone()
        return row["last_refresh"] if row else None

    def set_last_refresh(self, key: str, timestamp: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO refresh_log (refresh_key, last_refresh) VALUES (?, ?)",
                (key, timestamp),
            )

    # --- Sessions ---

    def save_repeated_session(self, session: RepeatedSession) -> int:
        """Insert or update a repeated session together with its rules."""
        with self._get_connection() as conn:
            values = (
                session.name,
                session.feed_id,
                session.headlines_per_session,
                session.delay_between_headlines_sec,
                int(session.read_body),
                session.article_age_threshold_minutes,
                int(session.announce_article_age),
            )
            if session.id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO repeated_sessions
                        (name, feed_id, headlines_per_session, delay_between_headlines_sec,
                         read_body, article_age_threshold_minutes, announce_article_age)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
                session_id = int(cursor.lastrowid)
            else:
                session_id = session.id
                conn.execute(
                    """
                    UPDATE repeated_sessions SET
                        name = ?, feed_id = ?, headlines_per_session = ?,
                        delay_between_headlines_sec = ?, read_body = ?,
                        article_age_threshold_minutes = ?, announce_article_age = ?
                    WHERE id = ?
                    """,
                    (*values, session_id),
                )
                conn.execute("DELETE FROM repeated_session_rules WHERE session_id = ?", (session_id,))

            conn.executemany(
                """
                INSERT INTO repeated_session_rules
                    (session_id, type, is_active, interval_minutes, time_of_day, days_of_week)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        session_id,
                        rule.type.value,
                        int(rule.is_active),
                        rule.interval_minutes,
                        rule.time_of_day,
                        rule.days_of_week,
                    )
                    for rule in session.rules
                ],
            )
        return session_id

    def _load_session(self, conn: sqlite3.Connection, row: sqlite3.Row) -> RepeatedSession:
        rule_rows = conn.execute(
            "SELECT * FROM repeated_session_rules WHERE session_id = ? ORDER BY id", (row["id"],)
        ).fetchall()
        return RepeatedSession(
            id=row["id"],
            name=row["name"],
            feed_id=row["feed_id"],
            headlines_per_session=row["headlines_per_session"],
            delay_between_headlines_sec=row["delay_between_headlines_sec"],
            read_body=bool(row["read_body"]),
            article_age_threshold_minutes=row["article_age_threshold_minutes"],
            announce_article_age=bool(row["announce_article_age"]),
            rules=[
                RepeatedSessionRule(
                    id=r["id"],
                    session_id=r["session_id"],
                    type=RuleType(r["type"]),
                    is_active=bool(r["is_active"]),
                    interval_minutes=r["interval_minutes"],
                    time_of_day=r["time_of_day"],
                    days_of_week=r["days_of_week"],
                )
                for r in rule_rows
            ],
        )

    def get_repeated_session(self, session_id: int) -> Optional[RepeatedSession]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM repeated_sessions WHERE id = ?", (session_id,)
            ).fetchone()
            return self._load_session(conn, row) if row else None

    def get_all_repeated_sessions(self) -> list[RepeatedSession]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM repeated_sessions ORDER BY id").fetchall()
            return [self._load_session(conn, row) for row in rows]

    def save_scheduled_reading(self, reading: ScheduledReading) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scheduled_readings
                    (feed_id, days_of_week, times_of_day, headlines_limit, delay_between_articles_sec)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    reading.feed_id,
                    reading.days_of_week,
                    reading.times_of_day,
                    reading.headlines_limit,
                    reading.delay_between_articles_sec,
                ),
            )
            return int(cursor.lastrowid)

    def get_scheduled_readings_for_feed(self, feed_id: int) -> list[ScheduledReading]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scheduled_readings WHERE feed_id = ? ORDER BY id", (feed_id,)
            ).fetchall()
        return [ScheduledReading(**dict(row)) for row in rows]
