"""
RSS Fetcher Module.

This module fetches RSS/Atom documents from the configured sources,
parses them into Items and reports the endpoints that failed without
aborting the rest of the fetch cycle.
"""

import asyncio
import calendar
import logging
import time
import uuid
from typing import Any, Optional

import feedparser
import requests
from bs4 import BeautifulSoup

from .rate_limiter import Clock, current_time_ms
from .types import FetchResult, Item

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
DEFAULT_TIMEOUT_SECONDS = 30.0
UTF8_BOM = b"\xef\xbb\xbf"
DEFAULT_TITLE = "No title"


class FeedFetchError(Exception):
    """A single endpoint could not be fetched or parsed."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{url}: {message}")
        self.url = url
        self.message = message


class FeedTransportError(FeedFetchError):
    """Network failure or non-success HTTP status."""


class BadFeedContentError(FeedFetchError):
    """The document is not feed markup."""


def clean_html_content(html: str) -> str:
    """Strip markup from an entry description."""
    if not html:
        return ""
    text = BeautifulSoup(html, "html.parser").get_text(" ", strip=True)
    # mis-decoded bullet some publishers emit
    return text.replace("â– ", ".")


def _get_entry_value(entry: Any, key: str, default: Any = None) -> Any:
    if isinstance(entry, dict):
        return entry.get(key, default)
    return getattr(entry, key, default)


def entry_timestamp_ms(entry: Any, now_ms: int) -> int:
    """Publish time of an entry in UTC epoch ms, ``now_ms`` when missing or invalid."""
    for key in ("published_parsed", "updated_parsed"):
        parsed = _get_entry_value(entry, key)
        if isinstance(parsed, time.struct_time):
            try:
                return calendar.timegm(parsed) * 1000
            except (OverflowError, ValueError):
                logger.debug("Unusable %s value %r", key, parsed)
    return now_ms


def parse_feed_document(
    document: bytes, url: str, source_id: int, now_ms: Optional[int] = None
) -> list[Item]:
    """Parse a feed document into Items.

    Args:
        document: Raw feed bytes, already checked to start with markup.
        url: Endpoint the document came from (for error reporting).
        source_id: Source the items belong to.
        now_ms: Fallback publish time for entries without a usable date.

    Returns:
        List of Items in document order.

    Raises:
        BadFeedContentError: If the document cannot be parsed into a feed.
    """
    now_ms = current_time_ms() if now_ms is None else now_ms
    feed: Any = feedparser.parse(document)
    entries = getattr(feed, "entries", None) or []

    if not entries and not getattr(feed, "version", ""):
        reason = getattr(feed, "bozo_exception", "no feed elements found")
        raise BadFeedContentError(url, f"unparseable feed: {reason}")
    if getattr(feed, "bozo", False):
        # feedparser often recovers from malformed XML
        logger.warning(
            "Potential issue parsing feed %s: %s", url, getattr(feed, "bozo_exception", "unknown error")
        )

    items = []
    for entry in entries:
        link = _get_entry_value(entry, "link")
        if not link:
            # No stable identity: re-fetching this entry will create another item.
            link = str(uuid.uuid4())
            logger.debug("Entry without link in %s, generated id %s", url, link)

        title = _get_entry_value(entry, "title") or DEFAULT_TITLE
        description = _get_entry_value(entry, "summary") or _get_entry_value(
            entry, "description", ""
        )

        items.append(
            Item(
                link=str(link),
                source_id=source_id,
                title=str(title),
                description=clean_html_content(str(description)),
                publish_date_utc=entry_timestamp_ms(entry, now_ms),
                is_read=False,
            )
        )
    return items


class RssFetcher:
    """Fetch and parse a set of RSS endpoints.

    Each endpoint is fetched once per cycle with bounded connect/read
    timeouts. Failures are collected per endpoint and never raised out of
    ``fetch_all``.
    """

    def __init__(
        self,
        connect_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        read_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        clock: Clock = current_time_ms,
    ) -> None:
        self.timeout = (connect_timeout, read_timeout)
        self.session = session
        self.clock = clock

    def get_source(self, url: str) -> bytes:
        """Download a feed document and validate that it looks like markup.

        Raises:
            FeedTransportError: On network errors or non-success status.
            BadFeedContentError: If the body does not start with ``<``.
        """
        http = self.session or requests
        try:
            response = http.get(url, headers={"User-Agent": USER_AGENT}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise FeedTransportError(url, str(e)) from e

        if not response.ok:
            raise FeedTransportError(url, f"HTTP request failed with status {response.status_code}")

        body = response.content or b""
        if body.startswith(UTF8_BOM):
            body = body[len(UTF8_BOM):]
        body = body.strip()

        if not body.startswith(b"<"):
            raise BadFeedContentError(url, "content does not start with an opening XML tag")
        return body

    def fetch_endpoint(self, url: str, source_id: int) -> list[Item]:
        """Fetch and parse one endpoint. Raises FeedFetchError on failure."""
        document = self.get_source(url)
        items = parse_feed_document(document, url, source_id, now_ms=self.clock())
        logger.info("Processed RSS feed from %s with %d items", url, len(items))
        return items

    def _fetch_endpoint_safely(
        self, url: str, source_id: int
    ) -> tuple[list[Item], Optional[str]]:
        try:
            return self.fetch_endpoint(url, source_id), None
        except FeedFetchError as e:
            logger.error("Error processing %s: %s", url, e.message)
            return [], e.message
        except Exception as e:  # pylint: disable=broad-except
            logger.error("Unexpected error processing %s: %s", url, e, exc_info=True)
            return [], str(e)

    async def fetch_all(self, endpoints: dict[str, int]) -> FetchResult:
        """Fetch every endpoint concurrently.

        Args:
            endpoints: Mapping of feed URL to source id.

        Returns:
            FetchResult with the items of all healthy endpoints and the
            URLs (and reasons) of the ones that failed.
        """
        if not endpoints:
            return FetchResult()

        pairs = list(endpoints.items())
        outcomes = await asyncio.gather(
            *(asyncio.to_thread(self._fetch_endpoint_safely, url, sid) for url, sid in pairs)
        )

        result = FetchResult()
        for (url, _), (items, error) in zip(pairs, outcomes):
            if error is not None:
                result.failed_urls.append(url)
                result.errors[url] = error
            else:
                result.items.extend(items)

        logger.info(
            "Fetch cycle complete: %d items from %d endpoints, %d failed",
            len(result.items),
            len(pairs),
            len(result.failed_urls),
        )
        return result
