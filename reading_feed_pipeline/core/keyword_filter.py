"""
Keyword rule matching.

A keyword item can be case-sensitive, restricted to whole words and can
carry one ``*`` wildcard. Whitelist items admit an item when at least one
of them matches; any blacklist match excludes the item, even when a
whitelist item matched too.
"""

import logging
import re
import string
from typing import Iterable

from .types import Item, KeywordItem, KeywordRule

logger = logging.getLogger(__name__)

WILDCARD = "*"
_TOKEN_SPLIT = re.compile(r"\s+|[" + re.escape(string.punctuation) + "]")


def matches_wildcard_pattern(text: str, pattern: str) -> bool:
    """Check ``text`` against a pattern with at most one significant ``*``.

    Args:
        text: Text to test (a whole content string or a single token).
        pattern: Keyword, possibly containing a wildcard.

    Returns:
        True if the text starts with the part before the wildcard and ends
        with the part after it. A pattern without wildcard needs equality.
    """
    if WILDCARD not in pattern:
        return text == pattern

    prefix, suffix = pattern.split(WILDCARD, 1)
    if not prefix and not suffix:
        return True
    return (
        text.startswith(prefix)
        and text.endswith(suffix)
        and len(text) >= len(prefix) + len(suffix)
    )


def matches_keyword(content: str, keyword_item: KeywordItem) -> bool:
    """Check whether ``content`` matches a keyword item, honouring its options."""
    keyword = keyword_item.keyword
    if not keyword_item.is_case_sensitive:
        content = content.lower()
        keyword = keyword.lower()

    if WILDCARD in keyword:
        if keyword_item.is_full_word_match:
            return any(
                matches_wildcard_pattern(word, keyword) for word in _TOKEN_SPLIT.split(content)
            )
        return matches_wildcard_pattern(content, keyword)

    if keyword_item.is_full_word_match:
        return re.search(rf"\b{re.escape(keyword)}\b", content) is not None
    return keyword in content


def evaluate(
    content: str,
    whitelist_items: list[KeywordItem],
    blacklist_items: list[KeywordItem],
) -> tuple[bool, list[str]]:
    """Apply whitelist and blacklist items to one piece of content.

    Returns:
        A ``(passes, matched_whitelist_terms)`` tuple. An empty whitelist
        passes everything; a blacklist hit always fails.
    """
    matched_terms = [
        item.keyword for item in whitelist_items if matches_keyword(content, item)
    ]
    passes_whitelist = not whitelist_items or bool(matched_terms)
    passes_blacklist = not any(matches_keyword(content, item) for item in blacklist_items)
    return passes_whitelist and passes_blacklist, matched_terms


def split_rules(rules: Iterable[KeywordRule]) -> tuple[list[KeywordItem], list[KeywordItem]]:
    """Flatten rules into the combined whitelist and blacklist keyword items."""
    whitelist: list[KeywordItem] = []
    blacklist: list[KeywordItem] = []
    for rule in rules:
        (whitelist if rule.is_whitelist else blacklist).extend(rule.keywords)
    return whitelist, blacklist


def filter_items_by_keywords(
    items: list[Item],
    whitelist_items: list[KeywordItem],
    blacklist_items: list[KeywordItem],
) -> tuple[list[Item], dict[str, list[str]]]:
    """Filter items by keyword items.

    Args:
        items: Candidate items.
        whitelist_items: Combined whitelist keyword items.
        blacklist_items: Combined blacklist keyword items.

    Returns:
        The passing items (order kept) and, for each passing item that
        matched whitelist terms, the terms keyed by the item's link.
    """
    logger.info(
        "Filtering %d items with %d whitelist and %d blacklist keywords",
        len(items),
        len(whitelist_items),
        len(blacklist_items),
    )
    passing: list[Item] = []
    matched_map: dict[str, list[str]] = {}

    for item in items:
        passes, matched_terms = evaluate(item.content, whitelist_items, blacklist_items)
        if not passes:
            logger.debug("Item '%s' excluded by keyword rules", item.title)
            continue
        passing.append(item)
        if matched_terms:
            matched_map[item.link] = matched_terms

    logger.info("After keyword filtering: %d of %d items remain", len(passing), len(items))
    return passing, matched_map
