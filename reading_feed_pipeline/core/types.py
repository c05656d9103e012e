"""
Type definitions and Pydantic models for the Reading Feed Pipeline.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Source(BaseModel):
    """A configured RSS endpoint."""
    id: int = 0
    name: str = ""
    rss_url: str
    timezone_offset_minutes: int = 0


class Item(BaseModel):
    """Represents one ingested feed entry, keyed by its link."""
    model_config = ConfigDict(extra="ignore")

    link: str = Field(..., description="Canonical link, used as identity")
    source_id: int
    title: str
    description: Optional[str] = None
    publish_date_utc: int = Field(..., description="UTC epoch milliseconds")
    is_read: bool = False
    is_read_later: bool = False
    read_later_feed_id: Optional[int] = None

    @property
    def content(self) -> str:
        """Text the keyword rules and the AI classifier look at."""
        return f"{self.title} {self.description or ''}"


class ReadingFeed(BaseModel):
    """A named grouping of sources plus its filter configuration."""
    id: int = 0
    name: str
    is_default: bool = False


class KeywordItem(BaseModel):
    id: int = 0
    rule_id: int = 0
    keyword: str
    is_case_sensitive: bool = False
    is_full_word_match: bool = False


class KeywordRule(BaseModel):
    id: int = 0
    name: str
    is_whitelist: bool
    keywords: List[KeywordItem] = Field(default_factory=list)


class AiRule(BaseModel):
    """Free-text classification instruction evaluated by the remote model."""
    id: int = 0
    name: str
    rule_text: str
    is_whitelist: bool


class AiFilterResult(BaseModel):
    """Cached AI decision for one item."""
    article_link: str
    passes_filter: bool
    filter_timestamp: int


class FetchResult(BaseModel):
    """Outcome of a fetch cycle: items from healthy endpoints plus the failures."""
    items: List[Item] = Field(default_factory=list)
    failed_urls: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)

    @property
    def partially_failed(self) -> bool:
        return bool(self.failed_urls)


class FeedViewResult(BaseModel):
    """Filtered items for a reading feed and the whitelist terms each one matched."""
    items: List[Item] = Field(default_factory=list)
    matched_keywords: Dict[str, List[str]] = Field(default_factory=dict)


class ImportSummary(BaseModel):
    imported: int = 0
    duplicates: int = 0


class RuleType(str, Enum):
    INTERVAL = "INTERVAL"  # every N minutes
    SCHEDULE = "SCHEDULE"  # at a time of day on given weekdays


class RepeatedSessionRule(BaseModel):
    id: int = 0
    session_id: int = 0
    type: RuleType
    is_active: bool = False
    interval_minutes: Optional[int] = None
    time_of_day: Optional[str] = None  # "HH:mm"
    days_of_week: Optional[str] = None  # "1,2,5", 1=Monday


class RepeatedSession(BaseModel):
    """A recurring reading session. Only its filter inputs matter to the pipeline."""
    id: Optional[int] = None
    name: str
    feed_id: int
    headlines_per_session: int = 10
    delay_between_headlines_sec: int = 4
    read_body: bool = False
    article_age_threshold_minutes: Optional[int] = None
    announce_article_age: bool = False
    rules: List[RepeatedSessionRule] = Field(default_factory=list)


class ScheduledReading(BaseModel):
    id: int = 0
    feed_id: int
    days_of_week: str  # "Mon,Tue,Fri"
    times_of_day: str  # "08:00,13:00"
    headlines_limit: int
    delay_between_articles_sec: int
