"""
AI classification of items against natural-language rules.

The gateway sends uncached items in size-bounded batches to an
OpenAI-compatible chat model and keeps one pass/fail decision per item
link. Decisions are reused on later calls, even if the rule text changed.
Anything that goes wrong with the model keeps the affected items (fail open).
"""

import asyncio
import logging
import re
import threading
from typing import Callable, Optional

from openai import APIConnectionError, APITimeoutError, OpenAI, RateLimitError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .rate_limiter import Clock, RequestThrottle, current_time_ms
from .store_news import FeedRepository
from .types import Item
from .utils import PipelineSettings

logger = logging.getLogger(__name__)

MAX_CHARS_PER_REQUEST = 5000
PROMPT_TEMPLATE_OVERHEAD = 300  # estimated size of the instructions
DEFAULT_CACHE_MAX_AGE_MS = 7 * 24 * 60 * 60 * 1000
ANSWER_PATTERN = re.compile(r"(\d+)-(yes|no)", re.IGNORECASE)

ProgressCallback = Callable[[int, int], None]


class AiDecisionCache:
    """Pass/fail decisions keyed by item link.

    Kept in memory and, when a repository is given, mirrored in its
    ``ai_filter_results`` table. Last write wins for a link.
    """

    def __init__(self, store: Optional[FeedRepository] = None, clock: Clock = current_time_ms) -> None:
        self.store = store
        self.clock = clock
        self._decisions: dict[str, bool] = {}
        self._loaded = store is None
        self._lock = threading.Lock()

    def load(self) -> None:
        """Populate memory from the repository (once)."""
        with self._lock:
            if self._loaded:
                return
            self._decisions.update(self.store.get_all_cached_decisions())
            self._loaded = True
        logger.info("Loaded %d cached AI decisions", len(self._decisions))

    def get(self, link: str) -> Optional[bool]:
        self.load()
        with self._lock:
            return self._decisions.get(link)

    def put_many(self, decisions: dict[str, bool]) -> None:
        if not decisions:
            return
        self.load()
        with self._lock:
            self._decisions.update(decisions)
        if self.store is not None:
            self.store.put_cached_decisions(decisions, self.clock())

    def prune(self, max_age_ms: int = DEFAULT_CACHE_MAX_AGE_MS) -> int:
        """Drop persisted decisions older than ``max_age_ms`` and reload memory."""
        if self.store is None:
            return 0
        deleted = self.store.prune_cached_decisions(self.clock() - max_age_ms)
        with self._lock:
            self._decisions = self.store.get_all_cached_decisions()
            self._loaded = True
        return deleted

    def clear(self) -> None:
        with self._lock:
            self._decisions.clear()
        if self.store is not None:
            self.store.clear_cached_decisions()

    def __len__(self) -> int:
        with self._lock:
            return len(self._decisions)

    def stats(self) -> str:
        with self._lock:
            size = len(self._decisions)
            passing = sum(1 for value in self._decisions.values() if value)
        return f"Cache size: {size}, pass ratio: {passing * 100.0 / max(size, 1):.1f}%"


def build_prompt(
    batch: list[Item], whitelist_rule: Optional[str], blacklist_rule: Optional[str]
) -> str:
    """Build the classification prompt for one batch of items."""
    lines = [
        'Analyze the following pieces of text (each wrapped in " symbols and marked '
        "with a number) separately, NOT altogether, and decide for each one whether it passes.",
    ]
    if whitelist_rule:
        lines.append(f'A text passes only if it fits this description: "{whitelist_rule}".')
    if blacklist_rule:
        lines.append(f'A text does NOT pass if it fits this description: "{blacklist_rule}".')
    lines.append('Write answers ONLY in the format:\n"1-no.\n2-yes.\n3-no."')
    lines.append('(choosing "yes" if the text passes and "no" if it does not)')
    lines.append("Write nothing else.\n")

    prompt = "\n".join(lines) + "\n"
    for number, item in enumerate(batch, start=1):
        prompt += f'{number}. "{item.content}"\n\n'
    return prompt


def split_into_batches(items: list[Item], max_chars: int = MAX_CHARS_PER_REQUEST) -> list[list[Item]]:
    """Group items so each prompt stays under ``max_chars`` (a lone oversized item gets its own batch)."""
    batches: list[list[Item]] = []
    current: list[Item] = []
    current_size = PROMPT_TEMPLATE_OVERHEAD

    for item in items:
        item_size = len(f'{len(current) + 1}. "{item.content}"\n\n')
        if current and current_size + item_size > max_chars:
            batches.append(current)
            current = []
            current_size = PROMPT_TEMPLATE_OVERHEAD
        current.append(item)
        current_size += item_size

    if current:
        batches.append(current)
    return batches


def parse_response(response: str, batch: list[Item]) -> dict[str, bool]:
    """Map ``N-yes``/``N-no`` answers back to item links; unanswered items pass."""
    results: dict[str, bool] = {}
    for match in ANSWER_PATTERN.finditer(response):
        index = int(match.group(1)) - 1
        if 0 <= index < len(batch):
            results[batch[index].link] = match.group(2).lower() == "yes"

    for item in batch:
        results.setdefault(item.link, True)
    return results


class AiFilterGateway:
    """Classify items with a remote chat model, caching decisions per link."""

    def __init__(
        self,
        api_key: Optional[str],
        cache: AiDecisionCache,
        model_name: str = "gemini-2.0-flash-lite",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/",
        request_timeout: float = 60.0,
        max_chars_per_request: int = MAX_CHARS_PER_REQUEST,
        throttle: Optional[RequestThrottle] = None,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.api_key = api_key
        self.cache = cache
        self.model_name = model_name
        self.base_url = base_url
        self.request_timeout = request_timeout
        self.max_chars_per_request = max_chars_per_request
        self.throttle = throttle or RequestThrottle(0)
        self._client = client

    @classmethod
    def from_settings(cls, settings: PipelineSettings, cache: AiDecisionCache) -> "AiFilterGateway":
        return cls(
            api_key=settings.ai_api_key,
            cache=cache,
            model_name=settings.ai_model,
            base_url=settings.ai_base_url,
            request_timeout=settings.ai_request_timeout,
            max_chars_per_request=settings.ai_max_chars_per_request,
            throttle=RequestThrottle(settings.ai_min_request_interval),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    @property
    def client(self) -> OpenAI:
        """Lazy-initialize the OpenAI client."""
        if self._client is None:
            self._client = OpenAI(
                base_url=self.base_url,
                api_key=self.api_key,
                timeout=self.request_timeout,
                max_retries=0,
            )
        return self._client

    async def classify(
        self,
        items: list[Item],
        whitelist_rule: Optional[str],
        blacklist_rule: Optional[str],
        progress: Optional[ProgressCallback] = None,
    ) -> list[Item]:
        """Return the items that pass the AI rules, in input order.

        Args:
            items: Items to classify.
            whitelist_rule: Description items must fit, or None.
            blacklist_rule: Description items must not fit, or None.
            progress: Optional ``(processed, total)`` callback.

        Returns:
            The passing items. Without rules or without an API key the input
            is returned unchanged.
        """
        whitelist_rule = (whitelist_rule or "").strip() or None
        blacklist_rule = (blacklist_rule or "").strip() or None

        if not items or (whitelist_rule is None and blacklist_rule is None):
            return items
        if not self.is_configured:
            logger.warning("AI API key not set, skipping AI filtering")
            return items

        await asyncio.to_thread(self.cache.load)
        decisions: dict[str, bool] = {}
        pending: dict[str, Item] = {}
        for item in items:
            cached = self.cache.get(item.link)
            if cached is None:
                pending.setdefault(item.link, item)
            else:
                decisions[item.link] = cached

        processed = len(items) - len(pending)
        logger.info(
            "AI filtering %d items: %d cached, %d to classify", len(items), processed, len(pending)
        )
        if progress:
            progress(processed, len(items))

        batches = split_into_batches(list(pending.values()), self.max_chars_per_request)
        for index, batch in enumerate(batches, start=1):
            batch_results = await asyncio.to_thread(
                self._classify_batch, batch, whitelist_rule, blacklist_rule
            )
            if batch_results is None:
                logger.warning("AI batch %d/%d failed, keeping its %d items", index, len(batches), len(batch))
                decisions.update({item.link: True for item in batch})
            else:
                decisions.update(batch_results)
                await asyncio.to_thread(self.cache.put_many, batch_results)

            processed += len(batch)
            if progress:
                progress(processed, len(items))

        filtered = [item for item in items if decisions.get(item.link, True)]
        logger.info(
            "AI filtering complete: %d of %d items passed (%s)",
            len(filtered),
            len(items),
            self.cache.stats(),
        )
        return filtered

    def _classify_batch(
        self, batch: list[Item], whitelist_rule: Optional[str], blacklist_rule: Optional[str]
    ) -> Optional[dict[str, bool]]:
        self.throttle.wait()
        prompt = build_prompt(batch, whitelist_rule, blacklist_rule)
        try:
            response_text = self._request_completion(prompt)
        except Exception as e:  # pylint: disable=broad-except
            logger.error("Error calling AI model for %d items: %s", len(batch), e, exc_info=True)
            return None
        return parse_response(response_text, batch)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((APIConnectionError, APITimeoutError, RateLimitError)),
        reraise=True,
    )
    def _request_completion(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=[{"role": "user", "content": prompt}],
            temperature=0,
        )
        return response.choices[0].message.content or ""
