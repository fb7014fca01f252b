# =============================================================================
# Response Cache — Confidence-Gated Answer Cache
# =============================================================================
#
# Repeated questions ("lãi suất tiết kiệm 12 tháng?") are common. A cache
# hit skips routing, retrieval and generation entirely.
#
#   put(question, answer)
#     confidence < 70 ─────────────▶ no-op (logged)
#     size >= 1000 ─▶ evict 100 oldest by created_at ─▶ store
#
#   get(question)
#     missing ────────────▶ None
#     expires_at <= now ──▶ remove, None
#     otherwise ──────────▶ hit_count += 1, entry
#
# Key = SHA-256 of the normalised question (lowercase, punctuation
# stripped, whitespace collapsed), first 16 hex chars.
#
# DESIGN DECISION: The punctuation pattern is Unicode-aware (`[^\w\s]`
# with Python's default str semantics), so Vietnamese letters such as
# "ấ" or "đ" survive normalisation and distinct questions keep distinct
# keys.
#
# DESIGN DECISION: One threading.Lock around every read-modify-write.
# Handlers run on the event loop, but the periodic sweep and admin
# endpoints may run concurrently with reads.
#
# DESIGN DECISION: Injectable clock. TTL behaviour is tested by moving
# a fake clock, never by sleeping.
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from bankdoc_qa.config import settings

if TYPE_CHECKING:
    from bankdoc_qa.agents.analyst import AnswerResult

logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalise_question(question: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    normalised = question.lower().strip()
    normalised = _PUNCTUATION_RE.sub("", normalised)
    return _WHITESPACE_RE.sub(" ", normalised).strip()


def question_hash(question: str) -> str:
    """Cache key: first 16 hex chars of SHA-256 over the normalised text."""
    digest = hashlib.sha256(normalise_question(question).encode("utf-8"))
    return digest.hexdigest()[:16]


@dataclass
class CacheEntry:
    question_hash: str
    question: str
    answer_text: str
    sources: list[dict]
    model: str
    confidence: int
    token_usage: dict[str, int]
    created_at: datetime
    expires_at: datetime
    hit_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


class ResponseCache:
    """
    In-memory answer cache owned by the pipeline.

    Args:
        ttl: Lifetime of a stored answer.
        max_entries: Capacity before a batch eviction runs.
        min_confidence: Answers below this are never stored.
        eviction_batch: Entries removed per eviction (oldest first).
        clock: Returns an aware datetime. Injected by tests.
    """

    def __init__(
        self,
        ttl: timedelta | None = None,
        max_entries: int | None = None,
        min_confidence: int | None = None,
        eviction_batch: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ttl = ttl or timedelta(hours=settings.cache_ttl_hours)
        self._max_entries = max_entries or settings.cache_max_entries
        self._min_confidence = (
            settings.cache_min_confidence if min_confidence is None else min_confidence
        )
        self._eviction_batch = eviction_batch or settings.cache_eviction_batch
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    # -----------------------------------------------------------------------
    # Read / Write
    # -----------------------------------------------------------------------

    def get(self, question: str) -> CacheEntry | None:
        key = question_hash(question)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                logger.debug("Cache MISS %s", key)
                return None

            if entry.expires_at <= self._clock():
                del self._entries[key]
                logger.info("Cache EXPIRED %s, removed", key)
                return None

            entry.hit_count += 1
            hits = entry.hit_count

        logger.info(
            "Cache HIT %s (confidence=%d%%, hits=%d)", key, entry.confidence, hits,
        )
        return entry

    def put(self, question: str, answer: AnswerResult) -> bool:
        """Store `answer` if it is confident enough. Returns True when stored."""
        if answer.confidence < self._min_confidence:
            logger.info(
                "Cache SKIP: low confidence (%d%% < %d%%)",
                answer.confidence, self._min_confidence,
            )
            return False

        key = question_hash(question)
        now = self._clock()
        entry = CacheEntry(
            question_hash=key,
            question=question,
            answer_text=answer.text,
            sources=list(answer.sources),
            model=answer.model,
            confidence=answer.confidence,
            token_usage=answer.token_usage.as_dict(),
            created_at=now,
            expires_at=now + self._ttl,
        )

        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_oldest(self._eviction_batch)
            self._entries[key] = entry

        logger.info(
            "Cache STORED %s (confidence=%d%%, expires=%s)",
            key, answer.confidence, entry.expires_at.isoformat(),
        )
        return True

    def _evict_oldest(self, count: int) -> None:
        # Caller holds the lock.
        oldest = sorted(self._entries.values(), key=lambda e: e.created_at)[:count]
        for entry in oldest:
            del self._entries[entry.question_hash]
        logger.info(
            "Cache evicted %d oldest entries, size now %d",
            len(oldest), len(self._entries),
        )

    # -----------------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
            size = len(self._entries)

        if expired:
            logger.info(
                "Cache swept %d expired entries, size now %d", len(expired), size,
            )
        return len(expired)

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
        logger.info("Cache cleared (%d entries)", removed)
        return removed

    def invalidate_by_pattern(self, pattern: str) -> int:
        """
        Remove entries whose original question matches `pattern`.

        The pattern is a case-insensitive regular expression.

        Raises:
            re.error: If the pattern does not compile.
        """
        regex = re.compile(pattern, re.IGNORECASE)
        with self._lock:
            matched = [
                k for k, e in self._entries.items() if regex.search(e.question)
            ]
            for key in matched:
                del self._entries[key]

        logger.info(
            "Cache invalidated %d entries matching %r", len(matched), pattern,
        )
        return len(matched)

    def stats(self, top_n: int = 10) -> dict[str, Any]:
        """
        Diagnostic snapshot.

        hit_rate approximates hits / lookups as hits / (entries + hits),
        treating each stored entry as one initial miss.
        """
        with self._lock:
            entries = list(self._entries.values())

        total_hits = sum(e.hit_count for e in entries)
        total_queries = len(entries) + total_hits
        top = sorted(
            (e for e in entries if e.hit_count > 0),
            key=lambda e: e.hit_count,
            reverse=True,
        )[:top_n]

        return {
            "size": len(entries),
            "hit_rate": (total_hits / total_queries * 100) if total_queries else 0.0,
            "top_questions": [
                {
                    "question": e.question[:100],
                    "hits": e.hit_count,
                    "confidence": e.confidence,
                }
                for e in top
            ],
        }


async def run_periodic_sweep(
    cache: ResponseCache,
    interval_seconds: float | None = None,
) -> None:
    """
    Sweep `cache` every `interval_seconds` until cancelled.

    Started as a background task by the FastAPI lifespan.
    """
    interval = interval_seconds or settings.cache_sweep_interval_seconds
    logger.info("Cache sweep task started (every %ss)", interval)
    while True:
        await asyncio.sleep(interval)
        cache.sweep_expired()
