"""Relevance-ranked memory retrieval and prompt injection.

Candidates come from three pools (full-text matches, most recent, most important),
are merged and then scored by a weighted blend of recency, importance and keyword
overlap with the query.
"""

import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union

from pydantic import BaseModel, Field

from longmem.config import MemoryConfig
from longmem.memory.schema import Memory, MemoryType
from longmem.memory.search import SearchEngine, SearchFilters
from longmem.memory.store import MemoryStore
from longmem.memory.text import extract_keywords, keyword_overlap

logger = logging.getLogger(__name__)

DEFAULT_TIME_CONSTANT = timedelta(days=7)

# Candidate pool sizes, as multiples of the requested limit
SEARCH_POOL_FACTOR = 3
RECENT_POOL_FACTOR = 2
IMPORTANT_POOL_FACTOR = 2

UNCATEGORIZED = "uncategorized"

MEMORY_BLOCK_HEADER ="The following are relevant facts and context from previous conversations:"


class InjectionFormat(str, Enum):
    """Where retrieved memories go in the outgoing request."""

    SYSTEM = "system"
    ASSISTANT_PREAMBLE = "assistant_preamble"


class RetrievalWeights(BaseModel):
    """Blend of the three retrieval signals."""

    recency_weight: float = 0.3
    importance_weight: float = 0.4
    relevance_weight: float = 0.3

    def normalized(self) -> "RetrievalWeights":
        """Negative or non-finite weights become 0; weights summing over 1 are rescaled."""
        values = [
            w if math.isfinite(w) and w > 0 else 0.0
            for w in (self.recency_weight, self.importance_weight, self.relevance_weight)
        ]
        total = sum(values)
        if total > 1.0:
            values = [w / total for w in values]
        return RetrievalWeights(
            recency_weight=values[0],
            importance_weight=values[1],
            relevance_weight=values[2],
        )


class MemoryStats(BaseModel):
    """Summary counts for a memory store, optionally restricted to one session."""

    total: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_category: Dict[str, int] = Field(default_factory=dict)
    avg_importance: float = 0.0
    recent_count: int = 0
    important_count: int = 0
    session_id: Optional[str] = None


def calculate_keyword_overlap(content: Optional[str], query: Optional[str], stop_words: Optional[Iterable[str]] = None) -> float:
    """Share of the query's keywords that also appear in content."""
    return keyword_overlap(extract_keywords(content, stop_words), extract_keywords(query, stop_words))


def calculate_retrieval_score(
    memory: Memory,
    query: Optional[str],
    weights: Optional[RetrievalWeights] = None,
    now: Optional[datetime] = None,
    time_constant: timedelta = DEFAULT_TIME_CONSTANT,
    stop_words: Optional[Iterable[str]] = None,
) -> float:
    """Score one memory for a query. Pure: no side effects.

    score = recency_weight * exp(-age / time_constant)
          + importance_weight * importance
          + relevance_weight * keyword_overlap(content, query)

    Age is measured from last access, or from creation if never accessed.
    """
    weights = (weights or RetrievalWeights()).normalized()
    now = now or datetime.now()

    reference = memory.last_accessed_at or memory.created_at
    if reference is not None:
        age = max(0.0, (now - reference).total_seconds())
        recency = math.exp(-age / time_constant.total_seconds())
    else:
        recency = 0.0

    importance = memory.importance if memory.importance is not None else 0.5
    relevance = calculate_keyword_overlap(memory.content, query, stop_words)

    return (
        weights.recency_weight * recency
        + weights.importance_weight * importance
        + weights.relevance_weight * relevance
    )


def format_age(age: timedelta) -> str:
    """Human-relative age: "2 weeks ago", "3 days ago", ..., "just now"."""
    seconds = int(age.total_seconds())
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    weeks = days // 7

    for count, unit in ((weeks, "week"), (days, "day"), (hours, "hour"), (minutes, "minute")):
        if count > 0:
            return f"{count} {unit}{'s' if count > 1 else ''} ago"
    return "just now"


def format_memories_for_context(memories: Optional[Sequence[Memory]], now: Optional[datetime] = None) -> str:
    """One numbered line per memory: ``1. [type] content (age)``."""
    if not memories:
        return ""

    now = now or datetime.now()
    lines = []
    for index, memory in enumerate(memories, start=1):
        age = format_age(now - memory.created_at) if memory.created_at else "just now"
        lines.append(f"{index}. [{memory.memory_type or 'memory'}] {memory.content} ({age})")
    return "\n".join(lines)


def inject_memories_into_system(
    existing_system: Optional[str],
    memories: Optional[Sequence[Memory]],
    format: Union[InjectionFormat, str] = InjectionFormat.SYSTEM,
    now: Optional[datetime] = None,
) -> Union[str, Dict[str, Any]]:
    """Add retrieved memories to a request.

    With the "system" format, returns the system prompt with a delimited memory block
    appended. With "assistant_preamble", returns ``{"system": ..., "memory_preamble": ...}``
    and leaves the system prompt untouched.
    """
    system = existing_system or ""
    if not memories:
        return system

    formatted = format_memories_for_context(memories, now=now)

    try:
        format = InjectionFormat(format)
    except ValueError:
        logger.warning("Unknown memory injection format %r; leaving system prompt unchanged", format)
        return system

    if format is InjectionFormat.SYSTEM:
        block = f"<long_term_memory>\n{MEMORY_BLOCK_HEADER}\n{formatted}\n</long_term_memory>"
        return f"{system}\n{block}" if system else block

    return {"system": existing_system, "memory_preamble": formatted}


def extract_query_from_message(message: Any) -> str:
    """Text of a chat message: plain string content or the text blocks of block content."""
    if not message:
        return ""
    if isinstance(message, str):
        return message

    content = message.get("content") if isinstance(message, dict) else getattr(message, "content", None)
    if not content:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                if block["text"]:
                    parts.append(block["text"])
        return " ".join(parts)
    return ""


def merge_unique(pools: Iterable[Iterable[Memory]]) -> List[Memory]:
    """Concatenate pools, keeping the first occurrence of each id."""
    seen: Set[int] = set()
    merged = []
    for pool in pools:
        for memory in pool:
            if memory.id not in seen:
                seen.add(memory.id)
                merged.append(memory)
    return merged


class AccessTracker:
    """Records memory accesses on a background worker.

    Updates are best-effort and at most once; failures are logged, never raised.
    """

    def __init__(self, store: MemoryStore):
        self.store = store
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="longmem-access")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def record(self, memory_ids: Iterable[int]) -> None:
        """Queue access-count increments and return immediately."""
        ids = list(memory_ids)
        if not ids:
            return
        try:
            future = self._executor.submit(self._increment, ids)
        except RuntimeError as e:
            logger.warning("Access tracker is closed, dropping %d updates: %s", len(ids), e)
            return
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _increment(self, memory_ids: List[int]) -> None:
        for memory_id in memory_ids:
            try:
                self.store.increment_access_count(memory_id)
            except Exception as e:
                logger.warning("Failed to increment access count for memory %s: %s", memory_id, e)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued updates. Returns False if some were still pending at timeout."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._executor.shutdown(wait=True)


class MemoryRetriever:
    """Retrieves the memories most worth showing the model for a query."""

    def __init__(
        self,
        store: MemoryStore,
        search: SearchEngine,
        config: Optional[MemoryConfig] = None,
        tracker: Optional[AccessTracker] = None,
    ):
        self.store = store
        self.search = search
        self.config = config or MemoryConfig()
        self.tracker = tracker or AccessTracker(store)
        self.time_constant = timedelta(days=self.config.recency_time_constant_days)
        self.stop_words = frozenset(self.config.stop_words)

    def calculate_retrieval_score(
        self,
        memory: Memory,
        query: Optional[str],
        weights: Optional[RetrievalWeights] = None,
        now: Optional[datetime] = None,
    ) -> float:
        score = calculate_retrieval_score(
            memory,
            query,
            weights,
            now=now or self.store.clock(),
            time_constant=self.time_constant,
            stop_words=self.stop_words,
        )
        if self.config.decay_enabled:
            score *= min(1.0, max(0.0, memory.decay_factor))
        return score

    def retrieve_relevant_memories(
        self,
        query: Optional[str],
        limit: Optional[int] = None,
        session_id: Optional[str] = None,
        include_global: Optional[bool] = None,
        weights: Optional[RetrievalWeights] = None,
        recency_weight: Optional[float] = None,
        importance_weight: Optional[float] = None,
        relevance_weight: Optional[float] = None,
    ) -> List[Memory]:
        """Top memories for a query, best first.

        Args:
            query: Free text, usually the latest user message
            limit: Maximum results (defaults to config.retrieval_limit)
            session_id: Restrict to a session (None = every memory)
            include_global: With a session, also consider global memories
                (defaults to config.include_global)
            weights: Signal weights; the individual *_weight arguments override it

        Returns:
            Up to limit memories with ``score`` set. Never raises; failures yield [].
        """
        limit = self.config.retrieval_limit if limit is None else limit
        if limit <= 0:
            return []
        if include_global is None:
            include_global = self.config.include_global

        weights = weights or RetrievalWeights()
        overrides = {
            name: value
            for name, value in (
                ("recency_weight", recency_weight),
                ("importance_weight", importance_weight),
                ("relevance_weight", relevance_weight),
            )
            if value is not None
        }
        if overrides:
            weights = weights.model_copy(update=overrides)

        try:
            query = query or ""
            filters = SearchFilters(
                session_id=session_id,
                include_global=include_global,
                limit=limit * SEARCH_POOL_FACTOR,
            )
            matches = self.search.search_by_content(query, filters) if query.strip() else []
            recent = self.store.get_recent_memories(
                limit=limit * RECENT_POOL_FACTOR, session_id=session_id, include_global=include_global
            )
            important = self.store.get_memories_by_importance(
                limit=limit * IMPORTANT_POOL_FACTOR, session_id=session_id, include_global=include_global
            )

            now = self.store.clock()
            candidates = merge_unique([matches, recent, important])
            for memory in candidates:
                memory.score = self.calculate_retrieval_score(memory, query, weights, now=now)

            top = sorted(candidates, key=lambda m: m.score, reverse=True)[:limit]
        except Exception:
            logger.exception("Memory retrieval failed for query %r", (query or "")[:100])
            return []

        self.tracker.record(m.id for m in top)
        logger.debug("Retrieved %d of %d candidate memories", len(top), len(candidates))
        return top

    def format_memories_for_context(self, memories: Sequence[Memory]) -> str:
        return format_memories_for_context(memories, now=self.store.clock())

    def inject_memories_into_system(
        self,
        existing_system: Optional[str],
        memories: Sequence[Memory],
        format: Union[InjectionFormat, str, None] = None,
    ) -> Union[str, Dict[str, Any]]:
        return inject_memories_into_system(
            existing_system,
            memories,
            format or self.config.injection_format,
            now=self.store.clock(),
        )

    def get_memory_stats(self, session_id: Optional[str] = None) -> Optional[MemoryStats]:
        """Counts for the whole store or one session; None if they can't be computed."""
        try:
            now = self.store.clock()
            by_type = {memory_type: 0 for memory_type in MemoryType.values()}
            by_type.update(self.store.count_by_column("memory_type", session_id=session_id))
            by_category: Dict[str, int] = {}
            for category, count in self.store.count_by_column("category", session_id=session_id).items():
                # A null category shares the "uncategorized" bucket with one literally named so
                key = category if category is not None else UNCATEGORIZED
                by_category[key] = by_category.get(key, 0) + count
            return MemoryStats(
                total=self.store.count_memories(session_id=session_id),
                by_type=by_type,
                by_category=by_category,
                avg_importance=self.store.average_importance(session_id=session_id),
                recent_count=self.store.count_memories(
                    session_id=session_id, since=now - timedelta(days=self.config.recent_window_days)
                ),
                important_count=self.store.count_memories(
                    session_id=session_id, min_importance=self.config.important_threshold
                ),
                session_id=session_id,
            )
        except Exception:
            logger.exception("Failed to get memory stats")
            return None

    def close(self) -> None:
        self.tracker.close()
