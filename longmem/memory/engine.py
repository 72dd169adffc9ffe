"""Composition root wiring store, search, surprise scoring and retrieval together."""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from longmem.config import MemoryConfig
from longmem.memory.retriever import MemoryRetriever
from longmem.memory.schema import Memory
from longmem.memory.search import SearchEngine
from longmem.memory.store import MemoryStore
from longmem.memory.surprise import SurpriseEngine

logger = logging.getLogger(__name__)

# Recent memories a new candidate is compared against
SURPRISE_CONTEXT_SIZE = 50


class MemoryEngine:
    """Long-term memory for one database.

    Attributes:
        store: Durable records
        search: Full-text index kept consistent with the store
        surprise: Novelty heuristics for new candidates
        retriever: Ranking and prompt formatting
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        db_path: Optional[Union[Path, str]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or MemoryConfig()
        path = db_path if db_path is not None else self.config.resolved_db_path()

        self.store = MemoryStore(path, clock=clock)
        self.search = SearchEngine(self.store, self.config)
        self.surprise = SurpriseEngine(self.config)
        self.retriever = MemoryRetriever(self.store, self.search, self.config)
        logger.debug("Memory engine ready at %s", path)

    def add_memory(
        self,
        content: str,
        memory_type: str = "fact",
        session_id: Optional[str] = None,
        category: Optional[str] = None,
        importance: Optional[float] = None,
        surprise_score: Optional[float] = None,
        user_content: Optional[str] = None,
        source_turn_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Memory:
        """Score a candidate against recent memories and store it.

        Without an explicit importance, importance is the default 0.5 raised to the
        surprise score.

        Raises:
            ValidationError: If content or type is invalid
        """
        if surprise_score is None:
            existing = self.store.get_recent_memories(
                limit=SURPRISE_CONTEXT_SIZE, session_id=session_id, include_global=True
            )
            surprise_score = self.surprise.calculate_surprise(
                content, existing, {"user_content": user_content} if user_content else None
            )
        if importance is None:
            importance = max(0.5, surprise_score)

        return self.store.create_memory(
            content=content,
            memory_type=memory_type,
            session_id=session_id,
            category=category,
            importance=importance,
            surprise_score=surprise_score,
            source_turn_id=source_turn_id,
            metadata=metadata,
        )

    def is_surprising(self, memory: Memory) -> bool:
        return memory.surprise_score >= self.config.surprise_threshold

    def prune(self) -> Dict[str, int]:
        """Apply the configured age and count limits.

        Returns:
            Deletions per rule: ``{"by_age": n, "by_count": m}``
        """
        by_age = 0
        by_count = 0
        if self.config.max_age_days is not None:
            by_age = self.store.prune_old_memories(timedelta(days=self.config.max_age_days))
        if self.config.max_count is not None:
            by_count = self.store.prune_by_count(self.config.max_count)
        return {"by_age": by_age, "by_count": by_count}

    def close(self) -> None:
        self.retriever.close()
        self.store.close()

    def __enter__(self) -> "MemoryEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


_memory_engine: Optional[MemoryEngine] = None


def get_memory_engine() -> MemoryEngine:
    """Get the process-wide MemoryEngine, built from the user's config on first use."""
    global _memory_engine

    if _memory_engine is None:
        from longmem.config import load_config

        _memory_engine = MemoryEngine(load_config())

    return _memory_engine


def set_memory_engine(engine: Optional[MemoryEngine]) -> None:
    """Install an engine as the process-wide instance (None clears it without closing)."""
    global _memory_engine
    _memory_engine = engine


def reset_memory_engine() -> None:
    """Close and forget the process-wide engine."""
    global _memory_engine
    if _memory_engine is not None:
        _memory_engine.close()
        _memory_engine = None
