"""Memory store, full-text search, surprise scoring and retrieval."""

from longmem.memory.engine import MemoryEngine, get_memory_engine, reset_memory_engine, set_memory_engine
from longmem.memory.retriever import (
    AccessTracker,
    InjectionFormat,
    MemoryRetriever,
    MemoryStats,
    RetrievalWeights,
    calculate_keyword_overlap,
    calculate_retrieval_score,
    extract_query_from_message,
    format_age,
    format_memories_for_context,
    inject_memories_into_system,
)
from longmem.memory.schema import Entity, Memory, MemoryType
from longmem.memory.search import SearchEngine, SearchFilters
from longmem.memory.store import MemoryStore
from longmem.memory.surprise import SurpriseEngine, calculate_surprise

__all__ = [
    "AccessTracker",
    "Entity",
    "InjectionFormat",
    "Memory",
    "MemoryEngine",
    "MemoryRetriever",
    "MemoryStats",
    "MemoryStore",
    "MemoryType",
    "RetrievalWeights",
    "SearchEngine",
    "SearchFilters",
    "SurpriseEngine",
    "calculate_keyword_overlap",
    "calculate_retrieval_score",
    "calculate_surprise",
    "extract_query_from_message",
    "format_age",
    "format_memories_for_context",
    "get_memory_engine",
    "inject_memories_into_system",
    "reset_memory_engine",
    "set_memory_engine",
]
