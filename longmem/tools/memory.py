"""Memory tools for an LLM tool-calling loop.

Every tool returns ``{"ok": bool, "content": <JSON string>, "metadata": {...}}`` and
never raises: failures come back as ``ok=False`` with an error message.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from longmem.memory.retriever import format_age
from longmem.memory.schema import Memory, MemoryType

from . import tool, tool_schema

logger = logging.getLogger(__name__)

MAX_SEARCH_LIMIT = 50
PREVIEW_COUNT = 5
PREVIEW_LENGTH = 100

MEMORY_TOOL_NAMES = ("memory_search", "memory_add", "memory_forget", "memory_stats")


def _get_engine():
    from longmem.memory.engine import get_memory_engine

    return get_memory_engine()


def _result(ok: bool, payload: Dict[str, Any], **metadata: Any) -> Dict[str, Any]:
    return {"ok": ok, "content": json.dumps(payload, indent=2, default=str), "metadata": metadata}


def _error(error: str, message: Optional[str] = None) -> Dict[str, Any]:
    payload = {"error": error}
    if message:
        payload["message"] = message
    return _result(False, payload)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _age(engine, memory: Memory) -> str:
    return format_age(engine.store.clock() - memory.created_at) if memory.created_at else "just now"


def _search_filters(query: str, session_id: Optional[str], **extra: Any) -> Dict[str, Any]:
    return {"query": query, "session_id": session_id, "include_global": True, **extra}


@tool
def memory_search(
    query: str,
    limit: int = 10,
    type: Optional[str] = None,
    category: Optional[str] = None,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Search long-term memories for relevant facts and information from previous conversations.

    Args:
        query: Search query to find relevant memories
        limit: Maximum number of results to return (default: 10)
        type: Filter by memory type (fact, preference, decision, entity, relationship)
        category: Filter by category (code, user, project, general)
        session_id: Current session; its memories and global ones are searched

    Returns:
        Tool result with the matching memories
    """
    if not query or not isinstance(query, str):
        return _error("Query parameter is required and must be a string")
    if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
        return _error("Limit must be a positive integer")
    if type is not None and type not in MemoryType.values():
        return _error(f"Invalid type. Must be one of: {', '.join(MemoryType.values())}")

    try:
        engine = _get_engine()
        results = engine.search.search_memories(
            **_search_filters(
                query,
                session_id,
                limit=min(limit, MAX_SEARCH_LIMIT),
                types=[type] if type else None,
                categories=[category] if category else None,
            )
        )
        memories = [
            {
                "index": index,
                "id": m.id,
                "type": m.memory_type,
                "content": m.content,
                "importance": m.importance,
                "category": m.category,
                "age": _age(engine, m),
            }
            for index, m in enumerate(results, start=1)
        ]
        return _result(
            True,
            {"query": query, "result_count": len(results), "memories": memories},
            result_count=len(results),
        )
    except Exception as e:
        logger.error("Memory search failed for %r: %s", query, e)
        return _error("Memory search failed", str(e))


@tool
def memory_add(
    content: str,
    type: str = "fact",
    category: str = "general",
    importance: float = 0.5,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Manually add a fact or piece of information to long-term memory.

    Args:
        content: The fact or information to remember
        type: Type of memory (fact, preference, decision, entity, relationship)
        category: Category: code, user, project, or general
        importance: Importance score between 0 and 1 (default: 0.5)
        session_id: Session to attach the memory to (omit for a global memory)

    Returns:
        Tool result with the stored memory
    """
    if not content or not isinstance(content, str) or not content.strip():
        return _error("Content parameter is required and must be a string")
    if type not in MemoryType.values():
        return _error(f"Invalid type. Must be one of: {', '.join(MemoryType.values())}")
    if not _is_number(importance) or not 0 <= importance <= 1:
        return _error("Importance must be a number between 0 and 1")

    try:
        engine = _get_engine()
        memory = engine.store.create_memory(
            content=content,
            memory_type=type,
            category=category,
            session_id=session_id,
            importance=importance,
            surprise_score=0.5,  # manual additions get moderate surprise
            metadata={
                "manual": True,
                "added_by": "user",
                "timestamp": engine.store.clock().isoformat(),
            },
        )
        return _result(
            True,
            {
                "message": "Memory stored successfully",
                "memory_id": memory.id,
                "memory": {
                    "id": memory.id,
                    "type": memory.memory_type,
                    "content": memory.content,
                    "importance": memory.importance,
                    "category": memory.category,
                },
            },
            memory_id=memory.id,
        )
    except Exception as e:
        logger.error("Memory add failed: %s", e)
        return _error("Failed to add memory", str(e))


@tool
def memory_forget(query: str, confirm: bool = False, session_id: Optional[str] = None) -> Dict[str, Any]:
    """Remove memories matching a search query.

    Args:
        query: Query to match memories to delete
        confirm: Set to true to confirm deletion (required for safety)
        session_id: Current session; its memories and global ones are matched

    Returns:
        Tool result with a preview (unconfirmed) or the number deleted
    """
    if not query or not isinstance(query, str):
        return _error("Query parameter is required and must be a string")

    try:
        engine = _get_engine()
        filters = _search_filters(query, session_id)
        match_count = engine.search.count_search_results(**filters)

        if match_count == 0:
            return _result(True, {"message": "No memories found matching the query", "query": query}, deleted_count=0)

        if not confirm:
            preview = [
                {
                    "index": index,
                    "id": m.id,
                    "type": m.memory_type,
                    "content": m.content[:PREVIEW_LENGTH] + ("..." if len(m.content) > PREVIEW_LENGTH else ""),
                    "age": _age(engine, m),
                }
                for index, m in enumerate(
                    engine.search.search_memories(**filters, limit=PREVIEW_COUNT), start=1
                )
            ]
            return _result(
                False,
                {
                    "message": "Found memories matching query. Set confirm=true to delete them.",
                    "query": query,
                    "match_count": match_count,
                    "preview": preview,
                    "warning": "This action cannot be undone",
                },
                requires_confirmation=True,
                match_count=match_count,
            )

        matches = engine.search.search_memories(**filters, limit=match_count)
        deleted = sum(1 for m in matches if engine.store.delete_memory(m.id))
        logger.info("Forgot %d memories matching %r", deleted, query)
        return _result(
            True,
            {"message": f"Deleted {deleted} memories", "query": query, "deleted_count": deleted},
            deleted_count=deleted,
        )
    except Exception as e:
        logger.error("Memory forget failed for %r: %s", query, e)
        return _error("Failed to delete memories", str(e))


@tool
def memory_stats(session_id: Optional[str] = None) -> Dict[str, Any]:
    """Get statistics about stored memories.

    Args:
        session_id: Restrict the statistics to one session (omit for all memories)

    Returns:
        Tool result with counts by type and category
    """
    try:
        stats = _get_engine().retriever.get_memory_stats(session_id)
        if stats is None:
            return _error("Failed to retrieve memory statistics")

        payload = stats.model_dump()
        payload["session_id"] = stats.session_id or "global"
        return _result(True, payload, total=stats.total)
    except Exception as e:
        logger.error("Memory stats failed: %s", e)
        return _error("Failed to get statistics", str(e))


def get_tool_schemas() -> List[Dict[str, Any]]:
    """Tool definitions for the memory tools, ready to hand to a model."""
    schemas = [tool_schema(name) for name in MEMORY_TOOL_NAMES]
    for schema in schemas:
        properties = schema["input_schema"]["properties"]
        if "type" in properties:
            properties["type"]["enum"] = MemoryType.values()
        if schema["name"] == "memory_search":
            properties["limit"].update(minimum=1, maximum=MAX_SEARCH_LIMIT)
        if "importance" in properties:
            properties["importance"].update(minimum=0, maximum=1)
    return schemas
