"""Full-text search over memories.

The index is a ``memory_terms`` table holding one row per token occurrence. The store
calls back into the engine inside each write transaction, so search always sees the
latest committed state.
"""

import logging
import math
from collections import defaultdict
from collections.abc import Iterable
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

import duckdb
from pydantic import BaseModel, ConfigDict, field_validator

from longmem.config import MemoryConfig
from longmem.exceptions import NotFoundError
from longmem.memory.query import (
    MAX_DISTINCT_TERMS,
    And,
    Node,
    Not,
    Or,
    Phrase,
    Term,
    make_or,
    parse_query,
    terms_of,
    word_node,
)
from longmem.memory.schema import Memory
from longmem.memory.store import MemoryStore, session_clause
from longmem.memory.text import extract_keywords as _extract_keywords
from longmem.memory.text import tokenize

logger = logging.getLogger(__name__)

# Keywords considered when broadening a query
MAX_EXPANSION_KEYWORDS = 8
_DELETE_CHUNK = 500

# Shorter stems are not used as prefix terms
MIN_STEM_LENGTH = 3

Postings = Dict[str, Dict[int, List[int]]]


class SearchFilters(BaseModel):
    """Search query and filters."""

    model_config = ConfigDict(extra="forbid")

    query: str = ""
    types: Optional[List[str]] = None
    categories: Optional[List[str]] = None
    session_id: Optional[str] = None
    include_global: bool = True
    min_importance: Optional[float] = None
    limit: int = 10

    @field_validator("query", mode="before")
    @classmethod
    def default_query(cls, v):
        return "" if v is None else v

    @field_validator("types", "categories", mode="before")
    @classmethod
    def listify(cls, v):
        if v is None:
            return None
        if isinstance(v, str) or not isinstance(v, Iterable):
            v = [v]
        return [getattr(item, "value", item) for item in v]

    @field_validator("limit", mode="after")
    @classmethod
    def non_negative_limit(cls, v: int) -> int:
        return max(0, v)


def _filters(query: Union[str, SearchFilters, None], overrides: Dict[str, Any]) -> SearchFilters:
    """Resolve a query string or SearchFilters plus keyword overrides into one SearchFilters."""
    if isinstance(query, SearchFilters):
        if overrides:
            return SearchFilters(**{**query.model_dump(), **overrides})
        return query
    if query is not None:
        overrides = {**overrides, "query": query}
    return SearchFilters(**overrides)


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class SearchEngine:
    """Ranked, filtered full-text search kept in step with a MemoryStore."""

    def __init__(self, store: MemoryStore, config: Optional[MemoryConfig] = None):
        self.store = store
        self.config = config or MemoryConfig()
        self.stop_words = frozenset(self.config.stop_words)
        self.synonyms = self._build_synonyms(self.config.synonyms)

        created = self._init_schema()
        self.has_stemmer = self._load_stemmer()
        store.add_indexer(self)
        if created and store.count_memories() > 0:
            self.rebuild_index()

    def _load_stemmer(self) -> bool:
        """Load DuckDB's full-text extension, which provides the Snowball ``stem`` function."""
        try:
            with self.store.connection() as conn:
                conn.execute("INSTALL fts; LOAD fts;")
        except duckdb.Error as e:
            logger.warning("DuckDB fts extension unavailable, search expansion will skip stems: %s", e)
            return False
        return True

    def stem_word(self, word: str) -> str:
        """English Snowball stem of word; the word itself when no stemmer is loaded."""
        if not self.has_stemmer or not word:
            return word
        with self.store.connection() as conn:
            row = conn.execute("SELECT stem(?, 'english')", [word]).fetchone()
        return row[0] if row and row[0] else word

    @staticmethod
    def _build_synonyms(groups: Dict[str, List[str]]) -> Dict[str, Set[str]]:
        """Make synonym groups symmetric: every member maps to all the others."""
        table: Dict[str, Set[str]] = defaultdict(set)
        for head, alternatives in groups.items():
            members = {head.lower(), *(a.lower() for a in alternatives)}
            for member in members:
                table[member] |= members - {member}
        return dict(table)

    def _init_schema(self) -> bool:
        with self.store.transaction() as conn:
            exists = conn.execute(
                "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = 'memory_terms'"
            ).fetchone()[0]
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memory_terms (
                    memory_id BIGINT NOT NULL,
                    term VARCHAR NOT NULL,
                    position INTEGER NOT NULL
                )
            """)
        return not exists

    # ── Index maintenance ────────────────────────────────────────────

    def index_memory(self, conn: duckdb.DuckDBPyConnection, memory: Memory) -> None:
        conn.execute("DELETE FROM memory_terms WHERE memory_id = ?", [memory.id])
        rows = [(memory.id, token, position) for position, token in enumerate(tokenize(memory.content))]
        if rows:
            conn.executemany("INSERT INTO memory_terms VALUES (?, ?, ?)", rows)

    def remove_memories(self, conn: duckdb.DuckDBPyConnection, memory_ids: Sequence[int]) -> None:
        ids = list(memory_ids)
        for start in range(0, len(ids), _DELETE_CHUNK):
            chunk = ids[start : start + _DELETE_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            conn.execute(f"DELETE FROM memory_terms WHERE memory_id IN ({placeholders})", chunk)

    def rebuild_index(self) -> int:
        """Regenerate the term index from the store.

        Returns:
            Number of memories indexed
        """
        count = 0
        with self.store.transaction() as conn:
            conn.execute("DELETE FROM memory_terms")
            for memory in self.store.iter_memories():
                self.index_memory(conn, memory)
                count += 1
        logger.info("Rebuilt search index for %d memories", count)
        return count

    # ── Query evaluation ─────────────────────────────────────────────

    def _postings(self, conn: duckdb.DuckDBPyConnection, terms: Set[Term]) -> Postings:
        postings: Postings = {}
        exact = sorted(t.text for t in terms if not t.prefix)
        if exact:
            placeholders = ", ".join("?" for _ in exact)
            rows = conn.execute(
                f"SELECT term, memory_id, position FROM memory_terms WHERE term IN ({placeholders})", exact
            ).fetchall()
            for text in exact:
                postings[text] = {}
            for term, memory_id, position in rows:
                postings[term].setdefault(memory_id, []).append(position)

        for t in terms:
            if not t.prefix:
                continue
            rows = conn.execute(
                "SELECT memory_id, position FROM memory_terms WHERE starts_with(term, ?)", [t.text]
            ).fetchall()
            hits: Dict[int, List[int]] = {}
            for memory_id, position in rows:
                hits.setdefault(memory_id, []).append(position)
            postings[t.key] = hits
        return postings

    def _evaluate(self, node: Node, postings: Postings) -> Set[int]:
        if isinstance(node, Term):
            return set(postings.get(node.key, {}))
        if isinstance(node, Phrase):
            lists = [postings.get(t, {}) for t in node.terms]
            candidates = set(lists[0]).intersection(*lists[1:])
            return {mid for mid in candidates if self._has_phrase(mid, lists)}
        if isinstance(node, And):
            results = [self._evaluate(child, postings) for child in node.children]
            return set.intersection(*results)
        if isinstance(node, Or):
            return set().union(*(self._evaluate(child, postings) for child in node.children))
        if isinstance(node, Not):
            return self._evaluate(node.positive, postings) - self._evaluate(node.negative, postings)
        raise TypeError(f"Unknown query node {node!r}")

    @staticmethod
    def _has_phrase(memory_id: int, lists: List[Dict[int, List[int]]]) -> bool:
        following = [set(plist[memory_id]) for plist in lists[1:]]
        for start in lists[0][memory_id]:
            if all(start + offset + 1 in positions for offset, positions in enumerate(following)):
                return True
        return False

    def _filter_sql(self, filters: SearchFilters) -> Tuple[List[str], List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if filters.types:
            clauses.append(f"memory_type IN ({', '.join('?' for _ in filters.types)})")
            params.extend(filters.types)
        if filters.categories:
            clauses.append(f"category IN ({', '.join('?' for _ in filters.categories)})")
            params.extend(filters.categories)
        clause, session_params = session_clause(filters.session_id, filters.include_global)
        if clause:
            clauses.append(clause)
            params.extend(session_params)
        if filters.min_importance is not None:
            clauses.append("importance >= ?")
            params.append(filters.min_importance)
        return clauses, params

    def _matches(self, node: Optional[Node], filters: SearchFilters) -> List[Tuple[int, float]]:
        """Ids matching node and filters with their rank, best first."""
        if node is None:
            return []

        with self.store.connection() as conn:
            postings = self._postings(conn, terms_of(node))
            matched = self._evaluate(node, postings)
            if not matched:
                return []

            clauses, params = self._filter_sql(filters)
            clauses.insert(0, "id IN (SELECT UNNEST(?::BIGINT[]))")
            params.insert(0, sorted(matched))
            rows = conn.execute(
                f"SELECT id, created_at FROM memories WHERE {' AND '.join(clauses)}", params
            ).fetchall()
            total = conn.execute("SELECT COUNT(DISTINCT memory_id) FROM memory_terms").fetchone()[0]

        ranked_terms = terms_of(node, include_negative=False)
        scored = []
        for memory_id, created_at in rows:
            score = 0.0
            for t in ranked_terms:
                plist = postings.get(t.key, {})
                positions = plist.get(memory_id)
                if positions:
                    score += len(positions) * math.log(1 + total / len(plist))
            scored.append((score, created_at, memory_id))

        scored.sort(key=lambda item: (item[0], item[1], item[2]), reverse=True)
        return [(memory_id, score) for score, _, memory_id in scored]

    def _load(self, ranked: List[Tuple[int, float]]) -> List[Memory]:
        memories = self.store.get_memories_by_ids([memory_id for memory_id, _ in ranked])
        scores = dict(ranked)
        for memory in memories:
            memory.score = scores[memory.id]
        return memories

    # ── Public API ───────────────────────────────────────────────────

    def search_memories(self, query: Union[str, SearchFilters, None] = None, **kwargs: Any) -> List[Memory]:
        """Ranked full-text search.

        Accepts a query string or a SearchFilters; filter fields given as keyword
        arguments override it. Malformed queries degrade to plain term matching; an
        empty query matches nothing.

        Returns:
            Memories by match quality, newest first among ties, with ``score`` set
        """
        filters = _filters(query, kwargs)
        if filters.limit == 0:
            return []
        ranked = self._matches(parse_query(filters.query), filters)
        return self._load(ranked[: filters.limit])

    def count_search_results(self, query: Union[str, SearchFilters, None] = None, **kwargs: Any) -> int:
        """Number of memories search_memories would match, ignoring the limit."""
        filters = _filters(query, kwargs)
        return len(self._matches(parse_query(filters.query), filters))

    def search_with_expansion(self, query: Union[str, SearchFilters, None] = None, **kwargs: Any) -> List[Memory]:
        """Search, then broaden with stems, prefixes and synonyms.

        Plain results come first, followed by hits found only through expansion, so the
        result is never smaller than search_memories for the same filters.
        """
        filters = _filters(query, kwargs)
        plain = self.search_memories(filters)
        if len(plain) >= filters.limit:
            return plain

        expanded = self._expand(filters.query)
        if expanded is None:
            return plain

        seen = {m.id for m in plain}
        extra = [
            (memory_id, score)
            for memory_id, score in self._matches(expanded, filters)
            if memory_id not in seen
        ]
        logger.debug("Expansion of %r added %d candidates", filters.query, len(extra))
        return plain + self._load(extra[: filters.limit - len(plain)])

    def _expand(self, query: str) -> Optional[Node]:
        words = [t for t in dict.fromkeys(tokenize(query)) if len(t) > 1 and t not in self.stop_words]
        alternatives: List[Node] = []
        for keyword in words[:MAX_EXPANSION_KEYWORDS]:
            alternatives.append(Term(keyword))
            stem = self.stem_word(keyword)
            if len(stem) >= MIN_STEM_LENGTH:
                alternatives.append(Term(stem, prefix=True))
            for synonym in sorted(self.synonyms.get(keyword, ())):
                node = word_node(synonym)
                if node is not None:
                    alternatives.append(node)
        node = make_or(alternatives)
        if len(terms_of(node)) > MAX_DISTINCT_TERMS:
            node = make_or(alternatives[:MAX_DISTINCT_TERMS])
        return node

    def search_by_content(self, content: str, filters: Optional[SearchFilters] = None, **kwargs: Any) -> List[Memory]:
        """Find memories sharing any keyword with content."""
        filters = _filters(filters, kwargs)
        if filters.limit == 0:
            return []
        keywords = self.extract_keywords(content)[:MAX_DISTINCT_TERMS]
        node = make_or(word_node(k) for k in keywords)
        return self._load(self._matches(node, filters)[: filters.limit])

    def extract_keywords(self, text: Optional[str]) -> List[str]:
        """Keywords of text using the configured stop words."""
        return _extract_keywords(text, self.stop_words)

    def find_similar(self, memory_id: int, limit: int = 5) -> List[Memory]:
        """Memories most similar to memory_id by keyword-set Jaccard similarity.

        The reference memory is excluded and memories with no shared keyword are
        omitted.

        Raises:
            NotFoundError: If memory_id doesn't exist
        """
        reference = self.store.get_memory(memory_id)
        if reference is None:
            raise NotFoundError(memory_id)
        if limit <= 0:
            return []

        keywords = set(self.extract_keywords(reference.content))
        scored = []
        for memory in self.store.iter_memories():
            if memory.id == memory_id:
                continue
            similarity = jaccard(keywords, set(self.extract_keywords(memory.content)))
            if similarity > 0:
                memory.score = similarity
                scored.append(memory)

        scored.sort(key=lambda m: (m.score, m.created_at, m.id), reverse=True)
        return scored[:limit]
