"""Tests for full-text search."""

import time

import pytest

from longmem.exceptions import NotFoundError
from longmem.memory.query import And, Not, Or, Phrase, Term, parse_query
from longmem.memory.search import SearchEngine, SearchFilters
from longmem.memory.store import MemoryStore


@pytest.fixture
def search(seeded_engine):
    return seeded_engine.search


@pytest.fixture
def store(seeded_engine):
    return seeded_engine.store


class TestQueryParsing:
    """Tests for the query language parser."""

    def test_single_term(self):
        assert parse_query("Python") == Term("python")

    def test_implicit_and(self):
        assert parse_query("machine learning") == And((Term("machine"), Term("learning")))

    def test_operators_and_grouping(self):
        node = parse_query("(Python OR JavaScript) AND framework")
        assert node == And((Or((Term("python"), Term("javascript"))), Term("framework")))

    def test_not(self):
        assert parse_query("auth NOT jwt") == Not(Term("auth"), Term("jwt"))

    def test_lowercase_operators_are_terms(self):
        assert parse_query("python or rust") == And((Term("python"), Term("or"), Term("rust")))

    def test_quoted_phrase(self):
        assert parse_query('"machine learning"') == Phrase(("machine", "learning"))

    def test_punctuated_word_becomes_phrase(self):
        assert parse_query("Express.js") == Phrase(("express", "js"))

    def test_prefix(self):
        assert parse_query("auth*") == Term("auth", prefix=True)

    def test_repeated_terms_collapse(self):
        assert parse_query("Python " * 100) == Term("python")

    @pytest.mark.parametrize(
        "query",
        ['test "quoted', "(Python OR", "Python)", "OR AND NOT", "()", ")(", "NOT python", "(" * 50 + "x" + ")" * 50],
    )
    def test_malformed_queries_never_raise(self, query):
        parse_query(query)

    def test_malformed_query_falls_back_to_terms(self):
        assert parse_query('(python "machine') == And((Term("python"), Term("machine")))

    def test_over_wide_query_matches_any_term(self):
        node = parse_query(" OR ".join([f"zzword{i}" for i in range(40)] + ["python"]))

        assert isinstance(node, Or)
        assert len(node.children) == 41
        assert node.children[-1] == Term("python")

    def test_over_wide_query_drops_negated_terms(self):
        node = parse_query(" ".join(f"w{i}" for i in range(40)) + " NOT python")

        assert isinstance(node, Or)
        assert Term("python") not in node.children

    @pytest.mark.parametrize("query", ["", "   ", '""', "()"])
    def test_nothing_searchable(self, query):
        assert parse_query(query) is None


class TestSearchMemories:
    """Tests for SearchEngine.search_memories."""

    def test_find_by_keyword(self, search):
        results = search.search_memories(query="Python")

        assert len(results) > 0
        assert "python" in results[0].content.lower()
        assert results[0].score > 0

    def test_case_insensitive(self, search):
        lower = search.search_memories(query="python")
        upper = search.search_memories(query="PYTHON")
        mixed = search.search_memories(query="PyThOn")

        assert len(lower) > 0
        assert len(lower) == len(upper) == len(mixed)

    def test_partial_word_in_punctuated_token(self, search):
        results = search.search_memories(query="express")
        assert any("express" in m.content.lower() for m in results)

    def test_implicit_and(self, search):
        results = search.search_memories(query="machine learning")
        assert len(results) == 1

    def test_phrase_requires_adjacency(self, search):
        assert len(search.search_memories(query='"machine learning"')) == 1
        assert search.search_memories(query='"learning machine"') == []

    def test_and_operator(self, search):
        results = search.search_memories(query="Python AND machine")
        assert len(results) == 1
        assert "python" in results[0].content.lower()

    def test_or_operator(self, search):
        results = search.search_memories(query="Python OR SQLite")
        assert len(results) == 2

    def test_not_operator(self, search):
        results = search.search_memories(query="authentication NOT JWT")
        assert [m.memory_type for m in results] == ["entity"]

    def test_prefix_operator(self, search):
        assert len(search.search_memories(query="authent*")) == 2

    def test_complex_query(self, search):
        results = search.search_memories(query="(Python OR TypeScript) AND framework")
        assert [m.category for m in results] == ["project"]

    def test_filter_by_type(self, search):
        results = search.search_memories(query="project", types=["fact"])
        assert len(results) > 0
        assert all(m.memory_type == "fact" for m in results)

    def test_filter_by_category(self, search):
        results = search.search_memories(query="project", categories=["project"])
        assert len(results) > 0
        assert all(m.category == "project" for m in results)

    def test_filter_by_session(self, search, store):
        store.create_memory("Session-specific memory about testing", "fact", session_id="test-session-123")
        store.create_memory("Other session testing notes", "fact", session_id="other")
        store.create_memory("Global testing conventions", "fact")

        with_global = search.search_memories(query="testing", session_id="test-session-123")
        session_only = search.search_memories(query="testing", session_id="test-session-123", include_global=False)

        assert {m.session_id for m in with_global} == {"test-session-123", None}
        assert [m.session_id for m in session_only] == ["test-session-123"]

    def test_filter_by_min_importance(self, search):
        results = search.search_memories(query="uses OR authentication", min_importance=0.7)
        assert len(results) > 0
        assert all(m.importance >= 0.7 for m in results)

    def test_limit(self, search):
        assert len(search.search_memories(query="uses OR authentication OR python", limit=2)) == 2
        assert search.search_memories(query="python", limit=0) == []

    def test_filters_object(self, search):
        filters = SearchFilters(query="project", types="fact", limit=5)
        assert len(search.search_memories(filters)) == 1

    def test_positional_query(self, search):
        assert [m.id for m in search.search_memories("python")] == [m.id for m in search.search_memories(query="python")]
        assert search.count_search_results("uses OR authentication") == 4
        assert len(search.search_memories("python", types=["decision"])) == 0

    def test_filters_object_with_overrides(self, search):
        filters = SearchFilters(query="uses OR authentication")
        assert len(search.search_memories(filters, limit=1)) == 1

    def test_wide_or_query(self, search):
        query = " OR ".join([f"zzword{i}" for i in range(40)] + ["python"])

        results = search.search_memories(query=query)

        assert len(results) == 1
        assert "python" in results[0].content.lower()

    def test_no_matches(self, search):
        assert search.search_memories(query="nonexistent-keyword-xyz") == []

    def test_empty_query_matches_nothing(self, search):
        assert search.search_memories(query="") == []
        assert search.search_memories(query="   ") == []

    @pytest.mark.parametrize("query", ['test "quoted" (parens)', '"unbalanced', "(Python OR", "AND", "*"])
    def test_malformed_queries_do_not_raise(self, search, query):
        assert isinstance(search.search_memories(query=query), list)

    def test_unbalanced_quote_still_matches_terms(self, search):
        results = search.search_memories(query='"Python')
        assert len(results) == 1

    def test_stop_word_query(self, search):
        assert isinstance(search.search_memories(query="the a an is are"), list)

    def test_long_repeated_query(self, search):
        start = time.monotonic()
        results = search.search_memories(query="Python " * 1000)
        assert len(results) == len(search.search_memories(query="Python"))
        assert time.monotonic() - start < 5

    def test_special_characters(self, search, store):
        store.create_memory("Uses @nestjs/core package version ^9.0.0", "fact", category="project")
        assert len(search.search_memories(query="nestjs")) > 0
        assert len(search.search_memories(query="@nestjs/core")) > 0

    def test_numeric_query(self, search, store):
        store.create_memory("Server runs on port 3000", "fact")
        assert len(search.search_memories(query="3000")) > 0

    def test_unicode_content(self, search, store):
        store.create_memory("User's favorite emoji is 🚀 for deployment", "preference")
        assert len(search.search_memories(query="emoji")) > 0

    def test_more_occurrences_rank_higher(self, search, store):
        once = store.create_memory("Rust is fast", "fact")
        twice = store.create_memory("Rust code and more Rust code", "fact")

        results = search.search_memories(query="rust")

        assert [m.id for m in results] == [twice.id, once.id]

    def test_ties_break_newest_first(self, search, store, clock):
        older = store.create_memory("Kotlin notes", "fact")
        clock.advance(minutes=5)
        newer = store.create_memory("Kotlin notes", "fact")

        assert [m.id for m in search.search_memories(query="kotlin")] == [newer.id, older.id]


class TestIndexConsistency:
    """Tests that the index follows every store write immediately."""

    def test_create_is_visible(self, search, store):
        store.create_memory("Zebra crossing detector", "fact")
        assert len(search.search_memories(query="zebra")) == 1

    def test_update_reindexes(self, search, store):
        memory = store.create_memory("Uses Flask for the API", "fact")

        store.update_memory(memory.id, content="Uses FastAPI for the API")

        assert search.search_memories(query="flask") == []
        assert [m.id for m in search.search_memories(query="fastapi")] == [memory.id]

    def test_delete_removes(self, search, store):
        memory = store.create_memory("Zebra crossing detector", "fact")
        store.delete_memory(memory.id)
        assert search.search_memories(query="zebra") == []

    def test_prune_removes(self, search, store):
        store.prune_by_count(1)
        assert search.count_search_results(query="python OR sqlite OR express OR usercontroller") <= 1

    def test_rebuild_index(self, search, store):
        with store.transaction() as conn:
            conn.execute("DELETE FROM memory_terms")
        assert search.search_memories(query="python") == []

        assert search.rebuild_index() == 5
        assert len(search.search_memories(query="python")) == 1

    def test_attach_to_existing_database(self, temp_dir):
        """Test that an engine attached to an unindexed database builds its index."""
        db_path = temp_dir / "memories.duckdb"
        with MemoryStore(db_path) as plain_store:
            plain_store.create_memory("Legacy memory about Haskell", "fact")

        with MemoryStore(db_path) as reopened:
            engine = SearchEngine(reopened)
            assert len(engine.search_memories(query="haskell")) == 1


class TestCountSearchResults:
    """Tests for SearchEngine.count_search_results."""

    def test_counts_matches(self, search):
        count = search.count_search_results(query="project")
        assert isinstance(count, int)
        assert count > 0

    def test_no_matches(self, search):
        assert search.count_search_results(query="nonexistent-xyz") == 0

    def test_filters_never_increase_count(self, search):
        total = search.count_search_results(query="uses OR authentication")
        facts = search.count_search_results(query="uses OR authentication", types=["fact"])
        important = search.count_search_results(query="uses OR authentication", min_importance=0.8)

        assert facts <= total
        assert important <= total

    def test_ignores_limit(self, search):
        assert search.count_search_results(query="uses OR authentication", limit=1) == 4


class TestSearchWithExpansion:
    """Tests for broadened search."""

    def test_superset_of_plain_search(self, search):
        plain = search.search_memories(query="database")
        expanded = search.search_with_expansion(query="database")

        assert len(expanded) >= len(plain)
        assert [m.id for m in expanded[: len(plain)]] == [m.id for m in plain]

    def test_finds_related_terms(self, search):
        assert len(search.search_with_expansion(query="authentication")) > 0

    def test_stemming(self, search):
        if not search.has_stemmer:
            pytest.skip("DuckDB fts extension not available")
        assert search.search_memories(query="authenticating") == []
        results = search.search_with_expansion(query="authenticating")
        assert len(results) == 2

    def test_synonyms(self, search):
        assert search.search_memories(query="db") == []
        results = search.search_with_expansion(query="db")
        assert any("sqlite" in m.content.lower() for m in results)

    def test_multi_word_query(self, search):
        assert isinstance(search.search_with_expansion(query="user authentication system"), list)

    def test_respects_limit_and_filters(self, search):
        results = search.search_with_expansion(query="uses", limit=1, types=["fact"])
        assert len(results) == 1
        assert results[0].memory_type == "fact"

    def test_stem_word(self, search):
        if not search.has_stemmer:
            pytest.skip("DuckDB fts extension not available")
        assert "authentication".startswith(search.stem_word("authenticating"))
        assert search.stem_word("libraries") == "librari"
        assert search.stem_word("db") == "db"

    def test_stem_word_without_stemmer(self, search, monkeypatch):
        monkeypatch.setattr(search, "has_stemmer", False)
        assert search.stem_word("authenticating") == "authenticating"

    def test_positional_query(self, search):
        assert [m.id for m in search.search_with_expansion("database")] == [
            m.id for m in search.search_with_expansion(query="database")
        ]


class TestSearchByContent:
    """Tests for content-similarity search."""

    def test_finds_similar_content(self, search):
        results = search.search_by_content("Python programming language")
        assert len(results) > 0
        assert any("python" in m.content.lower() for m in results)

    def test_empty_content(self, search):
        assert search.search_by_content("") == []

    def test_filters(self, search):
        results = search.search_by_content("project database framework", types=["fact"], categories=["project"])
        assert len(results) > 0
        assert all(m.memory_type == "fact" and m.category == "project" for m in results)


class TestExtractKeywords:
    """Tests for keyword extraction."""

    def test_meaningful_keywords(self, search):
        keywords = search.extract_keywords("User prefers Python for data processing")
        assert "python" in keywords
        assert "data" in keywords

    def test_stop_words_and_short_words_removed(self, search):
        keywords = search.extract_keywords("The user is using the database")
        assert "the" not in keywords
        assert "is" not in keywords
        assert "database" in keywords

    def test_empty_text(self, search):
        assert search.extract_keywords("") == []

    def test_technical_content(self, search):
        keywords = search.extract_keywords("Using Express.js with TypeScript and JWT authentication")
        assert "expressjs" in keywords
        assert "typescript" in keywords

    def test_deduplicates(self, search):
        assert search.extract_keywords("Python python PYTHON code") == ["python", "code"]


class TestFindSimilar:
    """Tests for SearchEngine.find_similar."""

    def test_excludes_reference(self, search, store):
        reference = store.create_memory("User likes JavaScript frameworks like React and Vue", "preference")

        similar = search.find_similar(reference.id, limit=3)

        assert all(m.id != reference.id for m in similar)

    def test_ranks_by_overlap(self, search, store):
        reference = store.create_memory("User authentication uses JWT tokens", "fact")

        similar = search.find_similar(reference.id, limit=5)

        assert len(similar) > 0
        assert "tokens" in similar[0].content
        assert all(0 < m.score <= 1 for m in similar)
        assert [m.score for m in similar] == sorted((m.score for m in similar), reverse=True)

    def test_no_similar_memories(self, search, store):
        unique = store.create_memory("Quantum computing with superconducting qubits", "fact")
        assert search.find_similar(unique.id, limit=5) == []

    def test_unknown_id(self, search):
        with pytest.raises(NotFoundError):
            search.find_similar(99999)
