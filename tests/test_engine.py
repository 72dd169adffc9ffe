"""Tests for the engine that wires the memory components together."""

import pytest

from longmem.config import MemoryConfig
from longmem.exceptions import ValidationError
from longmem.memory.engine import MemoryEngine, get_memory_engine, reset_memory_engine, set_memory_engine
from longmem.memory.schema import Memory


class TestAddMemory:
    """Tests for MemoryEngine.add_memory."""

    def test_scores_surprise(self, engine):
        memory = engine.add_memory("User prefers Python", memory_type="preference")

        assert memory.surprise_score == pytest.approx(0.3195)
        assert memory.importance == 0.5
        assert engine.is_surprising(memory)

    def test_surprise_raises_importance(self, seeded_engine):
        memory = seeded_engine.add_memory(
            "User doesn't like Python anymore",
            memory_type="preference",
            user_content="IMPORTANT: I NEVER use Python now!",
        )

        assert memory.surprise_score > 0.5
        assert memory.importance == memory.surprise_score

    def test_explicit_importance_kept(self, engine):
        memory = engine.add_memory("Coffee order is oat latte", importance=0.2)
        assert memory.importance == 0.2

    def test_explicit_surprise_kept(self, engine):
        memory = engine.add_memory("Coffee order is oat latte", surprise_score=0.05)

        assert memory.surprise_score == 0.05
        assert memory.importance == 0.5
        assert not engine.is_surprising(memory)

    def test_repeat_is_less_surprising(self, engine):
        first = engine.add_memory("Database uses PostgreSQL with pgvector")
        second = engine.add_memory("Database uses PostgreSQL with pgvector")

        assert second.surprise_score < first.surprise_score

    def test_indexed_for_search(self, engine):
        memory = engine.add_memory("Release train leaves every Thursday", session_id="s1", category="project")

        results = engine.search.search_memories("thursday")

        assert [m.id for m in results] == [memory.id]
        assert results[0].session_id == "s1"

    def test_invalid_content(self, engine):
        with pytest.raises(ValidationError):
            engine.add_memory("   ")

    def test_invalid_type(self, engine):
        with pytest.raises(ValidationError):
            engine.add_memory("Something", memory_type="opinion")


class TestIsSurprising:
    """Tests for the surprise threshold."""

    @pytest.mark.parametrize("score,expected", [(0.3, True), (0.9, True), (0.29, False), (0.0, False)])
    def test_default_threshold(self, engine, score, expected):
        memory = Memory(id=1, content="x", memory_type="fact", surprise_score=score)
        assert engine.is_surprising(memory) is expected

    def test_configured_threshold(self, clock):
        with MemoryEngine(MemoryConfig(surprise_threshold=0.8), db_path=":memory:", clock=clock) as engine:
            memory = Memory(id=1, content="x", memory_type="fact", surprise_score=0.5)
            assert not engine.is_surprising(memory)


class TestPrune:
    """Tests for MemoryEngine.prune."""

    def test_by_age(self, engine, clock):
        engine.store.create_memory("Ancient fact", "fact")
        clock.advance(days=100)
        engine.store.create_memory("Fresh fact", "fact")

        assert engine.prune() == {"by_age": 1, "by_count": 0}
        assert engine.store.count_memories() == 1
        assert engine.search.search_memories("ancient") == []

    def test_by_count(self, clock):
        config = MemoryConfig(max_age_days=None, max_count=2)
        with MemoryEngine(config, db_path=":memory:", clock=clock) as engine:
            for i in range(5):
                engine.store.create_memory(f"Fact {i}", "fact", importance=i / 10)

            assert engine.prune() == {"by_age": 0, "by_count": 3}
            assert engine.store.count_memories() == 2

    def test_nothing_to_prune(self, seeded_engine):
        assert seeded_engine.prune() == {"by_age": 0, "by_count": 0}


class TestPersistence:
    """Tests for file-backed engines."""

    def test_reopen(self, temp_dir, clock):
        db_path = temp_dir / "memories.duckdb"
        with MemoryEngine(db_path=db_path, clock=clock) as engine:
            engine.add_memory("Persisted across restarts")

        with MemoryEngine(db_path=db_path, clock=clock) as engine:
            assert [m.content for m in engine.search.search_memories("restarts")] == ["Persisted across restarts"]

    def test_config_db_path(self, temp_dir, clock):
        db_path = temp_dir / "nested" / "memories.duckdb"
        with MemoryEngine(MemoryConfig(db_path=db_path), clock=clock):
            pass

        assert db_path.exists()


class TestGlobalEngine:
    """Tests for the process-wide engine."""

    def test_created_on_first_use(self, tmp_path):
        try:
            engine = get_memory_engine()

            assert get_memory_engine() is engine
            assert engine.store.db_path == tmp_path / "data" / "longmem" / "memories.duckdb"
        finally:
            reset_memory_engine()

    def test_reset_creates_new(self):
        try:
            first = get_memory_engine()
            reset_memory_engine()
            second = get_memory_engine()

            assert first is not second
        finally:
            reset_memory_engine()

    def test_set_engine(self, engine):
        set_memory_engine(engine)
        try:
            assert get_memory_engine() is engine
        finally:
            set_memory_engine(None)
