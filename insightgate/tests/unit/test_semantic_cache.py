from __future__ import annotations

from insightgate.providers.llm.fake import embed_text
from insightgate.services.cache.semantic import SemanticCache, cosine_similarity


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _cache(clock: _Clock, *, threshold: float = 0.9, max_entries: int = 10) -> SemanticCache:
    return SemanticCache(threshold=threshold, ttl_s=100, max_entries_per_scope=max_entries, time_source=clock)


def test_cosine_similarity_is_undefined_for_zero_or_mismatched_vectors() -> None:
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) is None
    assert cosine_similarity([1.0], [1.0, 0.0]) is None
    assert cosine_similarity([], []) is None
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == 1.0
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0


def test_lookup_matches_same_question_within_scope() -> None:
    clock = _Clock()
    cache = _cache(clock)
    embedding = embed_text("total sales by region")
    cache.record("t1", "db1", question="total sales by region", embedding=embedding, query_text="Q1", schema_hash="s1")

    match = cache.lookup("t1", "db1", embed_text("Total sales by region"), "s1")
    assert match is not None
    assert match.query_text == "Q1"
    assert match.similarity > 0.99

    assert cache.lookup("t2", "db1", embedding, "s1") is None
    assert cache.lookup("t1", "db2", embedding, "s1") is None
    # A schema change invalidates approximate matches.
    assert cache.lookup("t1", "db1", embedding, "s2") is None


def test_unrelated_question_and_zero_vector_do_not_match() -> None:
    clock = _Clock()
    cache = _cache(clock)
    cache.record(
        "t1",
        "db1",
        question="total sales by region",
        embedding=embed_text("total sales by region"),
        query_text="Q1",
        schema_hash="s1",
    )
    assert cache.lookup("t1", "db1", embed_text("list customer names"), "s1") is None
    assert cache.lookup("t1", "db1", embed_text("???"), "s1") is None


def test_entries_expire_and_scope_is_bounded() -> None:
    clock = _Clock()
    cache = _cache(clock, max_entries=2)
    for index in range(3):
        clock.now = float(index)
        cache.record("t1", "db1", question=f"q{index}", embedding=[1.0, float(index)], query_text=f"Q{index}", schema_hash="s")
    assert cache.entry_count("t1") == 2

    clock.now = 500.0
    assert cache.cleanup_expired() == 2
    assert cache.entry_count() == 0


def test_discard_and_invalidate() -> None:
    clock = _Clock()
    cache = _cache(clock)
    cache.record("t1", "db1", question="a", embedding=[1.0, 0.0], query_text="QA", schema_hash="s")
    cache.record("t1", "db2", question="b", embedding=[1.0, 0.0], query_text="QB", schema_hash="s")
    cache.record("t2", "db1", question="c", embedding=[1.0, 0.0], query_text="QC", schema_hash="s")

    cache.discard("t1", "db1", "QA")
    assert cache.lookup("t1", "db1", [1.0, 0.0], "s") is None
    assert cache.invalidate("t1") == 1
    assert cache.entry_count("t2") == 1
    assert cache.clear() == 1
