from __future__ import annotations

from insightgate.services.cache.history import AnalysisHistory, summarize_result


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _history(clock: _Clock, *, min_similarity: float = 0.5, max_entries: int = 10) -> AnalysisHistory:
    return AnalysisHistory(
        ttl_s=100, max_entries_per_scope=max_entries, min_similarity=min_similarity, time_source=clock
    )


def test_recall_orders_by_similarity_and_respects_scope() -> None:
    history = _history(_Clock())
    history.remember("t1", "db1", question="north sales", summary="S-north", embedding=[1.0, 0.0])
    history.remember("t1", "db1", question="mixed", summary="S-mixed", embedding=[1.0, 1.0])
    history.remember("t1", "db1", question="unrelated", summary="S-other", embedding=[0.0, 1.0])
    history.remember("t2", "db1", question="north sales", summary="S-t2", embedding=[1.0, 0.0])

    recalled = history.recall("t1", "db1", [1.0, 0.0], limit=3)
    assert [entry.summary for entry in recalled] == ["S-north", "S-mixed"]
    assert history.recall("t1", "db2", [1.0, 0.0], limit=3) == []
    assert [entry.summary for entry in history.recall("t1", "db1", [1.0, 0.0], limit=1)] == ["S-north"]


def test_recall_skips_excluded_question_and_zero_vectors() -> None:
    history = _history(_Clock(), min_similarity=0.0)
    history.remember("t1", "db1", question="q1", summary="S1", embedding=[1.0, 0.0])
    history.remember("t1", "db1", question="q2", summary="S2", embedding=[0.0, 0.0])

    assert history.recall("t1", "db1", [1.0, 0.0], limit=5, exclude_question="q1") == []
    assert history.recall("t1", "db1", [0.0, 0.0], limit=5) == []


def test_entries_expire_and_are_bounded_per_scope() -> None:
    clock = _Clock()
    history = _history(clock, max_entries=2)
    for index in range(3):
        history.remember("t1", "db1", question=f"q{index}", summary=f"S{index}", embedding=[1.0])
    assert history.entry_count("t1") == 2
    assert {entry.question for entry in history.recall("t1", "db1", [1.0], limit=5)} == {"q1", "q2"}

    clock.now = 150.0
    assert history.cleanup_expired() == 2
    assert history.entry_count() == 0


def test_invalidate_by_tenant_and_database() -> None:
    history = _history(_Clock())
    history.remember("t1", "db1", question="a", summary="A", embedding=[1.0])
    history.remember("t1", "db2", question="b", summary="B", embedding=[1.0])
    history.remember("t2", "db1", question="c", summary="C", embedding=[1.0])

    assert history.invalidate("t1", "db1") == 1
    assert history.invalidate("t1") == 1
    assert history.clear() == 1


def test_summarize_result_lists_numeric_metrics() -> None:
    rows = [{"region": "north", "amount": 10, "flag": True}, {"region": "south", "amount": 30, "flag": False}]
    summary = summarize_result("Sales by region", rows)
    assert summary.splitlines()[0] == "Question: Sales by region"
    assert "Total Records: 2" in summary
    assert "amount_sum: 40, amount_avg: 20, amount_max: 30, amount_min: 10" in summary
    assert "flag_sum" not in summary
    assert summarize_result("Nothing", []).startswith('No data found for the question: "Nothing"')
