import json
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import MagicMock

from bitwise_engine.errors import ResultNotFoundError
from bitwise_engine.models import (
    Budget,
    ExecutionResult,
    ExecutionStatus,
    ResultFilter,
    VerificationReport,
)
from bitwise_engine.store import ResultStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _result(minutes=0, status=ExecutionStatus.COMPLETED, strategy_id="strat_a", verified=True, duration_ms=10):
    start = T0 + timedelta(minutes=minutes)
    return ExecutionResult(
        strategy_id=strategy_id,
        strategy_name=strategy_id,
        initial_bits="01",
        final_bits="10",
        budget=Budget(initial=5, used=1, remaining=4),
        status=status,
        start_time=start,
        end_time=start + timedelta(milliseconds=duration_ms),
        verification=VerificationReport(
            verified=verified, mode="fast", match_percentage=100 if verified else 50,
            expected_hash="x", actual_hash="x" if verified else "y",
        ),
    )

# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def test_save_and_get_returns_copies():
    store = ResultStore(path=None)
    result = _result()
    store.save(result)

    fetched = store.get(result.id)
    assert fetched == result
    assert fetched is not result
    fetched.final_bits = "00"
    assert store.get(result.id).final_bits == "10"

def test_save_rejects_unfinished_and_duplicates():
    store = ResultStore(path=None)
    with pytest.raises(ValueError, match="only finalized"):
        store.save(_result(status=ExecutionStatus.RUNNING))

    result = _result()
    store.save(result)
    with pytest.raises(ValueError, match="immutable"):
        store.save(result)

def test_get_missing_raises():
    with pytest.raises(ResultNotFoundError):
        ResultStore(path=None).get("result_missing")

def test_query_filters_and_orders_newest_first():
    store = ResultStore(path=None)
    old = _result(minutes=0)
    failed = _result(minutes=1, status=ExecutionStatus.FAILED, verified=False)
    other = _result(minutes=2, strategy_id="strat_b")
    for r in (old, failed, other):
        store.save(r)

    assert [r.id for r in store.query()] == [other.id, failed.id, old.id]
    assert [r.id for r in store.query(ResultFilter(strategy_id="strat_a"))] == [failed.id, old.id]
    assert [r.id for r in store.query(ResultFilter(status=ExecutionStatus.FAILED))] == [failed.id]
    assert [r.id for r in store.query(ResultFilter(verified=False))] == [failed.id]
    assert [r.id for r in store.query(ResultFilter(started_after=T0 + timedelta(minutes=1)))] == [other.id, failed.id]
    assert [r.id for r in store.query(ResultFilter(started_before=T0))] == [old.id]

def test_eviction_keeps_newest():
    store = ResultStore(path=None, max_results=2)
    results = [_result(minutes=m) for m in range(3)]
    for r in results:
        store.save(r)

    assert len(store) == 2
    with pytest.raises(ResultNotFoundError):
        store.get(results[0].id)

def test_delete_and_clear():
    store = ResultStore(path=None)
    a, b = _result(minutes=0), _result(minutes=1)
    store.save(a)
    store.save(b)

    store.delete(a.id)
    assert len(store) == 1
    store.clear()
    assert len(store) == 0

def test_export_json():
    store = ResultStore(path=None)
    result = _result()
    store.save(result)
    data = json.loads(store.export_json(result.id))
    assert data["id"] == result.id
    assert data["status"] == "completed"

# ---------------------------------------------------------------------------
# Annotations
# ---------------------------------------------------------------------------

def test_annotations_live_beside_records():
    store = ResultStore(path=None)
    result = _result()
    store.save(result)

    store.add_tag(result.id, "baseline")
    store.add_tag(result.id, "baseline")
    store.set_notes(result.id, "first try")
    store.toggle_bookmark(result.id)

    note = store.annotation(result.id)
    assert note.tags == ["baseline"]
    assert note.notes == "first try"
    assert note.bookmarked is True
    assert store.get(result.id) == result

    store.remove_tag(result.id, "baseline")
    store.toggle_bookmark(result.id)
    assert store.annotation(result.id).tags == []
    assert store.annotation(result.id).bookmarked is False

def test_query_by_tag_and_bookmark():
    store = ResultStore(path=None)
    a, b = _result(minutes=0), _result(minutes=1)
    store.save(a)
    store.save(b)
    store.add_tag(a.id, "keep")
    store.toggle_bookmark(b.id)

    assert [r.id for r in store.query(ResultFilter(tag="keep"))] == [a.id]
    assert [r.id for r in store.query(ResultFilter(bookmarked=True))] == [b.id]
    assert [r.id for r in store.query(ResultFilter(bookmarked=False))] == [a.id]

def test_annotating_unknown_result_raises():
    with pytest.raises(ResultNotFoundError):
        ResultStore(path=None).add_tag("result_missing", "x")

# ---------------------------------------------------------------------------
# Aggregates, observers and snapshots
# ---------------------------------------------------------------------------

def test_statistics():
    store = ResultStore(path=None)
    ok = _result(minutes=0, duration_ms=10)
    ok2 = _result(minutes=1, duration_ms=30)
    bad = _result(minutes=2, status=ExecutionStatus.FAILED)
    for r in (ok, ok2, bad):
        store.save(r)
    store.add_tag(ok.id, "b")
    store.add_tag(ok2.id, "a")
    store.toggle_bookmark(bad.id)

    stats = store.statistics()
    assert stats.total_results == 3
    assert stats.bookmarked_count == 1
    assert stats.success_rate == pytest.approx(200 / 3)
    assert stats.avg_duration_ms == pytest.approx(20)
    assert stats.unique_tags == ["a", "b"]

def test_statistics_of_empty_store():
    stats = ResultStore(path=None).statistics()
    assert stats.total_results == 0
    assert stats.success_rate == 0

def test_subscribers_are_notified():
    store = ResultStore(path=None)
    listener = MagicMock()
    unsubscribe = store.subscribe(listener)

    store.save(_result())
    assert listener.call_count == 1

    unsubscribe()
    store.clear()
    assert listener.call_count == 1

def test_snapshot_round_trip(tmp_path):
    path = tmp_path / "results" / "store.json"
    store = ResultStore(path=path)
    result = _result()
    store.save(result)
    store.add_tag(result.id, "persisted")

    reloaded = ResultStore(path=path)
    assert reloaded.get(result.id) == result
    assert reloaded.annotation(result.id).tags == ["persisted"]
