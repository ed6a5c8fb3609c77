# store.py
# Result store: completed execution records plus user annotations.
#
# Records are immutable once saved. Tags, notes and bookmarks live in a
# separate ResultAnnotation per result, so user edits never touch the data
# that replay verification depends on.

import logging
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, Field

from bitwise_engine import config
from bitwise_engine.errors import ResultNotFoundError
from bitwise_engine.models import (
    ExecutionResult,
    ExecutionStatus,
    ResultAnnotation,
    ResultFilter,
)

logger = logging.getLogger(__name__)


class StoreSnapshot(BaseModel):
    """On-disk JSON layout."""

    results: list[ExecutionResult] = Field(default_factory=list)
    annotations: list[ResultAnnotation] = Field(default_factory=list)


class StoreStatistics(BaseModel):
    total_results: int
    bookmarked_count: int
    success_rate: float
    avg_duration_ms: float
    unique_tags: list[str]


class ResultStore:
    """
    In-memory result database with an optional JSON snapshot file.

    When `path` is set the snapshot is loaded on construction and rewritten
    after every mutation, keeping only the newest `max_results` records.
    """

    def __init__(self, path: str | Path | None = config.RESULTS_PATH, max_results: int = config.MAX_RESULTS) -> None:
        self._path = Path(path) if path else None
        self._max_results = max_results
        self._results: dict[str, ExecutionResult] = {}
        self._annotations: dict[str, ResultAnnotation] = {}
        self._listeners: list[Callable[[], None]] = []
        if self._path is not None and self._path.exists():
            self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        snapshot = StoreSnapshot.model_validate_json(self._path.read_text(encoding="utf-8"))
        self._results = {r.id: r for r in snapshot.results}
        self._annotations = {a.result_id: a for a in snapshot.annotations if a.result_id in self._results}
        logger.info("Loaded %d result(s) from %s", len(self._results), self._path)

    def _persist(self) -> None:
        if self._path is None:
            return
        snapshot = StoreSnapshot(
            results=self._newest(),
            annotations=list(self._annotations.values()),
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")

    def _newest(self) -> list[ExecutionResult]:
        return sorted(self._results.values(), key=lambda r: r.start_time, reverse=True)

    def _changed(self) -> None:
        self._evict()
        self._persist()
        for listener in list(self._listeners):
            listener()

    def _evict(self) -> None:
        for stale in self._newest()[self._max_results:]:
            del self._results[stale.id]
            self._annotations.pop(stale.id, None)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def save(self, result: ExecutionResult) -> None:
        if not result.is_final:
            raise ValueError(f"Result {result.id} is still {result.status.value}; only finalized runs are stored.")
        if result.id in self._results:
            raise ValueError(f"Result {result.id} is already stored; records are immutable.")
        self._results[result.id] = result.model_copy(deep=True)
        self._changed()

    def get(self, result_id: str) -> ExecutionResult:
        try:
            return self._results[result_id].model_copy(deep=True)
        except KeyError:
            raise ResultNotFoundError(result_id) from None

    def query(self, filters: ResultFilter | None = None) -> list[ExecutionResult]:
        """Matching results, newest first."""
        f = filters or ResultFilter()
        matches: list[ExecutionResult] = []
        for result in self._newest():
            note = self._annotations.get(result.id)
            if f.strategy_id is not None and result.strategy_id != f.strategy_id:
                continue
            if f.status is not None and result.status is not f.status:
                continue
            if f.tag is not None and (note is None or f.tag not in note.tags):
                continue
            if f.bookmarked is not None and (note is not None and note.bookmarked) != f.bookmarked:
                continue
            if f.verified is not None:
                verified = result.verification is not None and result.verification.verified
                if verified != f.verified:
                    continue
            if f.started_after is not None and result.start_time < f.started_after:
                continue
            if f.started_before is not None and result.start_time > f.started_before:
                continue
            matches.append(result.model_copy(deep=True))
        return matches

    def delete(self, result_id: str) -> None:
        self._results.pop(result_id, None)
        self._annotations.pop(result_id, None)
        self._changed()

    def clear(self) -> None:
        self._results.clear()
        self._annotations.clear()
        self._changed()

    def export_json(self, result_id: str) -> str:
        return self.get(result_id).model_dump_json(indent=2)

    def __len__(self) -> int:
        return len(self._results)

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------

    def annotation(self, result_id: str) -> ResultAnnotation:
        if result_id not in self._results:
            raise ResultNotFoundError(result_id)
        return self._annotations.get(result_id, ResultAnnotation(result_id=result_id)).model_copy(deep=True)

    def annotate(self, result_id: str, **changes) -> ResultAnnotation:
        current = self.annotation(result_id)
        updated = ResultAnnotation.model_validate({**current.model_dump(), **changes, "result_id": result_id})
        self._annotations[result_id] = updated
        self._changed()
        return updated.model_copy(deep=True)

    def add_tag(self, result_id: str, tag: str) -> ResultAnnotation:
        tags = self.annotation(result_id).tags
        if tag not in tags:
            tags.append(tag)
        return self.annotate(result_id, tags=tags)

    def remove_tag(self, result_id: str, tag: str) -> ResultAnnotation:
        tags = [t for t in self.annotation(result_id).tags if t != tag]
        return self.annotate(result_id, tags=tags)

    def toggle_bookmark(self, result_id: str) -> ResultAnnotation:
        return self.annotate(result_id, bookmarked=not self.annotation(result_id).bookmarked)

    def set_notes(self, result_id: str, notes: str) -> ResultAnnotation:
        return self.annotate(result_id, notes=notes)

    # ------------------------------------------------------------------
    # Aggregates and observers
    # ------------------------------------------------------------------

    def statistics(self) -> StoreStatistics:
        results = list(self._results.values())
        completed = [r for r in results if r.status is ExecutionStatus.COMPLETED]
        tags = sorted({t for a in self._annotations.values() for t in a.tags})
        return StoreStatistics(
            total_results=len(results),
            bookmarked_count=sum(1 for a in self._annotations.values() if a.bookmarked),
            success_rate=len(completed) / len(results) * 100 if results else 0.0,
            avg_duration_ms=sum(r.duration_ms for r in completed) / len(completed) if completed else 0.0,
            unique_tags=tags,
        )

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
