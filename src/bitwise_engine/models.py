# models.py
# Data contracts for the strategy execution engine.
# No business logic lives here. Pure schema and validation.

import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from bitwise_engine.errors import VerificationMismatch


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Scripts and strategies
# ---------------------------------------------------------------------------


class Role(str, Enum):
    SCHEDULER = "scheduler"
    ALGORITHM = "algorithm"
    SCORING = "scoring"
    POLICY = "policy"


# UI groups that are not functionally distinct to the engine.
_ROLE_ALIASES: dict[str, tuple[str, str | None]] = {
    "ai": ("algorithm", "ai"),
    "custom": ("algorithm", "custom"),
    "policies": ("policy", None),
}


class ScriptRef(BaseModel):
    """A user script and the role it plays in a strategy."""

    name: str = Field(..., min_length=1, description="Unique script name; strategies refer to it.")
    source: str = Field(default="", description="Script body handed to the script host.")
    role: Role
    tag: str | None = Field(default=None, description="Display-only sub-group, e.g. 'ai'.")
    veto: bool = Field(
        default=False,
        description="Scoring only: a negative score from this script rejects the step.",
    )
    created: datetime = Field(default_factory=_now)
    modified: datetime = Field(default_factory=_now)

    @model_validator(mode="before")
    @classmethod
    def _collapse_groups(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("role"), str):
            alias = _ROLE_ALIASES.get(data["role"].lower())
            if alias is not None:
                role, tag = alias
                data = {**data, "role": role}
                if tag and not data.get("tag"):
                    data["tag"] = tag
        return data

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.source.encode("utf-8")).hexdigest()


class StrategyDefinition(BaseModel):
    """A named bundle of script references. Scripts are resolved by name at run time."""

    id: str = Field(default_factory=lambda: _new_id("strat"))
    name: str = Field(..., min_length=1)
    scheduler_script: str = Field(..., min_length=1)
    algorithm_scripts: list[str] = Field(default_factory=list)
    scoring_scripts: list[str] = Field(default_factory=list)
    policy_scripts: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    created: datetime = Field(default_factory=_now)

    def script_names(self) -> list[str]:
        names = [
            self.scheduler_script,
            *self.algorithm_scripts,
            *self.scoring_scripts,
            *self.policy_scripts,
        ]
        return list(dict.fromkeys(names))


# ---------------------------------------------------------------------------
# Script envelopes (validated script outputs)
# ---------------------------------------------------------------------------


class BitRange(BaseModel):
    """Half-open [start, end) bit interval."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    @model_validator(mode="after")
    def _ordered(self) -> "BitRange":
        if self.end < self.start:
            raise ValueError(f"range end {self.end} precedes start {self.start}")
        return self

    @property
    def length(self) -> int:
        return self.end - self.start

    def as_tuple(self) -> tuple[int, int]:
        return (self.start, self.end)


class Invocation(BaseModel):
    """One algorithm call inside a scheduler stage."""

    algorithm: str = Field(..., min_length=1)
    range: BitRange | None = None


class Stage(BaseModel):
    """A scheduler stage: a single invocation, or a group the scheduler declared parallel."""

    invocations: list[Invocation] = Field(..., min_length=1)
    parallel: bool = False


class AlgorithmProposal(BaseModel):
    operation: str = Field(..., min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    estimated_cost: float | None = Field(
        default=None, description="Self-reported; informational only, never charged."
    )


class ScoreResult(BaseModel):
    score: float = 0.0
    veto: bool = False


class PolicyDecision(BaseModel):
    accept: bool
    reason: str | None = None


class OperationResult(BaseModel):
    """Outcome of one operation router call."""

    success: bool
    operation: str
    bits: str = Field(..., description="New buffer on success, the input buffer on failure.")
    params: dict[str, Any] = Field(default_factory=dict, description="Params actually used.")
    error: str | None = None


# ---------------------------------------------------------------------------
# Execution record
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    COMMITTED = "committed"
    REJECTED = "rejected"
    FAILED = "failed"
    DECLINED = "declined"


class TransformationStep(BaseModel):
    """Immutable log entry for one algorithm invocation."""

    model_config = ConfigDict(frozen=True)

    step_index: int = Field(..., ge=0)
    stage_index: int = Field(..., ge=0)
    algorithm: str
    status: StepStatus
    operation: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    before_bits: str
    after_bits: str = Field(..., description="Buffer after this step; equals before_bits unless committed.")
    proposed_bits: str | None = Field(default=None, description="Router output that was not committed.")
    cost: float = Field(default=0.0, description="Authoritative cost charged; 0 unless committed.")
    estimated_cost: float | None = None
    score: float | None = None
    metrics_before: dict[str, float] = Field(default_factory=dict)
    metrics_after: dict[str, float] = Field(default_factory=dict)
    affected_bit_ranges: list[BitRange] = Field(default_factory=list)
    reason: str | None = Field(default=None, description="Why the step was rejected, failed or declined.")
    logs: list[str] = Field(default_factory=list)
    duration: float = Field(default=0.0, description="Wall-clock milliseconds.")
    timestamp: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _uncommitted_is_inert(self) -> "TransformationStep":
        if self.status is not StepStatus.COMMITTED:
            if self.after_bits != self.before_bits:
                raise ValueError(f"{self.status.value} step must not change bits")
            if self.cost:
                raise ValueError(f"{self.status.value} step must not be charged")
        return self

    @property
    def committed(self) -> bool:
        return self.status is StepStatus.COMMITTED


class Budget(BaseModel):
    initial: float
    used: float = 0.0
    remaining: float


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class VerificationReport(BaseModel):
    """Replay check of an execution result. Derived; recompute rather than trust."""

    verified: bool
    mode: str = Field(..., description="'strict' (re-execute) or 'fast' (chain continuity).")
    match_percentage: float
    mismatch_positions: list[int] = Field(default_factory=list)
    mismatch_count: int = 0
    expected_hash: str
    actual_hash: str
    length_changed: bool = False
    step_mismatches: list[int] = Field(default_factory=list)
    chain_breaks: list[int] = Field(default_factory=list)
    checksum_verified: bool | None = None

    def raise_for_mismatch(self) -> None:
        if not self.verified:
            raise VerificationMismatch(
                f"{self.mode} verification failed: {self.mismatch_count} mismatched bit(s), "
                f"{self.match_percentage:.2f}% match "
                f"(expected {self.expected_hash[:12]}…, got {self.actual_hash[:12]}…)."
            )


class ExecutionResult(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("result"))
    strategy_id: str
    strategy_name: str
    initial_bits: str
    final_bits: str
    steps: list[TransformationStep] = Field(default_factory=list)
    budget: Budget
    status: ExecutionStatus = ExecutionStatus.PENDING
    error: str | None = None
    start_time: datetime = Field(default_factory=_now)
    end_time: datetime | None = None
    initial_metrics: dict[str, float] = Field(default_factory=dict)
    final_metrics: dict[str, float] = Field(default_factory=dict)
    script_digests: dict[str, str] = Field(default_factory=dict)
    checksum: str | None = Field(default=None, description="Merkle root over committed steps.")
    verification: VerificationReport | None = None

    @property
    def committed_steps(self) -> list[TransformationStep]:
        return [s for s in self.steps if s.committed]

    @property
    def is_final(self) -> bool:
        return self.status in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    @property
    def duration_ms(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds() * 1000

    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in StepStatus}
        for step in self.steps:
            counts[step.status.value] += 1
        return counts

    def metrics_change(self) -> dict[str, float]:
        keys = set(self.initial_metrics) | set(self.final_metrics)
        return {
            k: round(self.final_metrics.get(k, 0.0) - self.initial_metrics.get(k, 0.0), 6)
            for k in sorted(keys)
        }


# ---------------------------------------------------------------------------
# Result store side records
# ---------------------------------------------------------------------------


class ResultAnnotation(BaseModel):
    """User metadata kept apart from the immutable execution record."""

    result_id: str
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    bookmarked: bool = False


class ResultFilter(BaseModel):
    strategy_id: str | None = None
    status: ExecutionStatus | None = None
    tag: str | None = None
    bookmarked: bool | None = None
    verified: bool | None = None
    started_after: datetime | None = None
    started_before: datetime | None = None
