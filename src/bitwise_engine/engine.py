# engine.py
# Strategy execution engine.
#
# The Engine is the kernel. Scripts are passive responders; this class owns
# all control flow, state, budget and recording. No script ever sees another
# script's output except through the inputs the engine hands it.
#
# Control flow per run:
#   initialize (snapshot scripts) → scheduler plan
#   → per stage: algorithm proposal → operation router → scoring → policy
#   → commit or record rejection/failure
#   → on budget exhaustion: one final scheduler call with budget_exhausted
#   → fast verification → finalize → result store
#
# Fatal: missing or mis-roled scheduler, scheduler crash, invalid budget.
# Step-level failures are recorded on the step and the run carries on.
# Anything unexpected still ends the run as a failed, stored result.

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from bitwise_engine import config
from bitwise_engine.bits import changed_ranges, ranges_overlap, validate_bits
from bitwise_engine.errors import (
    BudgetExhausted,
    EngineBusyError,
    InvalidBudgetError,
    MissingScriptError,
    OperationFailure,
    PolicyRejection,
    SchedulerCrashError,
    ScriptDeclineOrError,
    ScriptRoleError,
)
from bitwise_engine.metrics import MetricsCalculator
from bitwise_engine.models import (
    AlgorithmProposal,
    BitRange,
    Budget,
    ExecutionResult,
    ExecutionStatus,
    Invocation,
    Role,
    ScriptRef,
    Stage,
    StepStatus,
    StrategyDefinition,
    TransformationStep,
)
from bitwise_engine.operations import OperationRouter
from bitwise_engine.registry import ScriptRepository
from bitwise_engine.sandbox import (
    PythonScriptHost,
    ScriptHost,
    parse_plan,
    parse_policy,
    parse_proposal,
    parse_score,
)
from bitwise_engine.store import ResultStore
from bitwise_engine.verifier import FAST, StepRecorder, verify

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ExecutionResult | None, str], None]

FATAL_ERRORS = (MissingScriptError, SchedulerCrashError, InvalidBudgetError)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _check_budget(budget: Any) -> float:
    if (
        isinstance(budget, bool)
        or not isinstance(budget, (int, float))
        or not math.isfinite(budget)
        or budget < 0
    ):
        raise InvalidBudgetError(f"Budget must be a finite, non-negative number, got {budget!r}.")
    return float(budget)


def _parallel_eligible(stage: Stage, length: int) -> bool:
    """Every invocation declares an in-bounds range and no two ranges overlap."""
    ranges = [inv.range for inv in stage.invocations]
    if any(r is None or r.end > length for r in ranges):
        return False
    spans = [r.as_tuple() for r in ranges]
    return not any(
        ranges_overlap(a, b) for i, a in enumerate(spans) for b in spans[i + 1:]
    )


@dataclass
class _Proposal:
    """What an algorithm invocation produced, before the engine evaluates it."""

    invocation: Invocation
    proposal: AlgorithmProposal | None = None
    error: str | None = None
    logs: list[str] = field(default_factory=list)
    started: float = field(default_factory=time.perf_counter)


@dataclass
class _RunState:
    """Mutable state owned by exactly one execute() call."""

    strategy: StrategyDefinition
    result: ExecutionResult
    recorder: StepRecorder
    scripts: dict[str, ScriptRef]
    used: float = 0.0
    stage_index: int = 0
    cancelled: bool = False
    exhausted_at: int | None = None

    @property
    def bits(self) -> str:
        return self.recorder.current_bits

    @property
    def remaining(self) -> float:
        return self.result.budget.initial - self.used


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class Engine:
    """
    Runs a strategy against a bit buffer and returns the execution record.

    One engine instance runs one execution at a time. Independent runs use
    independent engines; they share no mutable state.

    Example:
        engine = Engine(scripts, store=ResultStore())
        result = engine.run(strategy, load_bits("input.bin"), budget=100)
    """

    def __init__(
        self,
        scripts: ScriptRepository,
        host: ScriptHost | None = None,
        router: OperationRouter | None = None,
        metrics: MetricsCalculator | None = None,
        store: ResultStore | None = None,
        timeout_ms: int = config.SCRIPT_TIMEOUT_MS,
    ) -> None:
        self._scripts = scripts
        self._router = router or OperationRouter()
        self._metrics = metrics or MetricsCalculator()
        self._host = host or PythonScriptHost(self._router, self._metrics)
        self._store = store
        self._timeout_ms = timeout_ms
        self._listeners: list[ProgressListener] = []
        self._running = False
        self._cancel_requested = False
        self._current: ExecutionResult | None = None
        self._plans: list[list[Stage]] = []

    # ------------------------------------------------------------------
    # Observers and run control
    # ------------------------------------------------------------------

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, result: ExecutionResult | None, status: str) -> None:
        snapshot = result.model_copy(deep=True) if result is not None else None
        for listener in list(self._listeners):
            try:
                listener(snapshot, status)
            except Exception:
                logger.exception("Progress listener failed on status %r", status)

    def cancel(self) -> None:
        """Stop before the next stage. In-flight invocations still complete."""
        if self._running:
            self._cancel_requested = True

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def current_run(self) -> ExecutionResult | None:
        return self._current.model_copy(deep=True) if self._current is not None else None

    @property
    def plans(self) -> list[list[Stage]]:
        """Every plan the scheduler returned during the latest run, in order."""
        return [[stage.model_copy(deep=True) for stage in plan] for plan in self._plans]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(
        self,
        strategy: StrategyDefinition,
        initial_bits: str,
        budget: float = config.DEFAULT_BUDGET,
    ) -> ExecutionResult:
        """Synchronous wrapper around execute()."""
        return asyncio.run(self.execute(strategy, initial_bits, budget))

    async def execute(
        self,
        strategy: StrategyDefinition,
        initial_bits: str,
        budget: float = config.DEFAULT_BUDGET,
    ) -> ExecutionResult:
        """
        Full pipeline entry point.

        Returns a finalized ExecutionResult in all run-level outcomes,
        including failures; raises only on caller errors.
        """
        if self._running:
            raise EngineBusyError("An execution is already in progress on this engine.")
        validate_bits(initial_bits)
        self._running = True
        self._cancel_requested = False
        try:
            return await self._execute(strategy, initial_bits, budget)
        finally:
            self._running = False

    async def _execute(self, strategy: StrategyDefinition, initial_bits: str, budget: Any) -> ExecutionResult:
        self._notify(None, "starting")
        result = ExecutionResult(
            strategy_id=strategy.id,
            strategy_name=strategy.name,
            initial_bits=initial_bits,
            final_bits=initial_bits,
            budget=Budget(initial=0.0, remaining=0.0),
            status=ExecutionStatus.RUNNING,
        )
        self._current = result
        self._plans = []
        state: _RunState | None = None

        try:
            amount = _check_budget(budget)
            result.budget = Budget(initial=amount, remaining=amount)
            state = self._initialize(strategy, result)
            result.initial_metrics = self._metrics.compute(initial_bits)
            if initial_bits:
                await self._drive(state)
            else:
                logger.info("Empty input buffer; run '%s' has nothing to do.", strategy.name)
            status = ExecutionStatus.CANCELLED if state.cancelled else ExecutionStatus.COMPLETED
        except FATAL_ERRORS as exc:
            logger.error("Run of strategy '%s' failed: %s", strategy.name, exc)
            result.error = f"{type(exc).__name__}: {exc}"
            status = ExecutionStatus.FAILED
        except Exception as exc:
            logger.exception("Run of strategy '%s' crashed", strategy.name)
            result.error = f"{type(exc).__name__}: {exc}"
            status = ExecutionStatus.FAILED

        return self._finalize(result, state, status)

    # ------------------------------------------------------------------
    # Initializing
    # ------------------------------------------------------------------

    def _initialize(self, strategy: StrategyDefinition, result: ExecutionResult) -> _RunState:
        """
        Resolve every referenced script once and freeze the sources for this
        run. Only the scheduler is mandatory; other gaps surface as failed
        steps when (and if) they are needed.
        """
        scheduler = self._scripts.require(strategy.scheduler_script, Role.SCHEDULER)
        if scheduler.role is not Role.SCHEDULER:
            raise ScriptRoleError(scheduler.name, Role.SCHEDULER.value, scheduler.role.value)
        snapshot: dict[str, ScriptRef] = {}
        for name in strategy.script_names():
            script = self._scripts.get(name)
            if script is None:
                logger.warning("Strategy '%s' references missing script '%s'.", strategy.name, name)
                continue
            snapshot[name] = script.model_copy(deep=True)
        result.script_digests = {name: s.digest for name, s in snapshot.items()}
        return _RunState(
            strategy=strategy,
            result=result,
            recorder=StepRecorder(result.initial_bits),
            scripts=snapshot,
        )

    def _script(self, state: _RunState, name: str, role: Role) -> ScriptRef:
        script = state.scripts.get(name)
        if script is None:
            raise ScriptDeclineOrError(f"{role.value.capitalize()} script '{name}' not found.")
        if script.role is not role:
            raise ScriptDeclineOrError(str(ScriptRoleError(name, role.value, script.role.value)))
        return script

    async def _call(self, script: ScriptRef, role: Role, payload: dict, logs: list[str]) -> Any:
        try:
            return await self._host.run(
                script.source, role, payload, self._timeout_ms, name=script.name, log_sink=logs
            )
        except ScriptDeclineOrError:
            raise
        # A host may raise anything; to the engine it is still a script failure.
        except Exception as exc:
            raise ScriptDeclineOrError(
                f"Host failed running '{script.name}': {type(exc).__name__}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _plan(self, state: _RunState, budget_exhausted: bool) -> list[Stage]:
        self._notify(self._sync(state), "planning")
        scheduler = state.scripts[state.strategy.scheduler_script]
        payload = {
            "bits": state.bits,
            "budget": state.remaining,
            "available_algorithms": list(state.strategy.algorithm_scripts),
            "available_policies": list(state.strategy.policy_scripts),
            "budget_exhausted": budget_exhausted,
        }
        try:
            output = await self._call(scheduler, Role.SCHEDULER, payload, [])
            stages = parse_plan(output)
        except ScriptDeclineOrError as exc:
            raise SchedulerCrashError(f"Scheduler '{scheduler.name}' failed: {exc}") from exc
        logger.info("Scheduler '%s' planned %d stage(s).", scheduler.name, len(stages))
        self._plans.append(stages)
        return stages

    async def _drive(self, state: _RunState) -> None:
        exhausted = state.remaining <= 0
        stages = await self._plan(state, budget_exhausted=exhausted)
        while True:
            try:
                await self._run_stages(state, stages)
                return
            except BudgetExhausted:
                if exhausted or state.cancelled:
                    return
                exhausted = True
                logger.info("Budget exhausted; asking scheduler for a final plan.")
                self._notify(self._sync(state), "budget exhausted")
                stages = await self._plan(state, budget_exhausted=True)

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    async def _run_stages(self, state: _RunState, stages: list[Stage]) -> None:
        for position, stage in enumerate(stages):
            if self._cancel_requested:
                state.cancelled = True
                logger.info("Run cancelled before stage %d.", state.stage_index)
                return
            self._notify(self._sync(state), f"stage {position + 1}/{len(stages)}")
            try:
                if stage.parallel and _parallel_eligible(stage, len(state.bits)):
                    await self._run_parallel(state, stage)
                else:
                    if stage.parallel and len(stage.invocations) > 1:
                        logger.info("Stage %d ranges overlap or are missing; running sequentially.", state.stage_index)
                    for invocation in stage.invocations:
                        proposal = await self._propose(state, invocation)
                        await self._evaluate(state, proposal, shift=0)
                        self._check_exhausted(state)
            finally:
                state.stage_index += 1
            # A parallel group is evaluated in full before the budget check.
            self._check_exhausted(state)

    def _check_exhausted(self, state: _RunState) -> None:
        if state.exhausted_at is not None:
            step_index, state.exhausted_at = state.exhausted_at, None
            raise BudgetExhausted(f"Budget exhausted after step {step_index}.")

    async def _run_parallel(self, state: _RunState, stage: Stage) -> None:
        """
        Gather proposals concurrently against the pre-stage buffer, then
        evaluate and commit them in declaration order. Ranges are disjoint,
        so each commit only moves the ranges that lie after it.
        """
        proposals = await asyncio.gather(*(self._propose(state, inv) for inv in stage.invocations))
        deltas: list[tuple[int, int]] = []
        for proposal in proposals:
            start = proposal.invocation.range.start
            shift = sum(delta for origin, delta in deltas if origin < start)
            delta = await self._evaluate(state, proposal, shift=shift)
            if delta:
                deltas.append((start, delta))

    async def _propose(self, state: _RunState, invocation: Invocation) -> _Proposal:
        pending = _Proposal(invocation=invocation)
        name = invocation.algorithm
        if name not in state.strategy.algorithm_scripts:
            pending.error = f"Unresolved algorithm '{name}': not part of strategy '{state.strategy.name}'."
            return pending

        bits = state.bits
        payload: dict[str, Any] = {"bits": bits, "budget": state.remaining}
        if invocation.range is not None:
            if invocation.range.end > len(bits):
                pending.error = f"Range [{invocation.range.start}, {invocation.range.end}) is outside a {len(bits)}-bit buffer."
                return pending
            payload["bits"] = bits[invocation.range.start:invocation.range.end]
            payload["range"] = list(invocation.range.as_tuple())
            payload["total_length"] = len(bits)

        try:
            script = self._script(state, name, Role.ALGORITHM)
            output = await self._call(script, Role.ALGORITHM, payload, pending.logs)
            pending.proposal = parse_proposal(output)
        except ScriptDeclineOrError as exc:
            logger.info("Algorithm '%s' produced no proposal: %s", name, exc)
            pending.error = str(exc)
        return pending

    # ------------------------------------------------------------------
    # Evaluation and commit
    # ------------------------------------------------------------------

    async def _evaluate(self, state: _RunState, pending: _Proposal, shift: int) -> int:
        """Score, gate and record one proposal. Returns the committed length change."""
        before = state.bits
        base: dict[str, Any] = {
            "step_index": state.recorder.next_index,
            "stage_index": state.stage_index,
            "algorithm": pending.invocation.algorithm,
            "before_bits": before,
            "after_bits": before,
            "logs": pending.logs,
        }

        if pending.error is not None:
            self._record(state, pending, base, StepStatus.FAILED, reason=pending.error)
            return 0
        if pending.proposal is None:
            self._record(state, pending, base, StepStatus.DECLINED, reason="Algorithm declined.")
            return 0

        proposal = pending.proposal
        params = dict(proposal.params)
        if pending.invocation.range is not None:
            declared = pending.invocation.range
            params["range"] = [declared.start + shift, declared.end + shift]
        base.update(operation=proposal.operation, params=params, estimated_cost=proposal.estimated_cost)

        outcome = self._router.apply(proposal.operation, before, params)
        base["params"] = outcome.params
        if not outcome.success:
            failure = OperationFailure(proposal.operation, outcome.error or "unknown error")
            logger.info("%s", failure)
            self._record(state, pending, base, StepStatus.FAILED, reason=str(failure))
            return 0

        after = outcome.bits
        base.update(
            proposed_bits=after,
            metrics_before=self._metrics.compute(before),
            metrics_after=self._metrics.compute(after),
            affected_bit_ranges=[BitRange(start=s, end=e) for s, e in changed_ranges(before, after)],
        )
        cost = self._router.get_cost(proposal.operation)

        try:
            score = await self._score(state, before, after, base, pending.logs)
            base["score"] = score
            await self._gate(state, proposal.operation, outcome.params, cost, score, pending.logs)
            if cost > state.remaining:
                raise PolicyRejection("budget", f"insufficient budget (cost {cost:g}, remaining {state.remaining:g})")
        except PolicyRejection as exc:
            logger.info("Step %d rejected by %s", base["step_index"], exc)
            self._record(state, pending, base, StepStatus.REJECTED, reason=str(exc))
            return 0
        except ScriptDeclineOrError as exc:
            logger.info("Step %d dropped: %s", base["step_index"], exc)
            self._record(state, pending, base, StepStatus.FAILED, reason=str(exc))
            return 0

        was_funded = state.remaining > 0
        base.update(after_bits=after, proposed_bits=None, cost=cost)
        self._record(state, pending, base, StepStatus.COMMITTED)
        state.used += cost
        self._sync(state)
        if was_funded and state.remaining <= 0:
            state.exhausted_at = base["step_index"]
        return len(after) - len(before)

    async def _score(self, state: _RunState, before: str, after: str, base: dict, logs: list[str]) -> float:
        """Sum of scoring outputs. A veto, or a negative score from a veto-capable script, rejects."""
        payload = {
            "before_bits": before,
            "after_bits": after,
            "metrics_before": base["metrics_before"],
            "metrics_after": base["metrics_after"],
        }
        total = 0.0
        for name in state.strategy.scoring_scripts:
            script = self._script(state, name, Role.SCORING)
            scored = parse_score(await self._call(script, Role.SCORING, payload, logs))
            if scored.veto or (script.veto and scored.score < 0):
                raise PolicyRejection(f"scoring '{name}'", f"vetoed (score {scored.score:g})")
            total += scored.score
        return total

    async def _gate(
        self,
        state: _RunState,
        operation: str,
        params: dict,
        cost: float,
        score: float,
        logs: list[str],
    ) -> None:
        payload = {
            "operation": operation,
            "params": params,
            "cost": cost,
            "proposed_cost": cost,
            "score": score,
            "budget_remaining": state.remaining,
        }
        for name in state.strategy.policy_scripts:
            script = self._script(state, name, Role.POLICY)
            decision = parse_policy(await self._call(script, Role.POLICY, payload, logs))
            if not decision.accept:
                raise PolicyRejection(f"policy '{name}'", decision.reason or "rejected")

    def _record(
        self,
        state: _RunState,
        pending: _Proposal,
        base: dict[str, Any],
        status: StepStatus,
        reason: str | None = None,
    ) -> None:
        step = TransformationStep(
            **base,
            status=status,
            reason=reason,
            duration=(time.perf_counter() - pending.started) * 1000,
        )
        state.recorder.record(step)

    # ------------------------------------------------------------------
    # Finalizing
    # ------------------------------------------------------------------

    def _sync(self, state: _RunState) -> ExecutionResult:
        """Mirror recorder and budget state onto the in-progress result."""
        result = state.result
        result.steps = list(state.recorder.steps)
        result.final_bits = state.bits
        result.budget = Budget(initial=result.budget.initial, used=state.used, remaining=state.remaining)
        return result

    def _finalize(
        self,
        result: ExecutionResult,
        state: _RunState | None,
        status: ExecutionStatus,
    ) -> ExecutionResult:
        if state is not None:
            self._sync(state)
            result.checksum = state.recorder.checksum()
        else:
            result.checksum = StepRecorder(result.initial_bits).checksum()
        try:
            result.final_metrics = self._metrics.compute(result.final_bits)
        except Exception:
            logger.exception("Final metrics unavailable for run %s.", result.id)

        self._notify(result, "verifying")
        result.verification = verify(result, mode=FAST, router=self._router)
        if not result.verification.verified:
            logger.warning("Run %s finished but did not verify; result flagged as unverified.", result.id)

        result.status = status
        result.end_time = datetime.now(timezone.utc)
        if self._store is not None:
            self._store.save(result)
        self._notify(result, status.value)
        return result
