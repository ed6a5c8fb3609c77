# verifier.py
# Step recording and replay verification.
#
# Two verification modes:
#   strict : re-execute every committed (operation, params) from the initial
#            bits through the operation router; audit grade.
#   fast   : trust stored after_bits and only check chain continuity;
#            cheap enough for large histories.

import logging

from bitwise_engine import config
from bitwise_engine.bits import hash_bits, mismatch_positions
from bitwise_engine.errors import BitwiseEngineError
from bitwise_engine.merkle import execution_checksum
from bitwise_engine.models import ExecutionResult, TransformationStep, VerificationReport
from bitwise_engine.operations import OperationRouter

logger = logging.getLogger(__name__)

STRICT = "strict"
FAST = "fast"


class RecorderError(BitwiseEngineError):
    """Raised when a step would break the append-only chain."""


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class StepRecorder:
    """
    Append-only step log for one run.

    Every step must carry the next step_index and start from the bits the
    previous step ended on (or the initial bits for the first step).
    """

    def __init__(self, initial_bits: str) -> None:
        self._initial_bits = initial_bits
        self._steps: list[TransformationStep] = []

    def record(self, step: TransformationStep) -> None:
        if step.step_index != len(self._steps):
            raise RecorderError(
                f"Expected step_index {len(self._steps)}, got {step.step_index}."
            )
        if step.before_bits != self.current_bits:
            raise RecorderError(
                f"Step {step.step_index} does not start from the recorded state."
            )
        self._steps.append(step)

    @property
    def steps(self) -> tuple[TransformationStep, ...]:
        return tuple(self._steps)

    @property
    def current_bits(self) -> str:
        return self._steps[-1].after_bits if self._steps else self._initial_bits

    @property
    def next_index(self) -> int:
        return len(self._steps)

    def committed(self) -> list[TransformationStep]:
        return [s for s in self._steps if s.committed]

    def checksum(self) -> str:
        return execution_checksum(self._steps)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def _match_percentage(expected: str, actual: str, allow_length_change: bool) -> tuple[float, list[int]]:
    """
    Returns (percentage, mismatch positions).

    With a length-changing operation in the chain, a length difference is
    expected: only the overlapping prefix is compared and scored. Otherwise
    the tail counts as mismatched and the score is taken over max length.
    """
    if allow_length_change and len(expected) != len(actual):
        shared = min(len(expected), len(actual))
        positions = [i for i in range(shared) if expected[i] != actual[i]]
        if shared == 0:
            return 100.0, positions
        return max(0.0, (shared - len(positions)) / shared * 100), positions

    positions = mismatch_positions(expected, actual)
    longest = max(len(expected), len(actual))
    if longest == 0:
        return 100.0, positions
    return max(0.0, (longest - len(positions)) / longest * 100), positions


def _replay(result: ExecutionResult, router: OperationRouter) -> tuple[str, list[int]]:
    """Fold committed steps over the initial bits; note steps whose replay diverges."""
    bits = result.initial_bits
    diverged: list[int] = []
    for step in result.committed_steps:
        outcome = router.apply(step.operation, bits, step.params)
        if not outcome.success:
            logger.warning("Replay of step %d (%s) failed: %s", step.step_index, step.operation, outcome.error)
            diverged.append(step.step_index)
            continue
        if outcome.bits != step.after_bits:
            diverged.append(step.step_index)
        bits = outcome.bits
    return bits, diverged


def _chain_breaks(result: ExecutionResult) -> tuple[str, list[int]]:
    """Indices of steps whose before_bits don't continue the chain; -1 marks the final link."""
    breaks: list[int] = []
    previous = result.initial_bits
    for step in result.steps:
        if step.before_bits != previous:
            breaks.append(step.step_index)
        previous = step.after_bits
    if previous != result.final_bits:
        breaks.append(-1)
    return previous, breaks


def _checksum_ok(result: ExecutionResult) -> bool | None:
    if result.checksum is None:
        return None
    return result.checksum == execution_checksum(result.steps)


def verify(
    result: ExecutionResult,
    mode: str = STRICT,
    router: OperationRouter | None = None,
    max_positions: int | None = None,
) -> VerificationReport:
    """Recompute the final bits of `result` and compare them with the record."""
    if mode not in (STRICT, FAST):
        raise ValueError(f"Unknown verification mode '{mode}'.")
    router = router or OperationRouter()
    limit = config.MAX_MISMATCH_POSITIONS if max_positions is None else max_positions

    step_mismatches: list[int] = []
    chain_breaks: list[int] = []
    if mode == STRICT:
        actual, step_mismatches = _replay(result, router)
    else:
        actual, chain_breaks = _chain_breaks(result)

    expected = result.final_bits
    length_changing = any(router.is_length_changing(s.operation) for s in result.committed_steps)
    percentage, positions = _match_percentage(expected, actual, length_changing)
    expected_hash, actual_hash = hash_bits(expected), hash_bits(actual)
    checksum_ok = _checksum_ok(result)

    verified = (
        expected_hash == actual_hash
        and not step_mismatches
        and not chain_breaks
        and checksum_ok is not False
    )
    if not verified:
        logger.warning(
            "Verification (%s) of %s failed: %d mismatch(es), %.2f%% match.",
            mode, result.id, len(positions), percentage,
        )

    return VerificationReport(
        verified=verified,
        mode=mode,
        match_percentage=round(percentage, 4),
        mismatch_positions=positions[:limit],
        mismatch_count=len(positions),
        expected_hash=expected_hash,
        actual_hash=actual_hash,
        length_changed=len(expected) != len(actual),
        step_mismatches=step_mismatches,
        chain_breaks=chain_breaks,
        checksum_verified=checksum_ok,
    )
