# metrics.py
# Metric registry. Every metric is a pure function of the bit buffer alone,
# so metrics taken before and after a step are directly comparable.

import math
from typing import Callable

MetricFn = Callable[[str], float]


def _ones(bits: str) -> int:
    return bits.count("1")


def _transitions(bits: str) -> int:
    return sum(1 for a, b in zip(bits, bits[1:]) if a != b)


def _entropy(bits: str) -> float:
    if not bits:
        return 0.0
    p = _ones(bits) / len(bits)
    return -sum(q * math.log2(q) for q in (p, 1 - p) if q > 0)


def _run_length_avg(bits: str) -> float:
    if not bits:
        return 0.0
    return len(bits) / (_transitions(bits) + 1)


METRICS: dict[str, MetricFn] = {
    "length":           lambda bits: len(bits),
    "hamming_weight":   _ones,
    "balance":          lambda bits: _ones(bits) / len(bits) if bits else 0.0,
    "entropy":          _entropy,
    "transition_count": _transitions,
    "transition_rate":  lambda bits: _transitions(bits) / (len(bits) - 1) if len(bits) > 1 else 0.0,
    "run_length_avg":   _run_length_avg,
}


class MetricsCalculator:
    """Computes every registered metric for a buffer."""

    def __init__(self) -> None:
        self._metrics: dict[str, MetricFn] = dict(METRICS)

    def register(self, name: str, fn: MetricFn) -> None:
        self._metrics[name] = fn

    def available(self) -> list[str]:
        return sorted(self._metrics)

    def compute(self, bits: str) -> dict[str, float]:
        return {name: round(float(fn(bits)), 6) for name, fn in sorted(self._metrics.items())}

    def compute_one(self, name: str, bits: str) -> float:
        if name not in self._metrics:
            raise KeyError(f"Unknown metric '{name}'.")
        return round(float(self._metrics[name](bits)), 6)


def metrics_delta(before: dict[str, float], after: dict[str, float]) -> dict[str, float]:
    return {k: round(after.get(k, 0.0) - before.get(k, 0.0), 6) for k in sorted(set(before) | set(after))}
