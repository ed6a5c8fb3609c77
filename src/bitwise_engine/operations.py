# operations.py
# Operation registry: all bit-level transformation implementations.
# The engine never calls these functions directly; it goes through
# OperationRouter.apply(), which validates, scopes and never raises.

from typing import Any, Callable

from bitwise_engine.bits import validate_bits
from bitwise_engine.models import OperationResult

OperationFn = Callable[[str, dict], str]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _flip(bit: str) -> str:
    return "1" if bit == "0" else "0"


def _count(params: dict, default: int) -> int:
    value = params.get("count", default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"count must be a non-negative int, got {value!r}")
    return value


def _position(params: dict, key: str, limit: int) -> int:
    value = params.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= limit:
        raise ValueError(f"{key} must be an int in [0, {limit}], got {value!r}")
    return value


def _fill(params: dict, key: str = "value") -> str:
    value = str(params.get(key, "0"))
    if value not in ("0", "1"):
        raise ValueError(f"{key} must be '0' or '1', got {value!r}")
    return value


def _mask(bits: str, params: dict) -> str:
    """Cyclically extend the mask to the buffer length."""
    mask = validate_bits(params.get("mask", ""))
    if not bits:
        return ""
    if not mask:
        raise ValueError("mask must not be empty")
    return (mask * (len(bits) // len(mask) + 1))[: len(bits)]


def _gate(fn: Callable[[str, str], bool]) -> OperationFn:
    def apply(bits: str, params: dict) -> str:
        mask = _mask(bits, params)
        return "".join("1" if fn(b, m) else "0" for b, m in zip(bits, mask))

    return apply


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


def _op_not(bits: str, params: dict) -> str:
    return "".join(_flip(b) for b in bits)


def _op_shl(bits: str, params: dict) -> str:
    n = min(_count(params, 1), len(bits))
    return bits[n:] + "0" * n


def _op_shr(bits: str, params: dict) -> str:
    n = min(_count(params, 1), len(bits))
    return "0" * n + bits[: len(bits) - n]


def _op_rol(bits: str, params: dict) -> str:
    if not bits:
        return bits
    n = _count(params, 1) % len(bits)
    return bits[n:] + bits[:n]


def _op_ror(bits: str, params: dict) -> str:
    if not bits:
        return bits
    n = _count(params, 1) % len(bits)
    return bits[len(bits) - n:] + bits[: len(bits) - n]


def _single_bit(update: Callable[[str], str]) -> OperationFn:
    def apply(bits: str, params: dict) -> str:
        if not bits:
            raise ValueError("cannot address a bit in an empty buffer")
        pos = _position(params, "position", len(bits) - 1)
        return bits[:pos] + update(bits[pos]) + bits[pos + 1:]

    return apply


def _op_insert(bits: str, params: dict) -> str:
    pos = _position(params, "position", len(bits))
    return bits[:pos] + validate_bits(params.get("bits", "")) + bits[pos:]


def _op_delete(bits: str, params: dict) -> str:
    start = _position(params, "start", len(bits))
    return bits[:start] + bits[start + _count(params, 1):]


def _op_truncate(bits: str, params: dict) -> str:
    return bits[: _count(params, len(bits))]


def _op_append(bits: str, params: dict) -> str:
    return bits + validate_bits(params.get("bits", ""))


def _op_pad(bits: str, params: dict) -> str:
    alignment = params.get("alignment", 8)
    if isinstance(alignment, bool) or not isinstance(alignment, int) or alignment <= 0:
        raise ValueError(f"alignment must be a positive int, got {alignment!r}")
    return bits + _fill(params) * (-len(bits) % alignment)


def _op_pad_left(bits: str, params: dict) -> str:
    return bits.rjust(_count(params, len(bits) + 8), _fill(params))


def _op_pad_right(bits: str, params: dict) -> str:
    return bits.ljust(_count(params, len(bits) + 8), _fill(params))


def _op_extend(bits: str, params: dict) -> str:
    return bits + _fill(params) * _count(params, 8)


def _op_gray(bits: str, params: dict) -> str:
    if not bits:
        return bits
    if params.get("direction", "encode") == "decode":
        out = [bits[0]]
        for b in bits[1:]:
            out.append(b if out[-1] == "0" else _flip(b))
        return "".join(out)
    return bits[0] + "".join("1" if a != b else "0" for a, b in zip(bits, bits[1:]))


OPERATIONS: dict[str, OperationFn] = {
    "NOT":       _op_not,
    "AND":       _gate(lambda b, m: b == "1" and m == "1"),
    "OR":        _gate(lambda b, m: b == "1" or m == "1"),
    "XOR":       _gate(lambda b, m: b != m),
    "NAND":      _gate(lambda b, m: not (b == "1" and m == "1")),
    "NOR":       _gate(lambda b, m: not (b == "1" or m == "1")),
    "XNOR":      _gate(lambda b, m: b == m),
    "SHL":       _op_shl,
    "SHR":       _op_shr,
    "ROL":       _op_rol,
    "ROR":       _op_ror,
    "REVERSE":   lambda bits, params: bits[::-1],
    "BSET":      _single_bit(lambda b: "1"),
    "BCLR":      _single_bit(lambda b: "0"),
    "BTOG":      _single_bit(_flip),
    "INSERT":    _op_insert,
    "DELETE":    _op_delete,
    "TRUNCATE":  _op_truncate,
    "APPEND":    _op_append,
    "PAD":       _op_pad,
    "PAD_LEFT":  _op_pad_left,
    "PAD_RIGHT": _op_pad_right,
    "EXTEND":    _op_extend,
    "BUFFER":    lambda bits, params: bits,
    "GRAY":      _op_gray,
}

# Authoritative budget costs. Registered operations without an entry cost 1.
OPERATION_COSTS: dict[str, float] = {
    "NOT": 1, "AND": 1, "OR": 1, "XOR": 1, "NAND": 2, "NOR": 2, "XNOR": 2,
    "SHL": 1, "SHR": 1, "ROL": 1, "ROR": 1, "REVERSE": 1,
    "BSET": 1, "BCLR": 1, "BTOG": 1,
    "INSERT": 2, "DELETE": 2, "TRUNCATE": 1, "APPEND": 1,
    "PAD": 1, "PAD_LEFT": 1, "PAD_RIGHT": 1, "EXTEND": 2,
    "BUFFER": 0, "GRAY": 2,
}

# Identity-preserving default masks. The mask actually used is written back
# into the returned params so a replay runs with the same value.
DEFAULT_MASKS: dict[str, str] = {
    "AND": "1", "OR": "0", "XOR": "0", "NAND": "0", "NOR": "0", "XNOR": "0",
}

LENGTH_CHANGING: frozenset[str] = frozenset(
    {"INSERT", "DELETE", "TRUNCATE", "PAD", "PAD_LEFT", "PAD_RIGHT", "EXTEND", "APPEND"}
)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def _parse_range(raw: Any, length: int) -> tuple[int, int]:
    if (
        not isinstance(raw, (list, tuple))
        or len(raw) != 2
        or not all(isinstance(v, int) and not isinstance(v, bool) for v in raw)
    ):
        raise ValueError(f"range must be [start, end], got {raw!r}")
    start, end = raw
    if not 0 <= start <= end <= length:
        raise ValueError(f"range [{start}, {end}) is outside a {length}-bit buffer")
    return start, end


class OperationRouter:
    """
    Maps operation names to implementations and costs.

    Each instance owns its own registry copy, so registering a custom
    operation in one engine never leaks into another.
    """

    def __init__(self) -> None:
        self._operations: dict[str, OperationFn] = dict(OPERATIONS)
        self._costs: dict[str, float] = dict(OPERATION_COSTS)
        self._length_changing: set[str] = set(LENGTH_CHANGING)

    def register(
        self,
        name: str,
        fn: OperationFn,
        cost: float = 1,
        length_changing: bool = False,
    ) -> None:
        self._operations[name] = fn
        self._costs[name] = cost
        if length_changing:
            self._length_changing.add(name)
        else:
            self._length_changing.discard(name)

    def unregister(self, name: str) -> None:
        self._operations.pop(name, None)
        self._costs.pop(name, None)
        self._length_changing.discard(name)

    def has(self, name: str) -> bool:
        return name in self._operations

    def available(self) -> list[str]:
        return sorted(self._operations)

    def get_cost(self, name: str) -> float:
        return self._costs.get(name, 1)

    def is_length_changing(self, name: str) -> bool:
        return name in self._length_changing

    def apply(self, name: str, bits: str, params: dict | None = None) -> OperationResult:
        """
        Run one operation. Never raises.

        `params["range"] = [start, end]` scopes the operation to that slice;
        the result is spliced back between the untouched prefix and suffix.
        """
        used = dict(params or {})
        fn = self._operations.get(name)
        if fn is None:
            return OperationResult(
                success=False, operation=name, bits=bits, params=used,
                error=f"Unknown operation '{name}'.",
            )
        try:
            validate_bits(bits)
            start, end = 0, len(bits)
            if used.get("range") is not None:
                start, end = _parse_range(used["range"], len(bits))
                used["range"] = [start, end]
            target = bits[start:end]
            if name in DEFAULT_MASKS and used.get("mask") is None:
                used["mask"] = DEFAULT_MASKS[name] * len(target)
            out = fn(target, used)
            validate_bits(out)
        # Custom operations are user code; any exception is a failed call.
        except Exception as exc:
            return OperationResult(
                success=False, operation=name, bits=bits, params=used,
                error=f"{type(exc).__name__}: {exc}",
            )
        return OperationResult(
            success=True, operation=name, bits=bits[:start] + out + bits[end:], params=used,
        )


def check_determinism(
    router: OperationRouter,
    name: str,
    bits: str,
    params: dict | None = None,
    iterations: int = 5,
) -> bool:
    """True when repeated calls agree on both output bits and params used."""
    results = [router.apply(name, bits, params) for _ in range(iterations)]
    first = results[0]
    return all(r.bits == first.bits and r.params == first.params for r in results)
