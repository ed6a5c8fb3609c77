# bits.py
# Bit buffer helpers. A buffer is a plain str of '0'/'1' characters; every
# transformation produces a new string, nothing is mutated in place.
#
# stdlib only.

import hashlib
from pathlib import Path

from bitwise_engine.errors import InvalidBitsError

BIT_CHARS = frozenset("01")


def is_bits(value: object) -> bool:
    return isinstance(value, str) and set(value) <= BIT_CHARS


def validate_bits(bits: object) -> str:
    """Return `bits` unchanged, or raise InvalidBitsError."""
    if not isinstance(bits, str):
        raise InvalidBitsError(f"Bit buffer must be a str, got {type(bits).__name__}.")
    bad = set(bits) - BIT_CHARS
    if bad:
        shown = ", ".join(repr(c) for c in sorted(bad)[:5])
        raise InvalidBitsError(f"Bit buffer contains non-binary characters: {shown}.")
    return bits


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def bits_from_bytes(data: bytes) -> str:
    """MSB-first, 8 bits per byte."""
    return "".join(f"{byte:08b}" for byte in data)


def bits_to_bytes(bits: str) -> bytes:
    """Inverse of bits_from_bytes. A trailing partial byte is zero-padded."""
    validate_bits(bits)
    out = bytearray()
    for i in range(0, len(bits), 8):
        out.append(int(bits[i:i + 8].ljust(8, "0"), 2))
    return bytes(out)


def bits_to_hex(bits: str) -> str:
    return " ".join(f"{byte:02X}" for byte in bits_to_bytes(bits))


def load_bits(path: str | Path) -> str:
    """Read a file from disk as a bit buffer."""
    return bits_from_bytes(Path(path).read_bytes())


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def hash_bits(bits: str) -> str:
    """Hex-encoded SHA-256 of the buffer's text form."""
    return hashlib.sha256(bits.encode("ascii")).hexdigest()


def mismatch_positions(expected: str, actual: str) -> list[int]:
    """
    Indices where the two buffers differ.

    Positions inside the shared prefix come first; if the lengths differ,
    every index of the longer tail is reported as well.
    """
    shared = min(len(expected), len(actual))
    positions = [i for i in range(shared) if expected[i] != actual[i]]
    positions.extend(range(shared, max(len(expected), len(actual))))
    return positions


def changed_ranges(before: str, after: str) -> list[tuple[int, int]]:
    """Half-open runs of changed bits between two buffers."""
    ranges: list[tuple[int, int]] = []
    start = None
    shared = min(len(before), len(after))
    for i in range(shared):
        if before[i] != after[i]:
            if start is None:
                start = i
        elif start is not None:
            ranges.append((start, i))
            start = None
    if len(before) != len(after):
        # Tail growth or shrinkage merges with an open run.
        ranges.append((shared if start is None else start, max(len(before), len(after))))
    elif start is not None:
        ranges.append((start, shared))
    return ranges


def ranges_overlap(a: tuple[int, int], b: tuple[int, int]) -> bool:
    return a[0] < b[1] and b[0] < a[1]
