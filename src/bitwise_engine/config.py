# config.py
# Environment-driven settings. Values come from the process environment or a
# local .env file; every constructor that uses them also accepts an explicit
# override, so nothing below is required at runtime.

import os

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


# Wall-clock limit for a single script invocation.
SCRIPT_TIMEOUT_MS = _int("BITWISE_SCRIPT_TIMEOUT_MS", 5000)

DEFAULT_BUDGET = _float("BITWISE_DEFAULT_BUDGET", 1000.0)

# JSON snapshot file for the result store. Unset means memory only.
RESULTS_PATH = os.getenv("BITWISE_RESULTS_PATH") or None

MAX_RESULTS = _int("BITWISE_MAX_RESULTS", 100)

MAX_MISMATCH_POSITIONS = _int("BITWISE_MAX_MISMATCH_POSITIONS", 100)

LOG_LEVEL = os.getenv("BITWISE_LOG_LEVEL", "WARNING").upper()
