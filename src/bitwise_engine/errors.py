# errors.py
# Exception taxonomy for the strategy execution engine.
#
# Fatal errors abort a run (status=failed). Recoverable errors are absorbed
# into individual step records. The engine decides which is which; these
# classes only carry the classification.


class BitwiseEngineError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Fatal
# ---------------------------------------------------------------------------


class MissingScriptError(BitwiseEngineError):
    """Raised when a referenced script cannot be resolved by name."""

    def __init__(self, name: str, role: str | None = None) -> None:
        self.name = name
        self.role = role
        label = f"{role} script" if role else "script"
        super().__init__(f"{label.capitalize()} '{name}' not found.")


class ScriptRoleError(MissingScriptError):
    """Raised when a name resolves to a script registered under another role."""

    def __init__(self, name: str, role: str, actual: str) -> None:
        BitwiseEngineError.__init__(self, f"Script '{name}' has role '{actual}', expected '{role}'.")
        self.name = name
        self.role = role
        self.actual = actual


class SchedulerCrashError(BitwiseEngineError):
    """Raised when the scheduler script throws, times out or returns garbage."""


class InvalidBudgetError(BitwiseEngineError):
    """Raised when a run is started with a negative or non-numeric budget."""


# ---------------------------------------------------------------------------
# Recoverable (absorbed into step records)
# ---------------------------------------------------------------------------


class OperationFailure(BitwiseEngineError):
    """The operation router rejected an operation/params combination."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Operation '{operation}' failed: {reason}")


class ScriptDeclineOrError(BitwiseEngineError):
    """An algorithm, scoring or policy script threw, timed out or declined."""


class ScriptTimeoutError(ScriptDeclineOrError):
    """The script host gave up waiting for a script."""


class ScriptOutputError(ScriptDeclineOrError):
    """A script returned a value that does not match its role's envelope."""


class PolicyRejection(BitwiseEngineError):
    """A policy (or a veto-capable scoring script) refused a proposed step."""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


# ---------------------------------------------------------------------------
# Control flow / post-hoc
# ---------------------------------------------------------------------------


class BudgetExhausted(BitwiseEngineError):
    """Signals that a committed step drained the budget. Not an error."""


class VerificationMismatch(BitwiseEngineError):
    """Replay verification did not reproduce the recorded final bits."""


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------


class EngineBusyError(BitwiseEngineError):
    """Raised when an engine instance is asked to run twice at once."""


class InvalidBitsError(BitwiseEngineError, ValueError):
    """Raised when a bit buffer contains characters other than '0' and '1'."""


class DuplicateStrategyError(BitwiseEngineError, ValueError):
    """Raised when a strategy name is already taken."""


class ResultNotFoundError(BitwiseEngineError, KeyError):
    """Raised when the result store has no record for an id."""
