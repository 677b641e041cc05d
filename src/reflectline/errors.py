"""Result type shared by the scheduler and the session state machine.

Engine operations never raise for rule violations.  They return a
``Result`` carrying either a value or an ``EngineError`` tagged with an
``ErrorKind``.  A caller that treats a failure as impossible calls
``unwrap()``, which turns the error into ``InvariantViolation``.  That is a
defect and propagates; it is never caught and retried.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    NOT_FOUND = "not_found"
    DUPLICATE_ACTIVE = "duplicate_active"
    ILLEGAL_TRANSITION = "illegal_transition"
    BUDGET_EXHAUSTED = "budget_exhausted"
    INVALID_ARGUMENT = "invalid_argument"


@dataclass(frozen=True)
class EngineError:
    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class InvariantViolation(RuntimeError):
    """Raised when an engine error reaches a caller that asserted success."""

    def __init__(self, error: EngineError):
        super().__init__(str(error))
        self.error = error


@dataclass(frozen=True)
class Result:
    value: Any = None
    error: Optional[EngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise InvariantViolation(self.error)
        return self.value


def ok(value: Any = None) -> Result:
    return Result(value=value)


def err(kind: ErrorKind, message: str) -> Result:
    return Result(error=EngineError(kind, message))
