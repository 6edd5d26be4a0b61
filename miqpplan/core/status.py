"""Tagged status and error types shared by all planning components.

Components signal failures by raising a :class:`PlanningError` subclass.
The orchestrator converts those into a :class:`PlanningStatus` so that
callers only ever see a tagged result.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    OK = 0
    CONFIG_MISSING = 1
    ENGINE_SOLVE_FAILURE = 2
    OBSTACLE_PROCESSING_FAILURE = 3
    INSUFFICIENT_VALID_POINTS = 4
    SMOOTHING_FAILURE = 5
    SOLVER_EXCEPTION = 6
    INVALID_REQUEST = 7


@dataclass(frozen=True)
class PlanningStatus:
    """Outcome of a planning call: an error code and a readable reason."""
    code: ErrorCode = ErrorCode.OK
    message: str = ""

    def ok(self) -> bool:
        return self.code is ErrorCode.OK

    @classmethod
    def success(cls, message: str = "") -> "PlanningStatus":
        return cls(ErrorCode.OK, message)

    def __str__(self):
        if self.ok():
            return "OK"
        return f"{self.code.name}: {self.message}"


class PlanningError(Exception):
    """Base class of all errors raised inside the planning core."""

    code = ErrorCode.SOLVER_EXCEPTION

    def __init__(self, message: str, code: ErrorCode = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    def to_status(self) -> PlanningStatus:
        return PlanningStatus(self.code, str(self))


class InvalidRequestError(PlanningError):
    code = ErrorCode.INVALID_REQUEST


class ObstacleProcessingError(PlanningError):
    code = ErrorCode.OBSTACLE_PROCESSING_FAILURE


class SmootherInitError(PlanningError):
    """Raised when the smoothing problem cannot be set up from its input."""
    code = ErrorCode.SMOOTHING_FAILURE
