"""
status.py - Simulation status and error taxonomy

Every transaction entry carries a SimulationStatus. The failing variant
carries the SimulationError that caused it, so reports and notifications
never need a side channel to find out why an entry failed.

Error taxonomy:
- ConfigurationError: malformed scenario, fatal at construction
- TransportFailure: call could not be dispatched/answered, retryable
- TransactionTimeout: no reply before the deadline, fatal to the run
- VerificationMismatch: reply did not match, recorded on the entry
- SequenceError: responder call out of order
- InternalLogicError: broken invariant, always fatal
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SimulationError(Exception):
    """Base class for all simulation errors."""

    def __init__(self, message: str, uid: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.uid = uid

    def __str__(self):
        if self.uid:
            return f"uid:{self.uid} {self.message}"
        return self.message


class ConfigurationError(SimulationError, ValueError):
    """Raised when the scenario configuration is malformed."""
    pass


class TransportFailure(SimulationError):
    """Raised when a call could not be dispatched or was answered with an error."""
    pass


class UnknownVerb(TransportFailure):
    """Raised when a call targets a verb nobody registered."""
    pass


class TransactionTimeout(SimulationError):
    """Raised when no reply arrived before the retry timeout."""
    pass


class VerificationMismatch(SimulationError):
    """Raised (or carried by Fail) when a reply does not match the expectation."""
    pass


class SequenceError(SimulationError):
    """Raised when a responder call arrives out of the scripted order."""
    pass


class InternalLogicError(SimulationError):
    """Raised when an invariant of the engine itself is violated."""
    pass


class ScenarioAborted(SimulationError):
    """Fatal run error: the scenario stops and remaining entries do not run."""

    def __init__(self, message: str, uid: Optional[str] = None,
                 cause: Optional[SimulationError] = None):
        super().__init__(message, uid)
        self.cause = cause


class ScenarioBusy(SimulationError):
    """Raised when a scenario run is requested while another one is active."""
    pass


class RunCancelled(SimulationError):
    """Raised inside a run when stop() or the watchdog cancelled it."""
    pass


class StatusKind(Enum):
    IDLE = "Idle"
    PENDING = "Pending"
    DONE = "Done"
    CHECK = "Check"
    IGNORED = "Ignored"
    SKIP = "Skip"
    TIMEOUT = "Timeout"
    RETRY = "Retry"
    INVALID_SEQUENCE = "InvalidSequence"
    FAIL = "Fail"


@dataclass(frozen=True)
class SimulationStatus:
    """
    Status of one transaction entry.

    Attributes:
        kind: Status variant
        error: Error carried by the Fail (and InvalidSequence) variants
    """
    kind: StatusKind
    error: Optional[SimulationError] = None

    @staticmethod
    def fail(error: SimulationError) -> 'SimulationStatus':
        return SimulationStatus(StatusKind.FAIL, error)

    @staticmethod
    def invalid_sequence(error: SequenceError) -> 'SimulationStatus':
        return SimulationStatus(StatusKind.INVALID_SEQUENCE, error)

    @property
    def is_success(self) -> bool:
        """Done, Check and Ignored all count as a passed transaction."""
        return self.kind in (StatusKind.DONE, StatusKind.CHECK, StatusKind.IGNORED)

    @property
    def is_failure(self) -> bool:
        return self.kind == StatusKind.FAIL

    def __str__(self):
        if self.error is not None:
            return f"{self.kind.value} {self.error}"
        return self.kind.value


IDLE = SimulationStatus(StatusKind.IDLE)
PENDING = SimulationStatus(StatusKind.PENDING)
DONE = SimulationStatus(StatusKind.DONE)
CHECK = SimulationStatus(StatusKind.CHECK)
IGNORED = SimulationStatus(StatusKind.IGNORED)
SKIP = SimulationStatus(StatusKind.SKIP)
TIMEOUT = SimulationStatus(StatusKind.TIMEOUT)
RETRY = SimulationStatus(StatusKind.RETRY)
