"""
simu.harness - Scenario execution core

Leaf modules (status, policy, verification, store, events) are exported
here. The handlers, scheduler, api and launcher depend on simu.transport
and are imported from their own modules, e.g.:

    from simu.harness.launcher import SimulationLauncher
"""

from .status import (
    SimulationStatus,
    StatusKind,
    SimulationError,
    ConfigurationError,
    TransportFailure,
    TransactionTimeout,
    VerificationMismatch,
    SequenceError,
    InternalLogicError,
    ScenarioAborted,
)
from .policy import DelayPolicy, RetryPolicy
from .verify import check_arguments
from .store import ScenarioStore, TransactionEntry
from .events import Notification, ScenarioEvent

__all__ = [
    'SimulationStatus',
    'StatusKind',
    'SimulationError',
    'ConfigurationError',
    'TransportFailure',
    'TransactionTimeout',
    'VerificationMismatch',
    'SequenceError',
    'InternalLogicError',
    'ScenarioAborted',
    'DelayPolicy',
    'RetryPolicy',
    'check_arguments',
    'ScenarioStore',
    'TransactionEntry',
    'Notification',
    'ScenarioEvent',
]
