"""
policy.py - Delay scaling and retry policy

Nominal delays from the configuration are scaled by a global percentage
and clamped, so a whole scenario can be slowed down or sped up without
editing every transaction:

    effective = clamp(nominal * percent / 100, min_ms, max_ms)

The same scaling applies to the scenario watchdog.
"""

from dataclasses import dataclass

from simu.harness.status import ConfigurationError


# Floor for the scaled scenario watchdog
MIN_WATCHDOG_MS = 1000


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-transaction retry policy.

    Attributes:
        delay_ms: Spacing between two attempts
        timeout_ms: Deadline for a single attempt
        count: Maximum number of attempts (>= 1)
    """
    delay_ms: int = 100
    timeout_ms: int = 1000
    count: int = 1

    def __post_init__(self):
        if self.count < 1:
            raise ConfigurationError(f"retry.count must be >= 1, got {self.count}")
        if self.delay_ms < 0:
            raise ConfigurationError(f"retry.delay must be non-negative, got {self.delay_ms}")
        if self.timeout_ms <= 0:
            raise ConfigurationError(f"retry.timeout must be positive, got {self.timeout_ms}")

    @property
    def delay_s(self) -> float:
        return self.delay_ms / 1000.0

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    def worst_case_ms(self) -> int:
        """Upper bound for every attempt plus the spacing between them."""
        return self.count * self.timeout_ms + (self.count - 1) * self.delay_ms


@dataclass(frozen=True)
class DelayPolicy:
    """
    Global delay scaling policy.

    Attributes:
        percent: Scaling factor applied to nominal delays
        min_ms: Lower clamp for scaled delays
        max_ms: Upper clamp for scaled delays
    """
    percent: int = 100
    min_ms: int = 0
    max_ms: int = 60000

    def __post_init__(self):
        if self.percent < 0:
            raise ConfigurationError(f"delay.percent must be non-negative, got {self.percent}")
        if self.min_ms < 0:
            raise ConfigurationError(f"delay.min must be non-negative, got {self.min_ms}")
        if self.max_ms < self.min_ms:
            raise ConfigurationError(
                f"delay.max ({self.max_ms}) must be >= delay.min ({self.min_ms})")

    def scale(self, nominal_ms: int) -> int:
        scaled = nominal_ms * self.percent // 100
        return max(self.min_ms, min(scaled, self.max_ms))

    def watchdog(self, nominal_ms: int) -> int:
        # watchdog is not bounded by max_ms, only floored
        scaled = nominal_ms * self.percent // 100
        return max(scaled, MIN_WATCHDOG_MS)
