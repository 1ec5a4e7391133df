"""
verify.py - Structural response verification

Compares a received payload against an expected one using a partial
match: only keys present in the expectation are checked, extra keys in
the received payload are ignored. Nested objects are compared
recursively and the failing key is reported as a dotted path.

Example:
    expected = {"a": 1, "b": {"c": 2}}
    received = {"a": 1, "b": {"c": 3}, "d": 9}
    check_arguments("setup:0", received, expected)
    -> Fail(VerificationMismatch("... key:b.c ..."))
"""

from typing import Any, Mapping, Optional

from simu.harness.status import (
    CHECK,
    IGNORED,
    SimulationStatus,
    VerificationMismatch,
)


def check_arguments(marker: str, received: Any, expected: Any) -> SimulationStatus:
    """
    Check a received payload against its expectation.

    Args:
        marker: Sequence marker used in error messages (e.g. "uid:seq")
        received: Payload actually received
        expected: Expected (partial) payload

    Returns:
        IGNORED when there is nothing to check, CHECK when every expected
        key matches, Fail(VerificationMismatch) otherwise.
    """
    if expected is None or expected == {}:
        return IGNORED

    if not isinstance(expected, Mapping):
        if received != expected:
            return SimulationStatus.fail(VerificationMismatch(
                f"value:{expected!r}!={received!r}", uid=marker))
        return CHECK

    return _check_object(marker, received, expected, prefix=None)


def _check_object(marker: str, received: Any, expected: Mapping,
                  prefix: Optional[str]) -> SimulationStatus:
    if not isinstance(received, Mapping):
        where = f" key:{prefix}" if prefix else ""
        return SimulationStatus.fail(VerificationMismatch(
            f"expected an object{where} got:{received!r}", uid=marker))

    for key, expect_value in expected.items():
        path = f"{prefix}.{key}" if prefix else str(key)

        if key not in received:
            return SimulationStatus.fail(VerificationMismatch(
                f"fail to find key:{path}", uid=marker))

        received_value = received[key]

        # nested object: recurse, a failure bubbles up untouched
        if isinstance(expect_value, Mapping) and isinstance(received_value, Mapping):
            status = _check_object(marker, received_value, expect_value, path)
            if status.is_failure:
                return status
            continue

        if received_value != expect_value:
            return SimulationStatus.fail(VerificationMismatch(
                f"fail key:{path} value:{expect_value!r}!={received_value!r}",
                uid=marker))

    return CHECK
