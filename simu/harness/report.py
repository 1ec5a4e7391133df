"""
report.py - Scenario result report

Renders the statuses of a scenario as a TAP-like text report:

    1..3 # charging-session
    ok 0 - iso2:session_setup_req(session-setup) # Checked
    fx 1 - iso2:auth_req(auth) # Fail uid:auth:0 fail to find key:status
    fx 2 - iso2:stop_req(stop) # Idle

Rendering only reads the store, so calling it repeatedly without an
intervening run returns the same text.
"""

from typing import List, Sequence

from simu.harness.status import StatusKind
from simu.harness.store import EntrySnapshot, ScenarioStore


def render_line(entry: EntrySnapshot) -> str:
    label = f"{entry.index} - {entry.verb}({entry.uid})"
    kind = entry.status.kind

    if kind == StatusKind.DONE:
        return f"ok {label} # Done"
    if kind == StatusKind.CHECK:
        return f"ok {label} # Checked"
    if kind == StatusKind.FAIL:
        return f"fx {label} # Fail {entry.status.error}"
    return f"fx {label} # {kind.value}"


def render_report(uid: str, entries: Sequence[EntrySnapshot]) -> List[str]:
    """
    Render the report lines (header + one line per entry).

    Args:
        uid: Scenario uid shown in the header
        entries: Entry snapshots in configuration order
    """
    lines = [f"1..{len(entries)} # {uid}"]
    lines.extend(render_line(entry) for entry in entries)
    return lines


def scenario_report(store: ScenarioStore) -> List[str]:
    return render_report(store.uid, store.snapshot())


def format_report(lines: Sequence[str]) -> str:
    return "\n".join(lines)


def summarize(entries: Sequence[EntrySnapshot]) -> dict:
    """Count passed / failed / not run entries."""
    passed = sum(1 for e in entries if e.status.is_success)
    not_run = sum(1 for e in entries if e.status.kind == StatusKind.IDLE)
    return {
        'total': len(entries),
        'passed': passed,
        'failed': len(entries) - passed - not_run,
        'not_run': not_run,
    }
