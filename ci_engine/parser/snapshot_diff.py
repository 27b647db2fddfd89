"""
Snapshot Diff
=============
Set-difference helpers between two consecutive CheckSnapshots, used to
build ProgressEvents without re-deriving them in the caller.

With no previous snapshot, every entry of the current snapshot counts as new.
"""
from typing import Optional

from ci_engine.models.check_snapshot import CheckSnapshot


def get_new_failures(prev: Optional[CheckSnapshot], curr: CheckSnapshot) -> frozenset:
    """Check names failed in `curr` but not failed in `prev`."""
    if prev is None:
        return curr.failed_names
    return curr.failed_names - prev.failed_names


def get_new_passes(prev: Optional[CheckSnapshot], curr: CheckSnapshot) -> frozenset:
    """Check names passed in `curr` but not passed in `prev`."""
    current = frozenset(curr.passed_names)
    if prev is None:
        return current
    return current - frozenset(prev.passed_names)


def has_status_changed(prev: Optional[CheckSnapshot], curr: CheckSnapshot) -> bool:
    """True if counts or the failed / passed name sets differ."""
    if prev is None:
        return True
    if (prev.total, prev.passed, prev.failed, prev.pending, prev.skipped) != (
        curr.total, curr.passed, curr.failed, curr.pending, curr.skipped
    ):
        return True
    if prev.failed_names != curr.failed_names:
        return True
    return frozenset(prev.passed_names) != frozenset(curr.passed_names)
