"""
Fix Attempt Model
=================
Pydantic models tracking remediation actions and their outcomes.

FixAction fields:
    tool / args            — the fix command (args may reference affected files)
    safe                   — True if the action only reformats (never changes behaviour)
    description            — short human label ("ruff format")
    verify_tool / verify_args — command re-run before and after to count errors
    verify_counts_lines    — verifier lists offenders one per line and exits 0 (gofmt -l)
    install_hint           — how to install `tool` when it is missing

FixAttempt fields:
    action                 — the resolved FixAction (None when nothing resolved)
    check_name / error_kind — the failure this attempt targeted
    safe                   — copied from action.safe
    errors_before / errors_after — verifier error counts around the fix
    applied                — fix kept in the working tree
    rolled_back            — checkpoint restored after the fix
    dry_run                — resolved and reported only, nothing executed
    checkpoint_taken / checkpoint_id — pre-fix checkpoint of a dirty tree
    changed_files / diff_summary — exactly what the kept fix changed
    reason                 — standardised outcome constant (see core/constants.py)
    message                — diagnostic text, e.g. install guidance
    duration_seconds       — wall clock time of the attempt

Invariant: errors_after > errors_before implies rolled_back.

RemediationMetrics is the append-only session ledger of FixAttempts. One
instance belongs to one RemediationEngine; it is never module-global.
"""
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ci_engine.core.constants import DRY_RUN, ErrorKind


class FixAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool: str
    args: Tuple[str, ...] = ()
    safe: bool = True
    description: str = ""
    verify_tool: str = ""
    verify_args: Tuple[str, ...] = ()
    verify_counts_lines: bool = False
    install_hint: str = ""

    @property
    def command_line(self) -> str:
        return " ".join((self.tool,) + self.args)

    @property
    def verify_command_line(self) -> str:
        return " ".join((self.verify_tool,) + self.verify_args)


class FixAttempt(BaseModel):
    action: Optional[FixAction] = None
    check_name: str = ""
    error_kind: ErrorKind = ErrorKind.UNKNOWN
    safe: bool = True
    errors_before: int = 0
    errors_after: int = 0
    applied: bool = False
    rolled_back: bool = False
    dry_run: bool = False
    checkpoint_taken: bool = False
    checkpoint_id: str = ""
    changed_files: List[str] = []
    diff_summary: str = ""
    reason: str = ""
    message: str = ""
    duration_seconds: float = 0.0

    @property
    def regressed(self) -> bool:
        return self.errors_after > self.errors_before


class ErrorKindStats(BaseModel):
    attempts: int = 0
    applied: int = 0
    rolled_back: int = 0


class RemediationMetrics(BaseModel):
    total_attempts: int = 0
    fixed: int = 0
    introduced: int = 0
    rollbacks: int = 0
    dry_runs: int = 0
    average_duration: float = 0.0
    total_duration: float = 0.0
    by_error_kind: Dict[str, ErrorKindStats] = Field(default_factory=dict)
    by_reason: Dict[str, int] = Field(default_factory=dict)
    attempts: List[FixAttempt] = Field(default_factory=list)

    def record(self, attempt: FixAttempt) -> None:
        """Append an attempt to the ledger and update the counters."""
        self.attempts.append(attempt)
        if attempt.reason:
            self.by_reason[attempt.reason] = self.by_reason.get(attempt.reason, 0) + 1

        # Dry runs are tracked separately, they never touch the workspace
        if attempt.dry_run or attempt.reason == DRY_RUN:
            self.dry_runs += 1
            return

        self.total_attempts += 1
        self.total_duration += attempt.duration_seconds
        self.average_duration = self.total_duration / self.total_attempts

        if attempt.applied:
            self.fixed += 1
        if attempt.regressed:
            self.introduced += 1
        if attempt.rolled_back:
            self.rollbacks += 1

        stats = self.by_error_kind.setdefault(attempt.error_kind.value, ErrorKindStats())
        stats.attempts += 1
        if attempt.applied:
            stats.applied += 1
        if attempt.rolled_back:
            stats.rolled_back += 1
