"""
Check Snapshot Model
====================
Pydantic models for one normalized, immutable sample of check statuses.

Fields (CheckSnapshot):
    total / passed / failed / pending / skipped — non-negative counts,
                      total == passed + failed + pending + skipped
    failure_details — one FailureDetail per failed check, provider order
    passed_names    — names of checks that concluded successfully
    observed_at     — UTC timestamp the sample was taken

Fields (FailureDetail):
    check_name      — unique within a snapshot
    error_kind      — ErrorKind (test-failure, lint-error, ...)
    affected_files  — sorted, de-duplicated repo-relative paths (may be empty)
    summary         — human-readable text
    suggested_fix   — optional hint
    url             — optional link to the check details

Both models are frozen: the engine compares snapshots, it never edits them.
"""
from datetime import datetime, timezone
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ci_engine.core.constants import ErrorKind


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FailureDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    check_name: str
    error_kind: ErrorKind = ErrorKind.UNKNOWN
    affected_files: Tuple[str, ...] = ()
    summary: str = ""
    suggested_fix: Optional[str] = None
    url: Optional[str] = None

    @field_validator("affected_files", mode="before")
    @classmethod
    def _normalize_files(cls, value):
        if value is None:
            return ()
        return tuple(sorted({str(v) for v in value if v}))


class CheckSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = Field(default=0, ge=0)
    passed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    pending: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    failure_details: Tuple[FailureDetail, ...] = ()
    passed_names: Tuple[str, ...] = ()
    observed_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_counts(self) -> "CheckSnapshot":
        expected = self.passed + self.failed + self.pending + self.skipped
        if self.total != expected:
            raise ValueError(
                f"total ({self.total}) must equal passed+failed+pending+skipped ({expected})"
            )
        names = [f.check_name for f in self.failure_details]
        if len(names) != len(set(names)):
            raise ValueError("failure_details check names must be unique")
        return self

    @property
    def failed_names(self) -> frozenset:
        return frozenset(f.check_name for f in self.failure_details)

    @property
    def is_empty(self) -> bool:
        """True when no checks are registered for the revision (yet)."""
        return self.total == 0

    @property
    def pending_ratio(self) -> float:
        if self.total == 0:
            return 1.0
        return self.pending / self.total
