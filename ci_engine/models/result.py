"""
Result Models
=============
Pydantic models for everything the engine hands back to its caller.

ProgressEvent  — one per check poll, delivered in strictly increasing
                 observed_at order (CIMonitor.watch / on_progress).
PollOutcome    — terminal outcome of one CIMonitor.wait_for_checks call.
Result         — the engine's sole output, a tagged union on `kind`:
                     succeeded  {snapshot, no_checks}
                     failed     {snapshot, reason, remediation}
                     timed_out  {last_snapshot}

A Result serializes to exactly one JSON record (to_json) so the calling
layer can forward it verbatim to human-readable or machine output.
"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ci_engine.models.check_snapshot import CheckSnapshot
from ci_engine.models.fix_attempt import RemediationMetrics

OutcomeKind = Literal["succeeded", "failed", "timed_out"]


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    revision: str
    sequence: int
    observed_at: datetime
    elapsed: float
    total: int
    passed: int
    failed: int
    pending: int
    skipped: int
    has_status_changed: bool
    new_failures: Tuple[str, ...] = ()
    new_passes: Tuple[str, ...] = ()
    no_checks: bool = False


class PollOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    revision: str
    snapshot: Optional[CheckSnapshot] = None
    reason: str = ""
    no_checks: bool = False
    polls: int = 0
    sleeps: int = 0
    retries_used: int = 0
    elapsed: float = 0.0


class _ResultBase(BaseModel):
    revision: str
    duration_seconds: float = 0.0
    polls: int = 0
    retries_used: int = 0
    state_history: List[str] = Field(default_factory=list)

    def to_json(self) -> str:
        """Serialize to a single well-formed JSON record."""
        return self.model_dump_json()


class SucceededResult(_ResultBase):
    kind: Literal["succeeded"] = "succeeded"
    snapshot: CheckSnapshot
    no_checks: bool = False


class FailedResult(_ResultBase):
    kind: Literal["failed"] = "failed"
    snapshot: Optional[CheckSnapshot] = None
    reason: str = ""
    remediation: RemediationMetrics = Field(default_factory=RemediationMetrics)


class TimedOutResult(_ResultBase):
    kind: Literal["timed_out"] = "timed_out"
    last_snapshot: Optional[CheckSnapshot] = None


Result = Annotated[
    Union[SucceededResult, FailedResult, TimedOutResult],
    Field(discriminator="kind"),
]

_RESULT_ADAPTER: TypeAdapter = TypeAdapter(Result)


def parse_result(raw: Union[str, bytes]) -> Union[SucceededResult, FailedResult, TimedOutResult]:
    """Read a Result record written by to_json back into its tagged variant."""
    return _RESULT_ADAPTER.validate_json(raw)
