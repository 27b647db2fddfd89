"""
Orchestrator Agent
==================
Single entry point of the engine: drives the Poll → Remediate → Re-poll loop
for one revision and returns exactly one terminal Result.

States:
    polling      → succeeded     poller returned success
    polling      → timed_out     poller deadline exceeded
    polling      → remediating   poller returned failure, remediation enabled and
                                 every FailureDetail is resolvable
    polling      → failed        failure and remediation disabled / not applicable
    remediating  → polling       at least one fix applied without rollback
    remediating  → failed        no applicable fix, max_attempts exhausted, or
                                 every attempted fix rolled back

Retry Policy:
    - attempt_fix is called at most max_attempts times per distinct failure,
      keyed by (check_name, error_kind).
    - Exhausted failures are surfaced unmodified in the FailedResult.

Fault Tolerance:
    - Fix subprocess / git failures count as a failed fix, never crash the run.
    - FatalFetchError propagates unchanged.
    - An overall deadline raises EngineTimeoutError carrying the last snapshot;
      an in-flight fix is cancelled and its checkpoint restored first.

Exclusivity:
    One run per working tree at a time (WorkspaceBusyError otherwise).
"""
import os
import time
import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple, Union

from ci_engine.agents.ci_monitor import CIMonitor, PollOptions, ProgressCallback
from ci_engine.agents.remediation_engine import FixOptions, RemediationEngine
from ci_engine.core.constants import (
    FAILED,
    POLLING,
    PUBLISH_FAILED,
    REMEDIATING,
    REMEDIATION_EXHAUSTED,
    SUCCEEDED,
    TIMED_OUT,
    ErrorKind,
)
from ci_engine.core.errors import EngineTimeoutError, ProcessExecutionError, WorkspaceError
from ci_engine.models.check_snapshot import CheckSnapshot, FailureDetail
from ci_engine.models.fix_attempt import FixAttempt, RemediationMetrics
from ci_engine.models.result import FailedResult, PollOutcome, SucceededResult, TimedOutResult
from ci_engine.services.publisher import RevisionPublisher
from ci_engine.services.workspace_lock import WorkspaceLockRegistry, workspace_locks

logger = logging.getLogger(__name__)

AnyResult = Union[SucceededResult, FailedResult, TimedOutResult]


class Orchestrator:
    """
    Composes CIMonitor, RemediationEngine and an optional RevisionPublisher
    into the engine's state machine.
    """

    def __init__(
        self,
        monitor: CIMonitor,
        engine: Optional[RemediationEngine] = None,
        publisher: Optional[RevisionPublisher] = None,
        poll_options: Optional[PollOptions] = None,
        fix_options: Optional[FixOptions] = None,
        enable_remediation: bool = True,
        workspace_path: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        locks: WorkspaceLockRegistry = workspace_locks,
        clock=time.monotonic,
    ) -> None:
        self.monitor = monitor
        self.engine = engine
        self.publisher = publisher
        self.poll_options = poll_options or PollOptions.from_config()
        self.fix_options = fix_options or FixOptions.from_config()
        self.enable_remediation = enable_remediation and engine is not None
        self.workspace_path = workspace_path or (engine.workspace_path if engine else os.getcwd())
        self.on_progress = on_progress
        self.locks = locks
        self.clock = clock

        self.state = POLLING
        self.state_history: List[str] = []
        self.metrics = RemediationMetrics()
        self.last_snapshot: Optional[CheckSnapshot] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def run(self, revision: str, deadline: Optional[float] = None) -> AnyResult:
        """
        Drive `revision` to a terminal Result.

        Parameters
        ----------
        revision : str
            Commit SHA to watch.
        deadline : float | None
            Overall budget in seconds for the whole run (polls + fixes).

        Raises
        ------
        FatalFetchError
            The check provider rejected the request or kept failing.
        EngineTimeoutError
            `deadline` elapsed; carries the last-known snapshot.
        WorkspaceBusyError
            Another run holds this working tree.
        """
        async with self.locks.hold(self.workspace_path):
            if deadline is None:
                return await self._run(revision)
            try:
                return await asyncio.wait_for(self._run(revision), timeout=deadline)
            except asyncio.TimeoutError as e:
                logger.error("Engine deadline of %ss elapsed in state %s", deadline, self.state)
                raise EngineTimeoutError(
                    f"Deadline of {deadline}s elapsed in state {self.state}",
                    last_snapshot=self.last_snapshot,
                ) from e

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def _transition(self, state: str) -> None:
        if self.state_history and self.state_history[-1] == state:
            return
        if self.state_history:
            logger.info("Orchestrator: %s → %s", self.state, state)
        self.state = state
        self.state_history.append(state)

    async def _run(self, revision: str) -> AnyResult:
        started = self.clock()
        self.state_history = []
        self.last_snapshot = None
        self.metrics = self.engine.start_session() if self.engine else RemediationMetrics()
        attempts_by_failure: Dict[Tuple[str, ErrorKind], int] = {}
        totals = {"polls": 0, "retries_used": 0}
        current = revision

        while True:
            self._transition(POLLING)
            outcome = await self.monitor.wait_for_checks(current, self.poll_options, self.on_progress)
            totals["polls"] += outcome.polls
            totals["retries_used"] += outcome.retries_used
            if outcome.snapshot is not None:
                self.last_snapshot = outcome.snapshot

            common = dict(
                revision=current,
                polls=totals["polls"],
                retries_used=totals["retries_used"],
            )

            if outcome.kind == "succeeded":
                self._transition(SUCCEEDED)
                return SucceededResult(
                    snapshot=outcome.snapshot,
                    no_checks=outcome.no_checks,
                    duration_seconds=self._elapsed(started),
                    state_history=list(self.state_history),
                    **common,
                )

            if outcome.kind == "timed_out":
                self._transition(TIMED_OUT)
                return TimedOutResult(
                    last_snapshot=self.last_snapshot,
                    duration_seconds=self._elapsed(started),
                    state_history=list(self.state_history),
                    **common,
                )

            failures = outcome.snapshot.failure_details if outcome.snapshot else ()
            if not self._remediable(failures):
                return self._failed(outcome, outcome.reason, started, common)

            self._transition(REMEDIATING)
            applied = await self._remediate(failures, attempts_by_failure)
            if not applied:
                logger.warning("Remediation exhausted for %s", current[:8])
                return self._failed(outcome, REMEDIATION_EXHAUSTED, started, common)

            if self.publisher is not None:
                try:
                    current = self.publisher.publish(applied)
                except WorkspaceError as e:
                    logger.error("Publishing fixes failed: %s", e, exc_info=True)
                    return self._failed(outcome, PUBLISH_FAILED, started, common)
            logger.info("%d fix(es) applied, re-polling %s", len(applied), current[:8])

    def _remediable(self, failures: Sequence[FailureDetail]) -> bool:
        if not self.enable_remediation:
            logger.info("Remediation disabled")
            return False
        if not failures:
            return False
        allow_unsafe = self.fix_options.allow_unsafe
        unresolvable = [f.check_name for f in failures if not self.engine.can_resolve(f, allow_unsafe=allow_unsafe)]
        if unresolvable:
            logger.info("Not auto-fixable: %s", ", ".join(unresolvable))
            return False
        return True

    async def _remediate(
        self,
        failures: Sequence[FailureDetail],
        attempts_by_failure: Dict[Tuple[str, ErrorKind], int],
    ) -> List[FixAttempt]:
        applied: List[FixAttempt] = []
        for failure in failures:
            key = (failure.check_name, failure.error_kind)
            used = attempts_by_failure.get(key, 0)
            if used >= self.fix_options.max_attempts:
                logger.warning(
                    "Max attempts (%d) reached for %s, skipping",
                    self.fix_options.max_attempts, failure.check_name,
                )
                continue
            attempts_by_failure[key] = used + 1

            try:
                attempt = await self.engine.attempt_fix(failure, self.fix_options)
            except (ProcessExecutionError, WorkspaceError) as e:
                logger.error("Fix for %s failed: %s", failure.check_name, e, exc_info=True)
                continue

            if attempt.applied:
                applied.append(attempt)
        return applied

    def _failed(self, outcome: PollOutcome, reason: str, started: float, common: dict) -> FailedResult:
        self._transition(FAILED)
        return FailedResult(
            snapshot=outcome.snapshot,
            reason=reason,
            remediation=self.metrics,
            duration_seconds=self._elapsed(started),
            state_history=list(self.state_history),
            **common,
        )

    def _elapsed(self, started: float) -> float:
        return round(self.clock() - started, 3)
