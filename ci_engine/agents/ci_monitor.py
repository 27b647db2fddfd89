"""
CI Monitor Agent
================
Samples a CheckStatusSource until the checks of one revision reach a
terminal outcome.

Per poll:
    1. Fetch a snapshot (bounded by fetch_timeout and the remaining time)
    2. Transient fetch error → consume one retry, no progress event, sleep
       on the same schedule; budget exhausted → FatalFetchError
    3. Emit one ProgressEvent (diff against the previous snapshot)
    4. total == 0 → keep sampling until checks appear or the grace period
       elapses, then succeed with no_checks=True
    5. fail_fast and a critical failure → failed, no further fetch
    6. pending == 0 and failed == 0 → succeeded
    7. pending == 0 and failed > 0 → failed with every FailureDetail
    8. Otherwise sleep the strategy interval, clamped to the remaining time

Deadline reached → timed_out with the last-known snapshot.

Progress is an async generator (watch) of ProgressEvents in strictly
increasing observed_at order; wait_for_checks consumes it and forwards each
event to an optional on_progress callable.

Clock and sleep are injectable so tests drive time deterministically.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Optional

from ci_engine.agents.check_source import CheckStatusSource
from ci_engine.agents.poll_strategy import PollStrategy, make_strategy
from ci_engine.core import config
from ci_engine.core.constants import CHECKS_FAILED, CRITICAL_FAILURE
from ci_engine.core.errors import FatalFetchError, FetchError, TransientFetchError
from ci_engine.models.check_snapshot import CheckSnapshot
from ci_engine.models.result import PollOutcome, ProgressEvent
from ci_engine.parser.classification import has_critical_failure, is_retryable
from ci_engine.parser.snapshot_diff import get_new_failures, get_new_passes, has_status_changed

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Optional[Awaitable[None]]]


@dataclass
class PollOptions:
    timeout: float = 1800.0
    initial_interval: float = 5.0
    max_interval: float = 30.0
    strategy: str = "adaptive"
    backoff_multiplier: float = 1.5
    fail_fast: bool = True
    max_fetch_retries: int = 5
    no_checks_grace_period: float = 20.0
    fetch_timeout: float = 20.0

    @classmethod
    def from_config(cls, **overrides) -> "PollOptions":
        """Build options from ci_engine.core.config, with keyword overrides."""
        values = dict(
            timeout=config.CI_POLL_TIMEOUT,
            initial_interval=config.CI_POLL_INITIAL_INTERVAL,
            max_interval=config.CI_POLL_MAX_INTERVAL,
            strategy=config.CI_POLL_STRATEGY,
            backoff_multiplier=config.CI_BACKOFF_MULTIPLIER,
            fail_fast=config.CI_FAIL_FAST,
            max_fetch_retries=config.CI_MAX_FETCH_RETRIES,
            no_checks_grace_period=config.CI_NO_CHECKS_GRACE_PERIOD,
            fetch_timeout=config.CI_FETCH_TIMEOUT,
        )
        values.update(overrides)
        return cls(**values)


@dataclass
class PollState:
    """Mutable state of one wait_for_checks call. Never shared."""
    revision: str
    started: float
    deadline: float
    strategy: PollStrategy
    previous_snapshot: Optional[CheckSnapshot] = None
    last_observed_at: Optional[datetime] = None
    first_empty_at: Optional[float] = None
    retries_used: int = 0
    polls: int = 0
    sleeps: int = 0
    elapsed: float = 0.0
    outcome: Optional[PollOutcome] = field(default=None)


class CIMonitor:
    """
    Agent that waits for the CI checks of a revision to settle.
    """

    def __init__(
        self,
        source: CheckStatusSource,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.source = source
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def start(self, revision: str, options: PollOptions) -> PollState:
        """Create the PollState for one wait on `revision`."""
        now = self.clock()
        return PollState(
            revision=revision,
            started=now,
            deadline=now + options.timeout,
            strategy=make_strategy(
                options.strategy,
                options.initial_interval,
                options.max_interval,
                options.backoff_multiplier,
            ),
        )

    async def watch(
        self,
        revision: str,
        options: PollOptions,
        state: Optional[PollState] = None,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Yield one ProgressEvent per check poll until a terminal outcome.

        The terminal PollOutcome is stored on `state.outcome` before the
        last event is yielded. Finite and non-restartable.

        Raises
        ------
        FatalFetchError
            On a fatal fetch error or an exhausted retry budget.
        """
        if state is None:
            state = self.start(revision, options)

        while self.clock() < state.deadline:
            try:
                snapshot = await self._fetch(revision, options, state)
            except FetchError as e:
                if not is_retryable(e):
                    raise
                await self._on_transient_error(e, options, state)
                continue

            state.polls += 1
            snapshot = self._ensure_ordered(snapshot, state)
            now = self.clock()
            state.elapsed = now - state.started

            outcome = self._evaluate(snapshot, options, state, now)
            event = self._progress_event(snapshot, state, no_checks=bool(outcome and outcome.no_checks))
            state.previous_snapshot = snapshot

            if event.has_status_changed:
                logger.info(
                    "CI status %s: %d passed, %d failed, %d pending (of %d)",
                    revision[:8], snapshot.passed, snapshot.failed, snapshot.pending, snapshot.total,
                )

            if outcome is not None:
                state.outcome = outcome
                yield event
                return

            yield event
            await self._sleep_next(state, snapshot)

        state.elapsed = self.clock() - state.started
        logger.warning("CI wait for %s timed out after %.1fs", revision[:8], state.elapsed)
        state.outcome = self._outcome("timed_out", state, state.previous_snapshot, reason="timeout")

    async def wait_for_checks(
        self,
        revision: str,
        options: Optional[PollOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PollOutcome:
        """
        Poll until the checks of `revision` are terminal or the timeout elapses.

        Parameters
        ----------
        revision : str
            Commit SHA to watch.
        options : PollOptions | None
            Defaults to PollOptions.from_config().
        on_progress : callable | None
            Called (or awaited) with every ProgressEvent.

        Returns
        -------
        PollOutcome
            succeeded / failed / timed_out.
        """
        options = options or PollOptions.from_config()
        state = self.start(revision, options)
        logger.info(
            "Waiting for CI on %s (timeout=%ss, strategy=%s)",
            revision[:8], options.timeout, options.strategy,
        )

        async for event in self.watch(revision, options, state):
            if on_progress is not None:
                result = on_progress(event)
                if inspect.isawaitable(result):
                    await result

        logger.info("CI wait for %s finished: %s", revision[:8], state.outcome.kind)
        return state.outcome

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _fetch(self, revision: str, options: PollOptions, state: PollState) -> CheckSnapshot:
        remaining = max(state.deadline - self.clock(), 0.001)
        timeout = min(options.fetch_timeout, remaining)
        try:
            return await asyncio.wait_for(self.source.fetch(revision), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransientFetchError(f"Check fetch timed out after {timeout:.1f}s") from e
        except FetchError:
            raise
        except Exception as e:
            if is_retryable(e):
                raise TransientFetchError(str(e)) from e
            raise FatalFetchError(f"Check fetch failed: {e}") from e

    async def _on_transient_error(self, error: FetchError, options: PollOptions, state: PollState) -> None:
        state.retries_used += 1
        if state.retries_used > options.max_fetch_retries:
            logger.error(
                "Giving up on %s after %d transient fetch errors",
                state.revision[:8], state.retries_used, exc_info=True,
            )
            raise FatalFetchError(
                f"Retry budget exhausted ({options.max_fetch_retries}): {error}",
                status_code=error.status_code,
                details={"retries_used": state.retries_used},
            ) from error

        logger.warning(
            "Transient fetch error (%d/%d): %s",
            state.retries_used, options.max_fetch_retries, error,
        )
        await self._sleep_next(state, None)

    async def _sleep_next(self, state: PollState, snapshot: Optional[CheckSnapshot]) -> None:
        interval = state.strategy.next_interval(snapshot)
        remaining = state.deadline - self.clock()
        if remaining <= 0:
            return
        delay = min(interval, remaining)
        logger.debug("Next poll in %.2fs", delay)
        state.sleeps += 1
        await self.sleep(delay)

    def _ensure_ordered(self, snapshot: CheckSnapshot, state: PollState) -> CheckSnapshot:
        last = state.last_observed_at
        if last is not None and snapshot.observed_at <= last:
            snapshot = snapshot.model_copy(update={"observed_at": last + timedelta(microseconds=1)})
        state.last_observed_at = snapshot.observed_at
        return snapshot

    def _evaluate(
        self,
        snapshot: CheckSnapshot,
        options: PollOptions,
        state: PollState,
        now: float,
    ) -> Optional[PollOutcome]:
        if snapshot.is_empty:
            if state.first_empty_at is None:
                state.first_empty_at = now
                return None
            if now - state.first_empty_at >= options.no_checks_grace_period:
                logger.info("No checks registered for %s after %.1fs grace period",
                            state.revision[:8], now - state.first_empty_at)
                return self._outcome("succeeded", state, snapshot, no_checks=True)
            return None
        state.first_empty_at = None

        if options.fail_fast and has_critical_failure(snapshot):
            logger.warning("Critical failure on %s, failing fast: %s",
                           state.revision[:8], ", ".join(sorted(snapshot.failed_names)))
            return self._outcome("failed", state, snapshot, reason=CRITICAL_FAILURE)
        if snapshot.pending == 0 and snapshot.failed == 0:
            return self._outcome("succeeded", state, snapshot)
        if snapshot.pending == 0:
            return self._outcome("failed", state, snapshot, reason=CHECKS_FAILED)
        return None

    def _outcome(
        self,
        kind: str,
        state: PollState,
        snapshot: Optional[CheckSnapshot],
        reason: str = "",
        no_checks: bool = False,
    ) -> PollOutcome:
        return PollOutcome(
            kind=kind,
            revision=state.revision,
            snapshot=snapshot,
            reason=reason,
            no_checks=no_checks,
            polls=state.polls,
            sleeps=state.sleeps,
            retries_used=state.retries_used,
            elapsed=round(state.elapsed, 3),
        )

    def _progress_event(self, snapshot: CheckSnapshot, state: PollState, no_checks: bool) -> ProgressEvent:
        prev = state.previous_snapshot
        return ProgressEvent(
            revision=state.revision,
            sequence=state.polls,
            observed_at=snapshot.observed_at,
            elapsed=round(state.elapsed, 3),
            total=snapshot.total,
            passed=snapshot.passed,
            failed=snapshot.failed,
            pending=snapshot.pending,
            skipped=snapshot.skipped,
            has_status_changed=has_status_changed(prev, snapshot),
            new_failures=tuple(sorted(get_new_failures(prev, snapshot))),
            new_passes=tuple(sorted(get_new_passes(prev, snapshot))),
            no_checks=no_checks,
        )
