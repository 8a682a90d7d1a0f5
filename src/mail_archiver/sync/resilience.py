"""Connection lifecycle, error classification, backoff and circuit breaking.

``ConnectionController.run_resilient`` runs a unit of session work against one
live connection at a time. Permanent failures surface immediately; everything
else is retried without a limit on the number of attempts, with exponential
backoff and a circuit breaker in front of the server.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import structlog

from mail_archiver.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ImapProtocolError,
    ItemFetchError,
    SyncCancelledError,
)
from mail_archiver.imap.base import MailboxSession, SessionFactory
from mail_archiver.telemetry import SyncTelemetry

logger = structlog.get_logger()

T = TypeVar("T")


class FailureKind(str, Enum):
    """Outcome of classifying an error raised by session work."""

    PERMANENT = "permanent"
    TRANSIENT = "transient"


def classify_error(exc: BaseException) -> FailureKind:
    """Decide whether an error may be retried.

    Credential and authorization rejections, and settings that can never
    work, are permanent. Everything else is transient.
    """

    if isinstance(exc, (AuthenticationError, ConfigurationError)):
        return FailureKind.PERMANENT
    return FailureKind.TRANSIENT


def is_item_failure(exc: BaseException) -> bool:
    """True if the error concerns one message rather than the whole session."""

    if isinstance(exc, AuthenticationError):
        return False
    return isinstance(exc, (ItemFetchError, ImapProtocolError))


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before retry ``n`` is ``min(base ** n, cap)`` seconds."""

    base: float = 2.0
    cap: float = 300.0

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        try:
            raw = self.base**attempt
        except OverflowError:
            return self.cap
        return min(raw, self.cap)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_TRANSITION_EVENTS = {
    BreakerState.OPEN: "circuit_breaker_opened",
    BreakerState.HALF_OPEN: "circuit_breaker_half_open",
    BreakerState.CLOSED: "circuit_breaker_closed",
}


class CircuitBreaker:
    """Stops connection attempts for a cooldown after repeated failures.

    After ``failure_threshold`` consecutive failures the breaker opens. Once
    the cooldown has elapsed a single trial attempt is allowed (half-open);
    success closes the breaker, failure opens it again for another cooldown.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 120.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        telemetry: SyncTelemetry | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._telemetry = telemetry or SyncTelemetry()
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def allow_attempt(self) -> bool:
        if self._state is BreakerState.OPEN:
            if self.remaining_cooldown() > 0:
                return False
            self._transition(BreakerState.HALF_OPEN)
        return True

    def remaining_cooldown(self) -> float:
        if self._state is not BreakerState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._cooldown - (self._clock() - self._opened_at))

    def record_success(self) -> None:
        self._consecutive_failures = 0
        if self._state is not BreakerState.CLOSED:
            self._transition(BreakerState.CLOSED)

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state is BreakerState.HALF_OPEN or self._consecutive_failures >= self._threshold:
            self._opened_at = self._clock()
            self._transition(BreakerState.OPEN)

    def _transition(self, new_state: BreakerState) -> None:
        previous = self._state
        self._state = new_state
        self._telemetry.event(
            _TRANSITION_EVENTS[new_state],
            level="warning" if new_state is BreakerState.OPEN else "info",
            previous_state=previous.value,
            consecutive_failures=self._consecutive_failures,
            cooldown_seconds=self._cooldown if new_state is BreakerState.OPEN else None,
        )


class ConnectionController:
    """Runs session work against one live connection, retrying per policy."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        backoff: BackoffPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        telemetry: SyncTelemetry | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Create a controller.

        Args:
            session_factory: Coroutine function returning a new connected session.
            backoff: Retry delay policy.
            breaker: Circuit breaker shared by all attempts of this controller.
            telemetry: Run-scoped observability context.
            sleep: Replacement for the cancellable wait, used by tests.
        """

        self._session_factory = session_factory
        self._telemetry = telemetry or SyncTelemetry()
        self._backoff = backoff or BackoffPolicy()
        self._breaker = breaker or CircuitBreaker(telemetry=self._telemetry)
        self._sleep = sleep

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def run_resilient(
        self,
        work: Callable[[MailboxSession], Awaitable[T]],
        cancel: asyncio.Event | None = None,
    ) -> T:
        """Execute ``work`` until it succeeds.

        Returns:
            Whatever ``work`` returns on its first successful attempt.

        Raises:
            SyncCancelledError: If cancellation was requested.
            AuthenticationError: Or any other permanent failure, unretried.
        """

        attempt = 0
        while True:
            raise_if_cancelled(cancel)

            if not self._breaker.allow_attempt():
                await self._wait(self._breaker.remaining_cooldown(), cancel)
                continue

            try:
                session = await self._session_factory()
                try:
                    result = await work(session)
                finally:
                    await _close_quietly(session)
            except SyncCancelledError:
                raise
            except Exception as exc:
                if classify_error(exc) is FailureKind.PERMANENT:
                    logger.error(
                        "sync_permanent_failure",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    raise

                attempt += 1
                self._breaker.record_failure()
                delay = self._backoff.delay(attempt)
                self._telemetry.event(
                    "connection_retry",
                    level="warning",
                    error_type=type(exc).__name__,
                    error=str(exc),
                    attempt=attempt,
                    delay_seconds=delay,
                )
                await self._wait(delay, cancel)
                continue

            self._breaker.record_success()
            return result

    async def _wait(self, delay: float, cancel: asyncio.Event | None) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
        elif cancel is None:
            await asyncio.sleep(delay)
        else:
            try:
                await asyncio.wait_for(cancel.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        raise_if_cancelled(cancel)


def raise_if_cancelled(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise SyncCancelledError("Sync cancelled")


async def _close_quietly(session: MailboxSession) -> None:
    try:
        await session.close()
    except Exception as exc:  # noqa: BLE001
        logger.debug("session_close_failed", error=str(exc))
