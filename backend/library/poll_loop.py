"""
Bounded polling of the idempotent register-or-check endpoint.

A registration job on the provider can take anywhere from zero to several
minutes. The endpoint is safe to call repeatedly, so waiting for completion
is just calling it again on a schedule until it reports an id, reports a
failure, or the attempt budget runs out.

Key Features:
- Attempt budget and spacing from a PollPolicy (fixed or exponential spacing)
- Scheduling via tenacity.AsyncRetrying (retry only while "processing")
- Cooperative cancellation: no attempt starts and no result is delivered
  once the token is cancelled
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential, wait_fixed

from config import settings
from library.errors import PollCancelledError, RegistrationFailedError
from library.models import RegistrationResult, RegistrationState

logger = structlog.get_logger(__name__)


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class PollPolicy(BaseModel):
    """
    Attempt budget and spacing for a poll loop.

    With FIXED spacing every wait is ``interval_seconds``. With EXPONENTIAL
    spacing waits double from ``interval_seconds`` up to
    ``max_interval_seconds``.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(20, ge=1)
    interval_seconds: float = Field(3.0, ge=0)
    backoff: BackoffStrategy = BackoffStrategy.FIXED
    max_interval_seconds: float = Field(30.0, ge=0)

    @classmethod
    def from_settings(cls) -> "PollPolicy":
        return cls(
            max_attempts=settings.ELEMENT_REGISTRATION_MAX_ATTEMPTS,
            interval_seconds=settings.ELEMENT_REGISTRATION_INTERVAL,
            backoff=BackoffStrategy(settings.ELEMENT_REGISTRATION_BACKOFF.lower()),
            max_interval_seconds=settings.ELEMENT_REGISTRATION_MAX_INTERVAL,
        )

    def wait_strategy(self):
        """tenacity wait strategy matching this policy"""
        if self.backoff == BackoffStrategy.EXPONENTIAL:
            return wait_exponential(
                multiplier=self.interval_seconds,
                min=self.interval_seconds,
                max=max(self.max_interval_seconds, self.interval_seconds),
            )
        return wait_fixed(self.interval_seconds)

    def max_total_wait(self) -> float:
        """Upper bound on time spent sleeping between attempts."""
        if self.backoff == BackoffStrategy.EXPONENTIAL:
            ceiling = max(self.max_interval_seconds, self.interval_seconds)
            return sum(
                min(self.interval_seconds * (2 ** n), ceiling)
                for n in range(self.max_attempts - 1)
            )
        return self.interval_seconds * (self.max_attempts - 1)


class CancellationToken:
    """
    Cancellation signal shared between a poll loop and whoever owns it.

    ``sleep`` wakes up early when the token is cancelled, so a cancelled loop
    stops within one scheduler tick rather than after the full interval.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, **details) -> None:
        if self.cancelled:
            raise PollCancelledError(details)

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


class PollOutcome(BaseModel):
    """Terminal, non-error result of a poll loop"""

    model_config = ConfigDict(frozen=True)

    element_id: Optional[str] = None
    attempts: int = 0

    @property
    def completed(self) -> bool:
        return self.element_id is not None

    @property
    def indeterminate(self) -> bool:
        """Budget exhausted while the job was still processing."""
        return self.element_id is None


AttemptFn = Callable[[], Awaitable[RegistrationResult]]
ResultHook = Callable[[RegistrationResult], None]


class PollLoop:
    """
    Drive an idempotent register-or-check call to a terminal state.

    Example:
        >>> loop = PollLoop(PollPolicy(max_attempts=20, interval_seconds=3.0))
        >>> outcome = await loop.run(
        ...     lambda: client.register(ref, force=False),
        ...     token=token,
        ... )
        >>> outcome.element_id
        'rk_99'
    """

    def __init__(
        self,
        policy: Optional[PollPolicy] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Initialize poll loop.

        Args:
            policy: Attempt budget and spacing (default: from settings)
            sleep: Override for the wait between attempts; by default the
                cancellation token's interruptible sleep is used
        """
        self.policy = policy or PollPolicy.from_settings()
        self._sleep = sleep
        self.logger = logger.bind(component="poll_loop")

    async def run(
        self,
        attempt_fn: AttemptFn,
        token: Optional[CancellationToken] = None,
        on_result: Optional[ResultHook] = None,
        **log_context,
    ) -> PollOutcome:
        """
        Call ``attempt_fn`` until it completes, fails, or the budget runs out.

        Args:
            attempt_fn: Zero-argument coroutine factory issuing one call
            token: Cancellation token (a private one is created if omitted)
            on_result: Called with every non-failed result before the next
                wait; used to surface job tokens while still processing
            **log_context: Extra fields bound to every log line

        Returns:
            PollOutcome with the element id, or indeterminate

        Raises:
            RegistrationFailedError: The remote side reported failure
            PollCancelledError: The token was cancelled
            Exception: Whatever ``attempt_fn`` raised; not retried here
        """
        token = token or CancellationToken()
        log = self.logger.bind(**log_context)
        attempts = 0

        async def _attempt() -> RegistrationResult:
            nonlocal attempts
            token.raise_if_cancelled(attempts=attempts, **log_context)
            attempts += 1
            log.info("poll_attempt", attempt=attempts, max_attempts=self.policy.max_attempts)

            result = await attempt_fn()

            # Drop the response if the owner went away while the call was in flight
            token.raise_if_cancelled(attempts=attempts, **log_context)

            if result.state == RegistrationState.FAILED:
                log.warning("poll_terminal_failure", attempt=attempts, reason=result.reason)
                raise RegistrationFailedError(result.reason, {"attempts": attempts, **log_context})

            if on_result is not None:
                on_result(result)
            return result

        def _before_sleep(retry_state) -> None:
            log.debug(
                "poll_still_processing",
                attempt=retry_state.attempt_number,
                next_wait=retry_state.next_action.sleep if retry_state.next_action else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=self.policy.wait_strategy(),
            retry=retry_if_result(lambda result: result.is_processing),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
            before_sleep=_before_sleep,
            sleep=self._sleep or token.sleep,
        )

        result = await retrying(_attempt)

        if result.is_processing:
            log.warning("poll_budget_exhausted", attempts=attempts)
            return PollOutcome(attempts=attempts)

        log.info("poll_completed", attempts=attempts, element_id=result.element_id)
        return PollOutcome(element_id=result.element_id, attempts=attempts)
