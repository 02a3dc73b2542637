"""
Backoff Poller
==============
Bounded confirmation loop against the status API.

Schedule (defaults):
    wait 5s -> read #1 -> wait 5s -> read #2 -> wait 10s -> read #3
            -> wait 15s -> read #4 -> wait 20s -> read #5
Worst case 55s of waiting; the last read has no trailing wait.

Reads are strictly sequential. A read that fails in transport is recorded
and skipped, never counted as a negative confirmation. The loop stops at the
first converged reading.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from clock import Clock
from device import DeviceStatus
from error_handler import ErrorHandler, StatusReadFailed, get_error_handler
from modules.convergence import Evaluator, matches

logger = logging.getLogger("poller")


def _setting(conf: Dict[str, Any], key: str, cast, default):
    value = conf.get(key)
    if value is None:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"confirmation.{key} must be a number (got {value!r})") from None


@dataclass(frozen=True)
class ConfirmationPolicy:
    max_attempts: int = 5
    initial_wait: float = 5.0
    increment: float = 5.0

    def __post_init__(self):
        if int(self.max_attempts) < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {self.max_attempts})")
        if self.initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0 (got {self.initial_wait})")
        if self.increment <= 0:
            raise ValueError(f"increment must be > 0 (got {self.increment})")

    @classmethod
    def from_config(cls, conf: Optional[Dict[str, Any]]) -> "ConfirmationPolicy":
        """Build from the ``confirmation`` section. Blank keys keep their defaults."""
        conf = conf or {}
        return cls(
            max_attempts=_setting(conf, 'max_attempts', int, cls.max_attempts),
            initial_wait=_setting(conf, 'initial_wait', float, cls.initial_wait),
            increment=_setting(conf, 'increment', float, cls.increment),
        )

    def delay_before(self, attempt: int) -> float:
        """Wait that precedes attempt ``attempt`` (1-based)."""
        if attempt <= 1:
            return self.initial_wait
        return self.increment * (attempt - 1)

    def schedule(self) -> List[float]:
        return [self.delay_before(i) for i in range(1, self.max_attempts + 1)]

    @property
    def worst_case_wait(self) -> float:
        return sum(self.schedule())


@dataclass(frozen=True)
class ConfirmationAttempt:
    attempt_index: int
    scheduled_delay: float
    observed_locked: Optional[bool]
    observed_at: float
    error: Optional[str] = None

    @property
    def failed_read(self) -> bool:
        return self.observed_locked is None


@dataclass
class ConfirmationOutcome:
    confirmed: bool
    observed: Optional[DeviceStatus] = None
    attempts: List[ConfirmationAttempt] = field(default_factory=list)

    @property
    def status_calls(self) -> int:
        return len(self.attempts)

    @property
    def failed_reads(self) -> int:
        return sum(1 for a in self.attempts if a.failed_read)


class BackoffPoller:
    """Drives confirmation reads for one command."""

    def __init__(
        self,
        status_client,
        clock: Clock,
        evaluator: Evaluator = matches,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.status_client = status_client
        self.clock = clock
        self.evaluator = evaluator
        self.error_handler = error_handler or get_error_handler()

    async def confirm(
        self,
        device_id: str,
        expected_locked: bool,
        max_attempts: int = 5,
        initial_wait: float = 5.0,
        increment: float = 5.0,
    ) -> ConfirmationOutcome:
        policy = ConfirmationPolicy(max_attempts, initial_wait, increment)
        return await self.confirm_with_policy(device_id, expected_locked, policy)

    async def confirm_with_policy(
        self,
        device_id: str,
        expected_locked: bool,
        policy: ConfirmationPolicy,
    ) -> ConfirmationOutcome:
        outcome = ConfirmationOutcome(confirmed=False)

        # Hardware needs time before a read is meaningful
        await self.clock.after(policy.initial_wait)

        for attempt in range(1, policy.max_attempts + 1):
            logger.debug(
                f"[{device_id}] Checking status (attempt {attempt}/{policy.max_attempts})"
            )
            observed = await self._read(device_id, attempt, policy, outcome)

            if observed is not None and self.evaluator(observed, expected_locked):
                outcome.confirmed = True
                outcome.observed = observed
                logger.info(
                    f"[{device_id}] Status confirmed after {attempt} attempt(s)"
                )
                return outcome

            if observed is not None:
                outcome.observed = observed

            if attempt < policy.max_attempts:
                delay = policy.delay_before(attempt + 1)
                logger.debug(f"[{device_id}] Status not updated yet, retrying in {delay:.1f}s")
                await self.clock.after(delay)

        logger.warning(
            f"[{device_id}] Status not confirmed after {policy.max_attempts} attempts "
            f"({outcome.failed_reads} failed reads)"
        )
        return outcome

    async def _read(
        self,
        device_id: str,
        attempt: int,
        policy: ConfirmationPolicy,
        outcome: ConfirmationOutcome,
    ) -> Optional[DeviceStatus]:
        delay = policy.delay_before(attempt)
        try:
            observed = await self.status_client.get_status(device_id)
        except Exception as e:
            if not isinstance(e, StatusReadFailed) and not self.error_handler.is_transient(e):
                raise
            self.error_handler.record_error(e, context="status_read")
            logger.warning(f"[{device_id}] Status check attempt {attempt} failed: {e}")
            outcome.attempts.append(ConfirmationAttempt(
                attempt_index=attempt,
                scheduled_delay=delay,
                observed_locked=None,
                observed_at=self.clock.now(),
                error=str(e),
            ))
            return None

        outcome.attempts.append(ConfirmationAttempt(
            attempt_index=attempt,
            scheduled_delay=delay,
            observed_locked=observed.locked,
            observed_at=self.clock.now(),
        ))
        return observed
