"""
Actuation Controller
====================
Owns one command for one device, from dispatch to a terminal phase:

    Idle -> Dispatching -> AwaitingConfirmation -> Confirmed
                                                -> ConfirmedLate
                                                -> Unconfirmed
                                                -> Failed

On entry to any terminal phase the optimistic value is cleared, the
command guard is released and exactly one terminal notification is
published (unless the caller detached or aborted). The device's canonical
lock state is written only on Confirmed / ConfirmedLate.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from clock import Clock
from device import Command, Device, DeviceStatus
from error_handler import (
    DispatchError,
    DispatchRejected,
    DispatchUnreachable,
    ErrorHandler,
    get_error_handler,
)
from handlers import ActuatorHandler
from modules.guard import CommandGuard
from modules.notifier import Outcome, ResultNotifier
from modules.overlay import OptimisticOverlay
from modules.poller import BackoffPoller, ConfirmationAttempt, ConfirmationPolicy
from modules.reconciler import FallbackReconciler, FinalVerdict

logger = logging.getLogger("controller")


class Phase(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    CONFIRMED_LATE = "confirmed_late"
    UNCONFIRMED = "unconfirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({
    Phase.CONFIRMED,
    Phase.CONFIRMED_LATE,
    Phase.UNCONFIRMED,
    Phase.FAILED,
})

# Allowed transitions; anything else is a programming error
_TRANSITIONS = {
    Phase.IDLE: {Phase.DISPATCHING, Phase.FAILED},
    Phase.DISPATCHING: {Phase.AWAITING_CONFIRMATION, Phase.FAILED},
    Phase.AWAITING_CONFIRMATION: set(TERMINAL_PHASES),
}


class CancelMode(str, Enum):
    # Stop UI updates only; the command still runs to its verdict
    DETACH = "detach"
    # Cancel the pending wait or call and stop polling
    ABORT = "abort"


@dataclass
class ControllerState:
    device_id: str
    phase: Phase = Phase.IDLE
    expected_locked: Optional[bool] = None
    optimistic_locked: Optional[bool] = None
    history: List[Phase] = field(default_factory=lambda: [Phase.IDLE])


@dataclass(frozen=True)
class CommandResult:
    command: Command
    phase: Phase
    outcome: Outcome
    kind: str
    text: str
    verdict: Optional[FinalVerdict] = None
    flow_id: Optional[str] = None
    observed: Optional[DeviceStatus] = None
    attempts: Tuple[ConfirmationAttempt, ...] = ()
    error: Optional[str] = None
    cancelled: bool = False
    detached: bool = False
    finished_at: float = 0.0

    @property
    def success(self) -> bool:
        return self.phase in (Phase.CONFIRMED, Phase.CONFIRMED_LATE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_id": self.command.command_id,
            "device_id": self.command.device_id,
            "action": self.command.action.value,
            "actor": self.command.actor,
            "issued_at": self.command.issued_at,
            "phase": self.phase.value,
            "outcome": self.outcome.value,
            "kind": self.kind,
            "text": self.text,
            "verdict": self.verdict.value if self.verdict else None,
            "flow_id": self.flow_id,
            "observed_locked": self.observed.locked if self.observed else None,
            "status_calls": len(self.attempts),
            "failed_reads": sum(1 for a in self.attempts if a.failed_read),
            "error": self.error,
            "cancelled": self.cancelled,
            "detached": self.detached,
            "finished_at": self.finished_at,
        }


class ActuationController:
    """Single-use driver for one command against one device."""

    def __init__(
        self,
        device: Device,
        handler: ActuatorHandler,
        command_client,
        status_client,
        guard: CommandGuard,
        overlay: OptimisticOverlay,
        notifier: ResultNotifier,
        clock: Clock,
        policy: Optional[ConfirmationPolicy] = None,
        event_callback: Optional[Callable] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.device = device
        self.device_id = device.device_id
        self.handler = handler
        self.command_client = command_client
        self.guard = guard
        self.overlay = overlay
        self.notifier = notifier
        self.clock = clock
        self.policy = policy or ConfirmationPolicy()
        self.callback = event_callback
        self.error_handler = error_handler or get_error_handler()

        self.poller = BackoffPoller(status_client, clock, handler.evaluator, self.error_handler)
        self.reconciler = FallbackReconciler(status_client, handler.evaluator, self.error_handler)

        self.state = ControllerState(self.device_id)
        self.command: Optional[Command] = None
        self.flow_id: Optional[str] = None
        self.result: Optional[CommandResult] = None

        self._attempts: Tuple[ConfirmationAttempt, ...] = ()
        self._detached = False
        self._released = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def detached(self) -> bool:
        return self._detached

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def dispatch(self, command: Command) -> Optional[str]:
        """
        Send the actuation request exactly once.

        Returns:
            The tracking (flow) id from the command API.

        Raises:
            DispatchRejected: The API refused the action.
            DispatchUnreachable: The API could not be reached.
        """
        expected = command.action.expected_locked
        self.state.expected_locked = expected
        self._transition(Phase.DISPATCHING)

        logger.info(
            f"[{self.device_id}] Attempting to {self.handler.verb(command.action)} "
            f"(command={command.command_id}, actor={command.actor})"
        )

        try:
            ack = await self.command_client.issue_command(
                self.device_id, command.action, command.actor
            )
        except DispatchError:
            raise
        except Exception as e:
            if self.error_handler.record_error(e, context="dispatch"):
                raise DispatchUnreachable(str(e)) from e
            raise

        if not ack.accepted:
            raise DispatchRejected(ack.error or "")

        self.flow_id = ack.flow_id

        # Exactly one optimistic write per accepted command
        self.overlay.set(self.device_id, expected)
        self.state.optimistic_locked = expected
        self._transition(Phase.AWAITING_CONFIRMATION)

        self._emit("command_accepted", {
            "device_id": self.device_id,
            "command_id": command.command_id,
            "action": command.action.value,
            "flow_id": ack.flow_id,
            "text": f"{self._verb(command).capitalize()} command sent successfully! "
                    f"Flow ID: {ack.flow_id or 'N/A'}",
        })
        return ack.flow_id

    # =========================================================================
    # MAIN FLOW
    # =========================================================================

    async def run(self, command: Command) -> CommandResult:
        """Drive the command to a terminal phase. The caller must hold the guard."""
        if self.command is not None:
            raise RuntimeError("Controller instances are single-use")
        if command.device_id != self.device_id:
            raise ValueError(f"Command for {command.device_id} given to controller for {self.device_id}")
        if not self.guard.is_busy(self.device_id):
            raise RuntimeError(f"[{self.device_id}] Command guard must be acquired before dispatch")

        self.command = command
        if self._detached:
            self.notifier.suppress(command.command_id)

        try:
            try:
                await self.dispatch(command)
            except DispatchRejected as e:
                text = str(e) or f"Failed to {self._verb(command)} device. Please try again."
                return self._finish(Phase.FAILED, Outcome.FAILURE, text, error=str(e) or "rejected")
            except DispatchUnreachable as e:
                text = (f"Failed to {self._verb(command)} device: "
                        f"the command service could not be reached.")
                return self._finish(Phase.FAILED, Outcome.FAILURE, text, error=str(e))

            expected = command.action.expected_locked
            outcome = await self.poller.confirm_with_policy(self.device_id, expected, self.policy)
            self._attempts = tuple(outcome.attempts)

            if outcome.confirmed:
                text = f"Device {self._past(command)} successfully and status confirmed!"
                return self._finish(Phase.CONFIRMED, Outcome.SUCCESS, text, observed=outcome.observed)

            reconciliation = await self.reconciler.reconcile(self.device_id, expected)
            return self._finish_reconciled(command, reconciliation)

        except asyncio.CancelledError:
            logger.info(f"[{self.device_id}] Command {command.command_id} aborted")
            self._finish(
                Phase.FAILED,
                Outcome.FAILURE,
                f"{self._verb(command).capitalize()} command cancelled.",
                error="cancelled",
                cancelled=True,
            )
            raise
        except Exception as e:
            logger.error(f"[{self.device_id}] Command {command.command_id} failed: {e}", exc_info=True)
            return self._finish(
                Phase.FAILED,
                Outcome.FAILURE,
                f"Failed to {self._verb(command)} device: unexpected error.",
                error=str(e),
            )
        finally:
            if not self.state.phase.is_terminal:
                self._finish(Phase.FAILED, Outcome.FAILURE, "Command interrupted.",
                             error="interrupted", cancelled=True)

    def _finish_reconciled(self, command: Command, reconciliation) -> CommandResult:
        verdict = reconciliation.verdict
        verb = self._verb(command).capitalize()

        if verdict == FinalVerdict.MATCHED:
            return self._finish(
                Phase.CONFIRMED_LATE,
                Outcome.SUCCESS,
                f"Device {self._past(command)} successfully! Status confirmed on final check.",
                verdict=verdict,
                observed=reconciliation.observed,
            )

        if verdict == FinalVerdict.MISMATCHED:
            actual = self.handler.state_label(reconciliation.observed.locked)
            expected = self.handler.state_label(command.action.expected_locked)
            return self._finish(
                Phase.UNCONFIRMED,
                Outcome.PARTIAL,
                f"{verb} command sent, but device status shows {actual} (expected {expected}). "
                f"The device might take more time to update or there could be a connectivity "
                f"issue. Check connectivity or retry.",
                verdict=verdict,
                observed=reconciliation.observed,
                kind="error",
            )

        return self._finish(
            Phase.FAILED,
            Outcome.PARTIAL,
            f"{verb} command sent, but status confirmation timed out. "
            f"Please refresh manually to check current status.",
            verdict=verdict,
            error=reconciliation.error,
        )

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def detach(self):
        """Stop UI updates for this command; it keeps running to its verdict."""
        if self._detached:
            return
        self._detached = True
        if self.command is not None:
            self.notifier.suppress(self.command.command_id)
        logger.info(f"[{self.device_id}] Caller detached, command continues without UI updates")

    # =========================================================================
    # TERMINAL HANDLING
    # =========================================================================

    def _finish(
        self,
        phase: Phase,
        outcome: Outcome,
        text: str,
        verdict: Optional[FinalVerdict] = None,
        observed: Optional[DeviceStatus] = None,
        error: Optional[str] = None,
        kind: Optional[str] = None,
        cancelled: bool = False,
    ) -> CommandResult:
        if self.state.phase.is_terminal:
            return self.result

        now = self.clock.now()
        self._transition(phase)

        if observed is not None:
            if phase in (Phase.CONFIRMED, Phase.CONFIRMED_LATE):
                self.device.confirm(observed, now)
            else:
                self.device.apply_telemetry(observed, now)

        self.overlay.clear(self.device_id)
        self.state.optimistic_locked = None
        self._release()

        command = self.command
        if kind is None:
            kind = "error" if outcome == Outcome.FAILURE else "success"

        if cancelled:
            self.notifier.suppress(command.command_id)
        else:
            self.notifier.emit(command.command_id, self.device_id, outcome, text, phase.value, kind=kind)

        self.result = CommandResult(
            command=command,
            phase=phase,
            outcome=outcome,
            kind=kind,
            text=text,
            verdict=verdict,
            flow_id=self.flow_id,
            observed=observed,
            attempts=self._attempts,
            error=error,
            cancelled=cancelled,
            detached=self._detached,
            finished_at=now,
        )
        return self.result

    def _release(self):
        if not self._released:
            self._released = True
            self.guard.release(self.device_id)

    def _transition(self, phase: Phase):
        current = self.state.phase
        if phase not in _TRANSITIONS.get(current, set()):
            raise RuntimeError(f"[{self.device_id}] Illegal transition {current.value} -> {phase.value}")
        self.state.phase = phase
        self.state.history.append(phase)
        logger.debug(f"[{self.device_id}] Phase: {current.value} -> {phase.value}")

        self._emit("command_phase", {
            "device_id": self.device_id,
            "command_id": self.command.command_id if self.command else None,
            "phase": phase.value,
            "previous_phase": current.value,
            "timestamp": self.clock.now(),
        })

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _verb(self, command: Command) -> str:
        return self.handler.verb(command.action)

    def _past(self, command: Command) -> str:
        return self.handler.past(command.action)

    def _emit(self, evt: str, data: dict):
        """Emit a progress event without waiting for subscribers."""
        if not self.callback or self._detached:
            return
        try:
            task = asyncio.get_running_loop().create_task(self.callback(evt, data))
        except RuntimeError:
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
