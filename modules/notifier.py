"""
Result Notifier
===============
Publishes exactly one terminal message per command to the UI surfaces
(WebSocket, MQTT, ...). Several internal paths can end a command; whichever
gets here first wins and later emissions for the same command are dropped.
"""
import asyncio
import inspect
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set

logger = logging.getLogger("notifier")


class Outcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


# Default UI message kind per outcome
_KIND_BY_OUTCOME = {
    Outcome.SUCCESS: "success",
    Outcome.PARTIAL: "success",
    Outcome.FAILURE: "error",
}


@dataclass(frozen=True)
class Notification:
    command_id: str
    device_id: str
    outcome: Outcome
    kind: str
    text: str
    phase: str
    timestamp: float

    def message(self) -> dict:
        """Payload for the UI notification surface."""
        return {"kind": self.kind, "text": self.text}


class ResultNotifier:
    """
    Fire-and-forget terminal publication, idempotent per command id.

    Subscribers may be plain callables or coroutine functions; coroutine
    subscribers are scheduled on the running loop and never awaited.
    """

    def __init__(self, max_tracked: int = 1000):
        self._subscribers: List[Callable] = []
        # command_id -> True (emitted) / False (suppressed)
        self._closed: "OrderedDict[str, bool]" = OrderedDict()
        self._max_tracked = max_tracked
        self._tasks: Set[asyncio.Task] = set()
        self.stats = {
            'emitted': 0,
            'duplicates': 0,
            'suppressed': 0,
            'subscriber_errors': 0,
        }

    def add_subscriber(self, callback: Callable):
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def is_closed(self, command_id: str) -> bool:
        return command_id in self._closed

    def suppress(self, command_id: str) -> bool:
        """
        Close a command without publishing, for callers that went away.
        Returns False if its terminal message was already published.
        """
        if command_id in self._closed:
            return False
        self._remember(command_id, False)
        self.stats['suppressed'] += 1
        logger.debug(f"Notifications suppressed for command {command_id}")
        return True

    def emit(
        self,
        command_id: str,
        device_id: str,
        outcome: Outcome,
        detail: str,
        phase: str,
        kind: Optional[str] = None,
    ) -> Optional[Notification]:
        """Publish the terminal message. Returns None if the command is already closed."""
        if command_id in self._closed:
            if self._closed[command_id]:
                self.stats['duplicates'] += 1
                logger.debug(f"[{device_id}] Duplicate terminal emission dropped ({command_id})")
            return None

        notification = Notification(
            command_id=command_id,
            device_id=device_id,
            outcome=outcome,
            kind=kind or _KIND_BY_OUTCOME[outcome],
            text=detail,
            phase=phase,
            timestamp=time.time(),
        )
        self._remember(command_id, True)
        self.stats['emitted'] += 1

        log = logger.info if outcome == Outcome.SUCCESS else logger.warning
        log(f"[{device_id}] {outcome.value.upper()}: {detail}")

        for callback in list(self._subscribers):
            self._dispatch(callback, notification)
        return notification

    def _dispatch(self, callback: Callable, notification: Notification):
        try:
            if inspect.iscoroutinefunction(callback):
                task = asyncio.get_running_loop().create_task(callback(notification))
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
            else:
                callback(notification)
        except Exception as e:
            self.stats['subscriber_errors'] += 1
            logger.error(f"Notification subscriber failed: {e}")

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.stats['subscriber_errors'] += 1
            logger.error(f"Notification subscriber failed: {error}")

    def _remember(self, command_id: str, emitted: bool):
        self._closed[command_id] = emitted
        while len(self._closed) > self._max_tracked:
            self._closed.popitem(last=False)

    def get_stats(self) -> dict:
        return {**self.stats, 'subscribers': len(self._subscribers)}
