"""
Shared fixtures: virtual clock and scripted API clients.
"""
import asyncio
from typing import Any, List, Optional

import pytest

from clock import Clock
from device import Action, CommandAck, Device, DeviceStatus
from error_handler import get_error_handler
from handlers import get_handler
from modules.controller import ActuationController
from modules.guard import CommandGuard
from modules.notifier import ResultNotifier
from modules.overlay import OptimisticOverlay
from modules.poller import ConfirmationPolicy

DEVICE_ID = "LOCK-0001"
START_TIME = 1_700_000_000.0


def status(locked: bool, online: bool = True, battery: Optional[float] = 80.0) -> DeviceStatus:
    return DeviceStatus(locked=locked, online=online, battery=battery, signal=75)


class FakeClock(Clock):
    """Virtual time: every wait completes immediately and advances now()."""

    def __init__(self, start: float = START_TIME):
        self._now = start
        self.waits: List[float] = []

    async def after(self, duration: float) -> None:
        self.waits.append(duration)
        self._now += max(duration, 0.0)
        await asyncio.sleep(0)

    def now(self) -> float:
        return self._now


class HoldingClock(FakeClock):
    """Never completes a wait; the awaiting task must be cancelled."""

    def __init__(self, start: float = START_TIME):
        super().__init__(start)
        self.waiting = asyncio.Event()

    async def after(self, duration: float) -> None:
        self.waits.append(duration)
        self.waiting.set()
        await asyncio.Event().wait()


class ScriptedStatusClient:
    """
    Returns scripted readings in order; an Exception instance in the script
    is raised instead. The last entry repeats once the script runs out.
    """

    def __init__(self, *script: Any):
        self.script = list(script)
        self.calls: List[str] = []

    async def get_status(self, device_id: str) -> DeviceStatus:
        self.calls.append(device_id)
        index = min(len(self.calls), len(self.script)) - 1
        item = self.script[index]
        await asyncio.sleep(0)
        if isinstance(item, BaseException):
            raise item
        return item


class ScriptedCommandClient:
    """Answers every command with the same ack, or raises the given error."""

    def __init__(self, ack: Optional[CommandAck] = None, error: Optional[Exception] = None,
                 gate: Optional[asyncio.Event] = None):
        self.ack = ack or CommandAck(accepted=True, flow_id="FLOW-1")
        self.error = error
        self.gate = gate
        self.calls: List[tuple] = []

    async def issue_command(self, device_id: str, action: Action, actor: str) -> CommandAck:
        self.calls.append((device_id, action, actor))
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.ack


class EventRecorder:
    """Async event_callback that keeps everything it is given."""

    def __init__(self):
        self.events: List[tuple] = []

    async def __call__(self, event_type: str, data: dict):
        self.events.append((event_type, data))

    def of_type(self, event_type: str) -> List[dict]:
        return [data for evt, data in self.events if evt == event_type]


async def drain():
    """Let fire-and-forget tasks scheduled by the code under test run."""
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def reset_error_stats():
    get_error_handler().reset()
    yield
    get_error_handler().reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def device():
    return Device(DEVICE_ID, name="Front Gate Lock", kind="lock")


@pytest.fixture
def notifier():
    n = ResultNotifier()
    n.received = []
    n.add_subscriber(n.received.append)
    return n


@pytest.fixture
def make_controller(clock, device, notifier):
    """Build a controller whose guard is already held for the device."""

    def _make(status_client, command_client=None, guard=None, overlay=None,
              policy=None, event_callback=None, handler=None, clock_override=None):
        guard = guard or CommandGuard()
        guard.try_acquire(device.device_id)
        controller = ActuationController(
            device=device,
            handler=handler or get_handler(device.kind),
            command_client=command_client or ScriptedCommandClient(),
            status_client=status_client,
            guard=guard,
            overlay=overlay or OptimisticOverlay(),
            notifier=notifier,
            clock=clock_override or clock,
            policy=policy or ConfirmationPolicy(),
            event_callback=event_callback,
        )
        return controller

    return _make
