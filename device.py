"""
Device Model
============
Single source of truth for each actuator the gateway controls, plus the
immutable value types that travel between the API clients and the
confirmation controller.

The only field any component may treat as confirmed truth is
``Device.canonical_locked``. It is written by ``Device.confirm()``, which
only the controller calls once a command reaches Confirmed or ConfirmedLate.
Everything the UI sees goes through the read-only ``DeviceView`` projection.
"""
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("device")


class Action(str, Enum):
    """Binary actuation. LOCK drives the actuator to its engaged state."""

    LOCK = "lock"
    UNLOCK = "unlock"

    @property
    def expected_locked(self) -> bool:
        return self is Action.LOCK

    @classmethod
    def parse(cls, value: Any) -> "Action":
        if isinstance(value, Action):
            return value
        text = str(value).strip().lower()
        for action in cls:
            if action.value == text:
                return action
        raise ValueError(f"Unknown action: {value!r}")


@dataclass(frozen=True)
class DeviceStatus:
    """Authoritative reading from the status API, already normalised."""

    locked: bool
    online: bool = True
    battery: Optional[float] = None
    signal: Optional[int] = None
    last_update: Optional[float] = None
    damaged: bool = False
    # Human-readable names of the vendor status codes in the reading
    status_labels: Tuple[str, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class CommandAck:
    """Immediate answer of the command API. Says nothing about the final effect."""

    accepted: bool
    flow_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Command:
    command_id: str
    device_id: str
    action: Action
    issued_at: float
    actor: str

    @classmethod
    def create(cls, device_id: str, action: Action, actor: str, issued_at: float) -> "Command":
        return cls(
            command_id=uuid.uuid4().hex,
            device_id=device_id,
            action=action,
            issued_at=issued_at,
            actor=actor,
        )


@dataclass(frozen=True)
class DeviceView:
    """Read-only projection combining canonical and optimistic state."""

    device_id: str
    name: str
    kind: str
    locked: Optional[bool]
    state: str
    canonical_locked: Optional[bool]
    optimistic_locked: Optional[bool]
    pending: bool
    online: bool
    battery: Optional[float]
    signal: Optional[int]
    damaged: bool
    status_labels: Tuple[str, ...]
    last_seen: float
    last_confirmed_at: Optional[float]


class Device:
    """
    Registry record for one actuator.

    Telemetry (online, battery, signal, last_seen) may be refreshed by any
    status read. The lock state is only promoted to canonical through
    ``confirm()``.
    """

    def __init__(self, device_id: str, name: Optional[str] = None, kind: str = "lock"):
        self.device_id = str(device_id)
        self.name = name or self.device_id
        self.kind = kind

        self.canonical_locked: Optional[bool] = None
        self.last_confirmed_at: Optional[float] = None

        # Offline until the first successful read
        self.online = False
        self.battery: Optional[float] = None
        self.signal: Optional[int] = None
        self.damaged = False
        self.status_labels: Tuple[str, ...] = ()
        self.last_seen = 0.0

    def seed(self, status: DeviceStatus, at: float):
        """Initialise canonical state from the registration read."""
        if self.canonical_locked is not None:
            return
        self.canonical_locked = status.locked
        self.last_confirmed_at = at
        self.apply_telemetry(status, at)
        logger.info(f"[{self.device_id}] Seeded canonical state: locked={status.locked}")

    def apply_telemetry(self, status: DeviceStatus, at: float):
        """Refresh non-authoritative fields from a status read."""
        self.online = status.online
        if status.battery is not None:
            self.battery = status.battery
        if status.signal is not None:
            self.signal = status.signal
        self.damaged = status.damaged
        self.status_labels = status.status_labels
        self.last_seen = at

    def confirm(self, status: DeviceStatus, at: float):
        """Record a confirmed observation. Reserved for the confirmation controller."""
        previous = self.canonical_locked
        self.canonical_locked = status.locked
        self.last_confirmed_at = at
        self.apply_telemetry(status, at)
        if previous != status.locked:
            logger.info(f"[{self.device_id}] Canonical state: {previous} -> {status.locked}")

    def project(self, optimistic: Optional[bool], pending: bool, state_label: str) -> DeviceView:
        shown = optimistic if optimistic is not None else self.canonical_locked
        return DeviceView(
            device_id=self.device_id,
            name=self.name,
            kind=self.kind,
            locked=shown,
            state=state_label,
            canonical_locked=self.canonical_locked,
            optimistic_locked=optimistic,
            pending=pending,
            online=self.online,
            battery=self.battery,
            signal=self.signal,
            damaged=self.damaged,
            status_labels=self.status_labels,
            last_seen=self.last_seen,
            last_confirmed_at=self.last_confirmed_at,
        )

    def __repr__(self):
        return f"<Device {self.device_id} kind={self.kind} locked={self.canonical_locked}>"
