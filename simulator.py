"""
Simulated Actuator Backend
==========================
In-process stand-in for the command and status APIs, used when
``gateway.backend`` is ``simulated`` and for development without hardware.

Accepted commands only show up in the reported state ``settle_after``
seconds later, and status reads fail at ``failure_rate``, so the whole
confirmation path (backoff, fallback, mismatch) can be exercised.
"""
import logging
import random
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from api_client import DeviceCommandClient, DeviceStatusClient
from clock import AsyncioClock, Clock
from device import Action, CommandAck, DeviceStatus
from error_handler import StatusReadFailed

logger = logging.getLogger("simulator")


@dataclass
class SimulatedActuator:
    device_id: str
    locked: bool = True
    online: bool = True
    battery: float = 100.0
    signal: int = 75
    pending_locked: Optional[bool] = None
    pending_due: float = 0.0
    # When set, accepted commands never take effect
    stuck: bool = False


class SimulatedActuatorBackend(DeviceCommandClient, DeviceStatusClient):

    def __init__(
        self,
        clock: Optional[Clock] = None,
        settle_after: float = 3.0,
        failure_rate: float = 0.0,
        reject_offline: bool = True,
        seed: Optional[int] = None,
    ):
        self.clock = clock or AsyncioClock()
        self.settle_after = settle_after
        self.failure_rate = failure_rate
        self.reject_offline = reject_offline
        self._rng = random.Random(seed)
        self.devices: Dict[str, SimulatedActuator] = {}

        self.stats = {
            'commands': 0,
            'rejected': 0,
            'status_reads': 0,
            'status_failures': 0,
        }

    @classmethod
    def from_config(cls, conf: Optional[Dict[str, Any]], clock: Optional[Clock] = None):
        conf = conf or {}
        return cls(
            clock=clock,
            settle_after=float(conf.get('settle_after', 3.0)),
            failure_rate=float(conf.get('failure_rate', 0.0)),
            reject_offline=bool(conf.get('reject_offline', True)),
            seed=conf.get('seed'),
        )

    def add_device(self, device_id: str, locked: bool = True, online: bool = True) -> SimulatedActuator:
        actuator = SimulatedActuator(device_id=device_id, locked=locked, online=online)
        self.devices[device_id] = actuator
        logger.info(f"[SIM] Added actuator {device_id} (locked={locked}, online={online})")
        return actuator

    def set_online(self, device_id: str, online: bool):
        self.devices[device_id].online = online

    def set_stuck(self, device_id: str, stuck: bool = True):
        self.devices[device_id].stuck = stuck

    def _settle(self, actuator: SimulatedActuator):
        if actuator.pending_locked is None:
            return
        if self.clock.now() >= actuator.pending_due:
            actuator.locked = actuator.pending_locked
            actuator.pending_locked = None
            # Each physical movement costs a little battery
            actuator.battery = max(0.0, actuator.battery - 0.1)
            logger.debug(f"[SIM] {actuator.device_id} settled: locked={actuator.locked}")

    async def issue_command(self, device_id: str, action: Action, actor: str) -> CommandAck:
        self.stats['commands'] += 1
        actuator = self.devices.get(device_id)

        if actuator is None:
            self.stats['rejected'] += 1
            return CommandAck(accepted=False, error=f"Unknown device: {device_id}")

        if not actuator.online and self.reject_offline:
            self.stats['rejected'] += 1
            return CommandAck(accepted=False, error="Device is offline")

        if not actuator.stuck:
            actuator.pending_locked = action.expected_locked
            actuator.pending_due = self.clock.now() + self.settle_after

        flow_id = f"SIM-{uuid.uuid4().hex[:12]}"
        logger.info(f"[SIM] {device_id} {action.value} accepted by {actor} (flow {flow_id})")
        return CommandAck(accepted=True, flow_id=flow_id)

    async def get_status(self, device_id: str) -> DeviceStatus:
        self.stats['status_reads'] += 1
        actuator = self.devices.get(device_id)

        if actuator is None:
            self.stats['status_failures'] += 1
            raise StatusReadFailed(f"Unknown device: {device_id}")

        if self.failure_rate and self._rng.random() < self.failure_rate:
            self.stats['status_failures'] += 1
            raise StatusReadFailed("Simulated transport timeout")

        self._settle(actuator)
        return DeviceStatus(
            locked=actuator.locked,
            online=actuator.online,
            battery=round(actuator.battery, 1),
            signal=actuator.signal,
            last_update=self.clock.now(),
        )

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'devices': len(self.devices)}
