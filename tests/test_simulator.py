"""Simulated backend driven end to end through the service."""
import pytest

from core import ActuationService
from device import Action
from error_handler import StatusReadFailed
from modules.controller import Phase
from simulator import SimulatedActuatorBackend

from conftest import DEVICE_ID, FakeClock


@pytest.fixture
def sim_clock():
    return FakeClock()


@pytest.fixture
def backend(sim_clock):
    sim = SimulatedActuatorBackend(clock=sim_clock, settle_after=8.0, seed=1)
    sim.add_device(DEVICE_ID, locked=True)
    return sim


async def test_change_becomes_visible_after_settling(backend, sim_clock):
    ack = await backend.issue_command(DEVICE_ID, Action.UNLOCK, "alice")
    assert ack.accepted
    assert ack.flow_id.startswith("SIM-")

    assert (await backend.get_status(DEVICE_ID)).locked is True
    await sim_clock.after(8.0)
    assert (await backend.get_status(DEVICE_ID)).locked is False


async def test_offline_device_rejects_commands(backend):
    backend.set_online(DEVICE_ID, False)
    ack = await backend.issue_command(DEVICE_ID, Action.UNLOCK, "alice")
    assert not ack.accepted
    assert ack.error == "Device is offline"


async def test_unknown_device(backend):
    assert not (await backend.issue_command("NOPE", Action.LOCK, "alice")).accepted
    with pytest.raises(StatusReadFailed):
        await backend.get_status("NOPE")


async def test_failure_rate_raises_read_errors(sim_clock):
    sim = SimulatedActuatorBackend(clock=sim_clock, failure_rate=1.0)
    sim.add_device(DEVICE_ID)
    with pytest.raises(StatusReadFailed):
        await sim.get_status(DEVICE_ID)
    assert sim.get_stats()["status_failures"] == 1


async def test_slow_actuator_confirms_on_later_attempt(backend, sim_clock):
    service = ActuationService(backend, backend, config={}, clock=sim_clock)
    await service.register_device(DEVICE_ID)

    result = await service.execute_command(DEVICE_ID, Action.UNLOCK)

    # Settles at 8s: the read at 5s is stale, the read at 10s converges
    assert result.phase == Phase.CONFIRMED
    assert len(result.attempts) == 2
    assert service.get_view(DEVICE_ID).canonical_locked is False


async def test_stuck_actuator_ends_unconfirmed(backend, sim_clock):
    backend.set_stuck(DEVICE_ID)
    service = ActuationService(backend, backend, config={}, clock=sim_clock)
    await service.register_device(DEVICE_ID)

    result = await service.execute_command(DEVICE_ID, Action.UNLOCK)

    assert result.phase == Phase.UNCONFIRMED
    assert service.get_view(DEVICE_ID).canonical_locked is True


def test_from_config():
    sim = SimulatedActuatorBackend.from_config({'settle_after': 1, 'failure_rate': 0.5, 'reject_offline': False})
    assert sim.settle_after == 1.0
    assert sim.failure_rate == 0.5
    assert sim.reject_offline is False
