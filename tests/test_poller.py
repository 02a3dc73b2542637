"""Backoff poller: schedule, early exit and failed-read handling."""
import pytest

from error_handler import StatusReadFailed
from modules.convergence import matches_online
from modules.poller import BackoffPoller, ConfirmationPolicy

from conftest import DEVICE_ID, FakeClock, ScriptedStatusClient, status


class TestConfirmationPolicy:

    def test_default_schedule(self):
        policy = ConfirmationPolicy()
        assert policy.schedule() == [5.0, 5.0, 10.0, 15.0, 20.0]
        assert policy.worst_case_wait == 55.0

    def test_inter_attempt_waits_strictly_increase(self):
        waits = ConfirmationPolicy().schedule()[1:]
        assert all(later > earlier for earlier, later in zip(waits, waits[1:]))

    def test_from_config(self):
        policy = ConfirmationPolicy.from_config({'max_attempts': 3, 'initial_wait': 1, 'increment': 2})
        assert policy.schedule() == [1.0, 2.0, 4.0]

    def test_from_config_defaults(self):
        assert ConfirmationPolicy.from_config(None) == ConfirmationPolicy()

    def test_blank_keys_keep_defaults(self):
        conf = {'max_attempts': None, 'initial_wait': None, 'increment': None}
        assert ConfirmationPolicy.from_config(conf) == ConfirmationPolicy()

    @pytest.mark.parametrize("conf", [
        {'max_attempts': 'five'},
        {'increment': [5]},
        {'initial_wait': -2},
    ])
    def test_bad_config_raises_value_error(self, conf):
        with pytest.raises(ValueError):
            ConfirmationPolicy.from_config(conf)

    @pytest.mark.parametrize("kwargs", [
        {'max_attempts': 0},
        {'initial_wait': -1.0},
        {'increment': 0.0},
    ])
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            ConfirmationPolicy(**kwargs)


async def test_confirms_on_first_read(clock):
    client = ScriptedStatusClient(status(locked=True))
    outcome = await BackoffPoller(client, clock).confirm(DEVICE_ID, True)

    assert outcome.confirmed
    assert outcome.status_calls == 1
    assert clock.waits == [5.0]


async def test_stops_at_first_converged_reading(clock):
    client = ScriptedStatusClient(status(False), status(False), status(True), status(True))
    outcome = await BackoffPoller(client, clock).confirm(DEVICE_ID, True)

    assert outcome.confirmed
    assert len(client.calls) == 3
    assert clock.waits == [5.0, 5.0, 10.0]
    assert outcome.observed.locked is True


async def test_failed_reads_are_not_negative_confirmations(clock):
    error = StatusReadFailed("timeout")
    client = ScriptedStatusClient(error, error, error, error, status(locked=False))
    outcome = await BackoffPoller(client, clock).confirm(DEVICE_ID, False)

    assert outcome.confirmed
    assert outcome.status_calls == 5
    assert outcome.failed_reads == 4
    assert clock.waits == [5.0, 5.0, 10.0, 15.0, 20.0]


async def test_exhausts_attempts_without_trailing_wait(clock):
    client = ScriptedStatusClient(status(False))
    outcome = await BackoffPoller(client, clock).confirm(DEVICE_ID, True)

    assert not outcome.confirmed
    assert len(client.calls) == 5
    assert sum(clock.waits) == 55.0
    assert outcome.observed.locked is False


async def test_all_reads_failing_looks_like_unconfirmed(clock):
    client = ScriptedStatusClient(ConnectionError("connection refused"))
    outcome = await BackoffPoller(client, clock).confirm(DEVICE_ID, True)

    assert not outcome.confirmed
    assert outcome.observed is None
    assert outcome.failed_reads == 5
    assert [a.attempt_index for a in outcome.attempts] == [1, 2, 3, 4, 5]


async def test_os_level_transport_error_is_a_failed_read(clock):
    client = ScriptedStatusClient(OSError(113, "No route to host"), status(True))
    outcome = await BackoffPoller(client, clock).confirm(DEVICE_ID, True)

    assert outcome.confirmed
    assert outcome.status_calls == 2
    assert outcome.failed_reads == 1


async def test_attempt_records_scheduled_delay(clock):
    client = ScriptedStatusClient(status(False), status(True))
    outcome = await BackoffPoller(client, clock).confirm(DEVICE_ID, True)

    assert [a.scheduled_delay for a in outcome.attempts] == [5.0, 5.0]
    assert [a.observed_locked for a in outcome.attempts] == [False, True]


async def test_custom_schedule(clock):
    client = ScriptedStatusClient(status(False))
    await BackoffPoller(client, clock).confirm(DEVICE_ID, True, max_attempts=3, initial_wait=1, increment=2)

    assert clock.waits == [1, 2.0, 4.0]


async def test_offline_reading_does_not_converge_with_online_rule():
    clock = FakeClock()
    client = ScriptedStatusClient(status(True, online=False), status(True, online=True))
    outcome = await BackoffPoller(client, clock, evaluator=matches_online).confirm(DEVICE_ID, True)

    assert outcome.confirmed
    assert outcome.status_calls == 2


async def test_programming_errors_propagate(clock):
    client = ScriptedStatusClient(KeyError("deviceNewVos"))
    with pytest.raises(KeyError):
        await BackoffPoller(client, clock).confirm(DEVICE_ID, True)
