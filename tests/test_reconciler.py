"""Convergence rules and the single fallback read."""
import pytest

from error_handler import StatusReadFailed
from handlers import get_handler
from modules.convergence import matches, matches_online, require_online
from modules.reconciler import FallbackReconciler, FinalVerdict

from conftest import DEVICE_ID, ScriptedStatusClient, status


class TestConvergence:

    @pytest.mark.parametrize("observed, expected, result", [
        (True, True, True),
        (False, False, True),
        (True, False, False),
        (False, True, False),
    ])
    def test_matches_compares_lock_state(self, observed, expected, result):
        assert matches(status(observed), expected) is result

    def test_default_rule_ignores_online(self):
        assert matches(status(True, online=False), True)

    def test_online_rule(self):
        assert not matches_online(status(True, online=False), True)
        assert matches_online(status(True, online=True), True)

    def test_require_online_wraps_custom_rule(self):
        def battery_ok(observed, expected):
            return observed.locked == expected and (observed.battery or 0) > 10

        rule = require_online(battery_ok)
        assert rule(status(True), True)
        assert not rule(status(True, online=False), True)
        assert not rule(status(True, battery=5.0), True)

    def test_valve_handler_requires_online_by_default(self):
        assert get_handler("valve").evaluator is matches_online
        assert get_handler("lock").evaluator is matches
        assert get_handler("lock", require_online=True).evaluator is matches_online


async def test_final_read_matches():
    client = ScriptedStatusClient(status(True))
    result = await FallbackReconciler(client).reconcile(DEVICE_ID, True)

    assert result.verdict == FinalVerdict.MATCHED
    assert result.observed.locked is True
    assert len(client.calls) == 1


async def test_final_read_mismatches():
    client = ScriptedStatusClient(status(False))
    result = await FallbackReconciler(client).reconcile(DEVICE_ID, True)

    assert result.verdict == FinalVerdict.MISMATCHED
    assert result.observed.locked is False


async def test_final_read_unreachable():
    client = ScriptedStatusClient(StatusReadFailed("Status API returned HTTP 503"))
    result = await FallbackReconciler(client).reconcile(DEVICE_ID, True)

    assert result.verdict == FinalVerdict.UNREACHABLE
    assert result.observed is None
    assert "503" in result.error
    assert len(client.calls) == 1


async def test_final_read_socket_error_is_unreachable():
    client = ScriptedStatusClient(OSError(113, "No route to host"))
    result = await FallbackReconciler(client).reconcile(DEVICE_ID, True)

    assert result.verdict == FinalVerdict.UNREACHABLE
    assert "No route to host" in result.error
