"""
Convergence Evaluator
=====================
Decides whether a status reading shows the effect a command was meant to
have. Evaluators are pure functions of ``(observed, expected_locked)`` so
they can be tested with literal fixtures, independent of any timing.
"""
from typing import Callable

from device import DeviceStatus

Evaluator = Callable[[DeviceStatus, bool], bool]


def matches(observed: DeviceStatus, expected: bool) -> bool:
    """Default rule: the reported lock state equals the intended one."""
    return observed.locked == expected


def matches_online(observed: DeviceStatus, expected: bool) -> bool:
    """Stricter rule for devices whose offline readings are stale."""
    return observed.online and observed.locked == expected


def require_online(evaluator: Evaluator) -> Evaluator:
    """Wrap an evaluator so that offline readings never count as converged."""
    if evaluator is matches:
        return matches_online

    def _evaluate(observed: DeviceStatus, expected: bool) -> bool:
        return observed.online and evaluator(observed, expected)

    _evaluate.__name__ = f"online_{getattr(evaluator, '__name__', 'evaluator')}"
    return _evaluate
