"""
Base Actuator Handler
Describes how one kind of binary actuator talks about its two states and
how its readings are judged for convergence.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from device import Action
from modules.convergence import Evaluator, matches, require_online

logger = logging.getLogger("handlers.base")

# Registry to map device kinds to Handler Classes
HANDLER_REGISTRY: Dict[str, type] = {}


def register_handler(kind: str):
    """Decorator to register an actuator handler for a device kind."""
    def decorator(cls):
        cls.KIND = kind
        HANDLER_REGISTRY[kind] = cls
        logger.debug(f"Registered handler {cls.__name__} for kind '{kind}'")
        return cls
    return decorator


class ActuatorHandler:
    """
    Base class for a binary actuator kind.

    "Locked" is the engaged state (lock bolted, valve closed, relay on,
    gate shut). Subclasses only override labels, verbs and the online rule.
    """
    KIND: str = "lock"

    # Label for the engaged / released state
    ENGAGED_LABEL = "locked"
    RELEASED_LABEL = "unlocked"

    # (infinitive, past participle) per action
    VERBS: Dict[Action, Tuple[str, str]] = {
        Action.LOCK: ("lock", "locked"),
        Action.UNLOCK: ("unlock", "unlocked"),
    }

    # Whether an offline reading may still count as converged
    REQUIRE_ONLINE = False

    def __init__(self, require_online: Optional[bool] = None):
        self.require_online = self.REQUIRE_ONLINE if require_online is None else require_online

    def state_label(self, locked: Optional[bool]) -> str:
        if locked is None:
            return "unknown"
        return self.ENGAGED_LABEL if locked else self.RELEASED_LABEL

    def verb(self, action: Action) -> str:
        return self.VERBS[action][0]

    def past(self, action: Action) -> str:
        return self.VERBS[action][1]

    @property
    def evaluator(self) -> Evaluator:
        return require_online(matches) if self.require_online else matches

    def describe(self) -> Dict[str, Any]:
        return {
            "kind": self.KIND,
            "engaged": self.ENGAGED_LABEL,
            "released": self.RELEASED_LABEL,
            "require_online": self.require_online,
        }
