"""
Actuator kinds: lock, valve, relay, gate.
"""
from device import Action
from .base import ActuatorHandler, register_handler


@register_handler("lock")
class LockHandler(ActuatorHandler):
    """Smart door lock."""
    pass


@register_handler("valve")
class ValveHandler(ActuatorHandler):
    """Motorised water/gas valve. Offline readings are never trusted."""
    ENGAGED_LABEL = "closed"
    RELEASED_LABEL = "open"
    VERBS = {
        Action.LOCK: ("close", "closed"),
        Action.UNLOCK: ("open", "opened"),
    }
    REQUIRE_ONLINE = True


@register_handler("relay")
class RelayHandler(ActuatorHandler):
    ENGAGED_LABEL = "on"
    RELEASED_LABEL = "off"
    VERBS = {
        Action.LOCK: ("switch on", "switched on"),
        Action.UNLOCK: ("switch off", "switched off"),
    }


@register_handler("gate")
class GateHandler(ActuatorHandler):
    ENGAGED_LABEL = "closed"
    RELEASED_LABEL = "open"
    VERBS = {
        Action.LOCK: ("close", "closed"),
        Action.UNLOCK: ("open", "opened"),
    }
