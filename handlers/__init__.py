"""
Actuator Handlers Package
"""
import logging
from typing import Optional

logger = logging.getLogger("handlers")

# Import base infrastructure FIRST
from .base import (
    ActuatorHandler,
    HANDLER_REGISTRY,
    register_handler,
)

# Import handler module to trigger registration decorators
from .actuators import (
    LockHandler,
    ValveHandler,
    RelayHandler,
    GateHandler,
)

__all__ = [
    "ActuatorHandler",
    "HANDLER_REGISTRY",
    "register_handler",
    "LockHandler",
    "ValveHandler",
    "RelayHandler",
    "GateHandler",
    "get_handler",
    "get_supported_kinds",
]

DEFAULT_KIND = "lock"


def get_handler(kind: Optional[str] = None, require_online: Optional[bool] = None) -> ActuatorHandler:
    """Instantiate the handler for a device kind, falling back to a lock."""
    key = (kind or DEFAULT_KIND).lower()
    handler_cls = HANDLER_REGISTRY.get(key)
    if handler_cls is None:
        logger.warning(f"No handler for kind '{kind}', using '{DEFAULT_KIND}'")
        handler_cls = HANDLER_REGISTRY[DEFAULT_KIND]
    return handler_cls(require_online=require_online)


def get_supported_kinds():
    """Get list of supported device kinds."""
    return sorted(HANDLER_REGISTRY.keys())


# Log registered handlers at import time
logger.info(f"Loaded {len(HANDLER_REGISTRY)} actuator handlers")
