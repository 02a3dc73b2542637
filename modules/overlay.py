"""
Optimistic State Overlay
========================
Provisional lock values shown to the UI between a successful dispatch and
the terminal verdict. A device has an overlay value only while a command
for it is awaiting confirmation.
"""
import logging
from typing import Callable, Dict, Optional

logger = logging.getLogger("overlay")


class OptimisticOverlay:

    def __init__(self, on_change: Optional[Callable[[str, Optional[bool]], None]] = None):
        """
        Args:
            on_change: Called with (device_id, value) after every set/clear.
                       value is None when the overlay was cleared.
        """
        self._values: Dict[str, bool] = {}
        self.on_change = on_change
        self.writes = 0

    def set(self, device_id: str, locked: bool):
        self._values[device_id] = locked
        self.writes += 1
        logger.debug(f"[{device_id}] Optimistic state set: locked={locked}")
        self._notify(device_id, locked)

    def clear(self, device_id: str) -> bool:
        """Drop the provisional value. Returns True if one was present."""
        if device_id not in self._values:
            return False
        del self._values[device_id]
        logger.debug(f"[{device_id}] Optimistic state cleared")
        self._notify(device_id, None)
        return True

    def get(self, device_id: str) -> Optional[bool]:
        return self._values.get(device_id)

    def has(self, device_id: str) -> bool:
        return device_id in self._values

    def snapshot(self) -> Dict[str, bool]:
        return dict(self._values)

    def _notify(self, device_id: str, value: Optional[bool]):
        if not self.on_change:
            return
        try:
            self.on_change(device_id, value)
        except Exception as e:
            logger.warning(f"[{device_id}] Overlay change callback failed: {e}")
