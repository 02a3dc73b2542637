"""
Command Guard
=============
In-memory mutual exclusion: at most one command per device may be in
flight. Not a distributed lock and does not survive a restart.
"""
import logging
import threading
from typing import List, Set

logger = logging.getLogger("guard")


class CommandGuard:
    """Registry of devices that currently have a non-terminal command."""

    def __init__(self):
        self._busy: Set[str] = set()
        self._lock = threading.Lock()
        self.stats = {
            'acquired': 0,
            'released': 0,
            'rejected': 0,
        }

    def try_acquire(self, device_id: str) -> bool:
        """Mark the device busy. Returns False if it already was."""
        with self._lock:
            if device_id in self._busy:
                self.stats['rejected'] += 1
                logger.info(f"[{device_id}] Command rejected - another command is in flight")
                return False
            self._busy.add(device_id)
            self.stats['acquired'] += 1
            return True

    def release(self, device_id: str) -> bool:
        """Release the device. Safe to call more than once."""
        with self._lock:
            if device_id not in self._busy:
                return False
            self._busy.discard(device_id)
            self.stats['released'] += 1
            return True

    def is_busy(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._busy

    def busy_devices(self) -> List[str]:
        with self._lock:
            return sorted(self._busy)
