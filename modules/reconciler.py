"""
Fallback Reconciler
===================
Runs once after the poller gives up: one more authoritative read (not a
loop) so that the user always gets a definitive answer.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from device import DeviceStatus
from error_handler import ErrorHandler, StatusReadFailed, get_error_handler
from modules.convergence import Evaluator, matches

logger = logging.getLogger("reconciler")


class FinalVerdict(str, Enum):
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class ReconciliationResult:
    verdict: FinalVerdict
    observed: Optional[DeviceStatus] = None
    error: Optional[str] = None


class FallbackReconciler:

    def __init__(
        self,
        status_client,
        evaluator: Evaluator = matches,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.status_client = status_client
        self.evaluator = evaluator
        self.error_handler = error_handler or get_error_handler()

    async def reconcile(self, device_id: str, expected_locked: bool) -> ReconciliationResult:
        logger.info(f"[{device_id}] Performing final status refresh")
        try:
            observed = await self.status_client.get_status(device_id)
        except Exception as e:
            if not isinstance(e, StatusReadFailed) and not self.error_handler.is_transient(e):
                raise
            self.error_handler.record_error(e, context="final_status_read")
            logger.error(f"[{device_id}] Final status check failed: {e}")
            return ReconciliationResult(FinalVerdict.UNREACHABLE, error=str(e))

        if self.evaluator(observed, expected_locked):
            logger.info(f"[{device_id}] Status confirmed on final check")
            return ReconciliationResult(FinalVerdict.MATCHED, observed=observed)

        logger.warning(
            f"[{device_id}] Final check mismatch: expected locked={expected_locked}, "
            f"observed locked={observed.locked} online={observed.online}"
        )
        return ReconciliationResult(FinalVerdict.MISMATCHED, observed=observed)
