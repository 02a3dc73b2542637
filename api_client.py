"""
Device API Clients
==================
Boundary between the vendor REST API and the gateway.

Everything vendor-specific is normalised here before it reaches the
confirmation controller:
- command acknowledgements become ``CommandAck(accepted, flow_id, error)``
- status payloads become ``DeviceStatus(locked, online, ...)``
- ad hoc status strings ("success", "completed", "done", ...) collapse to bool
"""
import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from device import Action, CommandAck, DeviceStatus
from error_handler import DispatchUnreachable, StatusReadFailed, get_error_handler

logger = logging.getLogger("api_client")


class DeviceCommandClient:
    """Side-effecting, non-idempotent command path."""

    async def issue_command(self, device_id: str, action: Action, actor: str) -> CommandAck:
        raise NotImplementedError


class DeviceStatusClient:
    """Read-only status path; safe to call repeatedly."""

    async def get_status(self, device_id: str) -> DeviceStatus:
        raise NotImplementedError


# ============================================================================
# NORMALISATION
# ============================================================================

ACCEPTED_VALUES = {"true", "1", "success", "succeeded", "completed", "complete", "done", "ok", "accepted"}
REJECTED_VALUES = {"false", "0", "fail", "failed", "failure", "error", "rejected", "denied"}

# deviceStatus codes reported by the smart lock
LOCK_CODES = ("status_30", "status_50")
UNLOCK_CODES = ("status_10", "status_20")
DEFAULT_SIGNAL = 75

STATUS_CODE_NAMES = {
    'status_10': 'GPS Active',
    'status_20': 'GPRS Connected',
    'status_30': 'Device Locked',
    'status_40': 'Power Normal',
    'status_50': 'Lock Secured',
    'status_60': 'Signal Good',
    'status_61': 'Signal Weak',
    'status_141': 'Battery Normal',
    'status_151': 'System Normal',
}


def normalise_flag(value: Any) -> Optional[bool]:
    """Collapse the many spellings of yes/no into a bool (None if unrecognised)."""
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in ACCEPTED_VALUES:
        return True
    if text in REJECTED_VALUES:
        return False
    return None


def _has_code(statuses: List[str], codes: Tuple[str, ...]) -> bool:
    # Exact match: "status_30" must not match "status_301"
    return any(s in codes for s in statuses)


def parse_device_status_string(status_string: Optional[str]) -> Dict[str, Any]:
    """
    Parse a comma-separated ``deviceStatus`` string.

    Lock indicators (status_30 / status_50) mean locked. Unlock indicators
    (status_10 / status_20) mean unlocked only when no lock indicator is
    present.

    Returns:
        dict with ``locked``, ``damaged``, ``signal`` and ``codes`` keys
    """
    statuses = [s.strip() for s in status_string.split(",")] if status_string else []
    statuses = [s for s in statuses if s]

    has_lock = _has_code(statuses, LOCK_CODES)
    has_unlock = _has_code(statuses, UNLOCK_CODES)

    if has_unlock and not has_lock:
        locked = False
    else:
        locked = has_lock

    damaged = any("damage" in s or "broken" in s for s in statuses)

    signal = DEFAULT_SIGNAL
    for s in statuses:
        if "signal" in s:
            match = re.search(r"\d+", s)
            if match:
                signal = int(match.group(0))
            break

    return {"locked": locked, "damaged": damaged, "signal": signal, "codes": statuses}


def describe_status_code(code: str) -> str:
    return STATUS_CODE_NAMES.get(code, code)


def _value_by_key(items: List[Dict[str, Any]], key: str) -> str:
    for item in items:
        if item.get("key") == key:
            return str(item.get("value") or "")
    return ""


def _to_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _section(container: Dict[str, Any], key: str, expected: type, what: str):
    value = container.get(key)
    if not isinstance(value, expected):
        raise StatusReadFailed(f"Malformed status payload: {what} is {type(value).__name__}")
    return value


def parse_status_payload(payload: Dict[str, Any]) -> DeviceStatus:
    """
    Convert a ``/smartlock/status`` response into a DeviceStatus.

    Raises:
        StatusReadFailed: The payload does not describe a device state.
    """
    if not isinstance(payload, dict):
        raise StatusReadFailed(f"Unexpected status payload type: {type(payload).__name__}")

    if normalise_flag(payload.get("success", True)) is False:
        raise StatusReadFailed(payload.get("message") or "Status request unsuccessful")

    data = _section(payload, "data", dict, "data")
    device_info = _section(_section(data, "deviceInfo", dict, "deviceInfo"), "data", dict, "deviceInfo.data")
    latest = _section(_section(data, "latestData", dict, "latestData"), "data", list, "latestData.data")

    if not device_info or not latest:
        raise StatusReadFailed("Status payload is missing deviceInfo or latestData")
    if not isinstance(latest[0], dict):
        raise StatusReadFailed(f"Malformed status payload: latestData.data[0] is {type(latest[0]).__name__}")

    vos = latest[0].get("deviceNewVos") or []
    if not isinstance(vos, list):
        raise StatusReadFailed("Malformed status payload: deviceNewVos is not a list")
    vos = [vo for vo in vos if isinstance(vo, dict)]

    parsed = parse_device_status_string(_value_by_key(vos, "deviceStatus"))

    battery = _to_float(_value_by_key(vos, "battery"))
    timestamp_ms = _to_float(_value_by_key(vos, "time"))

    return DeviceStatus(
        locked=parsed["locked"],
        online=normalise_flag(device_info.get("online")) is True,
        battery=battery,
        signal=parsed["signal"],
        last_update=timestamp_ms / 1000.0 if timestamp_ms else None,
        damaged=parsed["damaged"],
        status_labels=tuple(describe_status_code(code) for code in parsed["codes"]),
        raw=data,
    )


def parse_command_response(payload: Any) -> CommandAck:
    """Convert a lock/unlock response into a CommandAck."""
    if not isinstance(payload, dict):
        return CommandAck(accepted=False, error="Unexpected command response")

    data = payload.get("data")
    data = data if isinstance(data, dict) else {}

    accepted = normalise_flag(payload.get("success"))
    if accepted is None:
        accepted = normalise_flag(data.get("status") or payload.get("status"))

    # The vendor nests the flow id two levels down
    flow_id = None
    inner = data.get("data")
    while isinstance(inner, dict) and flow_id is None:
        flow_id = inner.get("flowId")
        inner = inner.get("data")
    flow_id = flow_id or data.get("flowId")

    error = data.get("message") or payload.get("message") or payload.get("error")
    if accepted:
        return CommandAck(accepted=True, flow_id=str(flow_id) if flow_id else None)
    return CommandAck(accepted=False, error=str(error) if error else None)


# ============================================================================
# HTTP CLIENT
# ============================================================================

class SmartLockApiClient(DeviceCommandClient, DeviceStatusClient):
    """
    aiohttp client for the dashboard's smart-lock proxy.

    Endpoints:
        POST {base_url}/smartlock/lock     {"deviceCode", "userName"}
        POST {base_url}/smartlock/unlock   {"deviceCode", "userName"}
        GET  {base_url}/smartlock/status?deviceCode=...
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        user_name: str = "API_User",
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_name = user_name
        self._session = session
        self._owns_session = session is None
        self.error_handler = get_error_handler()

        self.stats = {
            'commands_sent': 0,
            'status_reads': 0,
            'status_failures': 0,
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, **kwargs) -> Tuple[int, Any]:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        async with session.request(method, url, **kwargs) as resp:
            text = await resp.text()
            try:
                body = json.loads(text) if text else {}
            except json.JSONDecodeError:
                body = None
            if body is None and resp.status < 400:
                raise ValueError(f"Invalid JSON from {path}: {text[:200]}")
            return resp.status, body

    async def issue_command(self, device_id: str, action: Action, actor: str) -> CommandAck:
        path = f"/smartlock/{action.value}"
        payload = {"deviceCode": device_id, "userName": actor or self.user_name}
        self.stats['commands_sent'] += 1

        try:
            status, body = await self._request("POST", path, json=payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            self.error_handler.record_error(e, context="issue_command")
            logger.error(f"[{device_id}] Error sending {action.value}: {e}")
            raise DispatchUnreachable(f"{action.value} request failed: {e}") from e

        if status >= 500:
            raise DispatchUnreachable(f"Command API returned HTTP {status}")

        ack = parse_command_response(body)
        if status >= 400 and ack.accepted:
            ack = CommandAck(accepted=False, error=f"Command API returned HTTP {status}")

        logger.info(f"[{device_id}] {action.value} response: accepted={ack.accepted} flow={ack.flow_id}")
        return ack

    async def get_status(self, device_id: str) -> DeviceStatus:
        self.stats['status_reads'] += 1
        try:
            status, body = await self._request(
                "GET", "/smartlock/status", params={"deviceCode": device_id}
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            self.stats['status_failures'] += 1
            raise StatusReadFailed(f"Status request failed: {e}") from e

        if status >= 400:
            self.stats['status_failures'] += 1
            raise StatusReadFailed(f"Status API returned HTTP {status}")

        try:
            return parse_status_payload(body)
        except StatusReadFailed:
            self.stats['status_failures'] += 1
            raise

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'base_url': self.base_url}
