"""
Gateway API - FastAPI routes for devices and actuation commands.
"""

import logging
from typing import Any, Callable, Optional, Union

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from device import Action
from error_handler import CommandInFlightError, StatusReadFailed, UnknownDeviceError
from json_helpers import prepare_for_json
from modules.controller import CancelMode

logger = logging.getLogger(__name__)


# ============================================================================
# MODELS
# ============================================================================

class CommandRequest(BaseModel):
    action: Action
    actor: Optional[str] = None


class ActorRequest(BaseModel):
    actor: Optional[str] = None


# ============================================================================
# REGISTRATION
# ============================================================================

def register_gateway_routes(app: FastAPI,
                            service_getter: Union[Any, Callable[[], Any]]):
    def get_service():
        s = service_getter() if callable(service_getter) else service_getter
        if not s:
            raise HTTPException(503, "Service not initialised")
        return s

    async def submit(device_id: str, action: Action, actor: Optional[str]):
        s = get_service()
        try:
            command = await s.submit_command(device_id, action, actor)
        except UnknownDeviceError as e:
            raise HTTPException(404, str(e))
        except CommandInFlightError as e:
            raise HTTPException(409, str(e))
        return {"status": "accepted", "command": prepare_for_json(command)}

    @app.get("/api/devices", tags=["devices"])
    async def list_devices():
        return get_service().get_device_list()

    @app.get("/api/devices/{device_id}", tags=["devices"])
    async def get_device(device_id: str):
        s = get_service()
        try:
            return s.describe_device(device_id)
        except UnknownDeviceError as e:
            raise HTTPException(404, str(e))

    @app.post("/api/devices/{device_id}/refresh", tags=["devices"])
    async def refresh_device(device_id: str):
        s = get_service()
        try:
            await s.refresh_device(device_id)
        except UnknownDeviceError as e:
            raise HTTPException(404, str(e))
        except StatusReadFailed as e:
            raise HTTPException(502, f"Status read failed: {e}")
        return s.describe_device(device_id)

    @app.post("/api/devices/{device_id}/command", status_code=202, tags=["commands"])
    async def command(device_id: str, request: CommandRequest):
        return await submit(device_id, request.action, request.actor)

    @app.post("/api/devices/{device_id}/lock", status_code=202, tags=["commands"])
    async def lock(device_id: str, request: Optional[ActorRequest] = None):
        return await submit(device_id, Action.LOCK, request.actor if request else None)

    @app.post("/api/devices/{device_id}/unlock", status_code=202, tags=["commands"])
    async def unlock(device_id: str, request: Optional[ActorRequest] = None):
        return await submit(device_id, Action.UNLOCK, request.actor if request else None)

    @app.delete("/api/devices/{device_id}/command", tags=["commands"])
    async def cancel(device_id: str, mode: Optional[CancelMode] = None):
        s = get_service()
        try:
            cancelled = s.cancel_command(device_id, mode)
        except UnknownDeviceError as e:
            raise HTTPException(404, str(e))
        if not cancelled:
            raise HTTPException(404, f"No command in flight for {device_id}")
        return {
            "success": True,
            "device_id": device_id,
            "mode": (mode or s.default_cancel_mode).value,
        }

    @app.get("/api/commands/history", tags=["commands"])
    async def history(device_id: Optional[str] = None, limit: Optional[int] = None):
        return get_service().get_history(device_id=device_id, limit=limit)

    @app.get("/api/stats", tags=["commands"])
    async def stats():
        return prepare_for_json(get_service().get_stats())

    logger.info("Gateway API routes registered")
