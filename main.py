"""
Actuator Gateway - Main Application
FastAPI-based web server for confirmed lock/unlock actuation.
"""
import uvicorn
import json
import os
import logging
from logging.handlers import RotatingFileHandler, QueueHandler, QueueListener
import queue
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect


# Import services
from api_client import SmartLockApiClient
from core import ActuationService
from error_handler import get_error_stats
from handlers import get_supported_kinds
from json_helpers import prepare_for_json
from modules.gateway_api import register_gateway_routes
from mqtt import MQTTService
from simulator import SimulatedActuatorBackend
from yaml_loader import get_conf, load_config


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG = load_config(os.environ.get("GATEWAY_CONFIG") or None)


# ============================================================================
# LOGGING (QUEUE-BACKED, NON-BLOCKING)
# ============================================================================

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


def configure_logging(config: Dict[str, Any]) -> QueueListener:
    """
    Send every record through a queue. The returned listener owns the file
    and console handlers and is started/stopped by the application lifespan.
    """
    log_conf = config.get('logging') or {}
    log_file = log_conf.get('file') or 'logs/gateway.log'
    os.makedirs(os.path.dirname(log_file) or '.', exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT)
    sinks = [
        RotatingFileHandler(log_file, maxBytes=1024*1024, backupCount=3),
        logging.StreamHandler(),
    ]
    for sink in sinks:
        sink.setFormatter(formatter)

    records = queue.Queue(-1)
    root = logging.getLogger()
    root.setLevel(str(log_conf.get('level') or 'INFO').upper())
    # Only the queue handler writes from request/event-loop code
    root.handlers = [QueueHandler(records)]

    # Per-module levels, e.g. {"controller": "DEBUG", "poller": "DEBUG"}
    for name, level in (log_conf.get('levels') or {}).items():
        logging.getLogger(name).setLevel(str(level).upper())

    return QueueListener(records, *sinks)


log_listener = configure_logging(CONFIG)
logger = logging.getLogger('main')


# ============================================================================
# WEBSOCKET FAN-OUT
# ============================================================================

class ConnectionManager:
    """Tracks dashboard WebSockets and fans gateway events out to them."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.active_connections.append(ws)
        logger.info(f"🔌 Dashboard connected ({len(self.active_connections)} open)")

    def disconnect(self, ws: WebSocket):
        if ws in self.active_connections:
            self.active_connections.remove(ws)
            logger.info(f"Dashboard disconnected ({len(self.active_connections)} open)")

    async def broadcast(self, message: dict):
        """Send one JSON frame to every socket, dropping the ones that fail."""
        if not self.active_connections:
            return

        try:
            frame = json.dumps(prepare_for_json(message))
        except (TypeError, ValueError) as e:
            logger.error(f"Event {message.get('type')} is not serialisable: {e}")
            return

        for ws in list(self.active_connections):
            try:
                await ws.send_text(frame)
            except Exception as e:
                logger.debug(f"Dropping dashboard socket: {e}")
                self.disconnect(ws)


manager = ConnectionManager()


async def broadcast_event(event_type: str, data: dict):
    """event_callback for the actuation service."""
    await manager.broadcast({"type": event_type, "payload": data})


# ============================================================================
# SERVICES INITIALIZATION
# ============================================================================

def build_backend(config: Dict[str, Any]):
    """Command/status backend selected by ``gateway.backend``."""
    backend = str(get_conf(config, 'gateway', 'backend', 'simulated')).lower()

    if backend == 'http':
        api = config.get('api') or {}
        logger.info(f"Using HTTP backend at {api.get('base_url')}")
        return SmartLockApiClient(
            base_url=api.get('base_url', 'http://localhost:3001/api'),
            timeout=float(api.get('timeout', 10.0)),
            user_name=api.get('user_name', 'API_User'),
        )

    if backend != 'simulated':
        raise ValueError(f"Unknown gateway backend: {backend}")

    simulator = SimulatedActuatorBackend.from_config(config.get('simulator'))
    for entry in config.get('devices') or []:
        if isinstance(entry, dict) and entry.get('device_id'):
            simulator.add_device(
                str(entry['device_id']),
                locked=bool(entry.get('initial_locked', True)),
                online=bool(entry.get('online', True)),
            )
    logger.info(f"Using simulated backend with {len(simulator.devices)} device(s)")
    return simulator


def build_mqtt(config: Dict[str, Any]) -> Optional[MQTTService]:
    if not get_conf(config, 'mqtt', 'enabled', False):
        return None
    return MQTTService.from_config(config.get('mqtt') or {})


backend = build_backend(CONFIG)
mqtt_service = build_mqtt(CONFIG)

gateway_service = ActuationService(
    command_client=backend,
    status_client=backend,
    config=CONFIG,
    event_callback=broadcast_event,
    mqtt_client=mqtt_service,
)


# ============================================================================
# APPLICATION LIFECYCLE
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown handling."""

    # Log listener first so startup is recorded
    log_listener.start()
    logger.info("🚀 Starting Actuator Gateway...")

    # Start MQTT (non-blocking, reconnects on its own)
    if mqtt_service:
        async def bridge_status_callback(status):
            await broadcast_event("bridge_status", {"status": status})

        mqtt_service.status_change_callback = bridge_status_callback
        try:
            await mqtt_service.start()
        except Exception as e:
            logger.warning(f"MQTT connection failed: {e}")

    await gateway_service.start()

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down Actuator Gateway...")
    await gateway_service.stop()
    if mqtt_service:
        await mqtt_service.stop()
    if hasattr(backend, 'close'):
        await backend.close()

    # Flush remaining records
    log_listener.stop()


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

app = FastAPI(
    title="Actuator Gateway",
    description="Lock/unlock actuation with status confirmation",
    version="1.0.0",
    lifespan=lifespan
)

register_gateway_routes(app, lambda: gateway_service)


# ============================================================================
# ROUTES - SYSTEM
# ============================================================================

@app.get("/")
async def index():
    return {
        "name": app.title,
        "version": app.version,
        "backend": get_conf(CONFIG, 'gateway', 'backend', 'simulated'),
        "kinds": get_supported_kinds(),
        "devices": len(gateway_service.devices),
    }


@app.get("/api/errors")
async def error_stats():
    """Get error handling statistics."""
    return get_error_stats()


@app.get("/api/mqtt/status")
async def mqtt_status():
    if not mqtt_service:
        return {"enabled": False, "connected": False}
    return {"enabled": True, **mqtt_service.get_status()}


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """WebSocket endpoint for real-time updates."""
    await manager.connect(ws)
    try:
        # Initial snapshot so late joiners see current state
        await ws.send_text(json.dumps({
            "type": "devices",
            "payload": gateway_service.get_device_list(),
        }))
        while True:
            # Keep connection alive; the UI sends nothing meaningful
            data = await ws.receive_text()
            logger.debug(f"WebSocket received: {data}")
    except WebSocketDisconnect:
        manager.disconnect(ws)
    except Exception as e:
        logger.warning(f"WebSocket error: {e}")
        manager.disconnect(ws)


if __name__ == "__main__":
    kwargs = dict(
        host=get_conf(CONFIG, 'web', 'host', '0.0.0.0'),
        port=int(get_conf(CONFIG, 'web', 'port', 8000)),
        log_level="info"
    )

    ssl_cfg = (CONFIG.get('web') or {}).get('ssl') or {}
    if ssl_cfg.get('enabled', False):
        kwargs['ssl_certfile'] = ssl_cfg.get('cert_file', 'certs/cert.pem')
        kwargs['ssl_keyfile'] = ssl_cfg.get('key_file', 'certs/key.pem')
        logger.info("HTTPS enabled")

    uvicorn.run(app, **kwargs)
