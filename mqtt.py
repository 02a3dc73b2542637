"""
MQTT Publisher for the Actuator Gateway
Pushes terminal command results and device projections to a broker.
Outbound only: commands are never accepted over MQTT.
"""
import asyncio
import logging
from contextlib import suppress
from typing import Any, Dict, Optional

from json_helpers import safe_json_dumps

logger = logging.getLogger("mqtt")

INITIAL_RETRY = 5
MAX_RETRY = 300


class MQTTService:
    """
    aiomqtt-backed publisher that survives broker restarts.

    Topics:
        {base_topic}/bridge/state                 online | offline (retained, also the will)
        {base_topic}/{device_id}/state            device projection (retained)
        {base_topic}/{device_id}/command_result   terminal notification
    """

    def __init__(
        self,
        broker_host: str,
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        base_topic: str = "actuators",
        qos: int = 0,
    ):
        self.broker = broker_host
        self.port = port
        self.username = username
        self.password = password
        self.base_topic = base_topic.rstrip("/")
        self.default_qos = qos
        self.bridge_status_topic = self.topic("bridge", "state")

        # Awaited with "online" / "offline" so the UI can show broker health
        self.status_change_callback = None

        self.client = None
        self._connected = False
        self._stopping = False
        self._retry_task: Optional[asyncio.Task] = None
        self._retry_delay = INITIAL_RETRY
        self._retry_count = 0

        self._stats = {
            'published': 0,
            'failed': 0,
        }

    @classmethod
    def from_config(cls, conf: Dict[str, Any]) -> "MQTTService":
        return cls(
            broker_host=conf.get('broker_host') or 'localhost',
            port=int(conf.get('broker_port') or 1883),
            username=conf.get('username'),
            password=conf.get('password'),
            base_topic=conf.get('base_topic') or 'actuators',
            qos=int(conf.get('qos') or 0),
        )

    @property
    def connected(self) -> bool:
        return self._connected and self.client is not None

    def topic(self, *parts: str) -> str:
        return "/".join([self.base_topic, *parts])

    # =========================================================================
    # CONNECTION
    # =========================================================================

    async def start(self):
        self._stopping = False
        await self._open()

    async def _open(self):
        from aiomqtt import Client, Will

        # A failed publish leaves the previous session behind
        await self._close_client()

        logger.info(f"Opening MQTT session to {self.broker}:{self.port}")
        try:
            client = Client(
                hostname=self.broker,
                port=self.port,
                username=self.username,
                password=self.password,
                keepalive=60,
                will=Will(self.bridge_status_topic, "offline", qos=1, retain=True),
            )
            await client.__aenter__()
            self.client = client
            self._connected = True
            self._retry_delay = INITIAL_RETRY
            self._retry_count = 0

            await client.publish(self.bridge_status_topic, "online", qos=1, retain=True)
            logger.info(f"✓ MQTT session open, {self.bridge_status_topic} = online")
        except Exception as e:
            self._connected = False
            logger.error(f"MQTT session failed: {e}")
            self._retry_later()
            return

        await self._announce("online")

    def _retry_later(self):
        """Back off 10, 20, 40 ... up to MAX_RETRY seconds between attempts."""
        if self._stopping:
            return

        self._retry_count += 1
        self._retry_delay = min(self._retry_delay * 2, MAX_RETRY)
        logger.warning(f"MQTT retry #{self._retry_count} in {self._retry_delay}s")

        if self._retry_task is None or self._retry_task.done():
            self._retry_task = asyncio.create_task(self._retry_loop())

    async def _retry_loop(self):
        while not (self._stopping or self._connected):
            await asyncio.sleep(self._retry_delay)
            if self._stopping:
                return
            await self._open()

        if self._connected:
            logger.info("✓ MQTT session restored")

    async def _announce(self, state: str):
        if not self.status_change_callback:
            return
        try:
            await self.status_change_callback(state)
        except Exception as e:
            logger.debug(f"Bridge status callback failed: {e}")

    async def stop(self):
        logger.info("Closing MQTT session...")
        self._stopping = True

        if self.connected:
            try:
                await self.client.publish(self.bridge_status_topic, "offline", qos=1, retain=True)
                await self._announce("offline")
            except Exception as e:
                logger.debug(f"Offline status not delivered: {e}")
        self._connected = False

        if self._retry_task:
            self._retry_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._retry_task

        await self._close_client()
        logger.info("MQTT session closed")

    async def _close_client(self):
        client, self.client = self.client, None
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except Exception as e:
            logger.debug(f"MQTT disconnect error: {e}")

    # =========================================================================
    # PUBLISHING
    # =========================================================================

    async def publish(self, subtopic: str, payload: str, qos: Optional[int] = None, retain: bool = True) -> bool:
        """Publish under base_topic. Returns False when nothing was sent."""
        if not self.connected:
            logger.debug(f"MQTT offline, dropping {subtopic}")
            return False

        qos = self.default_qos if qos is None else qos
        full_topic = subtopic if subtopic.startswith(self.base_topic + "/") else self.topic(subtopic)

        try:
            await self.client.publish(full_topic, payload, qos=qos, retain=retain)
        except Exception as e:
            self._stats['failed'] += 1
            logger.error(f"MQTT publish to {full_topic} failed: {e}")
            self._connected = False
            self._retry_later()
            return False

        self._stats['published'] += 1
        logger.debug(f"MQTT -> {full_topic} (qos={qos}, retain={retain}): {payload[:100]}")
        return True

    async def publish_device_state(self, view) -> bool:
        return await self.publish(self.topic(view.device_id, "state"), safe_json_dumps(view), retain=True)

    async def publish_command_result(self, notification) -> bool:
        return await self.publish(
            self.topic(notification.device_id, "command_result"),
            safe_json_dumps(notification),
            qos=1,
            retain=False,
        )

    def get_status(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "broker": f"{self.broker}:{self.port}",
            "base_topic": self.base_topic,
            "reconnect_attempts": self._retry_count,
            **self._stats,
        }
