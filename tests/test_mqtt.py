"""MQTT publication of results and device state."""
import json

import aiomqtt

from device import Device, DeviceStatus
from modules.notifier import Outcome, ResultNotifier
from mqtt import MQTTService


class RecordingClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []
        self.closed = False

    async def publish(self, topic, payload, qos=0, retain=False):
        if self.fail:
            raise ConnectionError("broker went away")
        self.published.append((topic, payload, qos, retain))

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True


def connected_service(client):
    service = MQTTService("broker", base_topic="actuators")
    service.client = client
    service._connected = True
    return service


async def test_command_result_topic_and_payload():
    client = RecordingClient()
    service = connected_service(client)
    notification = ResultNotifier().emit("cmd-1", "LOCK-0001", Outcome.SUCCESS, "Device locked", "confirmed")

    assert await service.publish_command_result(notification)

    topic, payload, qos, retain = client.published[0]
    assert topic == "actuators/LOCK-0001/command_result"
    assert qos == 1
    assert retain is False
    assert json.loads(payload)["outcome"] == "success"


async def test_device_state_is_retained():
    client = RecordingClient()
    service = connected_service(client)
    device = Device("LOCK-0001")
    device.confirm(DeviceStatus(locked=True), 1.0)

    assert await service.publish_device_state(device.project(None, False, "locked"))

    topic, payload, _, retain = client.published[0]
    assert topic == "actuators/LOCK-0001/state"
    assert retain is True
    assert json.loads(payload)["canonical_locked"] is True


async def test_publish_when_disconnected():
    service = MQTTService("broker")
    assert not await service.publish("x/state", "{}")


async def test_publish_failure_schedules_reconnect():
    client = RecordingClient(fail=True)
    service = connected_service(client)

    assert not await service.publish("LOCK-0001/state", "{}")
    assert service.get_status()["failed"] == 1
    assert not service.connected
    assert service._retry_task is not None

    await service.stop()
    assert client.closed
    assert service._retry_task.cancelled()


def test_from_config():
    service = MQTTService.from_config({'broker_host': 'mq', 'broker_port': '1884', 'base_topic': 'gw', 'qos': 1})
    status = service.get_status()
    assert status["broker"] == "mq:1884"
    assert status["base_topic"] == "gw"
    assert service.bridge_status_topic == "gw/bridge/state"


async def test_reconnect_closes_stale_client(monkeypatch):
    stale = RecordingClient(fail=True)
    service = connected_service(stale)
    assert not await service.publish("LOCK-0001/state", "{}")

    fresh = RecordingClient()
    monkeypatch.setattr(aiomqtt, "Client", lambda **kwargs: fresh)
    await service._open()

    assert stale.closed
    assert service.client is fresh
    assert service.connected
    assert fresh.published[0][:2] == ("actuators/bridge/state", "online")

    await service.stop()
    assert fresh.closed
