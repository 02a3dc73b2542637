"""
Actuation Service Core
Owns the device registry and runs one confirmation controller per
in-flight command. Everything the web, WebSocket and MQTT surfaces see
goes through this service.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Dict, List, Optional, Set

from clock import AsyncioClock, Clock
from device import Action, Command, Device, DeviceView
from error_handler import CommandInFlightError, UnknownDeviceError, get_error_handler
from handlers import ActuatorHandler, get_handler
from json_helpers import prepare_for_json
from modules.controller import ActuationController, CancelMode, CommandResult
from modules.guard import CommandGuard
from modules.notifier import Notification, ResultNotifier
from modules.overlay import OptimisticOverlay
from modules.poller import ConfirmationPolicy

logger = logging.getLogger("core")

HISTORY_SIZE = 200


class StatusRefresher:
    """
    Per-device status refresh scheduler.
    Keeps telemetry (online, battery, signal, last_seen) fresh between
    commands. Never writes the canonical lock state.
    """

    def __init__(self, service: "ActuationService", default_interval: int = 30):
        self.service = service
        self._tasks: Dict[str, asyncio.Task] = {}
        self._intervals: Dict[str, int] = {}  # device_id -> seconds
        self._running = False
        self._default_interval = default_interval  # 0 disables refresh
        self.stats = {
            'refreshed': 0,
            'skipped_busy': 0,
            'failed': 0,
        }

    def start(self):
        """Start the refresh scheduler."""
        self._running = True
        for device_id in list(self.service.devices):
            if device_id not in self._tasks:
                self.enable_for_device(device_id)
        logger.info(f"Status refresher started (default interval {self._default_interval}s)")

    def stop(self):
        """Stop all refresh tasks."""
        self._running = False
        for device_id, task in self._tasks.items():
            task.cancel()
        self._tasks.clear()
        logger.info("Status refresher stopped")

    @property
    def running(self) -> bool:
        return self._running

    def set_interval(self, device_id: str, interval: int):
        """
        Set refresh interval for a device.
        interval=0 disables refresh for the device.
        """
        self._intervals[device_id] = interval

        # Cancel existing task if any
        if device_id in self._tasks:
            self._tasks[device_id].cancel()
            del self._tasks[device_id]

        if interval > 0 and self._running:
            self._tasks[device_id] = asyncio.create_task(self._refresh_loop(device_id, interval))
            logger.info(f"[{device_id}] Status refresh set to {interval}s")
        elif interval == 0:
            logger.info(f"[{device_id}] Status refresh disabled")

    def get_all_intervals(self) -> Dict[str, int]:
        return self._intervals.copy()

    def enable_for_device(self, device_id: str, interval: Optional[int] = None):
        if interval is None:
            interval = self._default_interval
        self.set_interval(device_id, interval)

    async def refresh_once(self, device_id: str) -> bool:
        """Refresh one device unless a command owns it. Returns True on a successful read."""
        if self.service.guard.is_busy(device_id):
            # The confirmation controller is already reading this device
            self.stats['skipped_busy'] += 1
            logger.debug(f"[{device_id}] Skipping refresh - command in flight")
            return False

        try:
            await self.service.refresh_device(device_id)
        except Exception as e:
            self.stats['failed'] += 1
            logger.warning(f"[{device_id}] Refresh failed: {e}")
            return False

        self.stats['refreshed'] += 1
        return True

    async def _refresh_loop(self, device_id: str, interval: int):
        """Refresh loop for a single device."""
        while self._running and device_id in self._intervals:
            try:
                await asyncio.sleep(interval)

                if not self._running or device_id not in self._intervals:
                    break

                if device_id in self.service.devices:
                    await self.refresh_once(device_id)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[{device_id}] Refresh loop error: {e}")
                await asyncio.sleep(30)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'running': self._running, 'intervals': self.get_all_intervals()}


class ActuationService:
    """
    Gateway facade: device registry, command submission and cancellation,
    history and statistics.

    Events passed to ``event_callback(event_type, data)``:
        command_accepted, optimistic_state, command_phase,
        command_result, device_state
    """

    def __init__(
        self,
        command_client,
        status_client,
        config: Optional[Dict[str, Any]] = None,
        event_callback=None,
        clock: Optional[Clock] = None,
        mqtt_client=None,
    ):
        self.command_client = command_client
        self.status_client = status_client
        self.config = config or {}
        self.callback = event_callback
        self.clock = clock or AsyncioClock()
        self.mqtt = mqtt_client
        self.error_handler = get_error_handler()

        conf = self.config.get('confirmation') or {}
        self.policy = ConfirmationPolicy.from_config(conf)
        self.require_online = conf.get('require_online')
        self.default_cancel_mode = CancelMode(conf.get('cancel_mode') or CancelMode.DETACH.value)
        self.default_actor = (self.config.get('gateway') or {}).get('actor') or "Dashboard_User"

        self.devices: Dict[str, Device] = {}
        self.handlers: Dict[str, ActuatorHandler] = {}

        self.guard = CommandGuard()
        self.overlay = OptimisticOverlay(on_change=self._on_optimistic_change)
        self.notifier = ResultNotifier()
        self.notifier.add_subscriber(self._on_notification)

        refresh_interval = (self.config.get('refresh') or {}).get('interval')
        refresh_interval = 30 if refresh_interval is None else int(refresh_interval)
        self.refresher = StatusRefresher(self, refresh_interval)

        # In-flight commands, keyed by device
        self._controllers: Dict[str, ActuationController] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._history: deque = deque(maxlen=HISTORY_SIZE)
        self._event_tasks: Set[asyncio.Task] = set()

        self.stats = {
            'submitted': 0,
            'rejected_busy': 0,
            'completed': 0,
            'cancelled': 0,
            'by_phase': {},
        }

        logger.info(
            f"Confirmation policy: {self.policy.max_attempts} attempts, "
            f"schedule {self.policy.schedule()} (worst case {self.policy.worst_case_wait}s)"
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self):
        """Register configured devices and start the status refresher."""
        for entry in self.config.get('devices') or []:
            if not isinstance(entry, dict) or not entry.get('device_id'):
                logger.warning(f"Ignoring malformed device entry: {entry}")
                continue
            await self.register_device(
                str(entry['device_id']),
                name=entry.get('name'),
                kind=entry.get('kind', 'lock'),
            )

        self.refresher.start()
        logger.info(f"✅ Actuation service started with {len(self.devices)} device(s)")

    async def stop(self):
        """Stop refreshing and abort whatever is still in flight."""
        self.refresher.stop()

        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info(f"Aborted {len(pending)} in-flight command(s) on shutdown")

        logger.info("Actuation service stopped")

    # =========================================================================
    # DEVICE REGISTRY
    # =========================================================================

    def add_device(self, device_id: str, name: Optional[str] = None, kind: str = "lock") -> Device:
        """Register a device without reading its status."""
        device_id = str(device_id)
        device = self.devices.get(device_id)
        if device is None:
            device = Device(device_id, name=name, kind=kind)
            self.devices[device_id] = device
            logger.info(f"[{device_id}] Registered {kind} '{device.name}'")
        self.handlers[device_id] = get_handler(kind, self.require_online)
        return device

    async def register_device(
        self,
        device_id: str,
        name: Optional[str] = None,
        kind: str = "lock",
        seed: bool = True,
    ) -> Device:
        """
        Register a device and seed its canonical state from one status read.
        If that read fails the state stays unknown until a command confirms it.
        """
        device = self.add_device(device_id, name=name, kind=kind)

        if seed and device.canonical_locked is None:
            try:
                status = await self.status_client.get_status(device.device_id)
                device.seed(status, self.clock.now())
            except Exception as e:
                self.error_handler.record_error(e, context="register_device")
                logger.warning(f"[{device.device_id}] Initial status read failed, state unknown: {e}")

        if self.refresher.running:
            self.refresher.enable_for_device(device.device_id)
        return device

    def get_device(self, device_id: str) -> Device:
        device = self.devices.get(str(device_id))
        if device is None:
            raise UnknownDeviceError(f"Device {device_id} not found")
        return device

    def get_handler(self, device_id: str) -> ActuatorHandler:
        self.get_device(device_id)
        return self.handlers[str(device_id)]

    def get_view(self, device_id: str) -> DeviceView:
        """Projection of canonical state with the optimistic overlay on top."""
        device = self.get_device(device_id)
        optimistic = self.overlay.get(device.device_id)
        shown = optimistic if optimistic is not None else device.canonical_locked
        label = self.handlers[device.device_id].state_label(shown)
        return device.project(optimistic, self.guard.is_busy(device.device_id), label)

    def describe_device(self, device_id: str) -> Dict[str, Any]:
        """JSON-safe device projection plus the in-flight command, if any."""
        data = prepare_for_json(self.get_view(device_id))
        data['handler'] = self.get_handler(device_id).describe()
        controller = self._controllers.get(str(device_id))
        if controller is not None and controller.command is not None and controller.result is None:
            data['command'] = {
                'command_id': controller.command.command_id,
                'action': controller.command.action.value,
                'phase': controller.phase.value,
                'detached': controller.detached,
            }
        else:
            data['command'] = None
        return data

    def get_device_list(self) -> List[Dict[str, Any]]:
        """Get list of all devices with their current state - JSON-safe."""
        return [self.describe_device(device_id) for device_id in self.devices]

    async def refresh_device(self, device_id: str) -> DeviceView:
        """
        Read the device and refresh its telemetry.

        Raises:
            UnknownDeviceError: Device is not registered.
            StatusReadFailed: The status API could not be read.
        """
        device = self.get_device(device_id)
        try:
            status = await self.status_client.get_status(device.device_id)
        except Exception as e:
            self.error_handler.record_error(e, context="refresh_device")
            raise

        device.apply_telemetry(status, self.clock.now())
        view = self.get_view(device.device_id)
        self._publish_state(view)
        return view

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def _build_controller(self, device: Device) -> ActuationController:
        return ActuationController(
            device=device,
            handler=self.handlers[device.device_id],
            command_client=self.command_client,
            status_client=self.status_client,
            guard=self.guard,
            overlay=self.overlay,
            notifier=self.notifier,
            clock=self.clock,
            policy=self.policy,
            event_callback=self.callback,
            error_handler=self.error_handler,
        )

    async def submit_command(self, device_id: str, action, actor: Optional[str] = None) -> Command:
        """
        Start a command in the background.

        Raises:
            UnknownDeviceError: Device is not registered.
            CommandInFlightError: The device already has a command in flight.
            ValueError: Unknown action.
        """
        device = self.get_device(device_id)
        action = Action.parse(action)

        if not self.guard.try_acquire(device.device_id):
            self.stats['rejected_busy'] += 1
            raise CommandInFlightError(f"A command is already in flight for {device.device_id}")

        command = Command.create(device.device_id, action, actor or self.default_actor, self.clock.now())
        controller = self._build_controller(device)

        self._controllers[device.device_id] = controller
        task = asyncio.create_task(controller.run(command), name=f"command-{command.command_id}")
        self._tasks[device.device_id] = task
        task.add_done_callback(lambda t, c=controller: self._command_done(c, t))

        self.stats['submitted'] += 1
        logger.info(f"[{device.device_id}] Submitted {action.value} (command={command.command_id})")
        return command

    async def execute_command(self, device_id: str, action, actor: Optional[str] = None) -> Optional[CommandResult]:
        """
        Run a command and wait for its verdict.
        Cancelling the caller does not cancel the command.
        """
        await self.submit_command(device_id, action, actor)
        device_id = str(device_id)
        controller = self._controllers[device_id]
        task = self._tasks[device_id]
        await asyncio.wait({task})
        return controller.result

    def cancel_command(self, device_id: str, mode=None) -> bool:
        """
        Detach from or abort the device's in-flight command.
        Returns False when nothing is in flight.
        """
        device = self.get_device(device_id)
        mode = CancelMode(mode) if mode else self.default_cancel_mode

        controller = self._controllers.get(device.device_id)
        task = self._tasks.get(device.device_id)
        if controller is None or task is None or task.done():
            return False

        if mode == CancelMode.DETACH:
            controller.detach()
        else:
            logger.info(f"[{device.device_id}] Aborting in-flight command")
            task.cancel()

        self.stats['cancelled'] += 1
        return True

    def _command_done(self, controller: ActuationController, task: asyncio.Task):
        device_id = controller.device_id
        if self._tasks.get(device_id) is task:
            del self._tasks[device_id]
            self._controllers.pop(device_id, None)

        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{device_id}] Command task failed: {task.exception()}")

        if controller.result is None:
            # Cancelled (or refused) before the controller ever ran
            self.guard.release(device_id)
            self.overlay.clear(device_id)
            logger.info(f"[{device_id}] Command ended before dispatch")
            return

        result = controller.result
        self._history.append(result)
        self.stats['completed'] += 1
        by_phase = self.stats['by_phase']
        by_phase[result.phase.value] = by_phase.get(result.phase.value, 0) + 1

        if device_id in self.devices:
            self._publish_state(self.get_view(device_id))

    def get_in_flight(self) -> Dict[str, str]:
        """device_id -> phase for commands still running."""
        return {
            device_id: controller.phase.value
            for device_id, controller in self._controllers.items()
            if controller.result is None
        }

    # =========================================================================
    # HISTORY / STATS
    # =========================================================================

    def get_history(self, device_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Terminal results, newest first."""
        results = [r for r in reversed(self._history)
                   if device_id is None or r.command.device_id == device_id]
        if limit is not None:
            results = results[:limit]
        return [r.to_dict() for r in results]

    def get_stats(self) -> Dict[str, Any]:
        stats = {
            'devices': len(self.devices),
            'in_flight': self.get_in_flight(),
            'commands': {**self.stats, 'by_phase': dict(self.stats['by_phase'])},
            'policy': {
                'max_attempts': self.policy.max_attempts,
                'schedule': self.policy.schedule(),
                'worst_case_wait': self.policy.worst_case_wait,
            },
            'guard': {**self.guard.stats, 'busy': self.guard.busy_devices()},
            'overlay': {'writes': self.overlay.writes, 'active': self.overlay.snapshot()},
            'notifier': self.notifier.get_stats(),
            'refresher': self.refresher.get_stats(),
        }
        for name, client in (('command_client', self.command_client), ('status_client', self.status_client)):
            if hasattr(client, 'get_stats'):
                stats[name] = client.get_stats()
        return stats

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _on_optimistic_change(self, device_id: str, value: Optional[bool]):
        self._emit_sync("optimistic_state", {
            "device_id": device_id,
            "optimistic_locked": value,
            "pending": value is not None,
        })

    async def _on_notification(self, notification: Notification):
        data = prepare_for_json(notification)
        data["message"] = notification.message()
        await self._emit("command_result", data)

        if self.mqtt:
            await self.mqtt.publish_command_result(notification)

    def _publish_state(self, view: DeviceView):
        self._emit_sync("device_state", prepare_for_json(view))
        if self.mqtt:
            self._track(asyncio.create_task(self.mqtt.publish_device_state(view)))

    def _track(self, task: asyncio.Task):
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    def _emit_sync(self, evt, data):
        """Emit event synchronously."""
        if self.callback:
            self._track(asyncio.create_task(self.callback(evt, data)))

    async def _emit(self, evt, data):
        """Emit event asynchronously."""
        if self.callback:
            await self.callback(evt, data)
