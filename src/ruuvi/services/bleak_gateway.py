import asyncio
import logging
import sys
from typing import Dict, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from ruuvi.services.bluez_adapter import BluezAdapter
from ruuvi.services.gateway import (
    AdvertisementCallback,
    BluetoothGateway,
    GatewayConnectionFailure,
    bluez_device_path,
    normalize_device_id,
)

logger = logging.getLogger(__name__)

# The adapter is powered and watched over D-Bus only where bleak talks to BlueZ
MANAGE_BLUEZ_ADAPTER = sys.platform.startswith("linux")


class BleakGateway(BluetoothGateway):
    """
    Gateway backed by a bleak scanner.

    The scanner runs on a private asyncio loop created by start(). The loop only
    advances inside process(), so detection callbacks always fire on the thread
    that owns the gateway.

    Errors raised inside the scanner's own tasks and callbacks never reach
    run_until_complete(): they are collected by a task factory and an exception
    handler installed on the loop, and process() raises them as a
    GatewayConnectionFailure.
    """

    def __init__(self, adapter: str = "hci0"):
        self.adapter = adapter
        self._watchers: Dict[str, AdvertisementCallback] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._scanner: Optional[BleakScanner] = None
        self._bluez: Optional[BluezAdapter] = None
        self._failure: Optional[Exception] = None

    def start(self) -> None:
        if self._scanner is not None:
            return
        self._failure = None
        self._loop = asyncio.new_event_loop()
        self._loop.set_task_factory(self._task_factory)
        self._loop.set_exception_handler(self._on_loop_exception)
        try:
            if MANAGE_BLUEZ_ADAPTER:
                self._bluez = BluezAdapter(self.adapter, on_lost=self._connection_lost)
                self._loop.run_until_complete(self._bluez.open())
            self._scanner = BleakScanner(detection_callback=self._on_detection, adapter=self.adapter)
            self._loop.run_until_complete(self._scanner.start())
        except (BleakError, OSError, GatewayConnectionFailure) as e:
            self._scanner = None
            self._shutdown_loop()
            raise GatewayConnectionFailure(f"Could not start scanning on {self.adapter}: {e}") from e
        logger.info(f"[Bleak] Scanning on {self.adapter}")

    def watch(self, device_id: str, callback: AdvertisementCallback) -> None:
        mac = normalize_device_id(device_id)
        self._watchers[mac] = callback
        logger.debug(f"[Bleak] Watching {bluez_device_path(mac, self.adapter)}")

    def unwatch(self, device_id: str) -> None:
        mac = normalize_device_id(device_id)
        if self._watchers.pop(mac, None) is not None:
            logger.debug(f"[Bleak] Released {bluez_device_path(mac, self.adapter)}")

    def process(self, timeout: float) -> None:
        if self._loop is None:
            raise GatewayConnectionFailure("Gateway is not started")
        try:
            self._loop.run_until_complete(asyncio.sleep(timeout))
        except (BleakError, OSError) as e:
            raise GatewayConnectionFailure(f"Lost connection to {self.adapter}: {e}") from e
        if self._failure is not None:
            raise GatewayConnectionFailure(f"Lost connection to {self.adapter}: {self._failure}") from self._failure

    def stop(self) -> None:
        self._watchers.clear()
        if self._loop is None:
            return
        try:
            if self._scanner is not None:
                self._loop.run_until_complete(self._scanner.stop())
        except (BleakError, OSError) as e:
            logger.warning(f"[Bleak] Error while stopping scanner on {self.adapter}: {e}")
        finally:
            self._scanner = None
            self._shutdown_loop()
            logger.info(f"[Bleak] Stopped scanning on {self.adapter}")

    def _shutdown_loop(self):
        try:
            if self._bluez is not None:
                self._loop.run_until_complete(self._bluez.close())
        finally:
            self._bluez = None
            self._loop.close()
            self._loop = None

    def _task_factory(self, loop, coro, **kwargs):
        task = asyncio.Task(coro, loop=loop, **kwargs)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, (BleakError, OSError)):
            self._connection_lost(error)

    def _on_loop_exception(self, loop, context):
        error = context.get("exception")
        if isinstance(error, (BleakError, OSError)):
            self._connection_lost(error)
        else:
            loop.default_exception_handler(context)

    def _connection_lost(self, error: Exception):
        if self._failure is None:
            logger.error(f"[Bleak] Connection to {self.adapter} lost: {error}")
            self._failure = error

    def _on_detection(self, device: BLEDevice, advertisement_data: AdvertisementData):
        mac = (device.address or "").upper()
        callback = self._watchers.get(mac)
        if callback is None or not advertisement_data.manufacturer_data:
            return
        if not callback(mac, dict(advertisement_data.manufacturer_data)):
            self._watchers.pop(mac, None)
