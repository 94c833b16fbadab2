import logging
import math
import random
import time
from typing import Callable, Dict, Optional

from ruuvi.models.sensor_reading import Acceleration, SensorReading
from ruuvi.processing.frame_decoder import RUUVI_MANUFACTURER_ID, encode_reading
from ruuvi.services.gateway import AdvertisementCallback, BluetoothGateway, normalize_device_id

logger = logging.getLogger(__name__)


class EmulatedGateway(BluetoothGateway):
    """
    Gateway that synthesizes Format 5 advertisements for every watched tag.
    Used when no Bluetooth adapter is available (emulation mode).
    """

    def __init__(self, interval: float = 1.0, clock: Optional[Callable[[], float]] = None):
        self.interval = interval
        self._clock = clock or time.monotonic
        self._watchers: Dict[str, AdvertisementCallback] = {}
        self._last_emit: Dict[str, float] = {}
        self._sequence: Dict[str, int] = {}
        self._start_time = 0.0

    def start(self) -> None:
        self._start_time = self._clock()
        logger.info("[Emulation] Gateway started")

    def watch(self, device_id: str, callback: AdvertisementCallback) -> None:
        mac = normalize_device_id(device_id)
        self._watchers[mac] = callback
        self._sequence.setdefault(mac, 0)

    def unwatch(self, device_id: str) -> None:
        mac = normalize_device_id(device_id)
        self._watchers.pop(mac, None)
        self._last_emit.pop(mac, None)

    def process(self, timeout: float) -> None:
        time.sleep(timeout)
        now = self._clock()
        for mac, callback in list(self._watchers.items()):
            if now - self._last_emit.get(mac, -math.inf) < self.interval:
                continue
            self._last_emit[mac] = now
            payload = encode_reading(self._emulate_reading(mac, now - self._start_time))
            if not callback(mac, {RUUVI_MANUFACTURER_ID: payload}):
                self._watchers.pop(mac, None)

    def stop(self) -> None:
        self._watchers.clear()
        self._last_emit.clear()
        logger.info("[Emulation] Gateway stopped")

    def _emulate_reading(self, mac: str, elapsed: float) -> SensorReading:
        # Per-tag phase so emulated tags do not overlap
        phase = sum(bytes.fromhex(mac.replace(":", ""))) % 7
        temperature_c = 21.0 + 3.0 * math.sin((elapsed + phase) / 60.0) + random.uniform(-0.05, 0.05)
        humidity = 45.0 + 10.0 * math.sin((elapsed + phase) / 90.0) + random.uniform(-0.2, 0.2)
        pressure_pa = 101325 + 150 * math.sin(elapsed / 300.0)
        battery_mv = 2950
        tx_power_dbm = 4

        sequence = self._sequence[mac]
        self._sequence[mac] = (sequence + 1) & 0xFFFF

        return SensorReading(
            temperature=int(round(temperature_c / 0.005)),
            humidity=int(round(humidity * 400)),
            pressure=int(round(pressure_pa)) - 50000,
            acceleration=Acceleration(
                x=random.randint(-10, 10),
                y=random.randint(-10, 10),
                z=1000 + random.randint(-10, 10),
            ),
            power_info=((battery_mv - 1600) << 5) | ((tx_power_dbm + 40) // 2),
            movement_counter=0,
            measurement_sequence_number=sequence,
            mac=bytes.fromhex(mac.replace(":", "")),
        )
