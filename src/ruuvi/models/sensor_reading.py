"""
RuuviTag Data Format 5 reading.

Holds the raw sub-fields of one decoded advertisement and converts them to
physical units on demand.
Implementation follows ruuvi data format 5:
https://github.com/ruuvi/ruuvi-sensor-protocols/blob/master/dataformat_05.md
"""
from dataclasses import dataclass

BATTERY_OFFSET_MV = 1600
TX_POWER_OFFSET_DBM = -40
PRESSURE_OFFSET_PA = 50000


@dataclass(frozen=True)
class Acceleration:
    """Acceleration on X, Y and Z axes in mG."""
    x: int
    y: int
    z: int


@dataclass(frozen=True)
class SensorReading:
    """
    Immutable value object for one Format 5 advertisement.
    Raw fields are stored as received; every accessor is a pure function of them.
    """
    temperature: int
    humidity: int
    pressure: int
    acceleration: Acceleration
    power_info: int
    movement_counter: int
    measurement_sequence_number: int
    mac: bytes
    data_format: int = 5

    def temperature_millicelsius(self) -> int:
        """Temperature in millicelsius (raw unit is 0.005 °C)."""
        return self.temperature * 5

    def temperature_celsius(self) -> float:
        return self.temperature_millicelsius() / 1000.0

    def humidity_percent(self) -> float:
        """Relative humidity in % (raw unit is 0.0025 %)."""
        return self.humidity / 400.0

    def pressure_pascal(self) -> int:
        return PRESSURE_OFFSET_PA + self.pressure

    def acceleration_mg(self) -> Acceleration:
        return self.acceleration

    def battery_millivolts(self) -> int:
        """Battery voltage from the top 11 bits of power_info."""
        return (self.power_info >> 5) + BATTERY_OFFSET_MV

    def tx_power_dbm(self) -> int:
        """Transmit power from the low 5 bits of power_info, 2 dBm steps."""
        return (self.power_info & 0x1F) * 2 + TX_POWER_OFFSET_DBM

    def mac_address_string(self) -> str:
        return ":".join(f"{octet:02X}" for octet in self.mac)

    def as_dict(self) -> dict:
        """Flat dictionary of converted values."""
        acceleration = self.acceleration_mg()
        return {
            "mac": self.mac_address_string(),
            "data_format": self.data_format,
            "temperature_millicelsius": self.temperature_millicelsius(),
            "temperature_celsius": self.temperature_celsius(),
            "humidity_percent": self.humidity_percent(),
            "pressure_pascal": self.pressure_pascal(),
            "acceleration_x_mg": acceleration.x,
            "acceleration_y_mg": acceleration.y,
            "acceleration_z_mg": acceleration.z,
            "battery_millivolts": self.battery_millivolts(),
            "tx_power_dbm": self.tx_power_dbm(),
            "movement_counter": self.movement_counter,
            "measurement_sequence_number": self.measurement_sequence_number,
        }
