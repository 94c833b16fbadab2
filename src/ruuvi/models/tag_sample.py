"""
Tag sample model.
"""

from dataclasses import dataclass
from ruuvi.models.sensor_reading import SensorReading

@dataclass
class TagSample:
    """
    Data class pairing a decoded reading with the time it left the bridge.
    """
    timestamp: float
    mac: str
    reading: SensorReading
