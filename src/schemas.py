from typing import List, Optional
from pydantic import BaseModel
from ruuvi.models.bridge_state import BridgeState
from ruuvi.models.tag_sample import TagSample


class AppHealthOK(BaseModel):
    status: str
    app: str


class AccelerationMg(BaseModel):
    x: int
    y: int
    z: int


class TagReading(BaseModel):
    mac: str
    timestamp: float
    data_format: int
    temperature_celsius: float
    temperature_millicelsius: int
    humidity_percent: float
    pressure_pascal: int
    acceleration_mg: AccelerationMg
    battery_millivolts: int
    tx_power_dbm: int
    movement_counter: int
    measurement_sequence_number: int

    @classmethod
    def from_sample(cls, sample: TagSample) -> "TagReading":
        reading = sample.reading
        acceleration = reading.acceleration_mg()
        return cls(
            mac=reading.mac_address_string(),
            timestamp=sample.timestamp,
            data_format=reading.data_format,
            temperature_celsius=reading.temperature_celsius(),
            temperature_millicelsius=reading.temperature_millicelsius(),
            humidity_percent=reading.humidity_percent(),
            pressure_pascal=reading.pressure_pascal(),
            acceleration_mg=AccelerationMg(x=acceleration.x, y=acceleration.y, z=acceleration.z),
            battery_millivolts=reading.battery_millivolts(),
            tx_power_dbm=reading.tx_power_dbm(),
            movement_counter=reading.movement_counter,
            measurement_sequence_number=reading.measurement_sequence_number,
        )


class TagInfo(BaseModel):
    mac: str
    display_name: str
    enabled: bool
    active: bool
    last_seen: Optional[float] = None


class TagsList(BaseModel):
    list: List[TagInfo]


class BridgeStatusResponse(BaseModel):
    state: BridgeState
    watched: List[str]
    received: int
    decoded: int
    decode_failures: int
    overflow_drops: int
    queued: int
