"""
Decoder for the 24-byte RuuviTag Data Format 5 manufacturer payload.

The envelope is either a mapping with a single ``{company_id: payload}`` entry
(bleak / BlueZ ``ManufacturerData``) or a two-element sequence
``(company_id, [payload])`` as carried in a D-Bus variant.
Decoding is purely structural: no accessor of the reading is invoked here.
"""
from collections.abc import Mapping, Sequence
from typing import Any

from ruuvi.models.sensor_reading import Acceleration, SensorReading

PAYLOAD_LENGTH = 24
DATA_FORMAT_V5 = 5
RUUVI_MANUFACTURER_ID = 0x0499


class DecodeError(Exception):
    """Base class for advertisements that cannot be turned into a reading."""


class MalformedEnvelope(DecodeError):
    """Envelope does not have the company-id / nested payload shape."""


class InvalidPayloadLength(DecodeError):
    def __init__(self, actual: int, expected: int = PAYLOAD_LENGTH):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Invalid payload length: expected {expected} bytes, got {actual}")


class UnsupportedFormatVersion(DecodeError):
    def __init__(self, version: int):
        self.version = version
        super().__init__(f"Unsupported data format {version}, only format {DATA_FORMAT_V5} is decoded")


def join_u8(high: int, low: int) -> int:
    """Join two bytes into one big-endian unsigned 16-bit word, e.g. 0xA1 + 0xB2 = 0xA1B2."""
    return (high << 8) | low


def to_signed16(word: int) -> int:
    """Reinterpret an unsigned 16-bit word as two's-complement."""
    return word - 0x10000 if word & 0x8000 else word


def _unwrap_envelope(envelope: Any) -> Any:
    """Return the raw payload container held by the envelope."""
    if isinstance(envelope, Mapping):
        if len(envelope) != 1:
            raise MalformedEnvelope(f"Expected exactly one manufacturer entry, got {len(envelope)}")
        (_manufacturer_key, payload), = envelope.items()
        return payload

    if isinstance(envelope, (str, bytes, bytearray)) or not isinstance(envelope, Sequence):
        raise MalformedEnvelope(f"Envelope is not an iterable of (key, data): {type(envelope).__name__}")
    if len(envelope) != 2:
        raise MalformedEnvelope(f"Missing data in envelope, expected 2 elements, got {len(envelope)}")

    _manufacturer_key, nested = envelope
    # nested is a variant of one list, its single member is the payload
    if isinstance(nested, (str, bytes, bytearray)) or not isinstance(nested, Sequence) or len(nested) != 1:
        raise MalformedEnvelope("Manufacturer data is not a single-element list")
    return nested[0]


def _collect_payload(payload: Any) -> bytes:
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str) or not isinstance(payload, Sequence):
        raise MalformedEnvelope(f"Payload is not a byte sequence: {type(payload).__name__}")
    try:
        return bytes(payload)
    except (TypeError, ValueError) as e:
        raise MalformedEnvelope(f"Payload contains non-byte values: {e}") from e


def decode_payload(payload: bytes, strict_format: bool = False) -> SensorReading:
    """Decode an already extracted Format 5 payload."""
    if len(payload) != PAYLOAD_LENGTH:
        raise InvalidPayloadLength(actual=len(payload))

    data_format = payload[0]
    if strict_format and data_format != DATA_FORMAT_V5:
        raise UnsupportedFormatVersion(data_format)

    return SensorReading(
        temperature=to_signed16(join_u8(payload[1], payload[2])),
        humidity=join_u8(payload[3], payload[4]),
        pressure=join_u8(payload[5], payload[6]),
        acceleration=Acceleration(
            x=to_signed16(join_u8(payload[7], payload[8])),
            y=to_signed16(join_u8(payload[9], payload[10])),
            z=to_signed16(join_u8(payload[11], payload[12])),
        ),
        power_info=join_u8(payload[13], payload[14]),
        movement_counter=payload[15],
        measurement_sequence_number=join_u8(payload[16], payload[17]),
        mac=payload[18:24],
        data_format=data_format,
    )


def decode(envelope: Any, strict_format: bool = False) -> SensorReading:
    """
    Decode a manufacturer-data envelope into a SensorReading.

    Args:
        envelope: ``{company_id: payload}`` mapping or ``(company_id, [payload])`` pair
        strict_format: When True, a format byte other than 5 raises UnsupportedFormatVersion

    Raises:
        MalformedEnvelope: envelope shape does not match
        InvalidPayloadLength: payload is not exactly 24 bytes
        UnsupportedFormatVersion: strict mode and format byte is not 5
    """
    payload = _collect_payload(_unwrap_envelope(envelope))
    return decode_payload(payload, strict_format=strict_format)


def encode_reading(reading: SensorReading) -> bytes:
    """Pack a reading back into its 24-byte payload (used by the emulated gateway)."""
    words = (
        reading.temperature & 0xFFFF,
        reading.humidity,
        reading.pressure,
        reading.acceleration.x & 0xFFFF,
        reading.acceleration.y & 0xFFFF,
        reading.acceleration.z & 0xFFFF,
        reading.power_info,
    )
    payload = bytearray([reading.data_format])
    for word in words:
        payload += word.to_bytes(2, "big")
    payload.append(reading.movement_counter & 0xFF)
    payload += (reading.measurement_sequence_number & 0xFFFF).to_bytes(2, "big")
    payload += reading.mac
    return bytes(payload)
