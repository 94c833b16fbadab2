#!/usr/bin/env python3
"""
Print readings of RuuviTags as they arrive.

Usage:
  python3 scripts/watch_tags.py CC:6F:70:EE:4C:AD [C0:CB:4E:3D:3E:12 ...]
  python3 scripts/watch_tags.py --emulate CC:6F:70:EE:4C:AD

Without MAC arguments, the enabled tags of config/tags_config.json are watched.
"""
import argparse
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ruuvi.config_loader import config_loader
from ruuvi.models.sensor_reading import SensorReading
from ruuvi.services.bleak_gateway import BleakGateway
from ruuvi.services.emulated_gateway import EmulatedGateway
from ruuvi.services.gateway import GatewayConnectionFailure
from ruuvi.services.subscription_bridge import SubscriptionBridge


def print_reading(reading: SensorReading):
    acceleration = reading.acceleration_mg()
    print(f"MAC address: {reading.mac_address_string()}")
    print(f"  Temperature: {reading.temperature_celsius():.3f} °C ({reading.temperature_millicelsius()} m°C)")
    print(f"  Humidity: {reading.humidity_percent():.2f} %")
    print(f"  Pressure: {reading.pressure_pascal()} Pa")
    print(f"  Acceleration: x={acceleration.x} y={acceleration.y} z={acceleration.z} mG")
    print(f"  Battery: {reading.battery_millivolts()} mV")
    print(f"  Tx power: {reading.tx_power_dbm()} dBm")
    print(f"  Movement counter: {reading.movement_counter}")
    print(f"  Measurement sequence number: {reading.measurement_sequence_number}")
    print(flush=True)


def main() -> int:
    parser = argparse.ArgumentParser(description="Print RuuviTag Data Format 5 readings")
    parser.add_argument("macs", nargs="*", help="Tag MAC addresses (CC:6F:70:EE:4C:AD)")
    parser.add_argument("--adapter", default=config_loader.get_bridge_config().adapter, help="Bluetooth adapter")
    parser.add_argument("--emulate", action="store_true", help="Use the emulated gateway")
    parser.add_argument("--strict", action="store_true", help="Reject advertisements whose format byte is not 5")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    macs = args.macs or config_loader.get_enabled_tags()
    if not macs:
        parser.error("no MAC address given and no enabled tag in configuration")

    gateway_factory = EmulatedGateway if args.emulate else (lambda: BleakGateway(adapter=args.adapter))
    bridge = SubscriptionBridge(gateway_factory, macs, strict_format=args.strict)
    try:
        stream = bridge.subscribe()
    except (GatewayConnectionFailure, ValueError) as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    try:
        with stream:
            for reading in stream:
                print_reading(reading)
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
