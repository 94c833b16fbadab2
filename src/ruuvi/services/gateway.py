import re
from abc import ABC, abstractmethod
from typing import Any, Callable

# Receives (device_id, manufacturer-data envelope); returning False ends the subscription.
AdvertisementCallback = Callable[[str, Any], bool]

_MAC_PATTERN = re.compile(r"^[0-9A-F]{2}([:_-][0-9A-F]{2}){5}$")


class GatewayConnectionFailure(Exception):
    """The Bluetooth stack could not be reached or the connection was lost."""


def normalize_device_id(device_id: str) -> str:
    """
    Return the canonical uppercase colon-separated form of a MAC address.
    Accepts ':', '-' or '_' separators (e.g. BlueZ ``dev_CC_6F_...`` suffixes).
    """
    candidate = device_id.strip().upper()
    if candidate.startswith("DEV_"):
        candidate = candidate[4:]
    if not _MAC_PATTERN.match(candidate):
        raise ValueError(f"Invalid device identifier: {device_id!r}")
    return re.sub(r"[_-]", ":", candidate)


def bluez_device_path(device_id: str, adapter: str = "hci0") -> str:
    """BlueZ object path of a device, e.g. /org/bluez/hci0/dev_CC_6F_70_EE_4C_AD."""
    mac = normalize_device_id(device_id).replace(":", "_")
    return f"/org/bluez/{adapter}/dev_{mac}"


class BluetoothGateway(ABC):
    """
    Connection to a Bluetooth stack delivering advertisement changes per device.

    A gateway is owned by a single thread: every method is called from the
    thread that called start().
    """

    @abstractmethod
    def start(self) -> None:
        """Power on and begin scanning. Raises GatewayConnectionFailure."""

    @abstractmethod
    def watch(self, device_id: str, callback: AdvertisementCallback) -> None:
        """Deliver every manufacturer-data change of device_id to callback."""

    @abstractmethod
    def unwatch(self, device_id: str) -> None:
        """Release the subscription of device_id."""

    @abstractmethod
    def process(self, timeout: float) -> None:
        """Service pending events, blocking at most timeout seconds."""

    @abstractmethod
    def stop(self) -> None:
        """Stop scanning and release the connection."""
