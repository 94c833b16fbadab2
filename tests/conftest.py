"""Pytest configuration and fixtures for test suite."""

import time
from typing import Any, Dict, List, Optional, Tuple

import pytest

from ruuvi.event_hub import event_hub
from ruuvi.processing.frame_decoder import RUUVI_MANUFACTURER_ID
from ruuvi.services.gateway import BluetoothGateway, GatewayConnectionFailure
from ruuvi.services.reading_cache import reading_cache

# RuuviTag Data Format 5 reference vector
REFERENCE_PAYLOAD = bytes.fromhex("0512FC5394C37C0004FFFC040CAC364200CDCBB8334C884F")
TAG_MAC = "CB:B8:33:4C:88:4F"


def make_payload(sequence: int = 205, data_format: int = 5) -> bytes:
    """Reference payload with another measurement sequence number / format byte."""
    payload = bytearray(REFERENCE_PAYLOAD)
    payload[0] = data_format
    payload[16:18] = sequence.to_bytes(2, "big")
    return bytes(payload)


def envelope(payload: bytes) -> Dict[int, bytes]:
    return {RUUVI_MANUFACTURER_ID: payload}


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class ScriptedGateway(BluetoothGateway):
    """
    Gateway replaying a fixed list of (device_id, envelope) events, one per process() call.
    Once the script is exhausted it idles, or raises when fail_when_exhausted is set.
    """

    def __init__(self, events: Optional[List[Tuple[str, Any]]] = None, fail_on_start: bool = False,
                 fail_when_exhausted: bool = False):
        self.events = list(events or [])
        self.fail_on_start = fail_on_start
        self.fail_when_exhausted = fail_when_exhausted
        self.watchers: Dict[str, Any] = {}
        self.callback_results: List[bool] = []
        self.unwatched: List[str] = []
        self.started = False
        self.stopped = False

    def start(self) -> None:
        if self.fail_on_start:
            raise GatewayConnectionFailure("org.bluez not available")
        self.started = True

    def watch(self, device_id, callback) -> None:
        self.watchers[device_id] = callback

    def unwatch(self, device_id) -> None:
        self.watchers.pop(device_id, None)
        self.unwatched.append(device_id)

    def process(self, timeout: float) -> None:
        if not self.events:
            if self.fail_when_exhausted:
                raise GatewayConnectionFailure("adapter removed")
            time.sleep(timeout)
            return
        device_id, event = self.events.pop(0)
        callback = self.watchers.get(device_id)
        if callback is not None:
            self.callback_results.append(callback(device_id, event))

    def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def reference_payload() -> bytes:
    return REFERENCE_PAYLOAD


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Each test starts with an empty reading cache and no event loop bound to the hub."""
    event_hub.init(None)
    reading_cache.clear()
    yield
    event_hub.init(None)
    reading_cache.clear()
