"""Tests for gateway helpers, the emulated gateway, the bleak gateway and the BlueZ adapter handle."""

import asyncio
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError
from dbus_fast import MessageType, Variant

from ruuvi.models.bridge_state import BridgeState
from ruuvi.processing.frame_decoder import RUUVI_MANUFACTURER_ID, decode
from ruuvi.services import bleak_gateway, bluez_adapter
from ruuvi.services.bleak_gateway import BleakGateway
from ruuvi.services.bluez_adapter import BluezAdapter
from ruuvi.services.emulated_gateway import EmulatedGateway
from ruuvi.services.gateway import GatewayConnectionFailure, bluez_device_path, normalize_device_id
from ruuvi.services.subscription_bridge import StreamClosed, SubscriptionBridge
from conftest import REFERENCE_PAYLOAD, TAG_MAC, wait_for


class TestDeviceIdentifiers:

    @pytest.mark.parametrize("raw", [
        "CC:6F:70:EE:4C:AD",
        "cc:6f:70:ee:4c:ad",
        "CC_6F_70_EE_4C_AD",
        "dev_CC_6F_70_EE_4C_AD",
        "CC-6F-70-EE-4C-AD",
        " CC:6F:70:EE:4C:AD ",
    ])
    def test_normalize(self, raw):
        assert normalize_device_id(raw) == "CC:6F:70:EE:4C:AD"

    @pytest.mark.parametrize("raw", ["", "CC:6F:70:EE:4C", "CC:6F:70:EE:4C:AD:00", "GG:6F:70:EE:4C:AD", "CC6F70EE4CAD"])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            normalize_device_id(raw)

    def test_bluez_device_path(self):
        assert bluez_device_path("CC:6F:70:EE:4C:AD") == "/org/bluez/hci0/dev_CC_6F_70_EE_4C_AD"
        assert bluez_device_path("cc:6f:70:ee:4c:ad", adapter="hci1") == "/org/bluez/hci1/dev_CC_6F_70_EE_4C_AD"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestEmulatedGateway:

    def test_emits_decodable_frames_for_watched_tags(self):
        clock = FakeClock()
        gateway = EmulatedGateway(interval=1.0, clock=clock)
        received = []
        gateway.start()
        gateway.watch(TAG_MAC, lambda mac, env: received.append((mac, env)) or True)

        gateway.process(0)

        assert len(received) == 1
        mac, env = received[0]
        assert mac == TAG_MAC
        assert list(env) == [RUUVI_MANUFACTURER_ID]
        reading = decode(env, strict_format=True)
        assert reading.mac_address_string() == TAG_MAC
        assert 15.0 < reading.temperature_celsius() < 30.0
        assert reading.battery_millivolts() == 2950
        assert reading.tx_power_dbm() == 4

    def test_respects_interval_and_increments_sequence(self):
        clock = FakeClock()
        gateway = EmulatedGateway(interval=1.0, clock=clock)
        received = []
        gateway.start()
        gateway.watch(TAG_MAC, lambda mac, env: received.append(decode(env)) or True)

        gateway.process(0)
        clock.now = 0.5
        gateway.process(0)
        clock.now = 1.0
        gateway.process(0)

        assert [r.measurement_sequence_number for r in received] == [0, 1]

    def test_callback_returning_false_ends_subscription(self):
        clock = FakeClock()
        gateway = EmulatedGateway(interval=1.0, clock=clock)
        calls = []
        gateway.start()
        gateway.watch(TAG_MAC, lambda mac, env: calls.append(mac) and False)

        gateway.process(0)
        clock.now = 5.0
        gateway.process(0)

        assert calls == [TAG_MAC]

    def test_stop_releases_watchers(self):
        gateway = EmulatedGateway(interval=0.0, clock=FakeClock())
        calls = []
        gateway.start()
        gateway.watch(TAG_MAC, lambda mac, env: calls.append(mac) or True)
        gateway.stop()
        gateway.process(0)
        assert calls == []


class FakeScanner:
    instances = []
    fail_start = False
    calls = []

    def __init__(self, detection_callback=None, adapter=None):
        self.detection_callback = detection_callback
        self.adapter = adapter
        self.started = False
        FakeScanner.instances.append(self)

    async def start(self):
        if FakeScanner.fail_start:
            raise BleakError("No Bluetooth adapters found.")
        FakeScanner.calls.append("scan")
        self.started = True

    async def stop(self):
        self.started = False


class FakeBluezAdapter:
    instances = []
    fail_open = False

    def __init__(self, adapter, on_lost):
        self.adapter = adapter
        self.on_lost = on_lost
        self.opened = False
        self.closed = False
        FakeBluezAdapter.instances.append(self)

    async def open(self):
        if FakeBluezAdapter.fail_open:
            raise GatewayConnectionFailure("org.freedesktop.DBus.Error.UnknownObject")
        FakeScanner.calls.append("power_on")
        self.opened = True

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_bluez(monkeypatch):
    FakeBluezAdapter.instances = []
    FakeBluezAdapter.fail_open = False
    monkeypatch.setattr(bleak_gateway, "MANAGE_BLUEZ_ADAPTER", True)
    monkeypatch.setattr(bleak_gateway, "BluezAdapter", FakeBluezAdapter)
    return FakeBluezAdapter


@pytest.fixture
def fake_scanner(monkeypatch, fake_bluez):
    FakeScanner.instances = []
    FakeScanner.fail_start = False
    FakeScanner.calls = []
    monkeypatch.setattr(bleak_gateway, "BleakScanner", FakeScanner)
    return FakeScanner


def advertisement(address: str, manufacturer_data: dict):
    return SimpleNamespace(address=address), SimpleNamespace(manufacturer_data=manufacturer_data)


class TestBleakGateway:

    def test_start_and_stop(self, fake_scanner):
        gateway = BleakGateway(adapter="hci1")
        gateway.start()
        scanner = fake_scanner.instances[0]
        assert scanner.started
        assert scanner.adapter == "hci1"

        gateway.process(0.001)
        gateway.stop()
        assert not scanner.started

    def test_start_failure_is_a_connection_failure(self, fake_scanner):
        fake_scanner.fail_start = True
        gateway = BleakGateway()
        with pytest.raises(GatewayConnectionFailure):
            gateway.start()
        with pytest.raises(GatewayConnectionFailure):
            gateway.process(0.001)
        assert FakeBluezAdapter.instances[0].closed

    def test_adapter_is_powered_before_scanning(self, fake_scanner, fake_bluez):
        gateway = BleakGateway(adapter="hci1")
        gateway.start()

        adapter = fake_bluez.instances[0]
        assert adapter.adapter == "hci1"
        assert adapter.opened
        assert fake_scanner.calls == ["power_on", "scan"]

        gateway.stop()
        assert adapter.closed

    def test_unreachable_adapter_fails_start(self, fake_scanner, fake_bluez):
        fake_bluez.fail_open = True
        gateway = BleakGateway()
        with pytest.raises(GatewayConnectionFailure):
            gateway.start()
        assert fake_scanner.instances == []

    def test_dispatches_manufacturer_data_to_watcher(self, fake_scanner):
        gateway = BleakGateway()
        gateway.start()
        received = []
        gateway.watch(TAG_MAC.lower(), lambda mac, env: received.append((mac, env)) or True)
        callback = fake_scanner.instances[0].detection_callback

        callback(*advertisement(TAG_MAC.lower(), {RUUVI_MANUFACTURER_ID: REFERENCE_PAYLOAD}))
        callback(*advertisement("AA:BB:CC:DD:EE:FF", {RUUVI_MANUFACTURER_ID: REFERENCE_PAYLOAD}))
        callback(*advertisement(TAG_MAC, {}))

        assert received == [(TAG_MAC, {RUUVI_MANUFACTURER_ID: REFERENCE_PAYLOAD})]
        gateway.stop()

    def test_watcher_returning_false_is_removed(self, fake_scanner):
        gateway = BleakGateway()
        gateway.start()
        calls = []
        gateway.watch(TAG_MAC, lambda mac, env: calls.append(mac) and False)
        callback = fake_scanner.instances[0].detection_callback

        callback(*advertisement(TAG_MAC, {RUUVI_MANUFACTURER_ID: REFERENCE_PAYLOAD}))
        callback(*advertisement(TAG_MAC, {RUUVI_MANUFACTURER_ID: REFERENCE_PAYLOAD}))

        assert calls == [TAG_MAC]
        gateway.stop()

    def test_unwatch(self, fake_scanner):
        gateway = BleakGateway()
        gateway.start()
        calls = []
        gateway.watch(TAG_MAC, lambda mac, env: calls.append(mac) or True)
        gateway.unwatch(TAG_MAC)
        fake_scanner.instances[0].detection_callback(
            *advertisement(TAG_MAC, {RUUVI_MANUFACTURER_ID: REFERENCE_PAYLOAD})
        )
        assert calls == []
        gateway.stop()


class AdapterRemovedScanner(FakeScanner):
    """Scanner whose background task fails shortly after scanning starts."""

    async def start(self):
        await super().start()
        self.task = asyncio.get_running_loop().create_task(self._fail())

    async def _fail(self):
        await asyncio.sleep(0.01)
        raise BleakError("org.bluez.Error.NotReady: adapter removed")


class FailingCallbackScanner(FakeScanner):
    """Scanner whose loop callback raises, the way a broken D-Bus reader does."""

    async def start(self):
        await super().start()
        asyncio.get_running_loop().call_soon(self._read)

    def _read(self):
        raise OSError("Connection reset by peer")


def process_until_failure(gateway: BleakGateway, attempts: int = 100):
    for _ in range(attempts):
        gateway.process(0.01)


class TestBleakGatewayConnectionLoss:

    def test_scanner_task_failure_is_raised_from_process(self, monkeypatch, fake_scanner):
        monkeypatch.setattr(bleak_gateway, "BleakScanner", AdapterRemovedScanner)
        gateway = BleakGateway()
        gateway.start()

        with pytest.raises(GatewayConnectionFailure, match="adapter removed"):
            process_until_failure(gateway)
        gateway.stop()

    def test_loop_callback_failure_is_raised_from_process(self, monkeypatch, fake_scanner):
        monkeypatch.setattr(bleak_gateway, "BleakScanner", FailingCallbackScanner)
        gateway = BleakGateway()
        gateway.start()

        with pytest.raises(GatewayConnectionFailure, match="Connection reset"):
            process_until_failure(gateway)
        gateway.stop()

    def test_adapter_loss_is_raised_from_process(self, fake_scanner, fake_bluez):
        gateway = BleakGateway()
        gateway.start()
        gateway.process(0.001)

        fake_bluez.instances[0].on_lost(GatewayConnectionFailure("Adapter /org/bluez/hci0 was removed"))

        with pytest.raises(GatewayConnectionFailure, match="was removed"):
            gateway.process(0.001)
        gateway.stop()

    def test_bridge_closes_when_adapter_is_lost(self, monkeypatch, fake_scanner):
        monkeypatch.setattr(bleak_gateway, "BleakScanner", AdapterRemovedScanner)
        bridge = SubscriptionBridge(BleakGateway, ["CC:6F:70:EE:4C:AD"])
        stream = bridge.subscribe()
        assert bridge.state == BridgeState.STREAMING

        assert wait_for(lambda: bridge.state == BridgeState.CLOSED)
        assert FakeBluezAdapter.instances[0].closed
        with pytest.raises(StreamClosed):
            stream.get(timeout=0.2)


class FakeBus:
    """System bus answering Properties.Get/Set and AddMatch from a script."""

    instances = []
    start_powered = False
    adapter_present = True

    def __init__(self, bus_type=None):
        self.bus_type = bus_type
        self.powered = FakeBus.start_powered
        self.adapter_exists = FakeBus.adapter_present
        self.calls = []
        self.handlers = []
        self.disconnected = False
        self.error = None
        self._disconnect = asyncio.Event()
        FakeBus.instances.append(self)

    async def connect(self):
        return self

    async def call(self, message):
        self.calls.append((message.member, list(message.body)))
        if message.member in ("Get", "Set") and not self.adapter_exists:
            return SimpleNamespace(message_type=MessageType.ERROR,
                                   error_name="org.freedesktop.DBus.Error.UnknownObject",
                                   body=["Method \"Get\" doesn't exist"])
        if message.member == "Get":
            return SimpleNamespace(message_type=MessageType.METHOD_RETURN, body=[Variant("b", self.powered)])
        if message.member == "Set":
            self.powered = message.body[2].value
        return SimpleNamespace(message_type=MessageType.METHOD_RETURN, body=[])

    def add_message_handler(self, handler):
        self.handlers.append(handler)

    def emit(self, member, path, body):
        for handler in self.handlers:
            handler(SimpleNamespace(message_type=MessageType.SIGNAL, member=member, path=path, body=body))

    async def wait_for_disconnect(self):
        await self._disconnect.wait()
        if self.error is not None:
            raise self.error

    def disconnect(self):
        self.disconnected = True
        self._disconnect.set()


@pytest.fixture
def fake_bus(monkeypatch):
    FakeBus.instances = []
    FakeBus.start_powered = False
    FakeBus.adapter_present = True
    monkeypatch.setattr(bluez_adapter, "MessageBus", FakeBus)
    return FakeBus


class TestBluezAdapter:

    @pytest.mark.asyncio
    async def test_powers_on_adapter(self, fake_bus):
        adapter = BluezAdapter("hci1", on_lost=lambda error: None)
        await adapter.open()

        bus = fake_bus.instances[0]
        assert bus.powered is True
        set_calls = [body for member, body in bus.calls if member == "Set"]
        assert len(set_calls) == 1
        assert set_calls[0][:2] == ["org.bluez.Adapter1", "Powered"]
        assert ["org.bluez.Adapter1", "Powered"] in [body for member, body in bus.calls if member == "Get"]
        await adapter.close()
        assert bus.disconnected

    @pytest.mark.asyncio
    async def test_powered_adapter_is_left_alone(self, fake_bus):
        fake_bus.start_powered = True
        adapter = BluezAdapter("hci0", on_lost=lambda error: None)
        await adapter.open()

        assert "Set" not in [member for member, _ in fake_bus.instances[0].calls]
        await adapter.close()

    @pytest.mark.asyncio
    async def test_missing_adapter_is_a_connection_failure(self, fake_bus):
        fake_bus.adapter_present = False
        adapter = BluezAdapter("hci7", on_lost=lambda error: None)

        with pytest.raises(GatewayConnectionFailure, match="UnknownObject"):
            await adapter.open()
        await adapter.close()

    @pytest.mark.asyncio
    async def test_unreachable_bus_is_a_connection_failure(self, monkeypatch):
        class NoBus:
            def __init__(self, bus_type=None):
                pass

            async def connect(self):
                raise FileNotFoundError("/run/dbus/system_bus_socket")

        monkeypatch.setattr(bluez_adapter, "MessageBus", NoBus)
        adapter = BluezAdapter("hci0", on_lost=lambda error: None)

        with pytest.raises(GatewayConnectionFailure, match="system_bus_socket"):
            await adapter.open()

    @pytest.mark.asyncio
    async def test_adapter_removal_is_reported(self, fake_bus):
        lost = []
        adapter = BluezAdapter("hci0", on_lost=lost.append)
        await adapter.open()
        bus = fake_bus.instances[0]

        bus.emit("InterfacesRemoved", "/org/bluez/hci0/dev_CC_6F_70_EE_4C_AD", ["org.bluez.Device1"])
        assert lost == []
        bus.emit("InterfacesRemoved", "/org/bluez/hci0", ["org.bluez.Adapter1"])

        assert len(lost) == 1
        assert isinstance(lost[0], GatewayConnectionFailure)
        await adapter.close()

    @pytest.mark.asyncio
    async def test_power_off_is_reported(self, fake_bus):
        lost = []
        adapter = BluezAdapter("hci0", on_lost=lost.append)
        await adapter.open()
        bus = fake_bus.instances[0]

        bus.emit("PropertiesChanged", "/org/bluez/hci0", ["org.bluez.Adapter1", {"Discovering": Variant("b", False)}, []])
        assert lost == []
        bus.emit("PropertiesChanged", "/org/bluez/hci0", ["org.bluez.Adapter1", {"Powered": Variant("b", False)}, []])

        assert "powered off" in str(lost[0])
        await adapter.close()

    @pytest.mark.asyncio
    async def test_bus_disconnect_is_reported(self, fake_bus):
        lost = []
        adapter = BluezAdapter("hci0", on_lost=lost.append)
        await adapter.open()
        bus = fake_bus.instances[0]

        bus.error = EOFError()
        bus.disconnect()
        for _ in range(5):
            await asyncio.sleep(0)

        assert len(lost) == 1
        await adapter.close()

    @pytest.mark.asyncio
    async def test_close_does_not_report_loss(self, fake_bus):
        lost = []
        adapter = BluezAdapter("hci0", on_lost=lost.append)
        await adapter.open()

        await adapter.close()
        for _ in range(5):
            await asyncio.sleep(0)

        assert lost == []
