"""
Bridge between a Bluetooth gateway and application code.

A dedicated thread owns the gateway: it registers one subscription per watched
tag, services gateway events in a loop bounded by ``poll_interval`` and pushes
every decoded reading onto a single-consumer channel. Advertisements that fail
to decode are logged and dropped; they never stop the loop.
"""
import logging
import queue
import threading
import time
from typing import Any, Callable, Iterable, Iterator, List, Optional

from ruuvi.models.bridge_state import BridgeState
from ruuvi.models.sensor_reading import SensorReading
from ruuvi.processing.frame_decoder import DecodeError, decode
from ruuvi.services.bleak_gateway import BleakGateway
from ruuvi.services.gateway import BluetoothGateway, GatewayConnectionFailure, normalize_device_id

logger = logging.getLogger(__name__)

OVERFLOW_POLICIES = ("drop_oldest", "drop_newest")
DEFAULT_POLL_INTERVAL = 0.02
_RECEIVE_SLICE = 0.1


class StreamClosed(Exception):
    """The bridge is closed and every queued reading has been consumed."""


class ReadingStream:
    """Receive end of a bridge channel. Exactly one consumer should read from it."""

    def __init__(self, bridge: "SubscriptionBridge", channel: queue.Queue):
        self._bridge = bridge
        self._channel = channel

    def get(self, timeout: Optional[float] = None) -> SensorReading:
        """
        Return the next reading in arrival order.

        Raises:
            queue.Empty: no reading arrived within timeout
            StreamClosed: the bridge is closed and the channel is drained
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = _RECEIVE_SLICE
            if deadline is not None:
                wait = min(wait, max(0.0, deadline - time.monotonic()))
            try:
                return self._channel.get(timeout=wait)
            except queue.Empty:
                # Puts are refused once the bridge is CLOSED, so an empty channel here is final
                if self._bridge.is_closed and self._channel.empty():
                    raise StreamClosed("Subscription bridge is closed")
                if deadline is not None and time.monotonic() >= deadline:
                    raise

    def __iter__(self) -> Iterator[SensorReading]:
        while True:
            try:
                yield self.get()
            except StreamClosed:
                return

    def close(self):
        self._bridge.close()

    def __enter__(self) -> "ReadingStream":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class SubscriptionBridge:
    """
    Turns per-device gateway notifications into an ordered stream of SensorReading.

    State: CREATED -> SUBSCRIBING -> STREAMING -> CLOSED. CLOSED is terminal and
    is reached on close(), on a setup failure or when the gateway connection is lost.
    """

    def __init__(
        self,
        gateway_factory: Callable[[], BluetoothGateway] = BleakGateway,
        device_ids: Iterable[str] = (),
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_queue_size: int = 0,
        overflow_policy: str = "drop_oldest",
        strict_format: bool = False,
        setup_timeout: float = 10.0,
    ):
        """
        Args:
            gateway_factory: Builds the gateway inside the bridge thread
            device_ids: MAC addresses of the tags to watch
            poll_interval: Upper bound of one gateway.process() call in seconds
            max_queue_size: 0 for an unbounded channel, otherwise its capacity
            overflow_policy: "drop_oldest" or "drop_newest" when a bounded channel is full
            strict_format: Reject advertisements whose format byte is not 5
            setup_timeout: Seconds subscribe() waits for the gateway to come up
        """
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"Invalid overflow_policy: {overflow_policy}. Valid values are: {', '.join(OVERFLOW_POLICIES)}")
        if max_queue_size < 0:
            raise ValueError("max_queue_size must be >= 0")

        self.device_ids: List[str] = list(dict.fromkeys(normalize_device_id(d) for d in device_ids))
        self.poll_interval = poll_interval
        self.max_queue_size = max_queue_size
        self.overflow_policy = overflow_policy
        self.strict_format = strict_format
        self.setup_timeout = setup_timeout

        self._gateway_factory = gateway_factory
        self._channel: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._state = BridgeState.CREATED
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._ready = threading.Event()
        self._setup_error: Optional[Exception] = None
        self._thread: Optional[threading.Thread] = None

        self.received = 0
        self.decoded = 0
        self.decode_failures = 0
        self.overflow_drops = 0

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == BridgeState.CLOSED

    def subscribe(self, device_id: Optional[str] = None) -> ReadingStream:
        """
        Register every watched tag with the gateway and start streaming.
        Gateway failures during setup are raised here.
        """
        if self._state != BridgeState.CREATED:
            raise RuntimeError(f"Cannot subscribe, bridge is {self._state.value}")
        if device_id is not None:
            mac = normalize_device_id(device_id)
            if mac not in self.device_ids:
                self.device_ids.append(mac)
        if not self.device_ids:
            raise ValueError("No device identifiers to watch")

        self._set_state(BridgeState.SUBSCRIBING)
        self._thread = threading.Thread(target=self._run, name="ruuvi-bridge", daemon=True)
        self._thread.start()

        if not self._ready.wait(self.setup_timeout):
            self.close()
            raise GatewayConnectionFailure(f"Gateway did not start within {self.setup_timeout}s")
        if self._setup_error is not None:
            self._thread.join()
            raise self._setup_error

        logger.info(f"Subscribed to {len(self.device_ids)} tag(s): {', '.join(self.device_ids)}")
        return ReadingStream(self, self._channel)

    def close(self, timeout: float = 2.0):
        """Stop the loop and release the gateway. The channel does not need to be drained."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Bridge thread did not stop within {timeout}s")
        self._set_state(BridgeState.CLOSED)

    def stats(self) -> dict:
        return {
            "state": self._state.value,
            "received": self.received,
            "decoded": self.decoded,
            "decode_failures": self.decode_failures,
            "overflow_drops": self.overflow_drops,
            "queued": self._channel.qsize(),
        }

    def _set_state(self, new_state: BridgeState):
        with self._state_lock:
            if self._state == BridgeState.CLOSED or self._state == new_state:
                return
            old_state = self._state
            self._state = new_state
        logger.info(f"Bridge {old_state.value} -> {new_state.value}")

    def _run(self):
        gateway = None
        try:
            gateway = self._gateway_factory()
            gateway.start()
            for mac in self.device_ids:
                gateway.watch(mac, self._on_advertisement)
        except Exception as e:
            logger.error(f"Failed to subscribe to gateway: {e}")
            self._setup_error = e if isinstance(e, GatewayConnectionFailure) else GatewayConnectionFailure(str(e))
            self._release(gateway)
            self._set_state(BridgeState.CLOSED)
            self._ready.set()
            return

        if not self._stop_event.is_set():
            self._set_state(BridgeState.STREAMING)
        self._ready.set()

        try:
            while not self._stop_event.is_set():
                gateway.process(self.poll_interval)
        except GatewayConnectionFailure as e:
            logger.error(f"Gateway connection lost: {e}")
        except Exception as e:
            logger.error(f"Unexpected gateway error, closing bridge: {e}")
        finally:
            self._release(gateway)
            self._set_state(BridgeState.CLOSED)

    def _release(self, gateway: Optional[BluetoothGateway]):
        if gateway is None:
            return
        for mac in self.device_ids:
            try:
                gateway.unwatch(mac)
            except Exception as e:
                logger.warning(f"Error releasing subscription for {mac}: {e}")
        try:
            gateway.stop()
        except Exception as e:
            logger.warning(f"Error stopping gateway: {e}")

    def _on_advertisement(self, device_id: str, envelope: Any) -> bool:
        if self._stop_event.is_set():
            return False
        self.received += 1
        try:
            reading = decode(envelope, strict_format=self.strict_format)
        except DecodeError as e:
            self.decode_failures += 1
            logger.warning(f"Dropped advertisement from {device_id}: {e}")
            return True
        self._enqueue(reading)
        self.decoded += 1
        return True

    def _enqueue(self, reading: SensorReading):
        # Holding the state lock orders every put before the transition to CLOSED
        with self._state_lock:
            if self._state == BridgeState.CLOSED:
                logger.debug("Bridge closed, late reading dropped")
                return
            try:
                self._channel.put_nowait(reading)
                return
            except queue.Full:
                self.overflow_drops += 1

            if self.overflow_drops == 1:
                logger.warning(f"Reading channel full ({self.max_queue_size}), applying {self.overflow_policy}")
            if self.overflow_policy == "drop_newest":
                return
            try:
                self._channel.get_nowait()
            except queue.Empty:
                pass
            try:
                self._channel.put_nowait(reading)
            except queue.Full:
                logger.debug("Reading channel still full, reading dropped")


def subscribe_tag(mac_address: str, gateway_factory: Callable[[], BluetoothGateway] = BleakGateway, **kwargs) -> ReadingStream:
    """Subscribe to a single tag and return its reading stream."""
    bridge = SubscriptionBridge(gateway_factory, [mac_address], **kwargs)
    return bridge.subscribe()
