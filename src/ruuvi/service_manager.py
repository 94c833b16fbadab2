# External libs
import asyncio
import logging
import threading
import time
from typing import Callable, Optional

# Internal libs
from ruuvi.config_loader import config_loader
from ruuvi.event_hub import TAG_READING_TOPIC, event_hub, init_event_hub
from ruuvi.models.tag_sample import TagSample
from ruuvi.services.bleak_gateway import BleakGateway
from ruuvi.services.emulated_gateway import EmulatedGateway
from ruuvi.services.gateway import BluetoothGateway
from ruuvi.services.reading_cache import reading_cache
from ruuvi.services.subscription_bridge import ReadingStream, SubscriptionBridge

logger = logging.getLogger(__name__)

class ServiceManager:

    def __init__(self):
        self.running = False
        self.bridge: Optional[SubscriptionBridge] = None
        self._stream: Optional[ReadingStream] = None
        self._consumer: Optional[threading.Thread] = None

    def build_bridge(self, emulation: bool, gateway_factory: Optional[Callable[[], BluetoothGateway]] = None) -> SubscriptionBridge:
        """Create a bridge from the configured tags and bridge settings."""
        bridge_cfg = config_loader.get_bridge_config()
        if gateway_factory is None:
            if emulation:
                gateway_factory = EmulatedGateway
            else:
                adapter = bridge_cfg.adapter
                gateway_factory = lambda: BleakGateway(adapter=adapter)
        return SubscriptionBridge(
            gateway_factory,
            config_loader.get_enabled_tags(),
            poll_interval=bridge_cfg.poll_interval,
            max_queue_size=bridge_cfg.max_queue_size,
            overflow_policy=bridge_cfg.overflow_policy,
            strict_format=bridge_cfg.strict_format,
        )

    async def start_services(self, emulation: bool = True, gateway_factory: Optional[Callable[[], BluetoothGateway]] = None):
        """Start the bridge and the consumer feeding the event hub.
        Args:
            emulation: When True, readings come from EmulatedGateway instead of the Bluetooth adapter.
            gateway_factory: Overrides the gateway chosen from the mode.
        """
        if self.running:
            return

        logger.info("Starting background services...")
        init_event_hub(asyncio.get_running_loop())
        reading_cache.max_silence_time = config_loader.get_max_silence_time()

        if not config_loader.get_enabled_tags():
            logger.warning("No enabled tags in configuration, bridge not started")
            return

        bridge = self.build_bridge(emulation, gateway_factory)
        # subscribe() blocks until the gateway is up, keep it off the event loop
        self._stream = await asyncio.to_thread(bridge.subscribe)
        self.bridge = bridge
        self.running = True

        self._consumer = threading.Thread(target=self._consume, name="ruuvi-consumer", daemon=True)
        self._consumer.start()
        logger.info("Background services started.")

    def _consume(self):
        stream = self._stream
        if stream is None:
            return
        for reading in stream:
            sample = TagSample(timestamp=time.time(), mac=reading.mac_address_string(), reading=reading)
            event_hub.send_all_on_topic(TAG_READING_TOPIC, sample)
        logger.info("Reading stream ended")

    def stop_services(self):
        """Stop background services."""
        self.running = False

        if self.bridge is not None:
            self.bridge.close()

        if self._consumer is not None:
            self._consumer.join(timeout=2.0)
            self._consumer = None

        self._stream = None
        logger.info("Background services stopped.")

service_manager = ServiceManager()
