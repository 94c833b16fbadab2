import logging
import threading
import time
from typing import Dict, Optional

from ruuvi.event_hub import TAG_READING_TOPIC, event_hub
from ruuvi.models.tag_sample import TagSample
from ruuvi.services.gateway import normalize_device_id

logger = logging.getLogger(__name__)


class ReadingCache:
    """
    Keeps the latest sample of every tag seen on the reading topic.
    Only the most recent sample is retained, no history.
    """

    def __init__(self, max_silence_time: float = 30.0):
        self.max_silence_time = max_silence_time
        self._latest: Dict[str, TagSample] = {}
        self._lock = threading.Lock()
        event_hub.subscribe(TAG_READING_TOPIC, self._on_sample)

    def _on_sample(self, topic: str, sample: TagSample):
        with self._lock:
            was_known = sample.mac in self._latest
            self._latest[sample.mac] = sample
        if not was_known:
            logger.info(f"First reading received from {sample.mac}")

    def record(self, sample: TagSample):
        self._on_sample(TAG_READING_TOPIC, sample)

    def get_latest(self, mac: str) -> Optional[TagSample]:
        with self._lock:
            return self._latest.get(normalize_device_id(mac))

    def get_silence_duration(self, mac: str) -> Optional[float]:
        """Seconds since the last sample of a tag, None if never seen."""
        sample = self.get_latest(mac)
        if sample is None:
            return None
        return time.time() - sample.timestamp

    def is_tag_active(self, mac: str) -> bool:
        silence = self.get_silence_duration(mac)
        return silence is not None and silence <= self.max_silence_time

    def clear(self):
        with self._lock:
            self._latest.clear()


# Global instance
reading_cache = ReadingCache()
