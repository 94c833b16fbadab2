import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from ruuvi.models.config_data import configBridgeData, configData, configTagData
from ruuvi.services.gateway import normalize_device_id

logger = logging.getLogger(__name__)

class ConfigLoader:
    """Loads and manages tag and bridge configuration from JSON file."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(ConfigLoader, cls).__new__(cls)
            cls._instance._config = configData(tags={}, emulation=True)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self._config = self._get_default_config()
            self.load_config()
            self._initialized = True

    @staticmethod
    def get_config_path() -> Path:
        """Get the path to the tags_config.json file."""
        # Config file should be in the project root/config directory
        config_path = Path(__file__).parent.parent.parent / "config" / "tags_config.json"
        return config_path

    def load_config(self, config_path: Optional[Path] = None):
        """Load configuration from JSON file."""
        config_path = config_path or self.get_config_path()

        # Start from defaults so _config is always usable
        self._config = self._get_default_config()

        if not config_path.exists():
            logger.error(f"Configuration file not found: {config_path}")
            return

        try:
            with open(config_path, 'r') as f:
                json_data = json.load(f)

            tags: Dict[str, configTagData] = {}
            for mac_key, tag_cfg in json_data.get("tags", {}).items():
                mac = normalize_device_id(mac_key)
                tags[mac] = configTagData(
                    mac,
                    displayName=tag_cfg.get("display_name", "Unnamed Tag"),
                    enabled=tag_cfg.get("enabled", True)
                )

            bridge_cfg = json_data.get("bridge", {})
            bridge = configBridgeData(
                adapter=bridge_cfg.get("adapter", "hci0"),
                poll_interval=float(bridge_cfg.get("poll_interval", 0.02)),
                max_queue_size=int(bridge_cfg.get("max_queue_size", 0)),
                overflow_policy=bridge_cfg.get("overflow_policy", "drop_oldest"),
                strict_format=bool(bridge_cfg.get("strict_format", False))
            )

            self._config = configData(
                tags=tags,
                bridge=bridge,
                emulation=json_data.get("emulation", True),
                max_silence_time=float(json_data.get("max_silence_time", 30.0))
            )
            logger.info(f"Configuration loaded from {config_path}")

        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse configuration file: {e}")
            self._config = self._get_default_config()

        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Invalid configuration in {config_path}: {e}")
            self._config = self._get_default_config()

    @staticmethod
    def _get_default_config() -> configData:
        """Return default configuration."""

        return configData(
            emulation=True,
            tags={},
            bridge=configBridgeData()
        )

    def get_emulation_mode(self) -> bool:
        """Get the emulation mode setting."""
        return self._config.emulation

    def get_bridge_config(self) -> configBridgeData:
        return self._config.bridge

    def get_max_silence_time(self) -> float:
        return self._config.max_silence_time

    def get_tag_config(self, mac: str) -> Optional[configTagData]:
        """Get configuration for a specific tag, None if not configured."""
        return self._config.tags.get(normalize_device_id(mac))

    def is_tag_enabled(self, mac: str) -> bool:
        cfg = self.get_tag_config(mac)
        return cfg is not None and cfg.enabled is True

    def get_all_tags(self) -> Dict[str, configTagData]:
        """Get all tag configurations."""
        return dict(self._config.tags)

    def get_enabled_tags(self) -> List[str]:
        """Get MAC addresses of the tags that should be watched."""
        return [mac for mac, cfg in self._config.tags.items() if cfg.enabled is True]

    def reload_config(self):
        """Reload configuration from file."""
        self.load_config()
        logger.info("Configuration reloaded")


# Global singleton instance
config_loader = ConfigLoader()
