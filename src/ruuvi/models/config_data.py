from dataclasses import dataclass, field
from typing import Dict


@dataclass
class configTagData:
    mac: str
    displayName : str = "Unnamed Tag"
    enabled: bool = True

@dataclass
class configBridgeData:
    adapter : str = "hci0"
    poll_interval : float = 0.02
    max_queue_size : int = 0
    overflow_policy : str = "drop_oldest"
    strict_format : bool = False

@dataclass
class configData:
    tags : Dict[str, configTagData]
    bridge : configBridgeData = field(default_factory=configBridgeData)
    emulation : bool = True
    max_silence_time : float = 30.0
