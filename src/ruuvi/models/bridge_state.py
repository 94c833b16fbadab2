"""Bridge state enumeration for tracking the subscription lifecycle."""
from enum import Enum


class BridgeState(Enum):
    """Enumeration of all possible subscription bridge states."""
    CREATED = "created"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    CLOSED = "closed"  # Terminal, never left once entered
