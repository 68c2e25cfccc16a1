"""WhatsApp ↔ Telegram forum bridge.

Each WhatsApp conversation is mirrored onto one topic of a Telegram forum
supergroup; messages, media, presence and metadata flow both ways.
"""

# `engine` must load before `commands` (the bridge facade imports it).
from .config import BridgeConfig, BridgeConfigError
from .engine import Bridge, start_bridge

__all__ = ["Bridge", "BridgeConfig", "BridgeConfigError", "start_bridge"]
