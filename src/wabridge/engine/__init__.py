"""Bridging engine: topic lifecycle, routers, presence and auxiliary flows."""

from __future__ import annotations

from .auth import OperatorAuth
from .auxiliary import AuxiliaryFlows, StatusReference
from .bridge import Bridge, start_bridge
from .inbound import ContentForwarder, InboundRouter
from .outbound import OutboundRouter
from .presence import PresenceCoordinator, ReadReceiptQueue
from .topics import TopicManager, TopicRenameReport

__all__ = [
    "AuxiliaryFlows",
    "Bridge",
    "ContentForwarder",
    "InboundRouter",
    "OperatorAuth",
    "OutboundRouter",
    "PresenceCoordinator",
    "ReadReceiptQueue",
    "StatusReference",
    "TopicManager",
    "TopicRenameReport",
    "start_bridge",
]
