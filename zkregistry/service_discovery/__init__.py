"""
Service Discovery and Registration

Registry client for a hierarchical, watch-capable coordination store.
"""

from zkregistry.service_discovery.client import (
    RegistryClient,
    create_registry_client,
    get_memory_ensemble,
)
from zkregistry.service_discovery.session import (
    Effect,
    EventType,
    SessionEvent,
    SessionState,
    Transition,
    describe_state,
    transition,
)
from zkregistry.service_discovery.shutdown import ShutdownCoordinator, close_on_signals
from zkregistry.service_discovery.watch_registry import (
    BlockingDelivery,
    DropIfFullDelivery,
    WatchRegistry,
    delivery_for,
)

__all__ = [
    "RegistryClient",
    "create_registry_client",
    "get_memory_ensemble",
    "Effect",
    "EventType",
    "SessionEvent",
    "SessionState",
    "Transition",
    "describe_state",
    "transition",
    "ShutdownCoordinator",
    "close_on_signals",
    "BlockingDelivery",
    "DropIfFullDelivery",
    "WatchRegistry",
    "delivery_for",
]
