"""
Coordination store backends

- kazoo_store: ZooKeeper through kazoo (production)
- memory: in-process ensemble (development and tests)
"""

from zkregistry.service_discovery.store.base import (
    CoordinationStore,
    Connector,
    CreateFlags,
    NodeStat,
)
from zkregistry.service_discovery.store.memory import InMemoryEnsemble, InMemoryStore
from zkregistry.service_discovery.store.kazoo_store import KazooStore, kazoo_connector

__all__ = [
    "CoordinationStore",
    "Connector",
    "CreateFlags",
    "NodeStat",
    "InMemoryEnsemble",
    "InMemoryStore",
    "KazooStore",
    "kazoo_connector",
]
