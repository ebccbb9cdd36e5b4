"""
In-memory coordination store

A single-process stand-in for a ZooKeeper ensemble, used for development
(REGISTRY_BACKEND=memory) and tests. Several sessions can share one
ensemble, so ephemeral ownership and cross-session watches behave like the
real thing.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple
from zkregistry.logging import get_logger

from zkregistry.exceptions import (
    ConnectFailedError,
    NodeExistsError,
    NodeNotEmptyError,
    NoSuchPathError,
    StoreFailureError,
)
from zkregistry.service_discovery.session import EventType, SessionEvent, SessionState
from zkregistry.service_discovery.store.base import CoordinationStore, CreateFlags, NodeStat

logger = get_logger("memory-store")

_Watch = Tuple["InMemoryStore", asyncio.Future]


@dataclass
class _Node:
    data: bytes = b""
    version: int = 0
    ephemeral_owner: int = 0
    sequence: int = 0
    children: Set[str] = field(default_factory=set)

    def stat(self) -> NodeStat:
        return NodeStat(self.version, len(self.children), self.ephemeral_owner)


def _split(path: str) -> Tuple[str, str]:
    parent, _, name = path.rpartition("/")
    return parent or "/", name


class InMemoryEnsemble:
    """
    The "server" side: node tree, sessions and pending watches.

    Usage:
        ensemble = InMemoryEnsemble()
        client = await RegistryClient.connect(
            "svc", ["memory"], 10, connector=ensemble.connect
        )
    """

    def __init__(self, available: bool = True):
        self.available = available
        self._nodes: Dict[str, _Node] = {"/": _Node()}
        self._sessions: Dict[int, "InMemoryStore"] = {}
        self._session_ids = itertools.count(1)
        self._data_watches: Dict[str, List[_Watch]] = {}
        self._child_watches: Dict[str, List[_Watch]] = {}

    async def connect(self, endpoints: Sequence[str], timeout: int) -> "InMemoryStore":
        """Open a session. Matches the Connector signature."""
        if not self.available:
            raise ConnectFailedError("in-memory ensemble unavailable", list(endpoints))

        store = InMemoryStore(self, next(self._session_ids), list(endpoints), timeout)
        self._sessions[store.session_id] = store
        for state in (SessionState.CONNECTING, SessionState.CONNECTED, SessionState.HAS_SESSION):
            store.set_state(state)
        logger.debug("Session opened", session_id=store.session_id)
        return store

    # ------------------------------------------------------------------
    # tree operations, called by InMemoryStore
    # ------------------------------------------------------------------

    def create(self, owner: "InMemoryStore", path: str, data: bytes, flags: CreateFlags) -> str:
        if not path.startswith("/"):
            raise StoreFailureError(f"invalid path {path!r}", {"node": path})

        parent_path, name = _split(path)
        parent = self._nodes.get(parent_path)
        if parent is None:
            raise NoSuchPathError(path)
        if parent.ephemeral_owner:
            raise StoreFailureError(
                f"ephemeral node {parent_path} cannot have children",
                {"node": path}
            )

        if CreateFlags.SEQUENCE in flags:
            path = f"{path}{parent.sequence:010d}"
            name = f"{name}{parent.sequence:010d}"
            parent.sequence += 1
        elif not name:
            raise StoreFailureError(f"invalid path {path!r}", {"node": path})

        if path in self._nodes:
            raise NodeExistsError(path)

        self._nodes[path] = _Node(
            data=bytes(data),
            ephemeral_owner=owner.session_id if CreateFlags.EPHEMERAL in flags else 0,
        )
        parent.children.add(name)

        self._fire(self._data_watches, path, EventType.NODE_CREATED)
        self._fire(self._child_watches, parent_path, EventType.NODE_CHILDREN_CHANGED)
        return path

    def delete(self, path: str) -> None:
        if path == "/":
            raise StoreFailureError("cannot delete the root node", {"node": path})

        node = self._nodes.get(path)
        if node is None:
            raise NoSuchPathError(path)
        if node.children:
            raise NodeNotEmptyError(path)

        parent_path, name = _split(path)
        del self._nodes[path]
        self._nodes[parent_path].children.discard(name)

        self._fire(self._data_watches, path, EventType.NODE_DELETED)
        self._fire(self._child_watches, path, EventType.NODE_DELETED)
        self._fire(self._child_watches, parent_path, EventType.NODE_CHILDREN_CHANGED)

    def get_children(self, owner: "InMemoryStore", path: str, watch: bool):
        node = self._nodes.get(path)
        if node is None:
            raise NoSuchPathError(path)

        future = self._arm(self._child_watches, owner, path) if watch else None
        return sorted(node.children), node.stat(), future

    def exists(self, owner: "InMemoryStore", path: str, watch: bool):
        node = self._nodes.get(path)
        # like ZooKeeper, an exists watch is armed on missing nodes too
        future = self._arm(self._data_watches, owner, path) if watch else None
        return (node.stat() if node else None), future

    def set_data(self, path: str, data: bytes) -> None:
        """Server-side data change, fires data watches on path"""
        node = self._nodes.get(path)
        if node is None:
            raise NoSuchPathError(path)

        node.data = bytes(data)
        node.version += 1
        self._fire(self._data_watches, path, EventType.NODE_DATA_CHANGED)

    def get_data(self, path: str) -> bytes:
        node = self._nodes.get(path)
        if node is None:
            raise NoSuchPathError(path)
        return node.data

    def node_exists(self, path: str) -> bool:
        return path in self._nodes

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def expire_session(self, store: "InMemoryStore") -> None:
        """Expire a session: its ephemerals go away and it emits EXPIRED"""
        self._drop_session(store)
        store.expired = True
        store.set_state(SessionState.EXPIRED)

    def _drop_session(self, store: "InMemoryStore") -> None:
        self._sessions.pop(store.session_id, None)

        owned = [
            path for path, node in self._nodes.items()
            if node.ephemeral_owner == store.session_id
        ]
        # deepest first so parents are empty by the time we reach them
        for path in sorted(owned, key=lambda p: p.count("/"), reverse=True):
            self.delete(path)

        for watches in (self._data_watches, self._child_watches):
            for path in list(watches):
                kept = [(s, f) for s, f in watches[path] if s is not store]
                for s, f in watches[path]:
                    if s is store and not f.done():
                        f.cancel()
                if kept:
                    watches[path] = kept
                else:
                    del watches[path]

    def _arm(self, watches: Dict[str, List[_Watch]], owner: "InMemoryStore", path: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        watches.setdefault(path, []).append((owner, future))
        return future

    def _fire(self, watches: Dict[str, List[_Watch]], path: str, event_type: EventType) -> None:
        for owner, future in watches.pop(path, ()):
            event = SessionEvent(event_type, owner.state, path)
            if not future.done():
                future.set_result(event)
            if not owner.closed:
                owner.events.put_nowait(event)


class InMemoryStore(CoordinationStore):
    """One session against an InMemoryEnsemble"""

    def __init__(self, ensemble: InMemoryEnsemble, session_id: int, endpoints: List[str], timeout: int):
        self.ensemble = ensemble
        self.session_id = session_id
        self.endpoints = endpoints
        self.timeout = timeout
        self.events: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self.state = SessionState.DISCONNECTED
        self.closed = False
        self.expired = False
        self.close_count = 0

    def set_state(self, state: SessionState, error: Optional[str] = None) -> None:
        """Move the session to state and publish the session event"""
        self.state = state
        self.events.put_nowait(SessionEvent.session(state, "memory", error))

    def inject(self, event: SessionEvent) -> None:
        """Publish an arbitrary event on this session's stream"""
        self.events.put_nowait(event)

    def _check_usable(self) -> None:
        if self.closed:
            raise StoreFailureError("session closed", {"session_id": self.session_id})
        if self.expired:
            raise StoreFailureError("session expired", {"session_id": self.session_id})

    async def create(self, path: str, data: bytes = b"", flags: CreateFlags = CreateFlags.NONE) -> str:
        self._check_usable()
        return self.ensemble.create(self, path, data, flags)

    async def delete(self, path: str) -> None:
        self._check_usable()
        self.ensemble.delete(path)

    async def get_children(self, path: str, watch: bool = False):
        self._check_usable()
        return self.ensemble.get_children(self, path, watch)

    async def exists(self, path: str, watch: bool = False):
        self._check_usable()
        return self.ensemble.exists(self, path, watch)

    async def close(self) -> None:
        if self.closed:
            raise StoreFailureError("session already closed", {"session_id": self.session_id})

        self.closed = True
        self.close_count += 1
        self.state = SessionState.DISCONNECTED
        if not self.expired:
            self.ensemble._drop_session(self)
        logger.debug("Session closed", session_id=self.session_id)
