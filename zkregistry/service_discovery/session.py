"""
Session State Machine

Connectivity states reported by the coordination store and the pure
transition function the client's background task applies to each event.
Kept free of I/O so every transition can be tested without a store.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union


class SessionState(Enum):
    """Connectivity states of a store session"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    HAS_SESSION = "has_session"
    AUTH_FAILED = "auth_failed"
    CONNECTED_READ_ONLY = "connected_read_only"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class EventType(Enum):
    """What an event from the store is about"""
    SESSION = "session"
    NODE_CREATED = "node_created"
    NODE_DELETED = "node_deleted"
    NODE_DATA_CHANGED = "node_data_changed"
    NODE_CHILDREN_CHANGED = "node_children_changed"


class Effect(Enum):
    """Side effects the background task performs for a transition"""
    SHUTDOWN = "shutdown"                # stop, release the connection, exit
    DISPATCH_PREFIX = "dispatch_prefix"  # notify every watch whose path prefixes the event path
    NOTIFY_PATH = "notify_path"          # notify watches registered exactly at the event path


@dataclass(frozen=True)
class SessionEvent:
    """One event from the store's event stream"""
    type: EventType
    state: SessionState
    path: str = ""
    server: str = ""
    error: Optional[str] = None

    @classmethod
    def session(cls, state: SessionState, server: str = "", error: Optional[str] = None) -> "SessionEvent":
        return cls(EventType.SESSION, state, "", server, error)

    @property
    def is_node_change(self) -> bool:
        return self.type in _NODE_CHANGES


@dataclass(frozen=True)
class Transition:
    next_state: SessionState
    effects: Tuple[Effect, ...] = ()


_NODE_CHANGES = frozenset({EventType.NODE_DATA_CHANGED, EventType.NODE_CHILDREN_CHANGED})

_LIVE_STATES = frozenset({
    SessionState.CONNECTING,
    SessionState.CONNECTED,
    SessionState.HAS_SESSION,
})

# previous states that belong to a normal first connect
_INITIAL_STATES = frozenset({SessionState.CONNECTING, SessionState.DISCONNECTED})

_LABELS = {
    SessionState.DISCONNECTED: "zookeeper disconnected",
    SessionState.CONNECTING: "zookeeper connecting",
    SessionState.CONNECTED: "zookeeper connected",
    SessionState.HAS_SESSION: "zookeeper has session",
    SessionState.AUTH_FAILED: "zookeeper auth failed",
    SessionState.CONNECTED_READ_ONLY: "zookeeper connect readonly",
    SessionState.EXPIRED: "zookeeper connection expired",
    SessionState.UNKNOWN: "zookeeper unknown state",
    EventType.SESSION: "zookeeper session event",
    EventType.NODE_CREATED: "zookeeper node created",
    EventType.NODE_DELETED: "zookeeper node deleted",
    EventType.NODE_DATA_CHANGED: "zookeeper node data changed",
    EventType.NODE_CHILDREN_CHANGED: "zookeeper node children changed",
}


def describe_state(value: Union[SessionState, EventType]) -> str:
    """Human readable label for a state or event type, used in log lines"""
    return _LABELS.get(value, "zookeeper unknown state")


def transition(previous: SessionState, event: SessionEvent) -> Transition:
    """
    Decide what the background task does with an event.

    Args:
        previous: State recorded after the previous event
        event: The event just received

    Returns:
        Transition whose next_state is always the event's state
    """
    if event.state is SessionState.DISCONNECTED:
        return Transition(SessionState.DISCONNECTED, (Effect.SHUTDOWN,))

    if event.is_node_change:
        return Transition(event.state, (Effect.DISPATCH_PREFIX,))

    if event.state in _LIVE_STATES and previous not in _INITIAL_STATES:
        return Transition(event.state, (Effect.NOTIFY_PATH,))

    return Transition(event.state)
