"""
ZooKeeper store backed by kazoo

kazoo is thread based: its calls block and its listener/watch callbacks run
on kazoo's own threads. Blocking calls go through asyncio.to_thread and every
callback is marshalled onto the event loop with call_soon_threadsafe, so the
rest of the client only ever sees asyncio objects.
"""

import asyncio
from typing import Callable, List, Optional, Sequence

from kazoo.client import KazooClient
from kazoo.exceptions import (
    KazooException,
    NodeExistsError as KazooNodeExistsError,
    NoNodeError,
    NotEmptyError,
)
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.protocol.states import EventType as KazooEventType, KazooState, KeeperState
from kazoo.security import OPEN_ACL_UNSAFE

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

logger = get_logger("kazoo-store")

_EVENT_TYPES = {
    KazooEventType.CREATED: EventType.NODE_CREATED,
    KazooEventType.DELETED: EventType.NODE_DELETED,
    KazooEventType.CHANGED: EventType.NODE_DATA_CHANGED,
    KazooEventType.CHILD: EventType.NODE_CHILDREN_CHANGED,
}


def _stat(znode_stat) -> Optional[NodeStat]:
    if znode_stat is None:
        return None
    return NodeStat(
        version=znode_stat.version,
        num_children=znode_stat.numChildren,
        ephemeral_owner=znode_stat.ephemeralOwner,
    )


class KazooStore(CoordinationStore):
    """One kazoo session"""

    def __init__(
        self,
        client: KazooClient,
        loop: asyncio.AbstractEventLoop,
        server: str,
        fatal_on_session_loss: bool = True
    ):
        self._client = client
        self._loop = loop
        self._server = server
        self._fatal_on_session_loss = fatal_on_session_loss
        self.events: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self.state = SessionState.DISCONNECTED
        self.closed = False

    @classmethod
    async def connect(
        cls,
        endpoints: Sequence[str],
        timeout: int,
        fatal_on_session_loss: bool = True
    ) -> "KazooStore":
        """
        Start a kazoo session and wait for the handshake.

        Raises:
            ConnectFailedError: no server answered within timeout
        """
        hosts = ",".join(endpoints)
        client = KazooClient(hosts=hosts, timeout=timeout)
        store = cls(client, asyncio.get_running_loop(), hosts, fatal_on_session_loss)
        client.add_listener(store._on_state_change)

        try:
            await asyncio.to_thread(client.start, timeout)
        except (KazooTimeoutError, KazooException) as e:
            client.remove_listener(store._on_state_change)
            await asyncio.to_thread(client.close)
            raise ConnectFailedError(
                f"KazooClient.start(hosts:{hosts}) failed: {e}",
                list(endpoints)
            ) from e

        return store

    # ------------------------------------------------------------------
    # kazoo thread callbacks
    # ------------------------------------------------------------------

    def _map_state(self, state: KazooState) -> SessionState:
        if state == KazooState.SUSPENDED:
            return SessionState.CONNECTING
        if state == KazooState.LOST:
            return SessionState.DISCONNECTED if self._fatal_on_session_loss else SessionState.EXPIRED
        if state == KazooState.CONNECTED:
            if self._client.client_state == KeeperState.CONNECTED_RO:
                return SessionState.CONNECTED_READ_ONLY
            return SessionState.HAS_SESSION
        return SessionState.UNKNOWN

    def _on_state_change(self, state: KazooState):
        event = SessionEvent.session(self._map_state(state), self._server)
        self._loop.call_soon_threadsafe(self._publish, event)

    def _watcher(self, future: asyncio.Future) -> Callable:
        def on_watch(watched_event):
            event = SessionEvent(
                _EVENT_TYPES.get(watched_event.type, EventType.SESSION),
                self.state,
                watched_event.path or "",
                self._server,
            )
            self._loop.call_soon_threadsafe(self._fire, future, event)
        return on_watch

    def _publish(self, event: SessionEvent):
        if event.type is EventType.SESSION:
            self.state = event.state
        if not self.closed:
            self.events.put_nowait(event)

    def _fire(self, future: asyncio.Future, event: SessionEvent):
        if not future.done():
            future.set_result(event)
        self._publish(event)

    # ------------------------------------------------------------------
    # store operations
    # ------------------------------------------------------------------

    async def _call(self, path: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except KazooNodeExistsError as e:
            raise NodeExistsError(path) from e
        except NoNodeError as e:
            raise NoSuchPathError(path) from e
        except NotEmptyError as e:
            raise NodeNotEmptyError(path) from e
        except (KazooException, KazooTimeoutError) as e:
            raise StoreFailureError(
                f"{type(e).__name__}: {e}",
                {"node": path}
            ) from e

    async def create(self, path: str, data: bytes = b"", flags: CreateFlags = CreateFlags.NONE) -> str:
        return await self._call(
            path,
            self._client.create,
            path,
            value=data,
            acl=OPEN_ACL_UNSAFE,
            ephemeral=CreateFlags.EPHEMERAL in flags,
            sequence=CreateFlags.SEQUENCE in flags,
        )

    async def delete(self, path: str) -> None:
        await self._call(path, self._client.delete, path, version=-1)

    async def get_children(self, path: str, watch: bool = False):
        future = self._loop.create_future() if watch else None
        children, znode_stat = await self._call(
            path,
            self._client.get_children,
            path,
            watch=self._watcher(future) if watch else None,
            include_data=True,
        )
        return list(children), _stat(znode_stat), future

    async def exists(self, path: str, watch: bool = False):
        future = self._loop.create_future() if watch else None
        znode_stat = await self._call(
            path,
            self._client.exists,
            path,
            watch=self._watcher(future) if watch else None,
        )
        return _stat(znode_stat), future

    async def close(self) -> None:
        if self.closed:
            raise StoreFailureError("session already closed", {"hosts": self._server})

        self.closed = True
        # kazoo reports LOST while stopping, nobody is listening by now
        self._client.remove_listener(self._on_state_change)
        await asyncio.to_thread(self._shutdown_client)
        logger.info("Kazoo session closed", hosts=self._server)

    def _shutdown_client(self):
        self._client.stop()
        self._client.close()


def kazoo_connector(fatal_on_session_loss: bool = True):
    """Connector that opens KazooStore sessions"""
    async def connect(endpoints: List[str], timeout: int) -> KazooStore:
        return await KazooStore.connect(endpoints, timeout, fatal_on_session_loss)
    return connect
