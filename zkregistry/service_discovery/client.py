"""
Registry Client

Session and watch lifecycle manager over a hierarchical, watch-capable
coordination store. Service instances register themselves as ephemeral
nodes, discover peers by listing children, and react to topology changes
through path-prefix watches.

One background task per client consumes the store's event stream; every
other method runs on the caller's task. The connection handle and the watch
registry share one lock.
"""

import asyncio
import posixpath
from contextlib import asynccontextmanager
from typing import List, Optional, Sequence, Tuple
from zkregistry.logging import get_logger

from zkregistry.config.settings import Settings, get_settings
from zkregistry.exceptions import (
    ConnectFailedError,
    NoChildrenError,
    NoConnectionError,
    NodeExistsError,
    NoSuchPathError,
    RegistryException,
)
from zkregistry.service_discovery.session import (
    Effect,
    SessionEvent,
    SessionState,
    describe_state,
    transition,
)
from zkregistry.service_discovery.shutdown import ShutdownCoordinator
from zkregistry.service_discovery.store import (
    Connector,
    CoordinationStore,
    CreateFlags,
    InMemoryEnsemble,
    kazoo_connector,
)
from zkregistry.service_discovery.watch_registry import (
    BlockingDelivery,
    WatchRegistry,
    delivery_for,
)

logger = get_logger("registry-client")


def _join(base_path: str, name: str) -> str:
    return posixpath.normpath(base_path).rstrip("/") + "/" + name


class RegistryClient:
    """
    Registry client bound to one store session.

    Usage:
        client = await RegistryClient.connect("provider", ["zk1:2181"], 15)
        await client.create("/services/echo")
        path = await client.register_ephemeral_sequential("/services/echo", b"10.0.0.7:20880")

        changes = asyncio.Queue(maxsize=16)
        await client.register_event("/services/echo", changes)
        children, watch = await client.list_children_watch("/services/echo")
        ...
        await client.close()

    Notification delivery happens while the client lock is held. With the
    default BlockingDelivery a watcher that stops draining its queue stalls
    every registry call on this client until it reads or the client is
    stopped; pass DropIfFullDelivery to trade that for dropped notifications.

    A reconnect notifies only handles registered at exactly the path carried
    by the session event. The kazoo and in-memory stores report session
    events with an empty path, and register_event ignores the empty path, so
    in practice nobody hears about reconnects. Re-arm one-shot watches from
    the data you read, not from a reconnect notification.
    """

    def __init__(
        self,
        name: str,
        endpoints: Sequence[str],
        timeout: int,
        delivery=None
    ):
        self.name = name
        self.endpoints = list(endpoints)
        self.timeout = timeout
        self._lock = asyncio.Lock()
        self._conn: Optional[CoordinationStore] = None
        self._closing: Optional[asyncio.Future] = None
        self._watches = WatchRegistry()
        self._delivery = delivery or BlockingDelivery()
        self._shutdown = ShutdownCoordinator(name)
        self._state = SessionState.DISCONNECTED

    @classmethod
    async def connect(
        cls,
        name: str,
        endpoints: Sequence[str],
        timeout: int,
        *,
        connector: Optional[Connector] = None,
        delivery=None
    ) -> "RegistryClient":
        """
        Open a session and start the background event task.

        Blocks until the store handshake succeeds.

        Raises:
            ConnectFailedError: handshake failed
        """
        client = cls(name, endpoints, timeout, delivery)
        connector = connector or kazoo_connector()

        try:
            conn = await connector(client.endpoints, timeout)
        except ConnectFailedError:
            logger.error("Registry connect failed", client=name, endpoints=client.endpoints)
            raise
        except Exception as e:
            logger.error("Registry connect failed", client=name, endpoints=client.endpoints, error=str(e))
            raise ConnectFailedError(
                f"connect(endpoints:{client.endpoints}) failed: {e}",
                client.endpoints
            ) from e

        client._conn = conn
        client._shutdown.spawn(
            client._handle_events(conn.events),
            name=f"registry-session-{name}"
        )
        logger.info("Registry client connected", client=name, endpoints=client.endpoints, timeout=timeout)
        return client

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    # ------------------------------------------------------------------
    # Session State Machine
    # ------------------------------------------------------------------

    async def _handle_events(self, events: "asyncio.Queue[SessionEvent]"):
        previous = SessionState.DISCONNECTED
        try:
            while True:
                event = await self._next_event(events)
                if event is None:
                    break

                logger.info(
                    "Registry event",
                    client=self.name,
                    type=event.type.value,
                    server=event.server,
                    path=event.path,
                    state=describe_state(event.state),
                    error=event.error
                )

                step = transition(previous, event)

                if Effect.SHUTDOWN in step.effects:
                    logger.warning(
                        "Session disconnected, closing registry client",
                        client=self.name,
                        endpoints=self.endpoints
                    )
                    self.stop()
                    try:
                        await self._release()
                    except RegistryException as e:
                        logger.error("Failed to release connection", client=self.name, error=str(e))
                    self._state = step.next_state
                    break

                if Effect.DISPATCH_PREFIX in step.effects:
                    await self._dispatch(event, exact=False)
                if Effect.NOTIFY_PATH in step.effects:
                    await self._dispatch(event, exact=True)

                previous = self._state = step.next_state
        finally:
            logger.info("Registry session task exited", client=self.name, endpoints=self.endpoints)

    async def _next_event(self, events: "asyncio.Queue[SessionEvent]") -> Optional[SessionEvent]:
        """Next event, or None once the client is stopped"""
        if self._shutdown.stopped:
            return None

        get = asyncio.ensure_future(events.get())
        stop = asyncio.ensure_future(self._shutdown.done.wait())
        try:
            await asyncio.wait({get, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not get.done():
                get.cancel()

        if self._shutdown.stopped or get.cancelled():
            return None
        return get.result()

    async def _dispatch(self, event: SessionEvent, exact: bool):
        async with self._lock:
            if exact:
                handles = self._watches.handles(event.path)
                targets = [(event.path, handles)] if handles else []
            else:
                targets = list(self._watches.matching(event.path))

            for watch_path, handles in targets:
                logger.info(
                    "Notifying watchers",
                    client=self.name,
                    event_path=event.path,
                    watch_path=watch_path,
                    watchers=len(handles)
                )
                for handle in handles:
                    try:
                        await self._delivery.deliver(handle, event, self._shutdown.done)
                    except Exception as e:
                        logger.error(
                            "Watcher delivery failed",
                            client=self.name,
                            watch_path=watch_path,
                            error=str(e),
                            exc_info=e
                        )

    # ------------------------------------------------------------------
    # Connection Handle
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _connection(self):
        """Hold the lock and yield the live connection, or fail fast"""
        if self._conn is None:
            raise NoConnectionError()

        async with self._lock:
            if self._conn is None:
                raise NoConnectionError()
            yield self._conn

    async def _release(self):
        """
        Close the connection if it is still held. Safe to call repeatedly.

        The store close runs in its own task, so a cancelled caller cannot
        leave the session open; later calls wait for that task to finish.
        """
        async with self._lock:
            conn, self._conn = self._conn, None
            self._watches.clear()
            if conn is not None:
                self._closing = asyncio.ensure_future(conn.close())
            closing = self._closing

        if closing is None:
            return
        if conn is None:
            if not closing.done():
                await asyncio.wait({closing})
            return

        await asyncio.shield(closing)
        logger.info("Registry connection released", client=self.name)

    def connection_valid(self) -> bool:
        """False once stopped or when the connection is gone"""
        if self._shutdown.stopped:
            return False
        return self._conn is not None

    @property
    def state(self) -> SessionState:
        """State recorded after the last handled event"""
        return self._state

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def done(self) -> asyncio.Event:
        """Cancellation signal, set once the client is stopping"""
        return self._shutdown.done

    def stop(self) -> bool:
        """
        Signal cancellation.

        Returns:
            True if the client was already stopped
        """
        return self._shutdown.stop()

    async def close(self):
        """
        Stop, wait for the background task, then release the connection.

        The order matters: the task may be releasing the connection itself
        and the store forbids closing a session twice.
        """
        self.stop()
        await self._shutdown.wait()
        await self._release()
        logger.warning("Registry client exit now", client=self.name, endpoints=self.endpoints)

    # ------------------------------------------------------------------
    # Watch Registry
    # ------------------------------------------------------------------

    async def register_event(self, path: str, handle: Optional[asyncio.Queue]):
        """Route change notifications for path (and below) into handle"""
        if not path or handle is None:
            return

        try:
            async with self._connection():
                self._watches.register(path, handle)
        except NoConnectionError as e:
            raise e.annotate("register_event", path)

        logger.debug("Registered watcher", client=self.name, path=path, handle=id(handle))

    async def unregister_event(self, path: str, handle: Optional[asyncio.Queue]):
        """Stop routing notifications for path into handle"""
        if not path or handle is None:
            return

        try:
            async with self._connection():
                removed = self._watches.unregister(path, handle)
                remaining = len(self._watches.handles(path))
        except NoConnectionError as e:
            raise e.annotate("unregister_event", path)

        logger.debug(
            "Unregistered watcher",
            client=self.name,
            path=path,
            handle=id(handle),
            removed=removed,
            remaining=remaining
        )

    def is_watched(self, path: str) -> bool:
        return path in self._watches

    # ------------------------------------------------------------------
    # Node Operations
    # ------------------------------------------------------------------

    async def create(self, path: str):
        """
        Create path and every missing ancestor as persistent nodes.

        Existing segments are skipped, so calling it twice is harmless.
        """
        logger.debug("Creating path", client=self.name, path=path)

        sub_path = ""
        for segment in filter(None, path.split("/")):
            sub_path = f"{sub_path}/{segment}"
            try:
                async with self._connection() as conn:
                    await conn.create(sub_path, b"", CreateFlags.NONE)
            except NodeExistsError:
                logger.debug("Path segment exists", client=self.name, path=sub_path)
            except RegistryException as e:
                logger.error("Failed to create path segment", client=self.name, path=sub_path, error=e.message)
                raise e.annotate("create", path, sub_path=sub_path)

    async def delete(self, path: str):
        """
        Delete exactly path, whatever its version.

        Nodes with children cannot be deleted; remove leaves first.
        """
        try:
            async with self._connection() as conn:
                await conn.delete(path)
        except RegistryException as e:
            raise e.annotate("delete", path)

        logger.debug("Deleted path", client=self.name, path=path)

    async def register_ephemeral(self, base_path: str, node_name: str) -> str:
        """Create base_path/node_name as an ephemeral node. Existing nodes are an error."""
        node_path = _join(base_path, node_name)
        try:
            async with self._connection() as conn:
                created = await conn.create(node_path, b"", CreateFlags.EPHEMERAL)
        except RegistryException as e:
            logger.error("Failed to create ephemeral node", client=self.name, path=node_path, error=e.message)
            raise e.annotate("register_ephemeral", base_path, node=node_path)

        logger.debug("Created ephemeral node", client=self.name, path=created)
        return created

    async def register_ephemeral_sequential(self, base_path: str, content: bytes) -> str:
        """Create an ephemeral sequential node under base_path carrying content"""
        prefix = _join(base_path, "")
        try:
            async with self._connection() as conn:
                created = await conn.create(prefix, content, CreateFlags.EPHEMERAL | CreateFlags.SEQUENCE)
        except RegistryException as e:
            logger.error(
                "Failed to create ephemeral sequential node",
                client=self.name,
                path=base_path,
                size=len(content),
                error=e.message
            )
            raise e.annotate("register_ephemeral_sequential", base_path)

        logger.debug("Created ephemeral sequential node", client=self.name, path=created)
        return created

    async def _children(self, operation: str, path: str, watch: bool):
        try:
            async with self._connection() as conn:
                children, stat, future = await conn.get_children(path, watch)
        except NoSuchPathError as e:
            raise e.annotate(operation, path)
        except RegistryException as e:
            logger.error("Failed to list children", client=self.name, path=path, error=e.message)
            raise e.annotate(operation, path)

        if stat is None:
            raise NoSuchPathError(path).annotate(operation, path)
        if not children:
            raise NoChildrenError(path).annotate(operation, path)
        return children, future

    async def list_children(self, path: str) -> List[str]:
        """
        Names of path's immediate children.

        Raises:
            NoSuchPathError: path does not exist
            NoChildrenError: path exists but has no children
        """
        children, _ = await self._children("list_children", path, watch=False)
        return children

    async def list_children_watch(self, path: str) -> Tuple[List[str], asyncio.Future]:
        """Like list_children, also arming a one-shot child watch on path"""
        return await self._children("list_children_watch", path, watch=True)

    async def exists_watch(self, path: str) -> asyncio.Future:
        """
        Arm a one-shot watch on an existing path.

        Raises:
            NoSuchPathError: path does not exist
        """
        try:
            async with self._connection() as conn:
                stat, future = await conn.exists(path, watch=True)
        except RegistryException as e:
            logger.error("Failed to watch path", client=self.name, path=path, error=e.message)
            raise e.annotate("exists_watch", path)

        if stat is None:
            logger.warning("Watched path does not exist", client=self.name, path=path)
            raise NoSuchPathError(path).annotate("exists_watch", path)
        return future


# Singleton
_memory_ensemble: Optional[InMemoryEnsemble] = None


def get_memory_ensemble() -> InMemoryEnsemble:
    """Get or create the process-wide in-memory ensemble"""
    global _memory_ensemble
    if _memory_ensemble is None:
        _memory_ensemble = InMemoryEnsemble()
    return _memory_ensemble


async def create_registry_client(settings: Optional[Settings] = None) -> RegistryClient:
    """
    Build a client from configuration.

    REGISTRY_BACKEND=memory connects to the process-wide in-memory ensemble,
    anything else to ZooKeeper at ZK_HOSTS.
    """
    settings = settings or get_settings()

    if settings.REGISTRY_BACKEND == "memory":
        connector = get_memory_ensemble().connect
    else:
        connector = kazoo_connector(settings.ZK_FATAL_ON_SESSION_LOSS)

    return await RegistryClient.connect(
        settings.REGISTRY_NAME,
        settings.hosts_list,
        settings.ZK_SESSION_TIMEOUT,
        connector=connector,
        delivery=delivery_for(settings.REGISTRY_DELIVERY_POLICY)
    )
