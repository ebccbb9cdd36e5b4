"""
Registry client node operation and watch tests against the in-memory store
"""
import asyncio
import pytest
from zkregistry.exceptions import (
    ConnectFailedError,
    NoChildrenError,
    NodeExistsError,
    NodeNotEmptyError,
    NoSuchPathError,
    StoreFailureError,
)
from zkregistry.service_discovery.client import RegistryClient
from zkregistry.service_discovery.session import EventType, SessionEvent, SessionState
from zkregistry.service_discovery.store import InMemoryEnsemble


async def connect_client(ensemble=None, name="test-client", **kwargs):
    """Connect a client and hand back the store session it got"""
    ensemble = ensemble or InMemoryEnsemble()
    stores = []

    async def connector(endpoints, timeout):
        store = await ensemble.connect(endpoints, timeout)
        stores.append(store)
        return store

    client = await RegistryClient.connect(name, ["memory:2181"], 5, connector=connector, **kwargs)
    return client, stores[0]


class RecordingQueue(asyncio.Queue):
    """Queue that records the order in which notifications arrive"""

    def __init__(self, label, log):
        super().__init__()
        self.label = label
        self.log = log

    def put_nowait(self, item):
        self.log.append(self.label)
        super().put_nowait(item)


@pytest.mark.asyncio
async def test_connect_failure_is_reported():
    """Test a refused handshake raises ConnectFailedError"""
    with pytest.raises(ConnectFailedError):
        await RegistryClient.connect(
            "test-client", ["memory:2181"], 5,
            connector=InMemoryEnsemble(available=False).connect
        )


@pytest.mark.asyncio
async def test_connect_wraps_unexpected_errors():
    """Test other connector errors are wrapped in ConnectFailedError"""
    async def broken(endpoints, timeout):
        raise OSError("connection refused")

    with pytest.raises(ConnectFailedError) as exc_info:
        await RegistryClient.connect("test-client", ["zk:2181"], 5, connector=broken)

    assert isinstance(exc_info.value.__cause__, OSError)
    assert exc_info.value.endpoints == ["zk:2181"]


@pytest.mark.asyncio
async def test_create_is_idempotent():
    """Second create sees NodeExists on every segment but does not fail"""
    ensemble = InMemoryEnsemble()
    client, _ = await connect_client(ensemble)

    await client.create("/dubbo/com.example.Echo/providers")
    await client.create("/dubbo/com.example.Echo/providers")

    for path in ("/dubbo", "/dubbo/com.example.Echo", "/dubbo/com.example.Echo/providers"):
        assert ensemble.node_exists(path)
    assert await client.list_children("/dubbo") == ["com.example.Echo"]

    await client.close()


@pytest.mark.asyncio
async def test_create_reports_failing_segment():
    """Test create reports the segment that failed"""
    ensemble = InMemoryEnsemble()
    client, _ = await connect_client(ensemble)
    await client.register_ephemeral("/", "leaf")

    with pytest.raises(StoreFailureError) as exc_info:
        await client.create("/leaf/child")

    details = exc_info.value.details
    assert details["operation"] == "create"
    assert details["path"] == "/leaf/child"
    assert details["sub_path"] == "/leaf/child"

    await client.close()


@pytest.mark.asyncio
async def test_delete_is_leaf_first():
    """Test a parent can only be deleted after its children"""
    client, _ = await connect_client()
    await client.create("/parent/child")

    with pytest.raises(NodeNotEmptyError) as exc_info:
        await client.delete("/parent")
    assert exc_info.value.details["operation"] == "delete"

    await client.delete("/parent/child")
    await client.delete("/parent")

    with pytest.raises(NoSuchPathError):
        await client.list_children("/parent")

    await client.close()


@pytest.mark.asyncio
async def test_register_ephemeral_surfaces_existing_node():
    """Unlike create, an existing node is an error here"""
    client, _ = await connect_client()
    await client.create("/services")

    path = await client.register_ephemeral("/services/", "provider-1")
    assert path == "/services/provider-1"

    with pytest.raises(NodeExistsError) as exc_info:
        await client.register_ephemeral("/services", "provider-1")
    assert exc_info.value.details["operation"] == "register_ephemeral"

    await client.close()


@pytest.mark.asyncio
async def test_ephemeral_sequential_paths_are_unique_under_concurrency():
    """Test concurrent sequential registrations get distinct paths"""
    client, _ = await connect_client()
    await client.create("/base")

    paths = await asyncio.gather(*[
        client.register_ephemeral_sequential("/base", b"payload")
        for _ in range(25)
    ])

    assert len(set(paths)) == 25
    assert all(path.startswith("/base/") for path in paths)
    assert len(await client.list_children("/base")) == 25

    await client.close()


@pytest.mark.asyncio
async def test_ephemeral_nodes_vanish_with_their_session():
    """Test another client stops seeing ephemerals of a closed session"""
    ensemble = InMemoryEnsemble()
    provider, _ = await connect_client(ensemble, name="provider")
    consumer, _ = await connect_client(ensemble, name="consumer")
    await consumer.create("/services")
    await provider.register_ephemeral("/services", "provider-1")

    assert await consumer.list_children("/services") == ["provider-1"]

    await provider.close()

    with pytest.raises(NoChildrenError):
        await consumer.list_children("/services")

    await consumer.close()


@pytest.mark.asyncio
async def test_list_children_distinguishes_missing_from_empty():
    """Test missing and empty paths raise different errors"""
    client, _ = await connect_client()
    await client.create("/empty")

    with pytest.raises(NoSuchPathError):
        await client.list_children("/missing")

    with pytest.raises(NoChildrenError) as exc_info:
        await client.list_children("/empty")
    assert not isinstance(exc_info.value, NoSuchPathError)
    assert exc_info.value.error_code == "NO_CHILDREN"

    await client.close()


@pytest.mark.asyncio
async def test_list_children_watch_fires_on_new_child():
    """Test the child watch fires when a child is added"""
    client, _ = await connect_client()
    await client.create("/services/first")

    children, watch = await client.list_children_watch("/services")
    assert children == ["first"]
    assert not watch.done()

    await client.register_ephemeral("/services", "second")

    event = await asyncio.wait_for(watch, 1)
    assert event.type is EventType.NODE_CHILDREN_CHANGED
    assert event.path == "/services"

    await client.close()


@pytest.mark.asyncio
async def test_exists_watch_requires_existing_path():
    """Test exists_watch rejects missing paths and fires on change"""
    ensemble = InMemoryEnsemble()
    client, _ = await connect_client(ensemble)

    with pytest.raises(NoSuchPathError) as exc_info:
        await client.exists_watch("/config")
    assert exc_info.value.details["operation"] == "exists_watch"

    await client.create("/config")
    watch = await client.exists_watch("/config")
    ensemble.set_data("/config", b"v2")

    event = await asyncio.wait_for(watch, 1)
    assert event.type is EventType.NODE_DATA_CHANGED

    await client.close()


@pytest.mark.asyncio
async def test_store_watch_is_fanned_out_to_registered_handles():
    """A fired one-shot watch also reaches registry watchers by prefix"""
    ensemble = InMemoryEnsemble()
    client, _ = await connect_client(ensemble)
    await client.create("/config")
    changes = asyncio.Queue()
    await client.register_event("/config", changes)

    await client.exists_watch("/config")
    ensemble.set_data("/config", b"v2")

    event = await asyncio.wait_for(changes.get(), 1)
    assert event.type is EventType.NODE_DATA_CHANGED
    assert event.path == "/config"

    await client.close()


@pytest.mark.asyncio
async def test_watch_fan_out_by_prefix_in_registration_order():
    """Test prefix watchers are notified in registration order"""
    client, store = await connect_client()
    log = []
    first, second = RecordingQueue("first", log), RecordingQueue("second", log)
    nested = RecordingQueue("nested", log)
    await client.register_event("/a", first)
    await client.register_event("/a", second)
    await client.register_event("/a/b", nested)

    store.inject(SessionEvent(EventType.NODE_DATA_CHANGED, SessionState.HAS_SESSION, "/a/b/c"))

    for queue in (first, second, nested):
        event = await asyncio.wait_for(queue.get(), 1)
        assert event.path == "/a/b/c"
    assert [label for label in log if label != "nested"] == ["first", "second"]

    await client.close()


@pytest.mark.asyncio
async def test_unregistered_handle_is_not_notified():
    """Test an unregistered handle receives nothing"""
    client, store = await connect_client()
    handle, probe = asyncio.Queue(), asyncio.Queue()
    await client.register_event("/a", handle)
    await client.register_event("/", probe)

    await client.unregister_event("/a", handle)
    assert not client.is_watched("/a")

    store.inject(SessionEvent(EventType.NODE_CHILDREN_CHANGED, SessionState.HAS_SESSION, "/a"))

    await asyncio.wait_for(probe.get(), 1)
    assert handle.empty()

    await client.close()


@pytest.mark.asyncio
async def test_register_event_noop_cases():
    """Test empty paths, missing handles and unknown paths are ignored"""
    client, _ = await connect_client()

    await client.register_event("", asyncio.Queue())
    await client.register_event("/a", None)
    await client.unregister_event("/unknown", asyncio.Queue())

    assert not client.is_watched("")
    assert not client.is_watched("/a")

    await client.close()


@pytest.mark.asyncio
async def test_reconnection_notifies_exact_path_watchers():
    """Test a reconnect after expiry notifies watchers at the event path"""
    client, store = await connect_client()
    handle = asyncio.Queue()
    await client.register_event("/services", handle)

    # stores publish session events without a path; this one carries one
    store.inject(SessionEvent(EventType.SESSION, SessionState.EXPIRED, "/services"))
    store.inject(SessionEvent(EventType.SESSION, SessionState.HAS_SESSION, "/services"))

    event = await asyncio.wait_for(handle.get(), 1)
    assert event.state is SessionState.HAS_SESSION
    assert client.state is SessionState.HAS_SESSION

    await client.close()


@pytest.mark.asyncio
async def test_store_reconnect_does_not_notify_path_watchers():
    """Test a reconnect reported by the store reaches no registered handle"""
    client, store = await connect_client()
    handle = asyncio.Queue()
    await client.register_event("/services", handle)

    store.set_state(SessionState.EXPIRED)
    store.set_state(SessionState.HAS_SESSION)
    store.inject(SessionEvent(EventType.NODE_CHILDREN_CHANGED, SessionState.HAS_SESSION, "/services"))

    event = await asyncio.wait_for(handle.get(), 1)
    assert event.type is EventType.NODE_CHILDREN_CHANGED
    assert handle.empty()
    assert client.state is SessionState.HAS_SESSION

    await client.close()


@pytest.mark.asyncio
async def test_services_end_to_end():
    """Test register, list and delete under /services"""
    client, _ = await connect_client()

    await client.create("/services")
    path = await client.register_ephemeral_sequential("/services", b"v1")
    assert path.startswith("/services/")

    children = await client.list_children("/services")
    assert len(children) == 1
    assert path.endswith(children[0])
    assert children[0].isdigit()

    await client.delete(path)

    with pytest.raises(NoChildrenError):
        await client.list_children("/services")

    await client.close()


@pytest.mark.asyncio
async def test_context_manager_closes_client():
    """Test leaving the context closes the client"""
    ensemble = InMemoryEnsemble()
    client, store = await connect_client(ensemble)

    async with client:
        await client.create("/a")

    assert store.close_count == 1
    assert not client.connection_valid()
