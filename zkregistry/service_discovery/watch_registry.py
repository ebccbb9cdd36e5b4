"""
Watch Registry

Maps a watched path to the notification queues interested in changes at or
below it. The registry itself is not locked; the owning client guards it
with the same lock that guards the connection handle.
"""

import asyncio
from typing import Dict, Iterator, List, Optional, Tuple
from zkregistry.logging import get_logger

from zkregistry.exceptions import ConfigurationException

logger = get_logger("watch-registry")


class WatchRegistry:
    """
    Path -> ordered list of notification handles.

    Handles are compared by identity. Registering the same handle twice is
    allowed and yields two notifications per event.
    """

    def __init__(self):
        self._entries: Dict[str, List[asyncio.Queue]] = {}

    def register(self, path: str, handle: Optional[asyncio.Queue]) -> bool:
        """Append handle to path's list. Returns False for the no-op cases."""
        if not path or handle is None:
            return False

        self._entries.setdefault(path, []).append(handle)
        return True

    def unregister(self, path: str, handle: Optional[asyncio.Queue]) -> bool:
        """Remove the first identical handle. Returns True if one was removed."""
        handles = self._entries.get(path)
        if handles is None:
            return False

        for index, candidate in enumerate(handles):
            if candidate is handle:
                del handles[index]
                break
        else:
            return False

        if not handles:
            del self._entries[path]
        return True

    def handles(self, path: str) -> List[asyncio.Queue]:
        """Snapshot of the handles registered exactly at path"""
        return list(self._entries.get(path, ()))

    def matching(self, event_path: str) -> Iterator[Tuple[str, List[asyncio.Queue]]]:
        """
        Entries whose registered path is a string prefix of event_path.

        Plain prefix comparison, so "/a" also matches "/ab".
        """
        for path, handles in list(self._entries.items()):
            if event_path.startswith(path):
                yield path, list(handles)

    def paths(self) -> List[str]:
        return list(self._entries)

    def clear(self):
        self._entries.clear()

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# ============================================================================
# Delivery strategies
# ============================================================================

class BlockingDelivery:
    """
    Wait until the handle accepts the notification.

    The wait is abandoned when the client is cancelled, so a receiver that
    never drains its queue cannot keep close() from completing.
    """

    name = "blocking"

    async def deliver(self, handle: asyncio.Queue, notification, cancelled: asyncio.Event) -> bool:
        if cancelled.is_set():
            return False

        try:
            handle.put_nowait(notification)
            return True
        except asyncio.QueueFull:
            pass

        put = asyncio.ensure_future(handle.put(notification))
        stop = asyncio.ensure_future(cancelled.wait())
        try:
            await asyncio.wait({put, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not put.done():
                put.cancel()

        delivered = put.done() and not put.cancelled()
        if not delivered:
            logger.warning("Notification abandoned on shutdown", queue_size=handle.qsize())
        return delivered


class DropIfFullDelivery:
    """Never wait: a full handle loses the notification."""

    name = "drop"

    async def deliver(self, handle: asyncio.Queue, notification, cancelled: asyncio.Event) -> bool:
        try:
            handle.put_nowait(notification)
            return True
        except asyncio.QueueFull:
            logger.warning(
                "Notification dropped, watcher queue full",
                queue_size=handle.qsize()
            )
            return False


def delivery_for(policy: str):
    """Build a delivery strategy from its config name"""
    if policy == BlockingDelivery.name:
        return BlockingDelivery()
    if policy == DropIfFullDelivery.name:
        return DropIfFullDelivery()
    raise ConfigurationException(f"unknown delivery policy {policy!r}", "REGISTRY_DELIVERY_POLICY")
