"""
Coordination store boundary

What the registry client needs from a hierarchical, watch-capable store.
Adapters translate their native errors into zkregistry.exceptions types.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Flag
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from zkregistry.service_discovery.session import SessionEvent


class CreateFlags(Flag):
    NONE = 0
    EPHEMERAL = 1
    SEQUENCE = 2


@dataclass(frozen=True)
class NodeStat:
    """The subset of node metadata the registry looks at"""
    version: int = 0
    num_children: int = 0
    ephemeral_owner: int = 0


class CoordinationStore(ABC):
    """
    One live session to the coordination store.

    Watch futures returned by get_children/exists resolve once, with the
    SessionEvent describing the change. Fired watches are also published on
    `events` so the client's background task can fan them out.
    """

    events: "asyncio.Queue[SessionEvent]"

    @abstractmethod
    async def create(self, path: str, data: bytes = b"", flags: CreateFlags = CreateFlags.NONE) -> str:
        """Create a node with open ACL. Returns the created path."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete path regardless of version."""

    @abstractmethod
    async def get_children(
        self,
        path: str,
        watch: bool = False
    ) -> Tuple[List[str], Optional[NodeStat], Optional[asyncio.Future]]:
        """List immediate children, optionally arming a one-shot child watch."""

    @abstractmethod
    async def exists(self, path: str, watch: bool = False) -> Tuple[Optional[NodeStat], Optional[asyncio.Future]]:
        """Stat of path or None, optionally arming a one-shot watch."""

    @abstractmethod
    async def close(self) -> None:
        """
        End the session.

        Must be called at most once; a second call raises StoreFailureError.
        """


Connector = Callable[[Sequence[str], int], Awaitable[CoordinationStore]]
