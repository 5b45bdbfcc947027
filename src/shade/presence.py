"""
Shade - Presence registry.

Tracks which identities currently hold a live connection to the relay.
At most one connection handle is kept per identity; a newer connection for
the same identity replaces the older one (last connection wins).
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """
    Identity -> connection handle map.

    All mutations run under a single asyncio.Lock. Lookups read the dict
    directly; the event loop is single threaded, so a reader sees either
    the state before or after a mutation, never a partial one.
    """

    def __init__(self):
        self._entries: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def add_connection(self, identity: str, handle: Any) -> Optional[Any]:
        """
        Register a live connection for an identity.

        Args:
            identity: User id announced by the connection
            handle: Opaque connection handle

        Returns:
            The handle that was replaced, or None
        """
        async with self._lock:
            previous = self._entries.get(identity)
            self._entries[identity] = handle

        if previous is not None and previous is not handle:
            logger.info(f"Connection for {identity} replaced by a newer one")
            return previous

        logger.debug(f"{identity} is online ({len(self._entries)} online)")
        return None

    async def remove_connection(self, handle: Any) -> Optional[str]:
        """
        Remove the entry bound to this handle.

        Idempotent. A handle that was already replaced removes nothing, so a
        late disconnect of an old connection never evicts the new one.

        Returns:
            The identity that went offline, or None
        """
        async with self._lock:
            for identity, current in self._entries.items():
                if current is handle:
                    del self._entries[identity]
                    break
            else:
                return None

        logger.debug(f"{identity} is offline ({len(self._entries)} online)")
        return identity

    def lookup(self, identity: str) -> Optional[Any]:
        """Return the live handle for an identity, or None when offline."""
        return self._entries.get(identity)

    def is_online(self, identity: str) -> bool:
        return identity in self._entries

    def snapshot(self) -> List[Dict[str, str]]:
        """Online identities in the shape the getOnlineUsers event carries."""
        return [{"userId": identity} for identity in self._entries]

    def handles(self) -> List[Any]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)
