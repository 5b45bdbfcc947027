"""
Shade - Message relay.

Persists every outgoing message, echoes the canonical record back to the
sender and pushes it to the recipient when the recipient is online.

Delivery is store-first: a message is written before any push is attempted
and a failed push never removes it, so an offline or flaky recipient picks
it up from history on the next connect.
"""

import asyncio
import logging
import weakref
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import PersistenceFailure
from .message import Message, validate_outgoing
from .message_store import MessageStore
from .presence import PresenceRegistry
from .protocol import Event, make_event
from .utils import pair_key

logger = logging.getLogger(__name__)

SendEvent = Callable[[Any, Dict[str, Any]], Awaitable[None]]


class MessageRelay:
    """Routes messages between connections and the lifecycle store."""

    def __init__(self, store: MessageStore, presence: PresenceRegistry, send_event: SendEvent):
        """
        Args:
            store: Message lifecycle store
            presence: Presence registry used to find live recipients
            send_event: Coroutine that writes one event frame to a handle
        """
        self.store = store
        self.presence = presence
        self.send_event = send_event
        # Entries vanish once no task holds or waits on the lock
        self._pair_locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _pair_lock(self, identity_a: str, identity_b: str) -> asyncio.Lock:
        key = pair_key(identity_a, identity_b)
        lock = self._pair_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._pair_locks[key] = lock
        return lock

    async def _push(self, identity: str, event: Dict[str, Any]) -> bool:
        """Push an event to an identity's live connection. Failures are logged only."""
        handle = self.presence.lookup(identity)
        if handle is None:
            return False

        try:
            await self.send_event(handle, event)
            return True
        except (ConnectionError, OSError) as e:
            logger.warning(f"Push to {identity} failed: {e}")
            return False

    async def relay_message(self, data: Dict[str, Any]) -> Tuple[Message, bool]:
        """
        Persist and deliver one outgoing message.

        Args:
            data: sendMessage body (senderId, recipientId, payload, type,
                optional time and clientId)

        Returns:
            (canonical record, delivered) where delivered says whether the
            recipient got a live push

        Raises:
            ProtocolError: If the body is invalid
            PersistenceFailure: If the store is unavailable. Nothing is pushed.
        """
        validate_outgoing(data)
        sender_id = data["senderId"]
        recipient_id = data["recipientId"]

        # Serializes persistence per pair so ids follow relay-received order
        async with self._pair_lock(sender_id, recipient_id):
            message = await self.store.create_async(
                sender_id,
                recipient_id,
                data["payload"],
                data.get("type", "text"),
                data.get("time"),
            )

        message.client_id = data.get("clientId")

        await self._push(sender_id, make_event(Event.MESSAGE_STORED, message=message.to_dict()))

        delivered = False
        if recipient_id != sender_id:
            # The recipient never sees the sender's provisional id
            record = message.to_dict()
            record.pop("clientId", None)
            delivered = await self._push(recipient_id, make_event(Event.MESSAGE, message=record))

        if delivered:
            logger.debug(f"Message {message.message_id} delivered live to {recipient_id}")
        else:
            logger.debug(f"Message {message.message_id} stored for offline {recipient_id}")

        return message, delivered

    async def fetch_history(self, identity: str) -> List[Message]:
        """Messages to fetch on connect: everything live the identity sent or received."""
        return await self.store.get_messages_for_async(identity)

    async def toggle_save(self, identity: str, message_id: int) -> Optional[Message]:
        """
        Flip the saved flag of a message the identity takes part in and
        tell both parties.

        Returns:
            Updated record, or None if it no longer exists (or belongs to
            another conversation)
        """
        current = await self.store.get_async(message_id)
        if current is None or identity not in (current.sender_id, current.recipient_id):
            return None

        message = await self.store.toggle_save_async(message_id)
        if message is None:
            return None

        event = make_event(Event.MESSAGE_SAVED, message=message.to_dict())
        for party in {message.sender_id, message.recipient_id}:
            await self._push(party, event)
        return message

    async def delete_messages(self, identity: str, message_ids: Iterable[int]) -> List[int]:
        """
        Permanently delete messages the identity takes part in.

        Saved or not, the messages go. Ids that are already gone or belong
        to other conversations are ignored, so repeating a delete is a no-op.

        Returns:
            Ids that were deleted
        """
        messages = await self.store.get_many_async(message_ids)
        owned = [m for m in messages if identity in (m.sender_id, m.recipient_id)]
        if not owned:
            return []

        ids = [m.message_id for m in owned]
        await self.store.bulk_delete_async(ids)

        parties = set()
        for message in owned:
            parties.update((message.sender_id, message.recipient_id))

        event = make_event(Event.MESSAGES_DELETED, ids=ids)
        for party in parties:
            await self._push(party, event)
        return ids

    async def nuke_chat(self, identity_a: str, identity_b: str) -> int:
        """
        Purge every unsaved message between two identities.

        Both live connections are told with chatNuked, each naming the other
        party as the target so clients can prune their local lists.
        """
        async with self._pair_lock(identity_a, identity_b):
            removed = await self.store.nuke_async(identity_a, identity_b)

        await self._push(identity_a, make_event(Event.CHAT_NUKED, target=identity_b))
        if identity_b != identity_a:
            await self._push(identity_b, make_event(Event.CHAT_NUKED, target=identity_a))
        return removed

    async def sweep_expired(self) -> int:
        """Run one expiry sweep. Store failures are logged and retried next round."""
        try:
            return await self.store.cleanup_expired_async()
        except PersistenceFailure as e:
            logger.error(f"Expiry sweep failed: {e}")
            return 0
