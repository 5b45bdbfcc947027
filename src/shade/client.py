"""
Shade - Relay client using asyncio.

Front-ends talk to the relay through this client. It owns everything that
must stay on the device:

- the identity private key and the per-contact shared key cache
- optimistic send records, reconciled with the relay's canonical record by
  the provisional clientId
- a decrypted-message cache keyed by stable message id
- the local side of the call state machine

Requests are correlated with responses by request_id, so events pushed by
the relay can arrive at any time between them.
"""

import asyncio
import contextlib
import inspect
import json
import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .call import CallEvent, CallState, CallStateMachine
from .constants import (
    CALL_FAILED_OFFLINE,
    CONNECTION_TIMEOUT,
    DEFAULT_SERVER_PORT,
    LOCALHOST,
    MESSAGE_TYPE_TEXT,
    REQUEST_TIMEOUT,
    STREAM_READ_CHUNK,
)
from .crypto import (
    SharedKeyCache,
    decrypt_payload,
    encrypt_payload,
    generate_identity_keys,
    open_private_key,
    seal_private_key,
)
from .errors import CryptoError, DecryptionError, KeyDerivationError, ProtocolError
from .keystore import KeyStore, StoredIdentity
from .message import Message
from .protocol import (
    MESSAGE_TYPE_EVENT,
    Command,
    Event,
    decode_line,
    encode_line,
    make_request,
)

logger = logging.getLogger(__name__)

MessageKey = Union[int, str]


class ShadeClient:
    """Async client for the Shade relay."""

    def __init__(
        self,
        host: str = LOCALHOST,
        port: int = DEFAULT_SERVER_PORT,
        keystore: Optional[KeyStore] = None,
    ):
        """
        Initialize client.

        Args:
            host: Relay host
            port: Relay port
            keystore: Where the identity keys live on this device
        """
        self.host = host
        self.port = port
        self.keystore = keystore
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.connected = False

        # Receive task
        self.receive_task: Optional[asyncio.Task] = None
        self.running = False
        self.buffer = b""
        self.write_lock = asyncio.Lock()
        self.pending: Dict[str, asyncio.Future] = {}

        # Event callbacks
        self.event_callbacks: Dict[str, List[Callable]] = {}

        # Session state
        self.account: Optional[Dict[str, Any]] = None
        self.private_jwk: Optional[Dict[str, Any]] = None
        self.public_keys: Dict[str, Any] = {}
        self.key_cache = SharedKeyCache()
        self.messages: List[Message] = []
        self.decrypted: Dict[MessageKey, str] = {}
        self.online_users: List[str] = []

        # Call state
        self.call = CallStateMachine()
        self.call_peer: Optional[str] = None
        self.remote_signal: Optional[Dict[str, Any]] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.account["id"] if self.account else None

    async def connect(self) -> bool:
        """Connect to the relay."""
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=CONNECTION_TIMEOUT
            )
            self.connected = True

            # Start receive task
            self.running = True
            self.receive_task = asyncio.create_task(self._receive_loop())

            logger.info(f"Connected to relay at {self.host}:{self.port}")
            return True

        except asyncio.TimeoutError:
            logger.error("Connection timeout")
            self.connected = False
            return False
        except OSError as e:
            logger.error(f"Connection failed: {e}")
            self.connected = False
            return False

    async def disconnect(self) -> None:
        """Disconnect from the relay."""
        self.running = False
        self.connected = False

        if self.receive_task and not self.receive_task.done():
            self.receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.receive_task

        if self.writer:
            try:
                self.writer.close()
                await self.writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing writer: {e}")
            self.writer = None

        self.reader = None
        self._fail_pending("Disconnected")

    def _fail_pending(self, reason: str) -> None:
        for future in self.pending.values():
            if not future.done():
                future.set_result({"success": False, "error": reason})
        self.pending.clear()

    async def _receive_loop(self) -> None:
        """Background task for receiving responses and events."""
        logger.debug("Receive loop started")

        try:
            while self.running and self.connected:
                data = await self.reader.read(STREAM_READ_CHUNK)
                if not data:
                    logger.warning("Relay closed connection")
                    break

                self.buffer += data

                # Process complete messages (newline-delimited JSON)
                while b"\n" in self.buffer:
                    line, self.buffer = self.buffer.split(b"\n", 1)
                    if not line.strip():
                        continue
                    try:
                        message = decode_line(line)
                    except ProtocolError as e:
                        logger.warning(f"Invalid frame from relay: {e}")
                        continue
                    await self._handle_message(message)

        except asyncio.CancelledError:
            pass
        except (ConnectionError, OSError) as e:
            logger.error(f"Error in receive loop: {e}")
        finally:
            self.connected = False
            self._fail_pending("Connection lost")
            logger.debug("Receive loop ended")

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        if message.get("type") == MESSAGE_TYPE_EVENT:
            event_data = message.get("data", {})
            event_name = event_data.get("event")
            try:
                self._apply_event(event_name, event_data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Malformed {event_name} event: {e}")
                return
            await self._dispatch(event_name, event_data)
            return

        future = self.pending.pop(message.get("request_id"), None)
        if future is not None and not future.done():
            future.set_result(message)
        elif message.get("success") is False:
            logger.warning(f"Relay error: {message.get('error')}")

    async def _dispatch(self, event_name: Optional[str], event_data: Dict[str, Any]) -> None:
        for callback in self.event_callbacks.get(event_name, []):
            try:
                # Handle both sync and async callbacks
                if inspect.iscoroutinefunction(callback):
                    await callback(event_data)
                else:
                    callback(event_data)
            except Exception as e:
                logger.error(f"Error in event callback: {e}", exc_info=True)

    async def _send_request(
        self,
        command: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> Dict[str, Any]:
        """
        Send request to the relay and wait for its response.

        Returns:
            Response from the relay, or a failure dict when not connected,
            timed out or the frame could not be sent
        """
        if not self.connected:
            return {"success": False, "error": "Not connected to relay"}

        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self.pending[request_id] = future

        try:
            data = encode_line(make_request(command, params or {}, request_id))
            async with self.write_lock:
                self.writer.write(data)
                await self.writer.drain()
        except ProtocolError as e:
            self.pending.pop(request_id, None)
            return {"success": False, "error": e.message, "code": e.code.value}
        except (ConnectionError, OSError) as e:
            self.pending.pop(request_id, None)
            logger.error(f"Error sending request: {e}")
            return {"success": False, "error": str(e)}

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            self.pending.pop(request_id, None)
            logger.warning(f"Request timeout for command: {command}")
            return {"success": False, "error": "Request timeout"}

    def on(self, event_name: str, callback: Callable) -> None:
        """Register callback for an event."""
        self.event_callbacks.setdefault(event_name, []).append(callback)

    def off(self, event_name: str, callback: Callable) -> None:
        """Unregister callback for an event."""
        if event_name in self.event_callbacks:
            with contextlib.suppress(ValueError):
                self.event_callbacks[event_name].remove(callback)

    async def ping(self) -> bool:
        response = await self._send_request(Command.PING)
        return response.get("success", False)

    # Accounts

    async def register(self, username: str, password: str, escrow: bool = False) -> Dict[str, Any]:
        """
        Create an account with a fresh identity key pair.

        Args:
            username: Desired username
            password: Account password
            escrow: Also store the private key on the relay, sealed under
                the password. Recoverable from any device, but the sealed
                blob can be brute-forced offline if the relay leaks it.
        """
        public_jwk, private_jwk = generate_identity_keys()
        params: Dict[str, Any] = {
            "username": username,
            "password": password,
            "publicKey": public_jwk,
        }
        if escrow:
            params["privateKey"] = seal_private_key(private_jwk, password)

        response = await self._send_request(Command.REGISTER, params)
        if response.get("success"):
            account = response["account"]
            self.private_jwk = private_jwk
            if self.keystore:
                await self.keystore.save_async(
                    StoredIdentity(account["id"], username, public_jwk, private_jwk)
                )
        return response

    async def login(self, username: str, password: str) -> Dict[str, Any]:
        """
        Log in and load the private key.

        The key comes from the local key store when it belongs to this
        account, otherwise from the escrowed copy. Without either, messages
        stay undecryptable until a key is imported.
        """
        credentials = {"username": username, "password": password}
        response = await self._send_request(Command.LOGIN, credentials)
        if not response.get("success"):
            return response

        self.account = response["account"]
        self.private_jwk = None
        self.key_cache = SharedKeyCache()
        self.public_keys[self.user_id] = self.account.get("publicKey")

        stored = None
        if self.keystore:
            try:
                stored = await self.keystore.load_async(password)
            except CryptoError as e:
                logger.error(f"Cannot read local key store: {e}")
        if stored is not None and stored.user_id == self.user_id:
            self.private_jwk = stored.private_jwk
        elif self.account.get("privateKey"):
            try:
                sealed = json.loads(self.account["privateKey"])
                self.private_jwk = open_private_key(sealed, password)
            except (CryptoError, ValueError) as e:
                logger.error(f"Cannot open escrowed key: {e}")
            else:
                if self.keystore:
                    public_jwk = json.loads(self.account["publicKey"])
                    await self.keystore.save_async(
                        StoredIdentity(self.user_id, username, public_jwk, self.private_jwk)
                    )
        else:
            logger.warning(f"No private key available for {username} on this device")

        return response

    async def announce(self) -> Dict[str, Any]:
        """Mark this connection as the live one for the account (addNewUser)."""
        response = await self._send_request(Command.CONNECT, {"userId": self.user_id})
        if response.get("success"):
            self.online_users = [u["userId"] for u in response.get("users", [])]
        return response

    async def fetch_users(self) -> List[Dict[str, Any]]:
        response = await self._send_request(Command.GET_USERS)
        users = response.get("users", [])
        self._remember_keys(users)
        return users

    async def fetch_contacts(self) -> List[Dict[str, Any]]:
        response = await self._send_request(Command.GET_CONTACTS)
        contacts = response.get("contacts", [])
        self._remember_keys(contacts)
        return contacts

    async def add_contact(self, friend_code: str) -> Dict[str, Any]:
        response = await self._send_request(Command.ADD_CONTACT, {"friendCode": friend_code})
        if response.get("success"):
            self._remember_keys([response["contact"]])
        return response

    def _remember_keys(self, profiles: Iterable[Dict[str, Any]]) -> None:
        for profile in profiles:
            if profile.get("publicKey"):
                self.public_keys[profile["id"]] = profile["publicKey"]

    # Keys and decryption

    def shared_key_for(self, counterpart: str) -> Optional[bytes]:
        """Key for a contact, or None while key material is missing."""
        return self.key_cache.get_or_derive(
            self.user_id, counterpart, self.private_jwk, self.public_keys.get(counterpart)
        )

    def _cache_key(self, message: Message) -> MessageKey:
        return message.message_id if message.message_id is not None else message.client_id

    def decrypt(self, message: Message) -> str:
        """
        Plaintext of a message, from the cache when already decrypted.

        Raises:
            KeyDerivationError: Key material for the counterpart is missing
            DecryptionError: The payload fails authentication
        """
        cache_key = self._cache_key(message)
        if cache_key in self.decrypted:
            return self.decrypted[cache_key]

        counterpart = message.counterpart(self.user_id)
        key = self.shared_key_for(counterpart)
        if key is None:
            raise KeyDerivationError(
                "No shared key for this contact yet", {"counterpart": counterpart}
            )

        plaintext = decrypt_payload(key, message.payload)
        self.decrypted[cache_key] = plaintext
        return plaintext

    def conversation(self, counterpart: str) -> List[Tuple[Message, Optional[str]]]:
        """Messages with a contact paired with their plaintext (None when unreadable)."""
        result = []
        for message in self.messages:
            if not message.involves(self.user_id, counterpart):
                continue
            try:
                text = self.decrypt(message)
            except (KeyDerivationError, DecryptionError) as e:
                logger.debug(f"Message {message.message_id} unreadable: {e.message}")
                text = None
            result.append((message, text))
        return result

    # Messaging

    async def fetch_history(self) -> List[Message]:
        """Replace the local list with the relay's history for this account."""
        response = await self._send_request(Command.GET_MESSAGES, {"userId": self.user_id})
        if response.get("success"):
            pending = [m for m in self.messages if m.message_id is None]
            self.messages = [Message.from_dict(m) for m in response.get("messages", [])]
            self.messages.extend(pending)
        return self.messages

    async def send_text(
        self, recipient_id: str, text: str, message_type: str = MESSAGE_TYPE_TEXT
    ) -> Dict[str, Any]:
        """
        Encrypt and send a message.

        The message shows up locally at once as an optimistic record keyed
        by a provisional clientId and is swapped for the canonical record
        when the relay acknowledges it.

        Raises:
            KeyDerivationError: If there is no shared key for the recipient
        """
        key = self.shared_key_for(recipient_id)
        if key is None:
            raise KeyDerivationError("No shared key for recipient", {"recipient": recipient_id})

        client_id = uuid.uuid4().hex
        optimistic = Message(
            sender_id=self.user_id,
            recipient_id=recipient_id,
            payload=encrypt_payload(key, text),
            message_type=message_type,
            client_id=client_id,
        )
        self.messages.append(optimistic)
        self.decrypted[client_id] = text

        return await self._submit(optimistic)

    async def resend(self, client_id: str) -> Dict[str, Any]:
        """
        Retry an optimistic message the relay did not persist.

        The payload is encrypted again under a fresh nonce.
        """
        for message in self.messages:
            if message.client_id == client_id and message.message_id is None:
                break
        else:
            return {"success": False, "error": f"No pending message {client_id}"}

        key = self.shared_key_for(message.recipient_id)
        if key is None:
            raise KeyDerivationError(
                "No shared key for recipient", {"recipient": message.recipient_id}
            )

        message.payload = encrypt_payload(key, self.decrypted[client_id])
        return await self._submit(message)

    async def forward(self, message_ids: Iterable[int], recipient_id: str) -> List[Dict[str, Any]]:
        """
        Forward messages to another contact.

        Each message is decrypted locally and sent again under the new
        contact's key, so every copy gets its own envelope and nonce.
        Messages missing from the local list or unreadable are skipped.

        Returns:
            One sendMessage response per forwarded message

        Raises:
            KeyDerivationError: If there is no shared key for the recipient
        """
        if self.shared_key_for(recipient_id) is None:
            raise KeyDerivationError("No shared key for recipient", {"recipient": recipient_id})

        responses = []
        for message_id in message_ids:
            message = self._find(message_id)
            if message is None:
                logger.debug(f"Message {message_id} not found, not forwarded")
                continue
            try:
                text = self.decrypt(message)
            except (KeyDerivationError, DecryptionError) as e:
                logger.warning(f"Cannot forward message {message_id}: {e.message}")
                continue
            responses.append(await self.send_text(recipient_id, text, message.message_type))
        return responses

    async def _submit(self, message: Message) -> Dict[str, Any]:
        params = {
            "senderId": message.sender_id,
            "recipientId": message.recipient_id,
            "payload": message.payload,
            "type": message.message_type,
            "time": message.time,
            "clientId": message.client_id,
        }
        response = await self._send_request(Command.SEND_MESSAGE, params)
        if response.get("success"):
            self._reconcile(response["message"])
        else:
            logger.warning(f"Message {message.client_id} not sent: {response.get('error')}")
        return response

    def pending_messages(self) -> List[Message]:
        """Optimistic records not yet acknowledged by the relay."""
        return [m for m in self.messages if m.message_id is None]

    def _find(self, message_id: int) -> Optional[Message]:
        for message in self.messages:
            if message.message_id == message_id:
                return message
        return None

    def _reconcile(self, record: Dict[str, Any]) -> None:
        """Swap the optimistic record for the canonical one. Safe to repeat."""
        canonical = Message.from_dict(record)
        client_id = canonical.client_id
        canonical.client_id = None

        if self._find(canonical.message_id) is not None:
            return

        for index, message in enumerate(self.messages):
            if client_id is not None and message.client_id == client_id:
                self.messages[index] = canonical
                if client_id in self.decrypted:
                    self.decrypted[canonical.message_id] = self.decrypted.pop(client_id)
                return

        self.messages.append(canonical)

    async def toggle_save(self, message_id: int) -> Dict[str, Any]:
        response = await self._send_request(Command.TOGGLE_SAVE, {"id": message_id})
        if response.get("success"):
            self._apply_saved(response["message"])
        return response

    async def delete_messages(self, message_ids: Iterable[int]) -> Dict[str, Any]:
        ids = list(message_ids)
        response = await self._send_request(Command.DELETE_MESSAGES, {"ids": ids})
        if response.get("success"):
            self._apply_deleted(response.get("deleted", []))
        return response

    async def nuke_chat(self, target: str) -> Dict[str, Any]:
        response = await self._send_request(Command.NUKE_CHAT, {"target": target})
        if response.get("success"):
            self._apply_nuke(target)
        return response

    def _apply_saved(self, record: Dict[str, Any]) -> None:
        updated = Message.from_dict(record)
        message = self._find(updated.message_id)
        if message is not None:
            message.is_saved = updated.is_saved
            message.expire_at = updated.expire_at

    def _apply_deleted(self, ids: Iterable[int]) -> None:
        doomed = set(ids)
        self.messages = [m for m in self.messages if m.message_id not in doomed]
        for message_id in doomed:
            self.decrypted.pop(message_id, None)

    def _apply_nuke(self, target: str) -> None:
        """Prune unsaved messages with target, matching what the relay deleted."""
        kept = []
        for message in self.messages:
            unsaved = not message.is_saved and message.message_id is not None
            if unsaved and message.involves(self.user_id, target):
                self.decrypted.pop(message.message_id, None)
            else:
                kept.append(message)
        self.messages = kept

    # Calls

    async def call_user(self, target: str, signal: Dict[str, Any]) -> Dict[str, Any]:
        """Place a call. callFailed arrives as an event if the target is offline."""
        if not self.call.is_idle():
            return {"success": False, "error": f"Already in a call ({self.call.get_state().name})"}

        self.call.transition(CallEvent.PLACE_CALL)
        self.call_peer = target
        response = await self._send_request(
            Command.CALL_USER, {"userToCall": target, "signalData": signal, "from": self.user_id}
        )

        if not response.get("success"):
            self.call.transition(CallEvent.TARGET_OFFLINE, response.get("error"))
            self.call_peer = None
        elif response.get("state") == CallState.IDLE.name:
            # Normally callFailed got here first and this is a no-op
            if self.call.get_state() == CallState.OFFER_SENT:
                self.call.transition(CallEvent.TARGET_OFFLINE, CALL_FAILED_OFFLINE)
                self.call_peer = None
        elif response.get("state") == CallState.RINGING.name:
            # No-op when the answer already came in
            if self.call.get_state() == CallState.OFFER_SENT:
                self.call.transition(CallEvent.OFFER_DELIVERED)
        return response

    async def answer_call(self, signal: Dict[str, Any]) -> Dict[str, Any]:
        if self.call.get_state() != CallState.RINGING or self.call_peer is None:
            return {"success": False, "error": "No incoming call"}

        params = {"to": self.call_peer, "signal": signal}
        response = await self._send_request(Command.ANSWER_CALL, params)
        if response.get("success"):
            self.call.transition(CallEvent.ANSWERED)
        return response

    def media_connected(self) -> bool:
        """Mark the call active once peer-to-peer media is up."""
        return self.call.transition(CallEvent.MEDIA_CONNECTED)

    async def end_call(self) -> Dict[str, Any]:
        if self.call_peer is None:
            return {"success": False, "error": "No call in progress"}

        response = await self._send_request(Command.END_CALL, {"to": self.call_peer})
        self._finish_call()
        return response

    def _finish_call(self) -> None:
        self.call.end()
        self.call_peer = None
        self.remote_signal = None

    # Relay events

    def _apply_event(self, event_name: Optional[str], data: Dict[str, Any]) -> None:
        """Keep local state in step with what the relay pushes."""
        if event_name == Event.ONLINE_USERS:
            self.online_users = [u["userId"] for u in data.get("users", [])]

        elif event_name == Event.MESSAGE:
            message = Message.from_dict(data["message"])
            if self._find(message.message_id) is None:
                self.messages.append(message)

        elif event_name == Event.MESSAGE_STORED:
            self._reconcile(data["message"])

        elif event_name == Event.MESSAGE_SAVED:
            self._apply_saved(data["message"])

        elif event_name == Event.MESSAGES_DELETED:
            self._apply_deleted(data.get("ids", []))

        elif event_name == Event.CHAT_NUKED:
            self._apply_nuke(data["target"])

        elif event_name == Event.INCOMING_CALL:
            caller = data.get("from")
            if self.call.is_idle():
                self.call.transition(CallEvent.INCOMING_OFFER)
                self.call_peer = caller
                self.remote_signal = data.get("signal")
            elif caller == self.call_peer:
                # Further signaling for the call being set up
                self.remote_signal = data.get("signal")
            else:
                logger.info(f"Ignoring call from {caller} while in a call")

        elif event_name == Event.CALL_ACCEPTED:
            self.remote_signal = data.get("signal")
            if self.call.get_state() in (CallState.OFFER_SENT, CallState.RINGING):
                self.call.transition(CallEvent.ANSWERED)

        elif event_name == Event.CALL_FAILED:
            if self.call.get_state() == CallState.OFFER_SENT:
                self.call.transition(CallEvent.TARGET_OFFLINE, data.get("reason"))
            else:
                self.call.end()
            self.call_peer = None

        elif event_name == Event.CALL_ENDED:
            if data.get("from") == self.call_peer:
                self._finish_call()
