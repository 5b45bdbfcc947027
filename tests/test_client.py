"""
Shade - Client state tests.

Exercises the client's local bookkeeping (reconciliation, decryption cache,
nuke pruning and the call state) by feeding it relay events directly.
"""

import pytest

from shade.call import CallEvent, CallState
from shade.client import ShadeClient
from shade.crypto import (
    decrypt_payload,
    derive_shared_key,
    encrypt_payload,
    generate_identity_keys,
)
from shade.errors import KeyDerivationError
from shade.message import Message
from shade.protocol import Event


@pytest.fixture
def client(alice_keys, bob_keys):
    """Client logged in as alice with bob's public key known."""
    client = ShadeClient()
    client.account = {"id": "alice", "username": "alice"}
    client.private_jwk = alice_keys[1]
    client.public_keys["bob"] = bob_keys[0]
    return client


def record(message_id, sender="bob", recipient="alice", payload="x", saved=False, client_id=None):
    message = Message(
        sender, recipient, payload, message_id=message_id, is_saved=saved, client_id=client_id
    )
    return message.to_dict()


def sealed_by_bob(alice_keys, bob_keys, text):
    return encrypt_payload(derive_shared_key(bob_keys[1], alice_keys[0]), text)


class TestReconciliation:
    """Optimistic records are swapped for canonical ones by clientId."""

    def _optimistic(self, client, text="hi"):
        message = Message("alice", "bob", "ENVELOPE", client_id="c1")
        client.messages.append(message)
        client.decrypted["c1"] = text
        return message

    def test_echo_replaces_optimistic_record(self, client):
        self._optimistic(client)

        client._apply_event(
            Event.MESSAGE_STORED, {"message": record(7, "alice", "bob", client_id="c1")}
        )

        [message] = client.messages
        assert message.message_id == 7
        assert message.client_id is None
        assert client.decrypted == {7: "hi"}
        assert client.pending_messages() == []

    def test_reconcile_is_idempotent(self, client):
        """Echo event and response both carry the record; the second is a no-op."""
        self._optimistic(client)
        canonical = record(7, "alice", "bob", client_id="c1")

        client._apply_event(Event.MESSAGE_STORED, {"message": canonical})
        client._reconcile(canonical)

        assert [m.message_id for m in client.messages] == [7]

    def test_echo_from_other_device_is_appended(self, client):
        client._apply_event(
            Event.MESSAGE_STORED, {"message": record(9, "alice", "bob", client_id="other")}
        )

        assert [m.message_id for m in client.messages] == [9]

    def test_incoming_duplicate_is_ignored(self, client):
        client._apply_event(Event.MESSAGE, {"message": record(3)})
        client._apply_event(Event.MESSAGE, {"message": record(3)})

        assert len(client.messages) == 1


class TestLifecycleEvents:
    def test_saved_event_updates_record(self, client):
        client._apply_event(Event.MESSAGE, {"message": record(3)})

        client._apply_event(Event.MESSAGE_SAVED, {"message": record(3, saved=True)})

        assert client.messages[0].is_saved is True
        assert client.messages[0].expire_at is None

    def test_deleted_event_drops_records_and_cache(self, client):
        client._apply_event(Event.MESSAGE, {"message": record(3)})
        client._apply_event(Event.MESSAGE, {"message": record(4)})
        client.decrypted[3] = "gone"

        client._apply_event(Event.MESSAGES_DELETED, {"ids": [3, 99]})

        assert [m.message_id for m in client.messages] == [4]
        assert 3 not in client.decrypted

    def test_nuke_prunes_unsaved_with_target(self, client):
        client._apply_event(Event.MESSAGE, {"message": record(1)})
        client._apply_event(Event.MESSAGE, {"message": record(2, saved=True)})
        client._apply_event(Event.MESSAGE, {"message": record(3, sender="carol")})
        client.messages.append(Message("alice", "bob", "pending", client_id="c9"))

        client._apply_event(Event.CHAT_NUKED, {"target": "bob"})

        remaining = [(m.message_id, m.client_id) for m in client.messages]
        assert remaining == [(2, None), (3, None), (None, "c9")]

    def test_online_users(self, client):
        client._apply_event(Event.ONLINE_USERS, {"users": [{"userId": "bob"}]})

        assert client.online_users == ["bob"]


class TestDecryption:
    """Decryption cache and the two failure kinds."""

    def test_decrypt_and_cache(self, client, alice_keys, bob_keys, monkeypatch):
        envelope = sealed_by_bob(alice_keys, bob_keys, "hello alice")
        client._apply_event(Event.MESSAGE, {"message": record(5, payload=envelope)})
        message = client.messages[0]

        assert client.decrypt(message) == "hello alice"

        # Served from the cache from now on
        monkeypatch.setattr("shade.client.decrypt_payload", None)
        assert client.decrypt(message) == "hello alice"

    def test_missing_key(self, client):
        client._apply_event(Event.MESSAGE, {"message": record(5, sender="carol")})

        with pytest.raises(KeyDerivationError):
            client.decrypt(client.messages[0])

    def test_conversation_marks_unreadable(self, client, alice_keys, bob_keys):
        good = sealed_by_bob(alice_keys, bob_keys, "readable")
        client._apply_event(Event.MESSAGE, {"message": record(1, payload=good)})
        client._apply_event(Event.MESSAGE, {"message": record(2, payload="bm90IGFuIGVudmVsb3Bl")})
        client._apply_event(Event.MESSAGE, {"message": record(3, sender="carol")})

        texts = [text for _, text in client.conversation("bob")]

        assert texts == ["readable", None]


class TestCallEvents:
    def test_incoming_call_rings(self, client):
        client._apply_event(Event.INCOMING_CALL, {"from": "bob", "signal": {"sdp": "offer"}})

        assert client.call.get_state() == CallState.RINGING
        assert client.call_peer == "bob"
        assert client.remote_signal == {"sdp": "offer"}

    def test_second_caller_is_ignored(self, client):
        client._apply_event(Event.INCOMING_CALL, {"from": "bob", "signal": {}})
        client._apply_event(Event.INCOMING_CALL, {"from": "carol", "signal": {}})

        assert client.call_peer == "bob"

    def test_peer_hangs_up(self, client):
        client._apply_event(Event.INCOMING_CALL, {"from": "bob", "signal": {}})
        client._apply_event(Event.CALL_ENDED, {"from": "bob"})

        assert client.call.is_idle()
        assert client.call_peer is None

    def test_failed_call_returns_to_idle(self, client):
        client.call.transition(CallEvent.PLACE_CALL)
        client.call_peer = "bob"

        client._apply_event(Event.CALL_FAILED, {"reason": "offline"})

        assert client.call.is_idle()
        assert client.call.failure_reason == "offline"
        assert client.call_peer is None


@pytest.mark.asyncio
class TestOfflineClient:
    async def test_request_without_connection(self, client):
        response = await client._send_request("ping")

        assert response["success"] is False
        assert await client.ping() is False

    async def test_failed_send_keeps_optimistic_record(self, client):
        response = await client.send_text("bob", "queued")

        assert response["success"] is False
        [pending] = client.pending_messages()
        assert client.decrypted[pending.client_id] == "queued"

    async def test_send_without_key(self, client):
        with pytest.raises(KeyDerivationError):
            await client.send_text("carol", "hello")
        assert client.messages == []


@pytest.mark.asyncio
class TestForwarding:
    """Forwarded copies are encrypted again for the new contact."""

    @pytest.fixture
    def carol_keys(self, client):
        keys = generate_identity_keys()
        client.public_keys["carol"] = keys[0]
        return keys

    async def test_forward_reencrypts_for_new_contact(
        self, client, alice_keys, bob_keys, carol_keys
    ):
        envelope = sealed_by_bob(alice_keys, bob_keys, "pass it on")
        client._apply_event(Event.MESSAGE, {"message": record(5, payload=envelope)})

        responses = await client.forward([5, 99], "carol")

        assert len(responses) == 1
        [copy] = client.pending_messages()
        assert copy.recipient_id == "carol"
        assert copy.payload != envelope
        carol_key = derive_shared_key(carol_keys[1], alice_keys[0])
        assert decrypt_payload(carol_key, copy.payload) == "pass it on"

    async def test_each_forward_gets_a_fresh_envelope(
        self, client, alice_keys, bob_keys, carol_keys
    ):
        envelope = sealed_by_bob(alice_keys, bob_keys, "twice")
        client._apply_event(Event.MESSAGE, {"message": record(5, payload=envelope)})

        await client.forward([5], "carol")
        await client.forward([5], "carol")

        first, second = client.pending_messages()
        assert first.payload != second.payload

    async def test_unreadable_message_is_skipped(self, client, carol_keys):
        client._apply_event(Event.MESSAGE, {"message": record(5, payload="bm90IGFuIGVudmVsb3Bl")})

        assert await client.forward([5], "carol") == []
        assert client.pending_messages() == []

    async def test_forward_without_recipient_key(self, client):
        with pytest.raises(KeyDerivationError):
            await client.forward([5], "dave")


@pytest.mark.asyncio
class TestCallResponses:
    async def test_idle_response_means_target_offline(self, client, monkeypatch):
        """Without a callFailed event the IDLE response still frees the call state."""

        async def respond(command, params=None, timeout=None):
            return {"success": True, "state": CallState.IDLE.name}

        monkeypatch.setattr(client, "_send_request", respond)

        response = await client.call_user("bob", {"type": "offer"})

        assert response["state"] == CallState.IDLE.name
        assert client.call.is_idle()
        assert client.call.failure_reason == "offline"
        assert client.call_peer is None
        assert (await client.call_user("bob", {"type": "offer"}))["success"] is True
