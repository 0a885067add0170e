"""Test E2EE key management and payload encryption."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any

import pytest

from talkwire_core.e2ee import (
    E2EE,
    KEY_PAIR_STORAGE_KEY,
    E2EEKeyPair,
    EncryptedPayload,
    is_e2ee_message,
    is_group_conversation,
)
from talkwire_core.errors import E2EEError, E2EEErrorKind, NotAuthenticatedError
from talkwire_core.rpc import RpcDispatcher, TransportRequest
from talkwire_core.storage import MemoryStorage
from talkwire_core.thrift import Struct, decode, encode

from .conftest import FakeServer, ServerException, make_profile, make_session

NOT_FOUND = 5


def _bytes(value: Any) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


class KeyServer:
    """Public key and group key registry behind a FakeServer."""

    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.next_key_id = 100
        self.public_keys: dict[str, list[tuple[int, bytes]]] = {}
        self.group_keys: dict[str, list[dict[str, Any]]] = {}
        server.on("registerE2EEPublicKey", self.register_public_key)
        server.on("negotiateE2EEPublicKey", self.negotiate_public_key)
        server.on("getE2EEPublicKey", self.get_public_key)
        server.on("registerE2EEGroupKey", self.register_group_key)
        server.on("getLastE2EEGroupSharedKey", self.get_last_group_key)
        server.on("getE2EEGroupSharedKey", self.get_group_key)

    @staticmethod
    def caller(request: TransportRequest) -> str:
        return request.headers["X-Line-Access"].removeprefix("token-")

    def latest_key_id(self, mid: str) -> int:
        return self.public_keys[mid][-1][0]

    def register_public_key(self, args: Struct, request: TransportRequest) -> Struct:
        self.next_key_id += 1
        key_id = self.next_key_id
        self.public_keys.setdefault(self.caller(request), []).append(
            (key_id, _bytes(args[2][4]))
        )
        return Struct({1: 1, 2: key_id})

    def negotiate_public_key(self, args: Struct, request: TransportRequest) -> Struct:
        keys = self.public_keys.get(args[2])
        if not keys:
            raise ServerException(NOT_FOUND, "no key")
        key_id, data = keys[-1]
        return Struct({1: True, 2: Struct({1: 1, 2: key_id, 4: data})})

    def get_public_key(self, args: Struct, request: TransportRequest) -> Struct:
        for key_id, data in self.public_keys.get(args[2], []):
            if key_id == args[4]:
                return Struct({1: 1, 2: key_id, 4: data})
        raise ServerException(NOT_FOUND, "no such key")

    def register_group_key(self, args: Struct, request: TransportRequest) -> Struct:
        creator = self.caller(request)
        entries = self.group_keys.setdefault(args[2], [])
        group_key_id = len(entries) + 1
        entries.append(
            {
                "id": group_key_id,
                "creator": creator,
                "creator_key_id": self.latest_key_id(creator),
                "members": dict(zip(args[3], zip(args[4], args[5]))),
            }
        )
        return Struct({1: 1, 2: group_key_id, 3: creator})

    def _shared_key(self, entry: dict[str, Any], mid: str) -> Struct:
        if mid not in entry["members"]:
            raise ServerException(NOT_FOUND, "not a member")
        receiver_key_id, wrapped = entry["members"][mid]
        return Struct(
            {
                1: 1,
                2: entry["id"],
                3: entry["creator"],
                4: entry["creator_key_id"],
                5: mid,
                6: receiver_key_id,
                7: _bytes(wrapped),
            }
        )

    def get_last_group_key(self, args: Struct, request: TransportRequest) -> Struct:
        entries = self.group_keys.get(args[3])
        if not entries:
            raise ServerException(NOT_FOUND, "no group key")
        return self._shared_key(entries[-1], self.caller(request))

    def get_group_key(self, args: Struct, request: TransportRequest) -> Struct:
        for entry in self.group_keys.get(args[3], []):
            if entry["id"] == args[4]:
                return self._shared_key(entry, self.caller(request))
        raise ServerException(NOT_FOUND, "no such group key")


def make_e2ee(server: FakeServer, mid: str, storage: MemoryStorage | None = None) -> E2EE:
    session = make_session(storage)
    session.auth_token = f"token-{mid}"
    session.profile = make_profile(mid)
    return E2EE(RpcDispatcher(session, server), session)


def over_the_wire(payload: EncryptedPayload, *, to_type: int) -> Struct:
    """Serialize a payload's message the way the server relays it."""
    return decode(encode(Struct({1: payload.to_message(to_type=to_type)})))[1]


@pytest.fixture
def keys(server: FakeServer) -> KeyServer:
    return KeyServer(server)


@pytest.fixture
def alice(server: FakeServer, keys: KeyServer) -> E2EE:
    return make_e2ee(server, "ualice")


@pytest.fixture
def bob(server: FakeServer, keys: KeyServer) -> E2EE:
    return make_e2ee(server, "ubob")


@pytest.fixture
async def registered(alice: E2EE, bob: E2EE) -> tuple[E2EE, E2EE]:
    await alice.ensure_key_pair()
    await bob.ensure_key_pair()
    return alice, bob


class TestKeyPair:
    def test_dict_round_trip(self) -> None:
        pair = E2EEKeyPair.generate().with_key_id(7)

        restored = E2EEKeyPair.from_dict(pair.to_dict())

        assert restored.key_id == 7
        assert restored.public_key_data == pair.public_key_data
        assert len(pair.public_key_data) == 64

    def test_malformed_dict(self) -> None:
        with pytest.raises(ValueError):
            E2EEKeyPair.from_dict({"keyId": 1})

    async def test_registered_once_then_loaded(
        self, server: FakeServer, keys: KeyServer
    ) -> None:
        storage = MemoryStorage()
        first = make_e2ee(server, "ualice", storage)
        pair = await first.ensure_key_pair()

        second = make_e2ee(server, "ualice", storage)
        loaded = await second.ensure_key_pair()

        assert loaded.key_id == pair.key_id == 101
        assert loaded.public_key_data == pair.public_key_data
        assert len(server.args_of("registerE2EEPublicKey")) == 1
        assert (await storage.get(KEY_PAIR_STORAGE_KEY))["keyId"] == 101


class TestDirectConversation:
    async def test_round_trip_both_directions(
        self, registered: tuple[E2EE, E2EE]
    ) -> None:
        alice, bob = registered

        sent = await alice.encrypt("ubob", "hello 🌏")
        received = EncryptedPayload.from_message(
            over_the_wire(sent, to_type=0), self_mid="ubob"
        )

        assert received.conversation_id == "ualice"
        assert received.sender == "ualice"
        assert await bob.decrypt(received) == "hello 🌏"

        reply = await bob.encrypt("ualice", "hi back")
        answer = EncryptedPayload.from_message(
            over_the_wire(reply, to_type=0), self_mid="ualice"
        )
        assert answer.conversation_id == "ubob"
        assert await alice.decrypt(answer) == "hi back"

    async def test_both_sides_derive_the_same_key(
        self, registered: tuple[E2EE, E2EE]
    ) -> None:
        alice, bob = registered

        alice_key = await alice.get_conversation_key("ubob")
        bob_key = await bob.get_conversation_key("ualice")

        assert alice_key.key == bob_key.key
        assert alice_key.key_id == 102
        assert bob_key.key_id == 101

    async def test_sender_reads_own_message(self, registered: tuple[E2EE, E2EE]) -> None:
        alice, _ = registered

        sent = await alice.encrypt("ubob", "note to self")
        echoed = EncryptedPayload.from_message(
            over_the_wire(sent, to_type=0), self_mid="ualice"
        )

        assert echoed.conversation_id == "ubob"
        assert await alice.decrypt(echoed) == "note to self"

    async def test_tampered_ciphertext(self, registered: tuple[E2EE, E2EE]) -> None:
        alice, bob = registered
        sent = await alice.encrypt("ubob", "original")
        flipped = bytes([sent.ciphertext[0] ^ 0x01]) + sent.ciphertext[1:]
        tampered = replace(sent, conversation_id="ualice", ciphertext=flipped)

        with pytest.raises(E2EEError) as exc_info:
            await bob.decrypt(tampered)
        assert exc_info.value.kind is E2EEErrorKind.INVALID_SIGNATURE

    async def test_unknown_sender_key(self, registered: tuple[E2EE, E2EE]) -> None:
        alice, bob = registered
        sent = await alice.encrypt("ubob", "hello")
        unknown = replace(sent, conversation_id="ualice", sender_key_id=9999)

        with pytest.raises(E2EEError) as exc_info:
            await bob.decrypt(unknown)
        assert exc_info.value.kind is E2EEErrorKind.UNKNOWN_KEY

    async def test_peer_without_key(self, registered: tuple[E2EE, E2EE]) -> None:
        alice, _ = registered
        with pytest.raises(E2EEError) as exc_info:
            await alice.get_conversation_key("ustranger")
        assert exc_info.value.kind is E2EEErrorKind.UNKNOWN_KEY

    async def test_concurrent_callers_share_one_exchange(
        self, registered: tuple[E2EE, E2EE], server: FakeServer
    ) -> None:
        alice, _ = registered

        results = await asyncio.gather(
            *(alice.get_conversation_key("ubob") for _ in range(5))
        )

        assert all(key is results[0] for key in results)
        assert len(server.args_of("negotiateE2EEPublicKey")) == 1

    async def test_requires_authenticated_session(
        self, server: FakeServer, keys: KeyServer
    ) -> None:
        session = make_session()
        e2ee = E2EE(RpcDispatcher(session, server), session)
        with pytest.raises(NotAuthenticatedError, match="authenticated session"):
            await e2ee.encrypt("ubob", "hello")


class TestKeyRotation:
    async def test_invalidate_keeps_old_snapshot(
        self, registered: tuple[E2EE, E2EE]
    ) -> None:
        alice, _ = registered
        key = await alice.get_conversation_key("ubob")

        alice.invalidate("ubob")

        assert alice.cached_key("ubob") is None
        assert key.key_id == 102
        assert len(key.key) == 32

    async def test_old_and_new_messages_open_after_peer_rotates(
        self, registered: tuple[E2EE, E2EE]
    ) -> None:
        alice, bob = registered
        before = await alice.encrypt("ubob", "before rotation")

        new_pair = await bob.rotate_key_pair()
        alice.invalidate("ubob")
        after = await alice.encrypt("ubob", "after rotation")

        assert new_pair.key_id == 103
        assert before.receiver_key_id == 102
        assert after.receiver_key_id == 103
        assert await bob.decrypt(replace(after, conversation_id="ualice")) == (
            "after rotation"
        )
        assert await bob.decrypt(replace(before, conversation_id="ualice")) == (
            "before rotation"
        )

    async def test_message_from_rotated_sender_key(
        self, registered: tuple[E2EE, E2EE]
    ) -> None:
        alice, bob = registered
        await bob.get_conversation_key("ualice")
        await alice.rotate_key_pair()
        rotated = await alice.encrypt("ubob", "from new key")

        assert rotated.sender_key_id == 103
        assert await bob.decrypt(replace(rotated, conversation_id="ualice")) == (
            "from new key"
        )


class TestGroupConversation:
    async def test_member_opens_group_message(
        self, registered: tuple[E2EE, E2EE]
    ) -> None:
        alice, bob = registered

        group_key = await alice.create_group_key("cgroup", ["ualice", "ubob"])
        sent = await alice.encrypt("cgroup", "hello group")
        received = EncryptedPayload.from_message(
            over_the_wire(sent, to_type=2), self_mid="ubob"
        )

        assert group_key.key_id == 1
        assert sent.receiver_key_id == 1
        assert received.conversation_id == "cgroup"
        assert await bob.decrypt(received) == "hello group"
        assert (await bob.get_conversation_key("cgroup")).key == group_key.key

    async def test_new_group_key_keeps_old_messages_readable(
        self, registered: tuple[E2EE, E2EE]
    ) -> None:
        alice, bob = registered
        await alice.create_group_key("cgroup", ["ualice", "ubob"])
        old = await alice.encrypt("cgroup", "first")

        second = await alice.create_group_key("cgroup", ["ualice", "ubob"])
        new = await alice.encrypt("cgroup", "second")

        assert second.key_id == 2
        assert new.receiver_key_id == 2
        assert await bob.decrypt(new) == "second"
        assert await bob.decrypt(old) == "first"

    async def test_non_member_cannot_fetch(
        self, registered: tuple[E2EE, E2EE], server: FakeServer
    ) -> None:
        alice, _ = registered
        await alice.create_group_key("cgroup", ["ualice"])
        carol = make_e2ee(server, "ucarol")
        await carol.ensure_key_pair()

        with pytest.raises(E2EEError) as exc_info:
            await carol.get_conversation_key("cgroup")
        assert exc_info.value.kind is E2EEErrorKind.UNKNOWN_KEY


class TestPayloadFormat:
    def test_chunks_layout(self) -> None:
        payload = EncryptedPayload(
            conversation_id="ubob",
            sender="ualice",
            sender_key_id=1,
            receiver_key_id=258,
            nonce=b"n" * 12,
            ciphertext=b"c",
            signature=b"s" * 64,
        )

        chunks = payload.to_chunks()

        assert chunks[3] == b"\x00\x00\x00\x01"
        assert chunks[4] == b"\x00\x00\x01\x02"
        message = payload.to_message(to_type=0)
        assert is_e2ee_message(message)
        assert message[18]["e2eeVersion"] == "2"

    def test_short_chunk_list(self) -> None:
        with pytest.raises(E2EEError) as exc_info:
            EncryptedPayload.from_chunks([b"a", b"b"], conversation_id="u", sender="u")
        assert exc_info.value.kind is E2EEErrorKind.DECRYPT_FAILURE

    def test_plain_message_is_not_e2ee(self) -> None:
        assert not is_e2ee_message(Struct({1: "ualice", 10: "hi"}))

    @pytest.mark.parametrize(
        ("conversation_id", "expected"),
        [("c123", True), ("r123", True), ("u123", False)],
    )
    def test_group_ids(self, conversation_id: str, expected: bool) -> None:
        assert is_group_conversation(conversation_id) is expected
