"""End-to-end encryption of message payloads.

Each device owns one long-term key pair: X25519 for key agreement and
Ed25519 for signatures. The server only stores the public halves and hands
out key ids.

Conversation keys:

- 1:1 chats: HKDF-SHA256 over X25519(own private, peer public). Both sides
  derive the same key; its id is the peer's public key id.
- Group chats: the server stores a random 32-byte shared key wrapped for
  every member with AES-GCM under HKDF(X25519(own private, creator public)).
  Its id is the server's group key id.

Message wire form is the message ``chunks`` list::

    [nonce, ciphertext, signature, sender_key_id (4B BE), receiver_key_id (4B BE)]

The signature covers ``header + nonce + ciphertext`` where the header is the
two key ids, which are also the AES-GCM associated data.

Cached conversation keys are never mutated. Rotation replaces the cache map
with a copy that no longer holds the stale entry, so readers holding the old
map see a consistent snapshot.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import struct
import time
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import (
    E2EEError,
    E2EEErrorKind,
    NotAuthenticatedError,
    RpcError,
    RpcErrorKind,
)
from .rpc import ErrorCode, RpcDispatcher
from .session import SessionState
from .thrift import I64, Struct

_LOGGER = logging.getLogger(__name__)

E2EE_VERSION = "2"
KEY_VERSION = 1
KEY_SIZE = 32
NONCE_SIZE = 12
PUBLIC_KEY_DATA_SIZE = 64
KEY_PAIR_STORAGE_KEY = "e2eeKeyPair"

CONVERSATION_KEY_INFO = b"talkwire e2ee conversation key"
GROUP_WRAP_INFO = b"talkwire e2ee group key wrap"

_RAW = serialization.Encoding.Raw
_RAW_PUBLIC = serialization.PublicFormat.Raw
_RAW_PRIVATE = serialization.PrivateFormat.Raw
_NO_ENCRYPTION = serialization.NoEncryption()


def is_group_conversation(conversation_id: str) -> bool:
    """Room (``r``) and group (``c``) ids use group shared keys."""
    return conversation_id[:1] in ("c", "r")


def hkdf_derive(secret: bytes, info: bytes, length: int = KEY_SIZE) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=None, info=info).derive(
        secret
    )


def _raw_public(key: X25519PublicKey | Ed25519PublicKey) -> bytes:
    return key.public_bytes(encoding=_RAW, format=_RAW_PUBLIC)


def _as_bytes(value: Any) -> bytes:
    # the codec returns valid UTF-8 chunks as str; encoding them back is exact
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    raise E2EEError(E2EEErrorKind.DECRYPT_FAILURE, f"Malformed E2EE chunk: {value!r}")


def _key_id_bytes(key_id: int) -> bytes:
    return struct.pack(">I", key_id)


def _payload_header(sender_key_id: int, receiver_key_id: int) -> bytes:
    return _key_id_bytes(sender_key_id) + _key_id_bytes(receiver_key_id)


def wrap_group_key(
    creator_key: X25519PrivateKey,
    member_key: X25519PublicKey,
    group_key_id: int,
    shared_key: bytes,
) -> bytes:
    """Seal a group shared key for one member: ``nonce + AES-GCM(shared_key)``."""
    wrap_key = hkdf_derive(creator_key.exchange(member_key), GROUP_WRAP_INFO)
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(wrap_key).encrypt(
        nonce, shared_key, _key_id_bytes(group_key_id)
    )


# -----------------------------------------------------------------------------
# Key material
# -----------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class E2EEKeyPair:
    """Device-local long-term key pair.

    ``key_id`` is assigned by the server on registration (0 until then).
    """

    key_id: int
    agreement_key: X25519PrivateKey
    signing_key: Ed25519PrivateKey
    created_at: float

    @classmethod
    def generate(cls) -> E2EEKeyPair:
        return cls(
            key_id=0,
            agreement_key=X25519PrivateKey.generate(),
            signing_key=Ed25519PrivateKey.generate(),
            created_at=time.time(),
        )

    @property
    def public_key_data(self) -> bytes:
        """X25519 public key followed by the Ed25519 public key."""
        return _raw_public(self.agreement_key.public_key()) + _raw_public(
            self.signing_key.public_key()
        )

    def with_key_id(self, key_id: int) -> E2EEKeyPair:
        return replace(self, key_id=key_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "keyId": self.key_id,
            "agreementKey": base64.b64encode(
                self.agreement_key.private_bytes(_RAW, _RAW_PRIVATE, _NO_ENCRYPTION)
            ).decode("ascii"),
            "signingKey": base64.b64encode(
                self.signing_key.private_bytes(_RAW, _RAW_PRIVATE, _NO_ENCRYPTION)
            ).decode("ascii"),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> E2EEKeyPair:
        """Restore a stored key pair.

        Raises:
            ValueError: If the stored data is malformed.
        """
        try:
            return cls(
                key_id=int(data["keyId"]),
                agreement_key=X25519PrivateKey.from_private_bytes(
                    base64.b64decode(data["agreementKey"])
                ),
                signing_key=Ed25519PrivateKey.from_private_bytes(
                    base64.b64decode(data["signingKey"])
                ),
                created_at=float(data.get("createdAt", 0.0)),
            )
        except (KeyError, TypeError) as err:
            raise ValueError(f"Malformed stored key pair: {err}") from err


@dataclass(frozen=True)
class PeerPublicKey:
    """A member's registered public key."""

    mid: str
    key_id: int
    agreement_key: X25519PublicKey
    verify_key: Ed25519PublicKey

    @classmethod
    def from_key_data(cls, mid: str, key_id: int, data: bytes) -> PeerPublicKey:
        if len(data) != PUBLIC_KEY_DATA_SIZE:
            raise E2EEError(
                E2EEErrorKind.UNKNOWN_KEY,
                f"Public key {key_id} of {mid} has {len(data)} bytes",
            )
        return cls(
            mid=mid,
            key_id=key_id,
            agreement_key=X25519PublicKey.from_public_bytes(data[:32]),
            verify_key=Ed25519PublicKey.from_public_bytes(data[32:]),
        )


@dataclass(frozen=True)
class ConversationKey:
    """Symmetric key of one conversation at one key version."""

    conversation_id: str
    key_id: int
    key: bytes = field(repr=False)
    member_key_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class EncryptedPayload:
    """An encrypted message body plus the key ids needed to open it."""

    conversation_id: str
    sender: str
    sender_key_id: int
    receiver_key_id: int
    nonce: bytes
    ciphertext: bytes
    signature: bytes

    @property
    def header(self) -> bytes:
        return _payload_header(self.sender_key_id, self.receiver_key_id)

    def to_chunks(self) -> list[bytes]:
        return [
            self.nonce,
            self.ciphertext,
            self.signature,
            _key_id_bytes(self.sender_key_id),
            _key_id_bytes(self.receiver_key_id),
        ]

    @classmethod
    def from_chunks(
        cls, chunks: Sequence[Any], *, conversation_id: str, sender: str
    ) -> EncryptedPayload:
        """Parse the ``chunks`` list of an E2EE message.

        Raises:
            E2EEError: DECRYPT_FAILURE when the chunk list is malformed.
        """
        if len(chunks) < 5:
            raise E2EEError(
                E2EEErrorKind.DECRYPT_FAILURE,
                f"E2EE payload has {len(chunks)} chunks, expected 5",
            )
        nonce, ciphertext, signature, sender_key, receiver_key = (
            _as_bytes(chunk) for chunk in chunks[:5]
        )
        if len(sender_key) != 4 or len(receiver_key) != 4:
            raise E2EEError(E2EEErrorKind.DECRYPT_FAILURE, "Malformed E2EE key id chunk")
        return cls(
            conversation_id=conversation_id,
            sender=sender,
            sender_key_id=struct.unpack(">I", sender_key)[0],
            receiver_key_id=struct.unpack(">I", receiver_key)[0],
            nonce=nonce,
            ciphertext=ciphertext,
            signature=signature,
        )

    @classmethod
    def from_message(cls, message: Struct, *, self_mid: str | None) -> EncryptedPayload:
        """Parse an E2EE ``Message`` struct as seen by ``self_mid``."""
        sender = message.get(1) or ""
        to = message.get(2) or ""
        to_type = message.get(3) or 0
        # 1:1 messages from the peer are filed under the peer's mid
        conversation_id = to if to_type != 0 or sender == self_mid else sender
        return cls.from_chunks(
            message.get(20) or [], conversation_id=conversation_id, sender=sender
        )

    def to_message(self, *, to_type: int) -> Struct:
        """Build the ``Message`` struct carrying this payload."""
        return Struct(
            {
                1: self.sender,
                2: self.conversation_id,
                3: to_type,
                15: 0,
                18: {"e2eeVersion": E2EE_VERSION, "contentType": "0"},
                20: self.to_chunks(),
            }
        )


def is_e2ee_message(message: Struct) -> bool:
    metadata = message.get(18)
    return (
        isinstance(metadata, dict)
        and metadata.get("e2eeVersion") is not None
        and bool(message.get(20))
    )


# -----------------------------------------------------------------------------
# Subsystem
# -----------------------------------------------------------------------------


class E2EE:
    """Key management plus payload encryption for one client."""

    def __init__(self, dispatcher: RpcDispatcher, session: SessionState) -> None:
        self._dispatcher = dispatcher
        self._session = session
        self._key_pair: E2EEKeyPair | None = None
        self._own_pairs: dict[int, E2EEKeyPair] = {}
        self._key_pair_lock = asyncio.Lock()
        self._cache: dict[str, ConversationKey] = {}
        self._keys_by_id: dict[tuple[str, int], ConversationKey] = {}
        self._public_keys: dict[tuple[str, int], PeerPublicKey] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def cached_key(self, conversation_id: str) -> ConversationKey | None:
        return self._cache.get(conversation_id)

    # -------------------------------------------------------------------------
    # Own key pair
    # -------------------------------------------------------------------------

    async def ensure_key_pair(self) -> E2EEKeyPair:
        """Load the device key pair, generating and registering one if absent."""
        if self._key_pair is not None:
            return self._key_pair
        async with self._key_pair_lock:
            if self._key_pair is not None:
                return self._key_pair
            stored = await self._session.storage.get(KEY_PAIR_STORAGE_KEY)
            if isinstance(stored, dict):
                try:
                    return self._adopt_key_pair(E2EEKeyPair.from_dict(stored))
                except ValueError as err:
                    _LOGGER.warning(
                        "[%s] Discarding stored key pair: %s",
                        self._session.device.type,
                        err,
                    )
            return await self._register(E2EEKeyPair.generate())

    async def rotate_key_pair(self) -> E2EEKeyPair:
        """Register a fresh device key pair and drop every cached conversation key.

        The previous pair is kept in memory so older messages still open.
        """
        async with self._key_pair_lock:
            pair = await self._register(E2EEKeyPair.generate())
        self._cache = {}
        self._keys_by_id = {}
        return pair

    def _adopt_key_pair(self, pair: E2EEKeyPair) -> E2EEKeyPair:
        self._key_pair = pair
        self._own_pairs = {**self._own_pairs, pair.key_id: pair}
        return pair

    async def _register(self, pair: E2EEKeyPair) -> E2EEKeyPair:
        response = await self._dispatcher.call(
            "talk",
            "registerE2EEPublicKey",
            Struct(
                {
                    1: 0,
                    2: Struct(
                        {
                            1: KEY_VERSION,
                            2: 0,
                            4: pair.public_key_data,
                            5: I64(int(pair.created_at * 1000)),
                        }
                    ),
                }
            ),
        )
        key_id = response.get(2) if isinstance(response, Struct) else None
        if not isinstance(key_id, int):
            raise E2EEError(E2EEErrorKind.UNKNOWN_KEY, "Server assigned no key id")
        registered = pair.with_key_id(key_id)
        await self._session.storage.set(KEY_PAIR_STORAGE_KEY, registered.to_dict())
        _LOGGER.info("[%s] Registered E2EE key %d", self._session.device.type, key_id)
        return self._adopt_key_pair(registered)

    def _own_pair(self, key_id: int) -> E2EEKeyPair:
        pair = self._own_pairs.get(key_id)
        if pair is None:
            raise E2EEError(E2EEErrorKind.UNKNOWN_KEY, f"Own key {key_id} is not known")
        return pair

    # -------------------------------------------------------------------------
    # Public keys
    # -------------------------------------------------------------------------

    async def get_public_key(self, mid: str, key_id: int) -> PeerPublicKey:
        """Fetch a member's public key by id, cached by ``(mid, key_id)``.

        Raises:
            E2EEError: UNKNOWN_KEY when the server has no such key.
        """
        cached = self._public_keys.get((mid, key_id))
        if cached is not None:
            return cached
        value = await self._call_for_key(
            "getE2EEPublicKey", Struct({2: mid, 3: KEY_VERSION, 4: key_id}), mid
        )
        return self._remember_public_key(mid, value)

    async def negotiate_public_key(self, mid: str) -> PeerPublicKey:
        """Ask the server for a peer's current public key."""
        result = await self._call_for_key(
            "negotiateE2EEPublicKey", Struct({2: mid}), mid
        )
        public_key = result.get(2)
        if not isinstance(public_key, Struct):
            raise E2EEError(E2EEErrorKind.UNKNOWN_KEY, f"{mid} has no E2EE public key")
        return self._remember_public_key(mid, public_key)

    def _remember_public_key(self, mid: str, value: Struct) -> PeerPublicKey:
        key_id = value.get(2)
        data = value.get(4)
        if not isinstance(key_id, int) or data is None:
            raise E2EEError(E2EEErrorKind.UNKNOWN_KEY, f"Malformed public key of {mid}")
        peer = PeerPublicKey.from_key_data(mid, key_id, _as_bytes(data))
        self._public_keys = {**self._public_keys, (mid, key_id): peer}
        return peer

    async def _call_for_key(self, method: str, args: Struct, subject: str) -> Struct:
        try:
            value = await self._dispatcher.call("talk", method, args)
        except RpcError as err:
            if err.kind is RpcErrorKind.APPLICATION and err.exception is not None and (
                err.exception.kind in (ErrorCode.NOT_FOUND, ErrorCode.INVALID_STATE)
            ):
                raise E2EEError(
                    E2EEErrorKind.UNKNOWN_KEY, f"{method} for {subject}: {err}"
                ) from err
            raise
        if not isinstance(value, Struct):
            raise E2EEError(E2EEErrorKind.UNKNOWN_KEY, f"{method} returned nothing")
        return value

    async def _signer_key(self, payload: EncryptedPayload) -> Ed25519PublicKey:
        if payload.sender == self._session.mid:
            return self._own_pair(payload.sender_key_id).signing_key.public_key()
        peer = await self.get_public_key(payload.sender, payload.sender_key_id)
        return peer.verify_key

    # -------------------------------------------------------------------------
    # Conversation keys
    # -------------------------------------------------------------------------

    async def get_conversation_key(self, conversation_id: str) -> ConversationKey:
        """Return the current key of a conversation, deriving it if needed.

        Concurrent callers for the same conversation share one key exchange.
        """
        cached = self._cache.get(conversation_id)
        if cached is not None:
            return cached
        async with self._locks[conversation_id]:
            cached = self._cache.get(conversation_id)
            if cached is not None:
                return cached
            pair = await self.ensure_key_pair()
            if is_group_conversation(conversation_id):
                key = await self._fetch_group_key(pair, conversation_id, None)
            else:
                peer = await self.negotiate_public_key(conversation_id)
                key = self._derive_direct_key(pair, peer, conversation_id)
            self._store(key, current=True)
            return key

    def invalidate(self, conversation_id: str) -> None:
        """Forget the cached current key of a conversation."""
        stale = self._cache.get(conversation_id)
        if stale is None:
            return
        self._cache = {k: v for k, v in self._cache.items() if k != conversation_id}
        self._keys_by_id = {
            k: v for k, v in self._keys_by_id.items() if v is not stale
        }
        _LOGGER.debug(
            "[%s] Invalidated conversation key %d", conversation_id, stale.key_id
        )

    def _store(self, key: ConversationKey, *, current: bool) -> None:
        if current:
            self._cache = {**self._cache, key.conversation_id: key}
        self._keys_by_id = {
            **self._keys_by_id,
            (key.conversation_id, key.key_id): key,
        }

    def _derive_direct_key(
        self, pair: E2EEKeyPair, peer: PeerPublicKey, conversation_id: str
    ) -> ConversationKey:
        shared = pair.agreement_key.exchange(peer.agreement_key)
        return ConversationKey(
            conversation_id=conversation_id,
            key_id=peer.key_id,
            key=hkdf_derive(shared, CONVERSATION_KEY_INFO),
            member_key_ids=(pair.key_id, peer.key_id),
        )

    async def _fetch_group_key(
        self, pair: E2EEKeyPair, chat_mid: str, group_key_id: int | None
    ) -> ConversationKey:
        if group_key_id is None:
            value = await self._call_for_key(
                "getLastE2EEGroupSharedKey",
                Struct({2: KEY_VERSION, 3: chat_mid}),
                chat_mid,
            )
        else:
            value = await self._call_for_key(
                "getE2EEGroupSharedKey",
                Struct({2: KEY_VERSION, 3: chat_mid, 4: group_key_id}),
                chat_mid,
            )
        key_id = value.get(2)
        creator = value.get(3)
        creator_key_id = value.get(4)
        receiver_key_id = value.get(6)
        wrapped = value.get(7)
        if not (
            isinstance(key_id, int)
            and isinstance(creator, str)
            and isinstance(creator_key_id, int)
            and wrapped is not None
        ):
            raise E2EEError(
                E2EEErrorKind.UNKNOWN_KEY, f"Malformed group key of {chat_mid}"
            )
        if isinstance(receiver_key_id, int) and receiver_key_id != pair.key_id:
            pair = self._own_pair(receiver_key_id)

        if creator == self._session.mid:
            creator_public = self._own_pair(creator_key_id).agreement_key.public_key()
        else:
            peer = await self.get_public_key(creator, creator_key_id)
            creator_public = peer.agreement_key
        shared_secret = pair.agreement_key.exchange(creator_public)
        wrap_key = hkdf_derive(shared_secret, GROUP_WRAP_INFO)
        blob = _as_bytes(wrapped)
        try:
            shared_key = AESGCM(wrap_key).decrypt(
                blob[:NONCE_SIZE], blob[NONCE_SIZE:], _key_id_bytes(key_id)
            )
        except InvalidTag as err:
            raise E2EEError(
                E2EEErrorKind.DECRYPT_FAILURE, f"Cannot unwrap group key {key_id}"
            ) from err
        return ConversationKey(
            conversation_id=chat_mid,
            key_id=key_id,
            key=shared_key,
            member_key_ids=(creator_key_id, pair.key_id),
        )

    async def create_group_key(
        self, chat_mid: str, members: Sequence[str]
    ) -> ConversationKey:
        """Issue a new shared key for a group and register it for ``members``.

        The server assigns the group key id; the previous key stays valid for
        older messages.
        """
        pair = await self.ensure_key_pair()
        self_mid = self._session.mid
        shared_key = os.urandom(KEY_SIZE)
        recipients: list[tuple[str, int, X25519PublicKey]] = []
        for mid in members:
            if mid == self_mid:
                recipients.append((mid, pair.key_id, pair.agreement_key.public_key()))
            else:
                peer = await self.negotiate_public_key(mid)
                recipients.append((mid, peer.key_id, peer.agreement_key))

        async with self._locks[chat_mid]:
            last_id = await self._last_group_key_id(chat_mid)
            # the key id is bound into each wrap, so seal against the next id
            next_id = last_id + 1
            value = await self._call_for_key(
                "registerE2EEGroupKey",
                Struct(
                    {
                        1: KEY_VERSION,
                        2: chat_mid,
                        3: [mid for mid, _, _ in recipients],
                        4: [key_id for _, key_id, _ in recipients],
                        5: [
                            wrap_group_key(pair.agreement_key, public, next_id, shared_key)
                            for _, _, public in recipients
                        ],
                    }
                ),
                chat_mid,
            )
            key_id = value.get(2)
            if key_id != next_id:
                raise E2EEError(
                    E2EEErrorKind.UNKNOWN_KEY,
                    f"Group {chat_mid} key registered as {key_id}, expected {next_id}",
                )
            key = ConversationKey(
                conversation_id=chat_mid,
                key_id=next_id,
                key=shared_key,
                member_key_ids=tuple(key_id for _, key_id, _ in recipients),
            )
            self._store(key, current=True)
        _LOGGER.info("[%s] Registered group key %d", chat_mid, next_id)
        return key

    async def _last_group_key_id(self, chat_mid: str) -> int:
        try:
            value = await self._dispatcher.call(
                "talk",
                "getLastE2EEGroupSharedKey",
                Struct({2: KEY_VERSION, 3: chat_mid}),
            )
        except RpcError as err:
            if err.kind is RpcErrorKind.APPLICATION and err.exception is not None and (
                err.exception.kind is ErrorCode.NOT_FOUND
            ):
                return 0
            raise
        key_id = value.get(2) if isinstance(value, Struct) else None
        return key_id if isinstance(key_id, int) else 0

    async def _key_for_payload(
        self, payload: EncryptedPayload, *, refresh: bool
    ) -> tuple[ConversationKey, bool]:
        """Resolve the key a payload was sealed with.

        Returns the key and whether it came from the cache.
        """
        cid = payload.conversation_id
        if is_group_conversation(cid):
            wanted = payload.receiver_key_id
        elif payload.sender == self._session.mid:
            wanted = payload.receiver_key_id
        else:
            wanted = payload.sender_key_id

        if not refresh:
            cached = self._keys_by_id.get((cid, wanted))
            if cached is not None:
                return cached, True

        pair = await self.ensure_key_pair()
        async with self._locks[cid]:
            if is_group_conversation(cid):
                key = await self._fetch_group_key(pair, cid, wanted)
            else:
                own_key_id = (
                    payload.sender_key_id
                    if payload.sender == self._session.mid
                    else payload.receiver_key_id
                )
                peer = await self.get_public_key(cid, wanted)
                key = self._derive_direct_key(self._own_pair(own_key_id), peer, cid)
            self._store(key, current=False)
        return key, False

    # -------------------------------------------------------------------------
    # Payloads
    # -------------------------------------------------------------------------

    async def encrypt(self, conversation_id: str, plaintext: str) -> EncryptedPayload:
        """Encrypt and sign ``plaintext`` with the conversation's current key.

        Raises:
            NotAuthenticatedError: If the session has no mid yet.
        """
        sender = self._session.mid
        if sender is None:
            raise NotAuthenticatedError("E2EE requires an authenticated session")
        pair = await self.ensure_key_pair()
        key = await self.get_conversation_key(conversation_id)
        header = _payload_header(pair.key_id, key.key_id)
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(key.key).encrypt(nonce, plaintext.encode("utf-8"), header)
        return EncryptedPayload(
            conversation_id=conversation_id,
            sender=sender,
            sender_key_id=pair.key_id,
            receiver_key_id=key.key_id,
            nonce=nonce,
            ciphertext=ciphertext,
            signature=pair.signing_key.sign(header + nonce + ciphertext),
        )

    async def decrypt(self, payload: EncryptedPayload) -> str:
        """Verify and open a payload.

        Raises:
            E2EEError: INVALID_SIGNATURE, UNKNOWN_KEY or DECRYPT_FAILURE.
        """
        verify_key = await self._signer_key(payload)
        try:
            verify_key.verify(
                payload.signature, payload.header + payload.nonce + payload.ciphertext
            )
        except InvalidSignature as err:
            raise E2EEError(
                E2EEErrorKind.INVALID_SIGNATURE,
                f"Bad signature from {payload.sender} in {payload.conversation_id}",
            ) from err

        key, from_cache = await self._key_for_payload(payload, refresh=False)
        try:
            return self._open(key, payload)
        except E2EEError:
            if not from_cache:
                raise
            _LOGGER.debug(
                "[%s] Cached key %d failed, deriving again",
                payload.conversation_id,
                key.key_id,
            )
            self.invalidate(payload.conversation_id)
            key, _ = await self._key_for_payload(payload, refresh=True)
            return self._open(key, payload)

    @staticmethod
    def _open(key: ConversationKey, payload: EncryptedPayload) -> str:
        try:
            plaintext = AESGCM(key.key).decrypt(
                payload.nonce, payload.ciphertext, payload.header
            )
        except (InvalidTag, ValueError) as err:
            raise E2EEError(
                E2EEErrorKind.DECRYPT_FAILURE,
                f"Cannot decrypt message in {payload.conversation_id}",
            ) from err
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise E2EEError(
                E2EEErrorKind.DECRYPT_FAILURE, "Decrypted payload is not text"
            ) from err
