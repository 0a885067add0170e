"""Session and credential state owned by one client instance.

``SessionState`` is the single owned state struct threaded through the
dispatcher, login flows and E2EE subsystem. Each field has one writer:

- ``auth_token`` / ``certificate`` / ``qr_certificate`` / ``profile``: the
  login state machine (and ``BaseClient.logout``)
- ``sequences``: the RPC dispatcher, one critical section per channel
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Container
from dataclasses import dataclass, field
from typing import Any

from .devices import DeviceDescriptor
from .storage import BaseStorage
from .thrift import Struct

_LOGGER = logging.getLogger(__name__)

SEQUENCE_SPACE = 2**31
LANGUAGE = "ja_JP"
THRIFT_CONTENT_TYPE = "application/x-thrift"

# Storage keys
REQSEQ_KEY = "reqseq"
AUTH_TOKEN_KEY = "authToken"
QR_CERT_KEY = "qrCert"


def cert_key(email: str) -> str:
    return f"cert:{email}"


@dataclass
class Profile:
    """The authenticated account's profile."""

    mid: str
    display_name: str = ""
    status_message: str = ""
    picture_path: str = ""
    raw: Struct = field(default_factory=Struct)

    @classmethod
    def from_struct(cls, value: Struct) -> Profile:
        """Build from a decoded ``Profile`` struct.

        Raises:
            ValueError: If the struct carries no mid.
        """
        mid = value.get(1)
        if not isinstance(mid, str) or not mid:
            raise ValueError("Profile struct has no mid")
        return cls(
            mid=mid,
            display_name=_text(value.get(20)),
            status_message=_text(value.get(24)),
            picture_path=_text(value.get(33)),
            raw=value,
        )


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


class SequenceCounters:
    """Per-channel monotonically increasing request sequence ids.

    The counter map is read from storage once, on first use, and written back
    after every assignment. Assignment is serialized per channel; writes are
    serialized globally so a slower write never overwrites a newer map.
    """

    def __init__(self, storage: BaseStorage) -> None:
        self._storage = storage
        self._counters: dict[str, int] | None = None
        self._load_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._channel_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _ensure_loaded(self) -> dict[str, int]:
        if self._counters is None:
            async with self._load_lock:
                if self._counters is None:
                    stored = await self._storage.get(REQSEQ_KEY)
                    counters: dict[str, int] = {}
                    if isinstance(stored, dict):
                        counters = {
                            str(k): int(v)
                            for k, v in stored.items()
                            if isinstance(v, int) and not isinstance(v, bool)
                        }
                    self._counters = counters
        return self._counters

    async def next(self, channel: str, in_use: Container[int] = ()) -> int:
        """Assign the next sequence id for ``channel``.

        Ids still listed in ``in_use`` (calls that have not resolved or timed
        out) are skipped once the counter wraps around.
        """
        async with self._channel_locks[channel]:
            counters = await self._ensure_loaded()
            seq = counters.get(channel, 0) % SEQUENCE_SPACE
            while seq in in_use:
                seq = (seq + 1) % SEQUENCE_SPACE
            counters[channel] = (seq + 1) % SEQUENCE_SPACE
            async with self._write_lock:
                await self._storage.set(REQSEQ_KEY, dict(counters))
            return seq

    async def peek(self, channel: str) -> int:
        """Return the id the next call on ``channel`` would get."""
        counters = await self._ensure_loaded()
        return counters.get(channel, 0)


@dataclass
class SessionState:
    """Credentials, identity and counters of one client instance."""

    device: DeviceDescriptor
    storage: BaseStorage
    auth_token: str | None = None
    certificate: str | None = None
    qr_certificate: str | None = None
    profile: Profile | None = None
    sequences: SequenceCounters = field(init=False)

    def __post_init__(self) -> None:
        self.sequences = SequenceCounters(self.storage)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.auth_token) and self.profile is not None

    @property
    def mid(self) -> str | None:
        return self.profile.mid if self.profile else None

    def request_headers(
        self,
        *,
        access_token: str | None = None,
        long_poll_timeout: float | None = None,
    ) -> dict[str, str]:
        """Build the headers every request carries.

        Args:
            access_token: Overrides the session token (login verification
                endpoints authenticate with a one-shot verifier).
            long_poll_timeout: Seconds the server may hold a long-poll call.
        """
        headers = {
            "X-Line-Application": self.device.application_header,
            "User-Agent": self.device.user_agent,
            "x-lal": LANGUAGE,
            "Content-Type": THRIFT_CONTENT_TYPE,
            "Accept": THRIFT_CONTENT_TYPE,
        }
        token = access_token if access_token is not None else self.auth_token
        if token:
            headers["X-Line-Access"] = token
        if long_poll_timeout is not None:
            headers["x-lst"] = str(int(long_poll_timeout * 1000))
        return headers

    # -------------------------------------------------------------------------
    # Persisted credentials
    # -------------------------------------------------------------------------

    async def load_auth_token(self) -> str | None:
        token = await self.storage.get(AUTH_TOKEN_KEY)
        return token if isinstance(token, str) and token else None

    async def save_auth_token(self, token: str) -> None:
        self.auth_token = token
        await self.storage.set(AUTH_TOKEN_KEY, token)

    async def forget_auth_token(self) -> None:
        self.auth_token = None
        await self.storage.delete(AUTH_TOKEN_KEY)

    async def load_certificate(self, email: str) -> str | None:
        cert = await self.storage.get(cert_key(email))
        return cert if isinstance(cert, str) and cert else None

    async def save_certificate(self, email: str, certificate: str) -> None:
        self.certificate = certificate
        await self.storage.set(cert_key(email), certificate)

    async def load_qr_certificate(self) -> str | None:
        cert = await self.storage.get(QR_CERT_KEY)
        return cert if isinstance(cert, str) and cert else None

    async def save_qr_certificate(self, certificate: str) -> None:
        self.qr_certificate = certificate
        await self.storage.set(QR_CERT_KEY, certificate)
        _LOGGER.debug("[%s] QR certificate stored", self.device.type)
