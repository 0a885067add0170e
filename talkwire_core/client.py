"""Client facade wiring the protocol engine together."""

from __future__ import annotations

import logging
from typing import Any

from .config import ClientConfig
from .devices import DeviceDescriptor
from .e2ee import E2EE
from .events import ClientEventType, EventEmitter, Listener
from .login import LoginStateMachine
from .polling import LongPollEngine, PollSource, TalkOperationSource
from .rpc import Channel, RpcDispatcher, Transport
from .session import Profile, SessionState
from .storage import BaseStorage, FileStorage, MemoryStorage
from .thrift import Struct, Value

_LOGGER = logging.getLogger(__name__)

# first character of a mid -> message ``toType``
TO_TYPES: dict[str, int] = {
    "u": 0,
    "r": 1,
    "c": 2,
    "s": 3,
    "m": 4,
    "p": 5,
    "v": 6,
    "t": 7,
}

MESSAGE_SEQUENCE = "message"


class BaseClient:
    """One logical account connection.

    Owns the session state, the dispatcher and every subsystem built on top
    of it. The transport is injected; the client never closes it.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        config: ClientConfig | None = None,
        storage: BaseStorage | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.device = DeviceDescriptor.resolve(self.config.device, self.config.version)
        if storage is None:
            storage = (
                FileStorage(self.config.storage_path)
                if self.config.storage_path
                else MemoryStorage()
            )
        self.storage = storage
        self.events = EventEmitter()
        self.session = SessionState(device=self.device, storage=storage)
        self.dispatcher = RpcDispatcher(
            self.session,
            transport,
            endpoint=self.config.endpoint,
            timeout=self.config.timeout,
            long_timeout=self.config.long_timeout,
            events=self.events,
        )
        self.e2ee = E2EE(self.dispatcher, self.session)
        self.login = LoginStateMachine(
            self.dispatcher, self.session, self.events, self.config.login
        )
        _LOGGER.debug(
            "[%s] Client created for %s", self.device.type, self.config.endpoint
        )

    @property
    def auth_token(self) -> str | None:
        return self.session.auth_token

    @property
    def profile(self) -> Profile | None:
        return self.session.profile

    def on(self, event_type: ClientEventType, callback: Listener) -> Any:
        """Register an event listener. Returns an unsubscribe function."""
        return self.events.on(event_type, callback)

    async def call(
        self,
        channel: str | Channel,
        method: str,
        args: Struct | None = None,
        **kwargs: Any,
    ) -> Value:
        return await self.dispatcher.call(channel, method, args, **kwargs)

    @staticmethod
    def get_to_type(mid: str) -> int | None:
        """Message ``toType`` for a mid, or None for unknown prefixes."""
        return TO_TYPES.get(mid[:1])

    def create_polling(
        self, source: PollSource | None = None, *, revision: int = 0
    ) -> LongPollEngine:
        """Build a long-poll engine. Talk operations unless ``source`` says otherwise."""
        return LongPollEngine(
            self.dispatcher,
            source or TalkOperationSource(),
            e2ee=self.e2ee,
            config=self.config.polling,
            revision=revision,
        )

    async def send_message(self, to: str, text: str, *, e2ee: bool = False) -> Value:
        """Send a text message, end-to-end encrypted when ``e2ee`` is set.

        Raises:
            ValueError: If ``to`` is not a known mid type.
        """
        to_type = self.get_to_type(to)
        if to_type is None:
            raise ValueError(f"Unknown mid type: {to}")
        if e2ee:
            payload = await self.e2ee.encrypt(to, text)
            message = payload.to_message(to_type=to_type)
        else:
            message = Struct({2: to, 3: to_type, 10: text, 15: 0})
        req_seq = await self.session.sequences.next(MESSAGE_SEQUENCE)
        return await self.dispatcher.call(
            "talk", "sendMessage", Struct({1: req_seq, 2: message})
        )

    async def logout(self) -> None:
        await self.login.logout()


# -----------------------------------------------------------------------------
# Login helpers
# -----------------------------------------------------------------------------


async def login_with_password(
    email: str,
    password: str,
    *,
    transport: Transport,
    config: ClientConfig | None = None,
    storage: BaseStorage | None = None,
    pincode: str | None = None,
    on_pincode: Listener | None = None,
) -> BaseClient:
    """Create a client and log in with email and password."""
    client = BaseClient(transport, config=config, storage=storage)
    if on_pincode is not None:
        client.on(ClientEventType.PINCALL, on_pincode)
    await client.login.with_password(email, password, pincode=pincode)
    return client


async def login_with_qr(
    *,
    transport: Transport,
    on_qr_url: Listener,
    on_pincode: Listener | None = None,
    config: ClientConfig | None = None,
    storage: BaseStorage | None = None,
) -> BaseClient:
    """Create a client and log in by QR code."""
    client = BaseClient(transport, config=config, storage=storage)
    client.on(ClientEventType.QRCALL, on_qr_url)
    if on_pincode is not None:
        client.on(ClientEventType.PINCALL, on_pincode)
    await client.login.with_qr_code()
    return client


async def login_with_auth_token(
    auth_token: str,
    *,
    transport: Transport,
    config: ClientConfig | None = None,
    storage: BaseStorage | None = None,
) -> BaseClient:
    """Create a client from an existing auth token."""
    client = BaseClient(transport, config=config, storage=storage)
    await client.login.with_auth_token(auth_token)
    return client
