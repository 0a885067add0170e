"""Request/response RPC dispatcher.

Every call gets a channel-scoped sequence id from ``SessionState``, is framed
as a CALL envelope, sent through the injected transport, and completed when
a response carrying the same sequence id is decoded. Responses are routed by
sequence id, not by arrival order, so a transport that multiplexes replies
still reaches the right caller.

Timeouts abandon the call locally. The server may still have processed it;
callers issuing non-idempotent calls must cope with that themselves.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from .config import DEFAULT_ENDPOINT
from .errors import (
    DecodeError,
    RpcError,
    RpcErrorKind,
    TransportError,
    TransportTimeout,
)
from .events import EventEmitter
from .session import SessionState
from .thrift import (
    MessageHeader,
    MessageKind,
    Protocol,
    Struct,
    Value,
    decode_message,
    encode_message,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_LONG_TIMEOUT = 180.0


# -----------------------------------------------------------------------------
# Application exceptions
# -----------------------------------------------------------------------------


class ErrorCode(IntEnum):
    """Known application exception codes. ``UNKNOWN`` is the escape case."""

    UNKNOWN = -1
    ILLEGAL_ARGUMENT = 0
    AUTHENTICATION_FAILED = 1
    DB_FAILED = 2
    INVALID_STATE = 3
    EXCESSIVE_ACCESS = 4
    NOT_FOUND = 5
    INVALID_LENGTH = 6
    NOT_AVAILABLE_USER = 7
    NOT_AUTHORIZED_DEVICE = 8
    INVALID_MID = 9
    NOT_A_MEMBER = 10
    INCOMPATIBLE_APP_VERSION = 11
    NOT_READY = 12
    NOT_AVAILABLE_SESSION = 13
    NOT_AUTHORIZED_SESSION = 14
    SYSTEM_ERROR = 15
    NO_AVAILABLE_VERIFICATION_METHOD = 16
    NOT_AUTHENTICATED = 17
    INVALID_IDENTITY_CREDENTIAL = 18
    NOT_AVAILABLE_IDENTITY_IDENTIFIER = 19
    INTERNAL_ERROR = 20
    NO_SUCH_IDENTITY_IDENTIFIER = 21
    DEACTIVATED_ACCOUNT_BOUND_TO_THIS_IDENTITY = 22
    ILLEGAL_IDENTITY_CREDENTIAL = 23
    MAINTENANCE_ERROR = 33
    ABUSE_BLOCK = 35

    @classmethod
    def from_code(cls, code: int | None) -> ErrorCode:
        if code is None:
            return cls.UNKNOWN
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN


AUTH_FAILURE_CODES = frozenset(
    {
        ErrorCode.AUTHENTICATION_FAILED,
        ErrorCode.NOT_AUTHENTICATED,
        ErrorCode.NOT_AUTHORIZED_DEVICE,
        ErrorCode.NOT_AUTHORIZED_SESSION,
    }
)


@dataclass(frozen=True)
class ApplicationException:
    """A server exception, tagged by code.

    Unrecognised codes (and exception shapes without a code) map to
    ``ErrorCode.UNKNOWN``; the decoded value is always kept in ``raw``.
    """

    kind: ErrorCode
    code: int | None
    reason: str = ""
    parameters: dict[Any, Any] = field(default_factory=lambda: {})
    raw: Value = None

    @classmethod
    def from_value(cls, value: Value) -> ApplicationException:
        """Interpret a decoded exception struct.

        Talk-style exceptions carry ``{1: code, 2: reason, 3: parameterMap}``;
        square-style ones ``{1: errorCode, 2: extraInfo, 3: reason}``.
        """
        if not isinstance(value, Struct):
            return cls(kind=ErrorCode.UNKNOWN, code=None, raw=value)
        code = value.get(1)
        if isinstance(code, bool) or not isinstance(code, int):
            code = None
        reason = value.get(2)
        if not isinstance(reason, str):
            reason = value.get(3) if isinstance(value.get(3), str) else ""
        parameters = value.get(3)
        return cls(
            kind=ErrorCode.from_code(code),
            code=code,
            reason=reason,
            parameters=dict(parameters) if isinstance(parameters, dict) else {},
            raw=value,
        )

    @property
    def is_auth_failure(self) -> bool:
        return self.kind in AUTH_FAILURE_CODES


# -----------------------------------------------------------------------------
# Channels and frames
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Channel:
    """A logical RPC namespace with its own path and sequence space."""

    name: str
    path: str
    protocol: Protocol = Protocol.COMPACT


CHANNELS: dict[str, Channel] = {
    channel.name: channel
    for channel in (
        Channel("talk", "/S4"),
        Channel("talk_poll", "/P5"),
        Channel("square", "/SQ1"),
        Channel("auth", "/RS4"),
        Channel("login", "/api/v3p/rs"),
        Channel("secondary_login", "/acct/lgn/sq/v1"),
        Channel("secondary_login_poll", "/acct/lp/lgn/sq/v1"),
    )
}


@dataclass(frozen=True)
class RequestFrame:
    """One outgoing call. Immutable once built."""

    channel: str
    method: str
    seqid: int
    args: Struct


@dataclass(frozen=True)
class ResponseFrame:
    """One decoded response, matched to a pending call by ``seqid``."""

    seqid: int
    kind: MessageKind
    value: Value = None
    exception: ApplicationException | None = None


@dataclass(frozen=True)
class TransportRequest:
    """What the transport collaborator receives.

    ``body`` is None for plain GET-style requests.
    """

    endpoint: str
    path: str
    body: bytes | None
    headers: Mapping[str, str]
    timeout: float


Transport = Callable[[TransportRequest], Awaitable[bytes]]


def _response_frame(header: MessageHeader, body: Struct) -> ResponseFrame:
    if header.kind is MessageKind.EXCEPTION:
        # protocol-level TApplicationException {1: message, 2: type}
        message = body.get(1)
        code = body.get(2)
        exception = ApplicationException(
            kind=ErrorCode.UNKNOWN,
            code=code if isinstance(code, int) else None,
            reason=message if isinstance(message, str) else "",
            raw=body,
        )
        return ResponseFrame(seqid=header.seqid, kind=header.kind, exception=exception)
    if 0 in body:
        return ResponseFrame(seqid=header.seqid, kind=header.kind, value=body[0])
    if body:
        # declared exceptions occupy field ids 1..n of the result struct
        return ResponseFrame(
            seqid=header.seqid,
            kind=header.kind,
            exception=ApplicationException.from_value(body[min(body)]),
        )
    return ResponseFrame(seqid=header.seqid, kind=header.kind)


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------


class RpcDispatcher:
    """Frames, sends and correlates RPC calls for one client."""

    def __init__(
        self,
        session: SessionState,
        transport: Transport,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = DEFAULT_TIMEOUT,
        long_timeout: float = DEFAULT_LONG_TIMEOUT,
        events: EventEmitter | None = None,
    ) -> None:
        self._session = session
        self._transport = transport
        self.endpoint = endpoint
        self.timeout = timeout
        self.long_timeout = long_timeout
        self._events = events or EventEmitter()
        self._pending: dict[str, dict[int, asyncio.Future[ResponseFrame]]] = {}

    @property
    def session(self) -> SessionState:
        return self._session

    def pending_count(self, channel: str) -> int:
        """Number of unresolved calls on ``channel``."""
        return len(self._pending.get(channel, {}))

    @staticmethod
    def resolve_channel(channel: str | Channel) -> Channel:
        if isinstance(channel, Channel):
            return channel
        try:
            return CHANNELS[channel]
        except KeyError:
            raise ValueError(f"Unknown channel: {channel}") from None

    async def call(
        self,
        channel: str | Channel,
        method: str,
        args: Struct | None = None,
        *,
        timeout: float | None = None,
        long_poll: bool = False,
        access_token: str | None = None,
    ) -> Value:
        """Call ``method`` on ``channel`` and return its success value.

        Args:
            channel: Channel name or descriptor.
            method: Remote method name.
            args: Argument struct (field id -> value).
            timeout: Overrides the timeout class.
            long_poll: Use the long timeout class and advertise it to the
                server.
            access_token: Authenticate with this token instead of the
                session token.

        Raises:
            RpcError: TIMEOUT, TRANSPORT, DECODE or APPLICATION.
            EncodeError: If ``args`` cannot be encoded.
        """
        chan = self.resolve_channel(channel)
        limit = timeout if timeout is not None else (
            self.long_timeout if long_poll else self.timeout
        )
        pending = self._pending.setdefault(chan.name, {})
        seqid = await self._session.sequences.next(chan.name, in_use=pending)
        frame = RequestFrame(
            channel=chan.name, method=method, seqid=seqid, args=args or Struct()
        )
        body = encode_message(
            MessageHeader(name=method, seqid=seqid, kind=MessageKind.CALL),
            frame.args,
            protocol=chan.protocol,
        )
        request = TransportRequest(
            endpoint=self.endpoint,
            path=chan.path,
            body=body,
            headers=self._session.request_headers(
                access_token=access_token,
                long_poll_timeout=limit if long_poll else None,
            ),
            timeout=limit,
        )

        future: asyncio.Future[ResponseFrame] = (
            asyncio.get_running_loop().create_future()
        )
        pending[seqid] = future
        await self._events.log(
            "request", {"channel": chan.name, "method": method, "seqid": seqid}
        )
        try:
            response = await asyncio.wait_for(
                self._exchange(chan, frame, request, future), timeout=limit
            )
        except TimeoutError as err:
            _LOGGER.debug("[%s] %s seq=%d timed out", chan.name, method, seqid)
            raise RpcError(
                RpcErrorKind.TIMEOUT,
                f"{method} timed out after {limit}s",
                method=method,
            ) from err
        finally:
            if pending.get(seqid) is future:
                del pending[seqid]
            if not future.done():
                future.cancel()

        await self._events.log(
            "response",
            {
                "channel": chan.name,
                "method": method,
                "seqid": seqid,
                "ok": response.exception is None,
            },
        )
        if response.exception is not None:
            raise RpcError(
                RpcErrorKind.APPLICATION,
                f"{method} failed: {response.exception.kind.name}"
                f" {response.exception.reason}".rstrip(),
                method=method,
                exception=response.exception,
            )
        return response.value

    async def _exchange(
        self,
        chan: Channel,
        frame: RequestFrame,
        request: TransportRequest,
        future: asyncio.Future[ResponseFrame],
    ) -> ResponseFrame:
        try:
            raw = await self._transport(request)
        except TransportTimeout as err:
            raise RpcError(
                RpcErrorKind.TIMEOUT,
                f"{frame.method} transport timed out",
                method=frame.method,
            ) from err
        except TransportError as err:
            raise RpcError(
                RpcErrorKind.TRANSPORT,
                f"{frame.method} transport failed: {err}",
                method=frame.method,
            ) from err

        try:
            header, body = decode_message(raw, protocol=chan.protocol)
        except DecodeError as err:
            raise RpcError(
                RpcErrorKind.DECODE,
                f"{frame.method} response undecodable: {err}",
                method=frame.method,
            ) from err

        if header.kind not in (MessageKind.REPLY, MessageKind.EXCEPTION):
            raise RpcError(
                RpcErrorKind.DECODE,
                f"{frame.method} got unexpected message kind {header.kind.name}",
                method=frame.method,
            )
        if not self._deliver(chan.name, _response_frame(header, body)):
            raise RpcError(
                RpcErrorKind.DECODE,
                f"{frame.method} got a response for unknown seqid {header.seqid}",
                method=frame.method,
            )
        return await future

    def _deliver(self, channel: str, response: ResponseFrame) -> bool:
        """Resolve the pending call owning ``response.seqid``."""
        future = self._pending.get(channel, {}).get(response.seqid)
        if future is None:
            _LOGGER.warning(
                "[%s] Dropping response for unknown seqid %d", channel, response.seqid
            )
            return False
        if not future.done():
            future.set_result(response)
        return True

    async def fetch_raw(
        self,
        path: str,
        *,
        access_token: str | None = None,
        timeout: float | None = None,
        long_poll: bool = False,
    ) -> bytes:
        """GET a non-Thrift endpoint through the same transport.

        Raises:
            RpcError: TIMEOUT or TRANSPORT.
        """
        limit = timeout if timeout is not None else (
            self.long_timeout if long_poll else self.timeout
        )
        request = TransportRequest(
            endpoint=self.endpoint,
            path=path,
            body=None,
            headers=self._session.request_headers(
                access_token=access_token,
                long_poll_timeout=limit if long_poll else None,
            ),
            timeout=limit,
        )
        try:
            return await asyncio.wait_for(self._transport(request), timeout=limit)
        except (TimeoutError, TransportTimeout) as err:
            raise RpcError(RpcErrorKind.TIMEOUT, f"GET {path} timed out") from err
        except TransportError as err:
            raise RpcError(RpcErrorKind.TRANSPORT, f"GET {path} failed: {err}") from err
