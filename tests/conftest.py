"""Pytest configuration and fixtures for talkwire tests."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from talkwire_core.devices import DeviceDescriptor
from talkwire_core.events import EventEmitter
from talkwire_core.rpc import RpcDispatcher, TransportRequest
from talkwire_core.session import Profile, SessionState
from talkwire_core.storage import MemoryStorage
from talkwire_core.thrift import (
    MessageHeader,
    MessageKind,
    Struct,
    decode_message,
    encode_message,
)

Handler = Callable[[Struct, TransportRequest], Any]


class ServerException(Exception):
    """Raised by a fake handler to answer with a declared exception."""

    def __init__(self, code: int, reason: str = "") -> None:
        super().__init__(reason)
        self.value = Struct({1: code, 2: reason})


class FakeServer:
    """In-process server speaking the compact protocol.

    Handlers receive the decoded argument struct and the transport request
    and return the success value (sync or async). Raising
    ``ServerException`` answers with a declared exception.
    """

    def __init__(self) -> None:
        self.handlers: dict[str, Handler] = {}
        self.raw_handlers: dict[str, Callable[[TransportRequest], Any]] = {}
        self.calls: list[tuple[str, int, Struct, TransportRequest]] = []

    def on(self, method: str, handler: Handler) -> None:
        self.handlers[method] = handler

    def on_raw(self, path: str, handler: Callable[[TransportRequest], Any]) -> None:
        self.raw_handlers[path] = handler

    def args_of(self, method: str) -> list[Struct]:
        return [args for name, _, args, _ in self.calls if name == method]

    def requests_of(self, method: str) -> list[TransportRequest]:
        return [request for name, _, _, request in self.calls if name == method]

    async def __call__(self, request: TransportRequest) -> bytes:
        if request.body is None:
            result = self.raw_handlers[request.path](request)
            if inspect.isawaitable(result):
                result = await result
            return bytes(result)

        header, args = decode_message(request.body)
        self.calls.append((header.name, header.seqid, args, request))
        handler = self.handlers[header.name]
        try:
            result = handler(args, request)
            if inspect.isawaitable(result):
                result = await result
        except ServerException as exc:
            body = Struct({1: exc.value})
        else:
            body = Struct() if result is None else Struct({0: result})
        return encode_message(
            MessageHeader(name=header.name, seqid=header.seqid, kind=MessageKind.REPLY),
            body,
        )


def make_session(storage: MemoryStorage | None = None) -> SessionState:
    return SessionState(
        device=DeviceDescriptor.resolve("DESKTOPWIN"),
        storage=storage or MemoryStorage(),
    )


def make_profile(mid: str) -> Profile:
    return Profile(mid=mid, display_name=mid.upper())


async def never_returns(request: TransportRequest) -> bytes:
    await asyncio.sleep(3600)
    return b""


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def session(storage: MemoryStorage) -> SessionState:
    return make_session(storage)


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def events() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def dispatcher(
    session: SessionState, server: FakeServer, events: EventEmitter
) -> RpcDispatcher:
    return RpcDispatcher(session, server, events=events)


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    read_data: bytes | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        read_data: Data to return from read() call

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status

    if read_data is not None:
        response.read.return_value = read_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response
