"""Test SessionState, device descriptors and event emission."""

from __future__ import annotations

import pytest

from talkwire_core.devices import DeviceDescriptor
from talkwire_core.errors import LoginError, LoginErrorKind
from talkwire_core.events import ClientEventType, EventEmitter
from talkwire_core.session import Profile, SessionState
from talkwire_core.storage import MemoryStorage
from talkwire_core.thrift import Struct

from .conftest import make_profile


class TestDeviceDescriptor:
    def test_resolve_default_version(self) -> None:
        device = DeviceDescriptor.resolve("DESKTOPMAC")
        assert device.version == "9.2.0.3402"
        assert device.application_header == "DESKTOPMAC\t9.2.0.3402\tMAC\t10.15.1"
        assert device.user_agent == "Line/9.2.0.3402"

    def test_version_override(self) -> None:
        assert DeviceDescriptor.resolve("IOS", "15.0.0").version == "15.0.0"

    def test_unsupported_device(self) -> None:
        with pytest.raises(LoginError) as exc_info:
            DeviceDescriptor.resolve("TOASTER")
        assert exc_info.value.kind is LoginErrorKind.UNSUPPORTED_DEVICE
        assert str(exc_info.value) == "Unsupported device: TOASTER."


class TestSessionState:
    async def test_credentials_round_trip_through_storage(
        self, session: SessionState, storage: MemoryStorage
    ) -> None:
        await session.save_auth_token("tok")
        await session.save_certificate("me@example.com", "cert-1")
        await session.save_qr_certificate("qr-1")

        assert await storage.get("authToken") == "tok"
        assert await storage.get("cert:me@example.com") == "cert-1"
        assert await session.load_auth_token() == "tok"
        assert await session.load_certificate("me@example.com") == "cert-1"
        assert await session.load_certificate("other@example.com") is None
        assert await session.load_qr_certificate() == "qr-1"

        await session.forget_auth_token()
        assert session.auth_token is None
        assert await session.load_auth_token() is None

    def test_is_authenticated_needs_token_and_profile(self, session: SessionState) -> None:
        assert not session.is_authenticated
        session.auth_token = "tok"
        assert not session.is_authenticated
        session.profile = make_profile("u1")
        assert session.is_authenticated
        assert session.mid == "u1"

    def test_headers_without_token(self, session: SessionState) -> None:
        headers = session.request_headers()
        assert "X-Line-Access" not in headers
        assert headers["Content-Type"] == "application/x-thrift"
        assert headers["x-lal"] == "ja_JP"

    def test_headers_with_long_poll(self, session: SessionState) -> None:
        session.auth_token = "tok"
        headers = session.request_headers(long_poll_timeout=2.5)
        assert headers["X-Line-Access"] == "tok"
        assert headers["x-lst"] == "2500"


class TestProfile:
    def test_from_struct(self) -> None:
        profile = Profile.from_struct(
            Struct({1: "u1", 20: "Alice", 24: "hi", 33: "/p/u1"})
        )
        assert profile.mid == "u1"
        assert profile.display_name == "Alice"
        assert profile.status_message == "hi"
        assert profile.picture_path == "/p/u1"

    def test_missing_mid(self) -> None:
        with pytest.raises(ValueError):
            Profile.from_struct(Struct({20: "Alice"}))


class TestEventEmitter:
    async def test_sync_and_async_listeners(self) -> None:
        events = EventEmitter()
        seen: list[str] = []

        async def async_listener(data: str) -> None:
            seen.append(f"async:{data}")

        events.on(ClientEventType.PINCALL, lambda data: seen.append(f"sync:{data}"))
        events.on(ClientEventType.PINCALL, async_listener)

        await events.emit(ClientEventType.PINCALL, "1234")

        assert seen == ["sync:1234", "async:1234"]

    async def test_unsubscribe(self) -> None:
        events = EventEmitter()
        seen: list[object] = []
        remove = events.on(ClientEventType.READY, seen.append)

        remove()
        await events.emit(ClientEventType.READY, "x")

        assert seen == []
        assert events.listener_count(ClientEventType.READY) == 0

    async def test_failing_listener_does_not_stop_others(self) -> None:
        events = EventEmitter()
        seen: list[object] = []

        def broken(data: object) -> None:
            raise RuntimeError("listener bug")

        events.on(ClientEventType.END, broken)
        events.on(ClientEventType.END, seen.append)

        await events.emit(ClientEventType.END, "bye")

        assert seen == ["bye"]
