"""Test the long-poll engine and the talk operation source."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from talkwire_core.config import PollingConfig
from talkwire_core.e2ee import E2EE, EncryptedPayload
from talkwire_core.errors import E2EEErrorKind, RpcError, RpcErrorKind
from talkwire_core.polling import (
    LongPollEngine,
    Operation,
    OperationType,
    PollBatch,
    PollEvent,
    PollEventType,
    PollSource,
    RevisionRegression,
    TalkOperationSource,
)
from talkwire_core.rpc import RpcDispatcher, TransportRequest
from talkwire_core.thrift import I64, Struct

from .conftest import FakeServer, ServerException

FAST = PollingConfig(backoff_base=1.0, backoff_max=4.0, batch_size=10)


class ScriptedSource(PollSource):
    """Replays prepared batches and errors, then blocks like an idle server."""

    channel = "talk_poll"

    def __init__(self, steps: list[PollBatch | Exception]) -> None:
        self.steps = list(steps)
        self.revisions: list[int] = []

    async def fetch(
        self, dispatcher: RpcDispatcher, revision: int, count: int
    ) -> PollBatch:
        self.revisions.append(revision)
        if not self.steps:
            await asyncio.Event().wait()
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def batch(*revisions: int, op_type: int = OperationType.RECEIVE_MESSAGE) -> PollBatch:
    return PollBatch(
        operations=[Operation(revision=r, type=op_type) for r in revisions],
        revision=max(revisions),
    )


def op_struct(revision: int, op_type: int, **fields: Any) -> Struct:
    value = Struct({1: I64(revision), 3: op_type})
    for field_id, field_value in fields.items():
        value[int(field_id.removeprefix("f"))] = field_value
    return value


async def take(engine: LongPollEngine, count: int) -> list[PollEvent]:
    events = []
    for _ in range(count):
        event = await engine.next_event(timeout=2)
        assert event is not None
        events.append(event)
    return events


class TestOrdering:
    async def test_regression_is_reported_not_delivered(
        self, dispatcher: RpcDispatcher
    ) -> None:
        source = ScriptedSource([batch(5, 6, 6, 9), batch(3)])
        engine = LongPollEngine(dispatcher, source, config=FAST)

        engine.start()
        events = await take(engine, 5)
        await engine.cancel()

        assert [e.type for e in events] == [PollEventType.OPERATION] * 4 + [
            PollEventType.ANOMALY
        ]
        assert [e.operation.revision for e in events if e.operation] == [5, 6, 6, 9, 3]
        anomaly = events[4].error
        assert isinstance(anomaly, RevisionRegression)
        assert anomaly.revision == 3
        assert anomaly.current == 9
        assert engine.revision == 9

    async def test_resumes_from_highest_revision(
        self, dispatcher: RpcDispatcher
    ) -> None:
        source = ScriptedSource([batch(11, 12), batch(13)])
        engine = LongPollEngine(dispatcher, source, config=FAST, revision=10)

        engine.start()
        await take(engine, 3)
        await engine.cancel()

        assert source.revisions == [10, 12, 13]

    async def test_async_iteration_ends_after_cancel(
        self, dispatcher: RpcDispatcher
    ) -> None:
        engine = LongPollEngine(dispatcher, ScriptedSource([batch(1, 2)]), config=FAST)
        engine.start()

        seen = []
        async for event in engine:
            seen.append(event.operation.revision if event.operation else None)
            if len(seen) == 2:
                break
        await engine.cancel()

        assert seen == [1, 2]
        assert [event async for event in engine] == []
        assert await engine.next_event() is None
        assert not engine.is_running


class TestBackoff:
    async def test_exponential_delays_capped_and_reset(
        self, dispatcher: RpcDispatcher, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        delays: list[float] = []
        real_sleep = asyncio.sleep

        async def fake_sleep(delay: float, *args: Any, **kwargs: Any) -> None:
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        failure = RpcError(RpcErrorKind.TRANSPORT, "connection reset")
        source = ScriptedSource([failure] * 5 + [batch(1)])
        engine = LongPollEngine(dispatcher, source, config=FAST)

        engine.start()
        events = await take(engine, 1)
        await engine.cancel()

        assert delays == [1.0, 2.0, 4.0, 4.0, 4.0]
        assert events[0].operation is not None
        assert engine.retry_attempts == 0

    async def test_application_errors_back_off(
        self,
        dispatcher: RpcDispatcher,
        server: FakeServer,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        real_sleep = asyncio.sleep

        async def fake_sleep(delay: float, *args: Any, **kwargs: Any) -> None:
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        calls = 0

        def fetch_ops(args: Struct, req: TransportRequest) -> list[Struct]:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ServerException(4, "slow down")
            return [op_struct(1, OperationType.RECEIVE_MESSAGE)]

        server.on("fetchOps", fetch_ops)
        engine = LongPollEngine(dispatcher, TalkOperationSource(), config=FAST)

        engine.start()
        events = await take(engine, 1)
        await engine.cancel()

        assert events[0].type is PollEventType.OPERATION

    async def test_long_outage_keeps_delay_capped(
        self, dispatcher: RpcDispatcher, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        delays: list[float] = []
        real_sleep = asyncio.sleep

        async def fake_sleep(delay: float, *args: Any, **kwargs: Any) -> None:
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        failure = RpcError(RpcErrorKind.TRANSPORT, "network unreachable")
        source = ScriptedSource([failure] * 1100 + [batch(1)])
        engine = LongPollEngine(dispatcher, source, config=FAST)

        engine.start()
        events = await take(engine, 1)
        await engine.cancel()

        assert events[0].type is PollEventType.OPERATION
        assert len(delays) == 1100
        assert max(delays) == 4.0
        assert delays[-1] == 4.0
        assert engine.retry_attempts == 0


class TestFatalErrors:
    async def test_unexpected_failure_is_reported(
        self, dispatcher: RpcDispatcher
    ) -> None:
        engine = LongPollEngine(
            dispatcher, ScriptedSource([ValueError("boom")]), config=FAST
        )

        engine.start()
        event = await engine.next_event(timeout=2)

        assert event is not None
        assert event.type is PollEventType.ERROR
        assert isinstance(event.error, ValueError)
        assert await engine.next_event(timeout=2) is None
        assert not engine.is_running

    async def test_auth_failure_stops_polling(
        self, dispatcher: RpcDispatcher, server: FakeServer
    ) -> None:
        def reject(args: Struct, req: TransportRequest) -> None:
            raise ServerException(1, "token expired")

        server.on("fetchOps", reject)
        engine = LongPollEngine(dispatcher, TalkOperationSource(), config=FAST)

        engine.start()
        event = await engine.next_event(timeout=2)

        assert event is not None
        assert event.type is PollEventType.ERROR
        assert isinstance(event.error, RpcError)
        assert event.error.kind is RpcErrorKind.APPLICATION
        assert await engine.next_event(timeout=2) is None
        assert not engine.is_running
        assert len(server.args_of("fetchOps")) == 1
        with pytest.raises(RuntimeError):
            engine.start()

    async def test_malformed_batch_stops_polling(
        self, dispatcher: RpcDispatcher, server: FakeServer
    ) -> None:
        server.on("fetchOps", lambda args, req: "not a list")
        engine = LongPollEngine(dispatcher, TalkOperationSource(), config=FAST)

        engine.start()
        event = await engine.next_event(timeout=2)

        assert event is not None
        assert event.type is PollEventType.ERROR
        assert await engine.next_event(timeout=2) is None


class TestTalkOperationSource:
    async def test_end_of_operation_tracks_revisions(
        self, dispatcher: RpcDispatcher, server: FakeServer
    ) -> None:
        second_call = asyncio.Event()
        calls = 0

        async def fetch_ops(args: Struct, req: TransportRequest) -> list[Struct]:
            nonlocal calls
            calls += 1
            if calls == 1:
                return [
                    op_struct(10, OperationType.RECEIVE_MESSAGE, f10="ubob"),
                    op_struct(
                        11, OperationType.END_OF_OPERATION, f10="500\x1e1", f11="77"
                    ),
                ]
            second_call.set()
            await asyncio.Event().wait()
            return []

        server.on("fetchOps", fetch_ops)
        engine = LongPollEngine(dispatcher, TalkOperationSource(), config=FAST)

        engine.start()
        events = await take(engine, 1)
        await asyncio.wait_for(second_call.wait(), timeout=2)
        await engine.cancel()

        assert events[0].operation is not None
        assert events[0].operation.revision == 10
        assert events[0].operation.sender == "ubob"
        assert engine.revision == 11
        assert server.args_of("fetchOps")[1] == Struct({2: 11, 3: 10, 4: 500, 5: 77})
        assert server.requests_of("fetchOps")[0].path == "/P5"

    async def test_empty_reply_is_empty_batch(
        self, dispatcher: RpcDispatcher, server: FakeServer
    ) -> None:
        server.on("fetchOps", lambda args, req: None)

        result = await TalkOperationSource().fetch(dispatcher, 4, 10)

        assert result == PollBatch(operations=[])


class TestEncryptedOperations:
    def encrypted_message(self) -> Struct:
        return EncryptedPayload(
            conversation_id="ubob",
            sender="ubob",
            sender_key_id=1,
            receiver_key_id=2,
            nonce=b"\x00" * 12,
            ciphertext=b"\x01\x02",
            signature=b"\x03" * 64,
        ).to_message(to_type=0)

    async def test_decrypt_failure_does_not_stop_others(
        self, dispatcher: RpcDispatcher
    ) -> None:
        broken = Struct({1: "ubob", 18: {"e2eeVersion": "2"}, 20: [b"x", b"y"]})
        source = ScriptedSource(
            [
                PollBatch(
                    operations=[
                        Operation(revision=1, type=26, message=broken),
                        Operation(revision=2, type=26, message=Struct({1: "ubob"})),
                    ],
                    revision=2,
                )
            ]
        )
        e2ee = E2EE(dispatcher, dispatcher.session)
        engine = LongPollEngine(dispatcher, source, e2ee=e2ee, config=FAST)

        engine.start()
        events = await take(engine, 2)
        await engine.cancel()

        assert events[0].type is PollEventType.DECRYPT_ERROR
        assert events[0].error.kind is E2EEErrorKind.DECRYPT_FAILURE  # type: ignore[union-attr]
        assert events[1].type is PollEventType.OPERATION
        assert events[1].operation is not None
        assert events[1].operation.revision == 2
        assert engine.revision == 2

    async def test_plaintext_attached_and_key_updates_invalidate(
        self, dispatcher: RpcDispatcher
    ) -> None:
        e2ee = MagicMock(spec=E2EE)
        e2ee.decrypt = AsyncMock(return_value="hello")
        source = ScriptedSource(
            [
                PollBatch(
                    operations=[
                        Operation(
                            revision=1,
                            type=OperationType.NOTIFIED_E2EE_KEY_UPDATE,
                            param1="ubob",
                        ),
                        Operation(
                            revision=2,
                            type=OperationType.RECEIVE_MESSAGE,
                            message=self.encrypted_message(),
                        ),
                    ],
                    revision=2,
                )
            ]
        )
        engine = LongPollEngine(dispatcher, source, e2ee=e2ee, config=FAST)

        engine.start()
        events = await take(engine, 2)
        await engine.cancel()

        e2ee.invalidate.assert_called_once_with("ubob")
        assert events[0].plaintext is None
        assert events[1].plaintext == "hello"
        payload = e2ee.decrypt.await_args.args[0]
        assert payload.sender_key_id == 1
        assert payload.conversation_id == "ubob"

    async def test_cancel_during_decrypt_keeps_revision(
        self, dispatcher: RpcDispatcher
    ) -> None:
        decrypting = asyncio.Event()

        async def blocked_decrypt(payload: EncryptedPayload) -> str:
            decrypting.set()
            await asyncio.Event().wait()
            return "never"

        e2ee = MagicMock(spec=E2EE)
        e2ee.decrypt = AsyncMock(side_effect=blocked_decrypt)
        source = ScriptedSource(
            [
                PollBatch(
                    operations=[
                        Operation(
                            revision=7,
                            type=OperationType.RECEIVE_MESSAGE,
                            message=self.encrypted_message(),
                        )
                    ],
                    revision=7,
                )
            ]
        )
        engine = LongPollEngine(
            dispatcher, source, e2ee=e2ee, config=FAST, revision=5
        )

        engine.start()
        await asyncio.wait_for(decrypting.wait(), timeout=2)
        await engine.cancel()

        assert engine.revision == 5
        assert await engine.next_event() is None


class TestLifecycle:
    async def test_start_twice_is_noop(self, dispatcher: RpcDispatcher) -> None:
        engine = LongPollEngine(dispatcher, ScriptedSource([]), config=FAST)

        engine.start()
        task = engine._task
        engine.start()

        assert engine._task is task
        assert engine.is_running
        await engine.cancel()
        assert not engine.is_running

    def test_operation_from_struct_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            Operation.from_struct(Struct({3: 26}))
        with pytest.raises(ValueError):
            Operation.from_struct("op")

    def test_unknown_operation_type(self) -> None:
        op = Operation.from_struct(Struct({1: 3, 3: 999}))
        assert op.kind is OperationType.UNKNOWN
        assert op.type == 999
