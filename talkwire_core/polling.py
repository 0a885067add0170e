"""Long-poll event ingestion.

A ``LongPollEngine`` owns one background task per polled channel. Each
iteration issues a long-timeout call through a ``PollSource``, processes the
returned operations strictly in server order, and resumes from the highest
revision processed so far. Consumers read ``PollEvent`` values with
``async for``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from .config import PollingConfig
from .e2ee import E2EE, EncryptedPayload, is_e2ee_message
from .errors import DecodeError, E2EEError, RpcError, RpcErrorKind
from .rpc import RpcDispatcher
from .thrift import I64, Struct

_LOGGER = logging.getLogger(__name__)

REVISION_SEPARATOR = "\x1e"
MAX_BACKOFF_EXPONENT = 32


class OperationType(IntEnum):
    """Operation type tags the engine acts on. Others pass through as UNKNOWN."""

    UNKNOWN = -1
    END_OF_OPERATION = 0
    SEND_MESSAGE = 25
    RECEIVE_MESSAGE = 26
    NOTIFIED_READ_MESSAGE = 55
    NOTIFIED_E2EE_KEY_UPDATE = 124

    @classmethod
    def from_code(cls, code: int) -> OperationType:
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Operation:
    """One server-pushed operation."""

    revision: int
    type: int
    created_time: int = 0
    req_seq: int = 0
    param1: str | None = None
    param2: str | None = None
    param3: str | None = None
    message: Struct | None = None
    raw: Struct = field(default_factory=Struct, repr=False)

    @classmethod
    def from_struct(cls, value: Any) -> Operation:
        """Build from a decoded ``Operation`` struct.

        Raises:
            ValueError: If the value is not an operation.
        """
        if not isinstance(value, Struct):
            raise ValueError(f"Operation is not a struct: {value!r}")
        revision = value.get(1)
        op_type = value.get(3)
        if not isinstance(revision, int) or not isinstance(op_type, int):
            raise ValueError("Operation lacks revision or type")
        message = value.get(20)
        return cls(
            revision=int(revision),
            type=op_type,
            created_time=int(value.get(2) or 0),
            req_seq=int(value.get(4) or 0),
            param1=_param(value.get(10)),
            param2=_param(value.get(11)),
            param3=_param(value.get(12)),
            message=message if isinstance(message, Struct) else None,
            raw=value,
        )

    @property
    def kind(self) -> OperationType:
        return OperationType.from_code(self.type)

    @property
    def sender(self) -> str | None:
        if self.message is not None and isinstance(self.message.get(1), str):
            return self.message[1]
        return self.param1


def _param(value: Any) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value if isinstance(value, str) else None


def _leading_revision(param: str | None) -> int | None:
    if not param:
        return None
    head = param.split(REVISION_SEPARATOR, 1)[0]
    try:
        return int(head)
    except ValueError:
        return None


@dataclass(frozen=True)
class PollBatch:
    """Operations from one long-poll call plus the high-water revision."""

    operations: list[Operation]
    revision: int | None = None


# -----------------------------------------------------------------------------
# Sources
# -----------------------------------------------------------------------------


class PollSource(ABC):
    """Turns the current revision into one long-poll call."""

    channel: str

    @abstractmethod
    async def fetch(
        self, dispatcher: RpcDispatcher, revision: int, count: int
    ) -> PollBatch:
        """Issue one long-poll call and parse its result.

        Raises:
            RpcError: When the call fails.
            DecodeError: When the result is not a batch of operations.
        """


class TalkOperationSource(PollSource):
    """``fetchOps`` on the talk long-poll channel.

    Tracks the global and individual revisions the server reports in
    ``END_OF_OPERATION`` markers; those markers are never delivered.
    """

    channel = "talk_poll"

    def __init__(self) -> None:
        self.global_revision = 0
        self.individual_revision = 0

    async def fetch(
        self, dispatcher: RpcDispatcher, revision: int, count: int
    ) -> PollBatch:
        result = await dispatcher.call(
            self.channel,
            "fetchOps",
            Struct(
                {
                    2: I64(revision),
                    3: count,
                    4: I64(self.global_revision),
                    5: I64(self.individual_revision),
                }
            ),
            long_poll=True,
        )
        if result is None:
            return PollBatch(operations=[])
        if not isinstance(result, list):
            raise DecodeError(f"fetchOps returned {type(result).__name__}", 0)

        operations: list[Operation] = []
        high_water: int | None = None
        for item in result:
            try:
                op = Operation.from_struct(item)
            except ValueError as err:
                raise DecodeError(f"Malformed operation: {err}", 0) from err
            if high_water is None or op.revision > high_water:
                high_water = op.revision
            if op.kind is OperationType.END_OF_OPERATION:
                self._track(op)
                continue
            operations.append(op)
        return PollBatch(operations=operations, revision=high_water)

    def _track(self, op: Operation) -> None:
        global_rev = _leading_revision(op.param1)
        if global_rev is not None:
            self.global_revision = global_rev
        individual_rev = _leading_revision(op.param2)
        if individual_rev is not None:
            self.individual_revision = individual_rev


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


class PollEventType(Enum):
    """Kinds of events the engine emits."""

    OPERATION = "operation"
    DECRYPT_ERROR = "decrypt_error"
    ANOMALY = "anomaly"
    ERROR = "error"


@dataclass(frozen=True)
class PollEvent:
    """One event from the engine.

    ``plaintext`` is set for decrypted E2EE messages; ``error`` for
    DECRYPT_ERROR, ANOMALY and ERROR events.
    """

    type: PollEventType
    channel: str
    operation: Operation | None = None
    plaintext: str | None = None
    error: Exception | None = None


class RevisionRegression(Exception):
    """An operation arrived with a revision below one already processed."""

    def __init__(self, revision: int, current: int) -> None:
        super().__init__(f"Revision {revision} arrived after {current}")
        self.revision = revision
        self.current = current


_STOP = object()


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------


class LongPollEngine:
    """Background long-poll loop for one channel."""

    def __init__(
        self,
        dispatcher: RpcDispatcher,
        source: PollSource,
        *,
        e2ee: E2EE | None = None,
        config: PollingConfig | None = None,
        revision: int = 0,
    ) -> None:
        self._dispatcher = dispatcher
        self._source = source
        self._e2ee = e2ee
        self._config = config or PollingConfig()
        self._revision = revision
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._retry_attempts = 0
        self._shutdown_requested = False
        self._finished = False

    @property
    def channel(self) -> str:
        return self._source.channel

    @property
    def revision(self) -> int:
        """Highest revision processed so far."""
        return self._revision

    @property
    def retry_attempts(self) -> int:
        return self._retry_attempts

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background task. Calling it while running is a no-op."""
        if self.is_running:
            return
        if self._finished:
            raise RuntimeError(f"Polling on {self.channel} already finished")
        _LOGGER.info("[%s] Polling from revision %d", self.channel, self._revision)
        self._task = asyncio.create_task(self._run())

    async def cancel(self) -> None:
        """Stop polling. The in-flight call is abandoned; no reconnects follow."""
        _LOGGER.info("[%s] Cancelling polling", self.channel)
        self._shutdown_requested = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._finish()

    close = cancel

    def __aiter__(self) -> AsyncIterator[PollEvent]:
        return self._iter_events()

    async def _iter_events(self) -> AsyncIterator[PollEvent]:
        while True:
            if self._finished and self._queue.empty():
                return
            event = await self._queue.get()
            if event is _STOP:
                return
            yield event

    async def next_event(self, timeout: float | None = None) -> PollEvent | None:
        """Return the next event, or None once the engine has stopped."""
        if self._finished and self._queue.empty():
            return None
        event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        return None if event is _STOP else event

    def _finish(self) -> None:
        if not self._finished:
            self._finished = True
            self._queue.put_nowait(_STOP)

    async def _emit(self, event: PollEvent) -> None:
        await self._queue.put(event)

    # -------------------------------------------------------------------------
    # Internal: loop
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while not self._shutdown_requested:
                try:
                    batch = await self._source.fetch(
                        self._dispatcher, self._revision, self._config.batch_size
                    )
                except DecodeError as err:
                    await self._stop_with_error(err)
                    return
                except RpcError as err:
                    if self._is_fatal(err):
                        await self._stop_with_error(err)
                        return
                    await self._backoff(err)
                    continue
                self._retry_attempts = 0
                await self._process(batch)
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Polling cancelled at %d", self.channel, self._revision)
            raise
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected polling failure", self.channel)
            await self._stop_with_error(err)
        finally:
            self._finish()

    @staticmethod
    def _is_fatal(err: RpcError) -> bool:
        if err.kind is RpcErrorKind.DECODE:
            return True
        return (
            err.kind is RpcErrorKind.APPLICATION
            and err.exception is not None
            and err.exception.is_auth_failure
        )

    async def _stop_with_error(self, err: Exception) -> None:
        _LOGGER.error("[%s] Polling stopped: %s", self.channel, err)
        await self._emit(
            PollEvent(type=PollEventType.ERROR, channel=self.channel, error=err)
        )

    async def _backoff(self, err: RpcError) -> None:
        """Sleep with exponential backoff before the next attempt."""
        exponent = min(self._retry_attempts, MAX_BACKOFF_EXPONENT)
        delay = min(
            self._config.backoff_base * (2**exponent), self._config.backoff_max
        )
        self._retry_attempts += 1
        _LOGGER.info(
            "[%s] %s; retrying in %.1fs (attempt %d)",
            self.channel,
            err,
            delay,
            self._retry_attempts,
        )
        await asyncio.sleep(delay)

    async def _process(self, batch: PollBatch) -> None:
        for op in batch.operations:
            if op.revision < self._revision:
                _LOGGER.warning(
                    "[%s] Revision regression: %d after %d",
                    self.channel,
                    op.revision,
                    self._revision,
                )
                await self._emit(
                    PollEvent(
                        type=PollEventType.ANOMALY,
                        channel=self.channel,
                        operation=op,
                        error=RevisionRegression(op.revision, self._revision),
                    )
                )
                continue
            await self._deliver(op)
            self._revision = op.revision
        if batch.revision is not None and batch.revision > self._revision:
            self._revision = batch.revision

    async def _deliver(self, op: Operation) -> None:
        if self._e2ee is not None:
            if op.kind is OperationType.NOTIFIED_E2EE_KEY_UPDATE and op.param1:
                self._e2ee.invalidate(op.param1)
            if op.message is not None and is_e2ee_message(op.message):
                try:
                    payload = EncryptedPayload.from_message(
                        op.message, self_mid=self._dispatcher.session.mid
                    )
                    plaintext = await self._e2ee.decrypt(payload)
                except (E2EEError, RpcError) as err:
                    _LOGGER.warning(
                        "[%s] Cannot decrypt operation %d: %s",
                        self.channel,
                        op.revision,
                        err,
                    )
                    await self._emit(
                        PollEvent(
                            type=PollEventType.DECRYPT_ERROR,
                            channel=self.channel,
                            operation=op,
                            error=err,
                        )
                    )
                    return
                await self._emit(
                    PollEvent(
                        type=PollEventType.OPERATION,
                        channel=self.channel,
                        operation=op,
                        plaintext=plaintext,
                    )
                )
                return
        await self._emit(
            PollEvent(type=PollEventType.OPERATION, channel=self.channel, operation=op)
        )
