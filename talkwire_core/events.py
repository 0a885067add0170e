"""Client event emission.

The core announces login prompts, credential updates, session start/end and
structured log records through an ``EventEmitter``. It never formats or
persists them; the surrounding application registers callbacks.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_LOGGER = logging.getLogger(__name__)


class ClientEventType(Enum):
    """Events emitted to the surrounding application."""

    PINCALL = "pincall"
    QRCALL = "qrcall"
    READY = "ready"
    END = "end"
    UPDATE_AUTHTOKEN = "update:authtoken"
    UPDATE_PROFILE = "update:profile"
    UPDATE_CERT = "update:cert"
    UPDATE_QRCERT = "update:qrcert"
    LOG = "log"


@dataclass(frozen=True)
class LogRecord:
    """Structured log event: ``{type, data}``."""

    type: str
    data: dict[str, Any] = field(default_factory=lambda: {})


Listener = Callable[[Any], Awaitable[None] | None]


class EventEmitter:
    """Dispatches events to registered listeners in registration order.

    Listeners may be plain functions or coroutine functions. A failing
    listener is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: defaultdict[ClientEventType, list[Listener]] = defaultdict(
            list
        )

    def on(self, event_type: ClientEventType, callback: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unregisters it."""
        self._listeners[event_type].append(callback)

        def _remove() -> None:
            self.off(event_type, callback)

        return _remove

    def off(self, event_type: ClientEventType, callback: Listener) -> None:
        """Unregister a listener. Unknown listeners are ignored."""
        listeners = self._listeners.get(event_type, [])
        if callback in listeners:
            listeners.remove(callback)

    def listener_count(self, event_type: ClientEventType) -> int:
        return len(self._listeners.get(event_type, []))

    async def emit(self, event_type: ClientEventType, data: Any = None) -> None:
        """Deliver ``data`` to every listener of ``event_type``."""
        for callback in list(self._listeners.get(event_type, [])):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as err:
                _LOGGER.exception(
                    "[%s] Event listener error: %s", event_type.value, err
                )

    async def log(self, log_type: str, data: dict[str, Any]) -> None:
        """Emit a structured log record."""
        await self.emit(ClientEventType.LOG, LogRecord(type=log_type, data=data))
