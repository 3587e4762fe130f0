# Copyright 2024 inuex35
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Typed publish/subscribe channel shared by the engine components

Payloads are small frozen dataclasses; subscribers register for a payload
class and receive instances of it and of its subclasses.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .data_structures import (
    CorrectionData,
    FusedPosition,
    GNSSData,
    IMUData,
    OCRAnchor,
    SourceStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base payload"""


@dataclass(frozen=True)
class GNSSReadingEvent(Event):
    reading: GNSSData


@dataclass(frozen=True)
class IMUReadingEvent(Event):
    reading: IMUData


@dataclass(frozen=True)
class AnchorDetectionEvent(Event):
    anchors: tuple


@dataclass(frozen=True)
class FusedPositionEvent(Event):
    position: FusedPosition


@dataclass(frozen=True)
class CorrectionDataEvent(Event):
    data: CorrectionData


@dataclass(frozen=True)
class SourceAddedEvent(Event):
    source_id: str
    name: str


@dataclass(frozen=True)
class SourceRemovedEvent(Event):
    source_id: str


@dataclass(frozen=True)
class SourceStatusEvent(Event):
    source_id: str
    status: SourceStatus


@dataclass(frozen=True)
class SourceErrorEvent(Event):
    source_id: str
    error: str
    attempt: int = 0


@dataclass(frozen=True)
class SourceTerminalErrorEvent(SourceErrorEvent):
    """Reconnection attempts are exhausted"""


@dataclass(frozen=True)
class CalibrationEvent(Event):
    profile_id: str
    action: str  # added, updated, removed, imported


@dataclass(frozen=True)
class AuditFailureEvent(Event):
    entry_id: str
    error: str
    attempts: int
    dropped: bool = False


@dataclass(frozen=True)
class ParseWarningEvent(Event):
    message: str
    raw: Any = field(default=None, compare=False)


Handler = Callable[[Event], Any]


class EventBus:
    """Synchronous dispatcher with async-handler support.

    Handlers run in registration order. A handler that raises is logged and
    skipped; a coroutine handler is scheduled on the running loop and its
    task is kept until completion.
    """

    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._pending: set = set()

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``; returns an unsubscribe callable"""
        if not (isinstance(event_type, type) and issubclass(event_type, Event)):
            raise TypeError(f"Not an event type: {event_type!r}")
        self._handlers[event_type].append(handler)

        def unsubscribe():
            self.unsubscribe(event_type, handler)
        return unsubscribe

    def unsubscribe(self, event_type: type, handler: Handler) -> bool:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handler_count(self, event_type: Optional[type] = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(event_type, []))

    def publish(self, event: Event) -> int:
        """Deliver ``event``; returns the number of handlers invoked"""
        delivered = 0
        for event_type in type(event).__mro__:
            if event_type is object:
                break
            for handler in list(self._handlers.get(event_type, [])):
                delivered += 1
                try:
                    result = handler(event)
                except Exception:
                    logger.exception("Handler %r failed for %s", handler, type(event).__name__)
                    continue
                if inspect.isawaitable(result):
                    self._schedule(result, event)
        return delivered

    def _schedule(self, awaitable, event):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Dropping async handler for %s: no running event loop",
                           type(event).__name__)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(awaitable)
        self._pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async handler failed", exc_info=task.exception())

    async def drain(self):
        """Wait for scheduled async handlers"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = [
    'Event', 'GNSSReadingEvent', 'IMUReadingEvent', 'AnchorDetectionEvent',
    'FusedPositionEvent', 'CorrectionDataEvent', 'SourceAddedEvent',
    'SourceRemovedEvent', 'SourceStatusEvent', 'SourceErrorEvent',
    'SourceTerminalErrorEvent', 'CalibrationEvent', 'AuditFailureEvent',
    'ParseWarningEvent', 'Handler', 'EventBus',
]
