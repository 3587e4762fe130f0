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

"""Upstream sensor readers

A reader acquires readings from somewhere and publishes them on the event
bus; the fusion loop only starts and stops it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional

from ..core.events import (
    AnchorDetectionEvent,
    Event,
    EventBus,
    GNSSReadingEvent,
    IMUReadingEvent,
)

logger = logging.getLogger(__name__)


def _anchor_event(item) -> AnchorDetectionEvent:
    anchors = tuple(item) if isinstance(item, (list, tuple)) else (item,)
    return AnchorDetectionEvent(anchors)


EVENT_FACTORIES = {
    'gnss': GNSSReadingEvent,
    'imu': IMUReadingEvent,
    'anchors': _anchor_event,
}


class SensorReader(ABC):
    """Start/stop interface shared by GNSS, inertial and anchor readers"""

    def __init__(self, events: EventBus, event_factory: Callable[[object], Event], name: str = ''):
        self.events = events
        self.event_factory = event_factory
        self.name = name or type(self).__name__
        self._task: Optional[asyncio.Task] = None
        self.published = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Begin publishing on the running event loop"""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"reader-{self.name}")
        logger.debug(f"{self.name} started")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.debug(f"{self.name} stopped")

    async def wait(self) -> None:
        """Wait until the reader finishes or is stopped"""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def _publish(self, item) -> None:
        self.events.publish(self.event_factory(item))
        self.published += 1

    @abstractmethod
    async def _run(self) -> None:
        pass

    @classmethod
    def for_kind(cls, kind: str, events: EventBus, *args, **kwargs) -> 'SensorReader':
        """Reader whose items are wrapped in the event type of ``kind``

        ``kind`` is one of 'gnss', 'imu' or 'anchors'.
        """
        try:
            factory = EVENT_FACTORIES[kind]
        except KeyError:
            raise ValueError(f"Unknown reader kind: {kind!r}") from None
        return cls(events, factory, *args, name=kwargs.pop('name', kind), **kwargs)


class QueueReader(SensorReader):
    """Publishes items put on an ``asyncio.Queue`` by an acquisition layer"""

    def __init__(self, events: EventBus, event_factory, queue: Optional[asyncio.Queue] = None,
                 name: str = ''):
        super().__init__(events, event_factory, name)
        self.queue = queue if queue is not None else asyncio.Queue()

    async def _run(self) -> None:
        while True:
            item = await self.queue.get()
            try:
                self._publish(item)
            finally:
                self.queue.task_done()


class ReplayReader(SensorReader):
    """Publishes recorded readings in order

    With ``realtime`` set, the gaps between reading timestamps are slept,
    scaled by ``speed``.
    """

    def __init__(self, events: EventBus, event_factory, readings: Iterable = (),
                 realtime: bool = False, speed: float = 1.0, name: str = ''):
        super().__init__(events, event_factory, name)
        self.readings = list(readings)
        self.realtime = realtime
        self.speed = speed

    async def _run(self) -> None:
        previous = None
        for item in self.readings:
            ts = getattr(item, 'timestamp', None)
            if self.realtime and previous is not None and ts is not None:
                await asyncio.sleep(max(0.0, (ts - previous) / self.speed))
            else:
                await asyncio.sleep(0)
            if ts is not None:
                previous = ts
            self._publish(item)
        logger.info(f"{self.name}: replayed {self.published} readings")
