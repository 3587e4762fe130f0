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

"""Cancellable delayed retries"""

import asyncio
import logging
from typing import Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)


class ReconnectScheduler:
    """One pending retry task per key

    Scheduling a key replaces its pending retry; cancelling a key guarantees
    the callback will not run afterwards.

    Parameters
    ----------
    base_delay : float
        Delay after the first failure in seconds
    max_attempts : int
        Total connection attempts allowed, the first one included
    """

    def __init__(self, base_delay: float, max_attempts: int):
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self._tasks: dict = {}

    def delay_for(self, failures: int) -> float:
        """Backoff before the next attempt after ``failures`` consecutive failures"""
        return self.base_delay * 2 ** (max(failures, 1) - 1)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def schedule(self, key: Hashable, delay: float,
                 callback: Callable[[], Awaitable]) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, delay, callback))
        self._tasks[key] = task
        logger.debug(f"Retry for {key} in {delay:.2f}s")
        return task

    async def _run(self, key, delay, callback):
        await asyncio.sleep(delay)
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        await callback()

    def is_pending(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def cancel(self, key: Hashable) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        keys = list(self._tasks)
        return sum(self.cancel(key) for key in keys)

    @property
    def pending(self) -> list:
        return [key for key, task in self._tasks.items() if not task.done()]
