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

"""Core Module.

Shared building blocks of the positioning and fusion engine:

- **Constants**: physical and WGS84 constants plus the processing limits of
  the solver, stream manager, fusion loop, calibration and audit log
- **Data Structures**: immutable observation, estimate and reading records,
  correction source descriptors and audit entries
- **Exceptions**: the error taxonomy raised across the package
- **Events**: typed publish/subscribe channel connecting the components

Example Usage:
    >>> from geofusion.core import EventBus, FusedPositionEvent
    >>> bus = EventBus()
    >>> unsubscribe = bus.subscribe(FusedPositionEvent, print)
"""

from . import constants, data_structures, events, exceptions
from .constants import *
from .data_structures import *
from .events import *
from .exceptions import *

__all__ = constants.__all__ + data_structures.__all__ + events.__all__ + exceptions.__all__
