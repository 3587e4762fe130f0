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

"""Positioning and fusion engine

Wires the components around one event bus:

    NMEA / pseudoranges -> ObservationIngest / PositionSolver -> GNSSReadingEvent
    readers -> GNSS / IMU / anchor events -> SensorFusion -> FusedPositionEvent
    FusedPositionEvent -> calibration profile -> AuditDispatcher -> sink
"""

import logging
import time
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, Union

import numpy as np

from .calibration import CalibrationManager, CalibrationStore
from .config import EngineConfig, load_config
from .core.data_structures import (
    CalibrationProfile,
    CorrectionSource,
    FusedPosition,
    GNSSData,
    SatelliteObservation,
)
from .core.events import CorrectionDataEvent, EventBus, FusedPositionEvent, GNSSReadingEvent
from .corrections import CorrectionStreamManager
from .audit import AuditDispatcher, AuditSink, FusionAuditLog, build_log_entry
from .fusion import SensorFusion, SensorReader
from .gnss import PositionSolver, SolveOutcome
from .io import ObservationIngest
from .logger import setup_logger_from_config

logger = logging.getLogger(__name__)


class FusionEngine:
    """Owns the solver, stream manager, fusion loop, calibration and audit

    Parameters
    ----------
    config : EngineConfig, optional
        All component settings
    events : EventBus, optional
        Shared bus; a new one is created when omitted
    audit_sink : AuditSink, optional
        Where fused positions are recorded; an in-memory ``FusionAuditLog``
        by default
    transport_factory : callable, optional
        Passed to the correction stream manager
    gnss_reader, imu_reader, anchor_detector : SensorReader, optional
        Upstream readers started and stopped with the engine
    clock : callable, optional
        Time source for solved fixes and the fusion freshness windows
    """

    def __init__(self, config: Optional[EngineConfig] = None,
                 events: Optional[EventBus] = None,
                 audit_sink: Optional[AuditSink] = None,
                 transport_factory=None,
                 gnss_reader: Optional[SensorReader] = None,
                 imu_reader: Optional[SensorReader] = None,
                 anchor_detector: Optional[SensorReader] = None,
                 calibration_store: Optional[CalibrationStore] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.config = config or EngineConfig()
        self.events = events or EventBus()
        self.clock = clock
        self.solver = PositionSolver(self.config.solver)
        self.ingest = ObservationIngest()
        self.streams = CorrectionStreamManager(self.config.streams, self.events, transport_factory)
        self.fusion = SensorFusion(self.config.fusion, self.events, gnss_reader, imu_reader,
                                   anchor_detector, clock=clock)
        store = calibration_store or CalibrationStore(self.events)
        self.calibration = CalibrationManager(store, self.config.calibration, self.events)
        self.audit_sink = audit_sink if audit_sink is not None else FusionAuditLog(self.config.audit)
        self.audit = AuditDispatcher(self.audit_sink, self.config.audit, self.events)

        self.pinned_profile: Optional[str] = None
        self.last_solution: Optional[SolveOutcome] = None
        self.last_calibrated: Optional[FusedPosition] = None
        self.last_correction_source: Optional[str] = None
        self._handlers: list = []
        self._subscriptions: list = []

    @classmethod
    def from_config_file(cls, filepath: Union[str, Path], **kwargs) -> 'FusionEngine':
        """Build from a YAML/JSON config file and apply its logging section"""
        config = load_config(filepath)
        setup_logger_from_config(asdict(config.logging))
        return cls(config, **kwargs)

    @property
    def is_running(self) -> bool:
        return bool(self._subscriptions)

    async def start(self, sources: Optional[Iterable[CorrectionSource]] = None,
                    default_source_id: Optional[str] = None) -> None:
        if self.is_running:
            return
        self._subscriptions = [
            self.events.subscribe(FusedPositionEvent, self._on_fused),
            self.events.subscribe(CorrectionDataEvent, self._on_correction),
        ]
        self.audit.start()
        self.fusion.start()
        await self.streams.initialize(sources, default_source_id)
        logger.info("Fusion engine started")

    async def stop(self) -> None:
        self.fusion.stop()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []
        await self.streams.close()
        await self.audit.stop()
        logger.info("Fusion engine stopped")

    def subscribe(self, handler: Callable[[FusedPosition], object]) -> Callable[[], None]:
        """Receive every calibrated fused position"""
        self._handlers.append(handler)
        return lambda: self._handlers.remove(handler) if handler in self._handlers else None

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def _now(self) -> float:
        return self.clock() if self.clock is not None else time.time()

    def _publish_fix(self, fix: GNSSData):
        self.streams.update_position(fix.latitude, fix.longitude, fix.altitude)
        self.events.publish(GNSSReadingEvent(fix))

    def solve(self, observations: Sequence[SatelliteObservation],
              timestamp: Optional[float] = None,
              initial_position: Optional[np.ndarray] = None) -> SolveOutcome:
        """Solve pseudoranges and feed a usable fix to the fusion loop"""
        outcome = self.solver.try_solve(observations, initial_position)
        self.last_solution = outcome
        if not outcome.ok:
            return outcome
        est = outcome.estimate
        accuracy = est.error_estimate
        if accuracy is None or not np.isfinite(accuracy) or accuracy <= 0:
            accuracy = self.config.fusion.default_gnss_accuracy
        point = est.to_geopoint()
        fix = GNSSData(
            latitude=point.lat,
            longitude=point.lon,
            altitude=point.alt,
            timestamp=self._now() if timestamp is None else timestamp,
            source='GNSS',
            accuracy=accuracy,
            hdop=est.dop.hdop,
            vdop=est.dop.vdop,
            satellites=est.num_satellites,
        )
        self._publish_fix(fix)
        return outcome

    def ingest_nmea(self, lines: Iterable[str], received_at: Optional[float] = None) -> list:
        """Decode sentences and feed every fix to the fusion loop"""
        fixes, result = self.ingest.ingest_nmea(lines, received_at)
        if result.warnings:
            logger.debug(f"{len(result.warnings)} NMEA sentences skipped")
        for fix in fixes:
            self._publish_fix(fix)
        return fixes

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def use_profile(self, profile_id: Optional[str]) -> None:
        """Pin a calibration profile; None returns to best-match selection"""
        if profile_id is not None and self.calibration.store.get(profile_id) is None:
            raise KeyError(profile_id)
        self.pinned_profile = profile_id

    def select_profile(self, fused: FusedPosition) -> Optional[CalibrationProfile]:
        if self.pinned_profile is not None:
            return self.calibration.store.get(self.pinned_profile)
        if not len(self.calibration.store):
            return None
        return self.calibration.best_profile(fused.position)

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def _on_correction(self, event: CorrectionDataEvent):
        self.last_correction_source = event.data.source_id

    def _on_fused(self, event: FusedPositionEvent):
        fused = event.position
        profile = self.select_profile(fused)
        calibrated = self.calibration.apply(fused, profile) if profile is not None else fused
        self.last_calibrated = calibrated
        for handler in list(self._handlers):
            try:
                handler(calibrated)
            except Exception:
                logger.exception("Position handler failed")
        entry = build_log_entry(calibrated, profile, self.last_correction_source,
                                offline=self.config.fusion.offline_mode)
        self.audit.submit(entry)
