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

"""Engine configuration

Each component takes its own section; ``EngineConfig`` groups them and
round-trips through YAML or JSON files.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional, Union

import yaml

from .core import constants as C


@dataclass
class SolverConfig:
    """Weighted least-squares solver limits"""
    max_iterations: int = C.MAX_ITERATIONS
    convergence_threshold: float = C.CONVERGENCE_THRESHOLD
    min_satellites: int = C.MIN_SATELLITES
    max_gdop: float = C.MAX_GDOP
    snr_reference: float = C.SNR_REFERENCE
    default_snr_weight: float = C.DEFAULT_SNR_WEIGHT

    def __post_init__(self):
        if self.min_satellites < 4:
            raise ValueError("min_satellites cannot be below the 4 unknowns")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be positive")


@dataclass
class FusionConfig:
    """Freshness windows and blending constants of the fusion loop"""
    max_gnss_age: float = C.MAX_GNSS_AGE
    max_imu_age: float = C.MAX_IMU_AGE
    max_anchor_age: float = C.MAX_ANCHOR_AGE
    default_gnss_accuracy: float = C.DEFAULT_GNSS_ACCURACY
    complementary_alpha: float = C.COMPLEMENTARY_ALPHA
    dr_growth_rate: float = C.DR_GROWTH_RATE
    dr_max_accuracy: float = C.DR_MAX_ACCURACY
    dr_min_accuracy: float = C.DR_MIN_ACCURACY
    anchor_seed_accuracy: float = C.ANCHOR_SEED_ACCURACY
    anchor_override_confidence: float = C.ANCHOR_OVERRIDE_CONFIDENCE
    anchor_override_accuracy: float = C.ANCHOR_OVERRIDE_ACCURACY
    anchor_min_accuracy: float = C.ANCHOR_MIN_ACCURACY
    offline_mode: bool = False

    def __post_init__(self):
        if not 0.0 < self.complementary_alpha <= 1.0:
            raise ValueError("complementary_alpha must be in (0, 1]")
        if self.dr_growth_rate < 1.0:
            raise ValueError("dr_growth_rate must be >= 1")


@dataclass
class StreamConfig:
    """Correction stream reconnection and scoring"""
    reconnect_base_delay: float = C.RECONNECT_BASE_DELAY
    max_reconnect_attempts: int = C.MAX_RECONNECT_ATTEMPTS
    distance_weight: float = C.SOURCE_DISTANCE_WEIGHT
    priority_weight: float = C.SOURCE_PRIORITY_WEIGHT
    priority_scale: float = C.SOURCE_PRIORITY_SCALE
    read_size: int = C.STREAM_READ_SIZE
    connect_timeout: float = 10.0
    sources_file: Optional[str] = None

    def __post_init__(self):
        if self.max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be positive")


@dataclass
class CalibrationConfig:
    manual_confidence: float = C.MANUAL_CONFIDENCE
    auto_confidence: float = C.AUTO_CONFIDENCE
    auto_duration: float = C.AUTO_CALIBRATION_DURATION
    max_match_distance_m: Optional[float] = None


@dataclass
class AuditConfig:
    max_entries: int = C.MAX_AUDIT_ENTRIES
    retry_delay: float = C.AUDIT_RETRY_DELAY
    max_retries: int = C.AUDIT_MAX_RETRIES
    secret_key: Optional[str] = None


@dataclass
class LoggingConfig:
    default_level: str = "INFO"
    log_file: Optional[str] = None
    console: bool = True
    module_levels: dict = field(default_factory=dict)


@dataclass
class EngineConfig:
    """All engine settings"""
    solver: SolverConfig = field(default_factory=SolverConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    streams: StreamConfig = field(default_factory=StreamConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'EngineConfig':
        """Build from a nested dictionary; unknown sections or keys are rejected"""
        data = data or {}
        sections = {f.name: f for f in fields(cls)}
        unknown = set(data) - set(sections)
        if unknown:
            raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")

        kwargs = {}
        for name, values in data.items():
            section_cls = sections[name].default_factory
            allowed = {f.name for f in fields(section_cls)}
            bad = set(values or {}) - allowed
            if bad:
                raise ValueError(f"Unknown keys in '{name}': {sorted(bad)}")
            kwargs[name] = section_cls(**(values or {}))
        return cls(**kwargs)


def load_config(filepath: Union[str, Path]) -> EngineConfig:
    """Load configuration from a .yaml, .yml or .json file

    Raises:
        ValueError: unsupported suffix or unknown keys
        FileNotFoundError: missing file
    """
    filepath = Path(filepath)
    if filepath.suffix in ['.yaml', '.yml']:
        with open(filepath) as f:
            data = yaml.safe_load(f)
    elif filepath.suffix == '.json':
        with open(filepath) as f:
            data = json.load(f)
    else:
        raise ValueError(f"Unsupported file format: {filepath.suffix}")
    return EngineConfig.from_dict(data)


def save_config(config: EngineConfig, filepath: Union[str, Path]) -> None:
    """Write configuration; format follows the file suffix"""
    filepath = Path(filepath)
    data = config.to_dict()
    if filepath.suffix in ['.yaml', '.yml']:
        with open(filepath, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False)
    elif filepath.suffix == '.json':
        with open(filepath, 'w') as f:
            json.dump(data, f, indent=2)
    else:
        raise ValueError(f"Unsupported file format: {filepath.suffix}")
