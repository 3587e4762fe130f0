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

"""IMU log replay"""

import logging
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from ..core.constants import GRAVITY
from ..core.data_structures import IMUData

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ['time', 'accel_x', 'accel_y', 'accel_z', 'gyro_x', 'gyro_y', 'gyro_z']
MAG_COLUMNS = ['mag_x', 'mag_y', 'mag_z']

COLUMN_ALIASES = {
    'timestamp': 'time',
    'ax': 'accel_x', 'ay': 'accel_y', 'az': 'accel_z',
    'acc_x': 'accel_x', 'acc_y': 'accel_y', 'acc_z': 'accel_z',
    'gx': 'gyro_x', 'gy': 'gyro_y', 'gz': 'gyro_z',
    'wx': 'gyro_x', 'wy': 'gyro_y', 'wz': 'gyro_z',
    'mx': 'mag_x', 'my': 'mag_y', 'mz': 'mag_z',
}


class IMUFileReader:
    """Reads logged inertial samples from CSV or whitespace-separated text

    Parameters
    ----------
    file_path : str or Path
        Log file
    format : str
        'csv' (header row, aliases accepted) or 'txt'
        (``time ax ay az gx gy gz``, '#' comments)
    """

    def __init__(self, file_path, format: str = 'csv'):
        self.file_path = Path(file_path)
        self.format = format.lower()
        if self.format not in ('csv', 'txt'):
            raise ValueError(f"Unsupported format: {format}")
        if not self.file_path.exists():
            raise FileNotFoundError(f"IMU file not found: {file_path}")

    def read(self, start_time: Optional[float] = None,
             duration: Optional[float] = None) -> pd.DataFrame:
        """Samples sorted by time, optionally limited to a window"""
        if self.format == 'csv':
            df = pd.read_csv(self.file_path)
            df = df.rename(columns={k: v for k, v in COLUMN_ALIASES.items() if v not in df.columns})
        else:
            df = pd.read_csv(self.file_path, sep=r'\s+', names=REQUIRED_COLUMNS,
                             comment='#', header=None)

        missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
        if missing:
            raise ValueError(f"Missing required IMU columns: {missing}")

        if start_time is not None:
            df = df[df['time'] >= start_time]
            if duration is not None:
                df = df[df['time'] <= start_time + duration]
        df = df.sort_values('time').reset_index(drop=True)

        logger.info(f"Loaded {len(df)} IMU samples from {self.file_path.name}")
        if len(df) > 1:
            dt = df['time'].diff().median()
            if dt > 0:
                logger.debug(f"  Sampling rate: ~{1.0 / dt:.1f} Hz")
        return df

    def readings(self, start_time: Optional[float] = None,
                 duration: Optional[float] = None) -> list:
        """Samples as ``IMUData`` records"""
        df = self.read(start_time, duration)
        has_mag = all(col in df.columns for col in MAG_COLUMNS)
        accel = df[['accel_x', 'accel_y', 'accel_z']].to_numpy(dtype=float)
        gyro = df[['gyro_x', 'gyro_y', 'gyro_z']].to_numpy(dtype=float)
        mag = df[MAG_COLUMNS].to_numpy(dtype=float) if has_mag else None
        times = df['time'].to_numpy(dtype=float)

        out = []
        for i, t in enumerate(times):
            out.append(IMUData(
                acceleration=accel[i],
                gyroscope=gyro[i],
                timestamp=float(t),
                magnetometer=mag[i] if mag is not None and np.all(np.isfinite(mag[i])) else None,
            ))
        return out


def load_imu_readings(file_path, format: Optional[str] = None) -> list:
    """Read a log with the format inferred from its suffix"""
    if format is None:
        format = 'csv' if Path(file_path).suffix.lower() == '.csv' else 'txt'
    return IMUFileReader(file_path, format).readings()


def stationary_bias(readings, gravity: float = GRAVITY) -> np.ndarray:
    """Mean accelerometer and gyro offsets of a level, stationary sample set

    Returns
    -------
    np.ndarray
        [bax, bay, baz, bgx, bgy, bgz]; gravity is removed from the z axis
    """
    if len(readings) == 0:
        raise ValueError("No IMU samples")
    accel = np.array([r.acceleration for r in readings])
    gyro = np.array([r.gyroscope for r in readings])
    bias = np.concatenate([accel.mean(axis=0), gyro.mean(axis=0)])
    bias[2] -= gravity
    return bias
