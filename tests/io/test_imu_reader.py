import os
import tempfile
import unittest
from pathlib import Path

import numpy as np
import pandas as pd

from geofusion.core.data_structures import IMUData
from geofusion.io.imu_reader import IMUFileReader, load_imu_readings, stationary_bias


class TestIMUFileReader(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.csv_file = os.path.join(self.test_dir, "test_imu.csv")
        self.txt_file = os.path.join(self.test_dir, "test_imu.txt")

        self.test_data = pd.DataFrame({
            'time': [1000.0, 1000.01, 1000.02, 1000.03, 1000.04],
            'accel_x': [0.1, 0.2, 0.3, 0.4, 0.5],
            'accel_y': [0.11, 0.21, 0.31, 0.41, 0.51],
            'accel_z': [9.8, 9.81, 9.82, 9.83, 9.84],
            'gyro_x': [0.001, 0.002, 0.003, 0.004, 0.005],
            'gyro_y': [0.0011, 0.0021, 0.0031, 0.0041, 0.0051],
            'gyro_z': [0.0012, 0.0022, 0.0032, 0.0042, 0.0052]
        })
        self.test_data.to_csv(self.csv_file, index=False)

        with open(self.txt_file, 'w') as f:
            f.write("# Test IMU data\n")
            for _, row in self.test_data.iterrows():
                f.write(f"{row['time']} {row['accel_x']} {row['accel_y']} {row['accel_z']} ")
                f.write(f"{row['gyro_x']} {row['gyro_y']} {row['gyro_z']}\n")

    def tearDown(self):
        for name in os.listdir(self.test_dir):
            os.remove(os.path.join(self.test_dir, name))
        os.rmdir(self.test_dir)

    def test_init_valid_file(self):
        reader = IMUFileReader(self.csv_file, format='csv')
        self.assertEqual(reader.file_path, Path(self.csv_file))
        self.assertEqual(reader.format, 'csv')

    def test_init_invalid_file(self):
        with self.assertRaises(FileNotFoundError):
            IMUFileReader("nonexistent_file.csv", format='csv')
        with self.assertRaises(ValueError):
            IMUFileReader(self.csv_file, format='bin')

    def test_read_csv_all_data(self):
        df = IMUFileReader(self.csv_file).read()
        self.assertEqual(len(df), 5)
        self.assertListEqual(list(df.columns),
                             ['time', 'accel_x', 'accel_y', 'accel_z', 'gyro_x', 'gyro_y', 'gyro_z'])
        np.testing.assert_array_almost_equal(df['time'].values, self.test_data['time'].values)

    def test_read_csv_with_time_filter(self):
        df = IMUFileReader(self.csv_file).read(start_time=1000.015, duration=0.02)
        self.assertEqual(len(df), 2)
        self.assertAlmostEqual(df['time'].iloc[0], 1000.02)
        self.assertAlmostEqual(df['time'].iloc[-1], 1000.03)

    def test_read_txt_format(self):
        df = IMUFileReader(self.txt_file, format='txt').read()
        self.assertEqual(len(df), 5)
        np.testing.assert_array_almost_equal(df['accel_x'].values, self.test_data['accel_x'].values)

    def test_readings(self):
        readings = IMUFileReader(self.csv_file).readings()
        self.assertEqual(len(readings), 5)
        self.assertIsInstance(readings[0], IMUData)
        self.assertAlmostEqual(readings[0].timestamp, 1000.0)
        np.testing.assert_array_almost_equal(readings[0].acceleration, [0.1, 0.11, 9.8])
        np.testing.assert_array_almost_equal(readings[0].gyroscope, [0.001, 0.0011, 0.0012])
        self.assertIsNone(readings[0].magnetometer)

    def test_alternative_column_names(self):
        alt_file = os.path.join(self.test_dir, "alt_imu.csv")
        pd.DataFrame({
            'timestamp': [1000.01, 1000.0],
            'ax': [0.1, 0.2], 'ay': [0.11, 0.21], 'az': [9.8, 9.81],
            'wx': [0.001, 0.002], 'wy': [0.0011, 0.0021], 'wz': [0.0012, 0.0022],
            'mx': [20.0, 21.0], 'my': [0.0, 1.0], 'mz': [-40.0, -41.0],
        }).to_csv(alt_file, index=False)

        readings = load_imu_readings(alt_file)
        # sorted by time
        self.assertEqual([r.timestamp for r in readings], [1000.0, 1000.01])
        np.testing.assert_array_almost_equal(readings[0].magnetometer, [21.0, 1.0, -41.0])

    def test_missing_columns(self):
        bad_file = os.path.join(self.test_dir, "bad_imu.csv")
        pd.DataFrame({'time': [0.0], 'accel_x': [0.0]}).to_csv(bad_file, index=False)
        with self.assertRaises(ValueError):
            IMUFileReader(bad_file).read()

    def test_format_inferred_from_suffix(self):
        self.assertEqual(len(load_imu_readings(self.txt_file)), 5)


class TestStationaryBias(unittest.TestCase):

    def test_gravity_removed(self):
        readings = [IMUData((0.1, -0.2, 9.90665), (0.01, 0.0, -0.02), float(i)) for i in range(10)]
        bias = stationary_bias(readings)
        np.testing.assert_allclose(bias, [0.1, -0.2, 0.1, 0.01, 0.0, -0.02], atol=1e-9)

    def test_empty(self):
        with self.assertRaises(ValueError):
            stationary_bias([])
