import sys
import tempfile
import unittest
from collections import namedtuple
from pathlib import Path
from unittest import mock

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))

from benchmon_telemetry import readers
from benchmon_telemetry.models import (
    CoreFrequency,
    MetricId,
    TransientError,
    Unavailable,
    UnavailableReason,
    Value,
)
from benchmon_telemetry.sysfs import Sysfs, SysfsError, parse_available_frequencies, parse_frequency_mhz


class FakeSysfsTree:
    def __init__(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.sysfs = Sysfs(self.root)

    def write(self, node, text):
        path = self.root / node.lstrip("/")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text + "\n", encoding="utf-8")

    def cleanup(self):
        self._tmp.cleanup()


class ParseFrequencyTests(unittest.TestCase):
    def test_unit_inference(self):
        self.assertEqual(parse_frequency_mhz("600000000"), 600.0)
        self.assertEqual(parse_frequency_mhz("585000"), 585.0)
        self.assertEqual(parse_frequency_mhz("650"), 650.0)

    def test_suffixes_and_garbage(self):
        self.assertEqual(parse_frequency_mhz("  700 MHz"), 700.0)
        self.assertEqual(parse_frequency_mhz("freq=900MHz"), 900.0)
        self.assertEqual(parse_frequency_mhz("freq=800000KHz"), 800.0)
        self.assertEqual(parse_frequency_mhz(""), 0.0)
        self.assertEqual(parse_frequency_mhz("unknown"), 0.0)

    def test_available_frequencies(self):
        self.assertEqual(parse_available_frequencies("257000000 342000000 414000000"), [257.0, 342.0, 414.0])


class SysfsTests(unittest.TestCase):
    def setUp(self):
        self.tree = FakeSysfsTree()

    def tearDown(self):
        self.tree.cleanup()

    def test_missing_node_is_not_supported(self):
        with self.assertRaises(SysfsError) as ctx:
            self.tree.sysfs.read_text("/sys/nothing")
        self.assertEqual(ctx.exception.outcome.reason, UnavailableReason.NOT_SUPPORTED)

    def test_permission_denied_wins_over_absence(self):
        self.tree.write("/sys/a", "1")
        with mock.patch.object(Path, "read_text", side_effect=PermissionError("denied")):
            with self.assertRaises(SysfsError) as ctx:
                self.tree.sysfs.read_first(("/sys/missing", "/sys/a"))
        self.assertEqual(ctx.exception.outcome.reason, UnavailableReason.PERMISSION_DENIED)

    def test_read_first_expands_wildcards(self):
        self.tree.write("/sys/class/misc/mali0/device/devfreq/13000000.mali/cur_freq", "400000000")
        node, raw = self.tree.sysfs.read_first(("/sys/class/kgsl/gpuclk", "/sys/class/misc/mali0/device/devfreq/*/cur_freq"))
        self.assertEqual(node, "/sys/class/misc/mali0/device/devfreq/13000000.mali/cur_freq")
        self.assertEqual(raw, "400000000")

    def test_unparsable_int_is_transient(self):
        self.tree.write("/sys/x", "abc")
        with self.assertRaises(SysfsError) as ctx:
            self.tree.sysfs.read_int("/sys/x")
        self.assertIsInstance(ctx.exception.outcome, TransientError)


class CpuReaderTests(unittest.TestCase):
    def setUp(self):
        self.tree = FakeSysfsTree()

    def tearDown(self):
        self.tree.cleanup()

    def test_per_core_frequencies(self):
        base = "/sys/devices/system/cpu"
        self.tree.write(f"{base}/cpu0/cpufreq/scaling_cur_freq", "1000000")
        self.tree.write(f"{base}/cpu0/cpufreq/cpuinfo_max_freq", "2000000")
        self.tree.write(f"{base}/cpu1/cpufreq/cpuinfo_cur_freq", "3000000")
        self.tree.write(f"{base}/cpu1/cpufreq/cpuinfo_max_freq", "3000000")

        outcome = readers.CpuFrequencyReader(self.tree.sysfs, core_count=2).read()
        self.assertIsInstance(outcome, Value)
        cores = outcome.payload.cores
        self.assertEqual(cores[0], CoreFrequency(core=0, current_mhz=1000.0, max_mhz=2000.0))
        self.assertEqual(cores[1].current_mhz, 3000.0)
        # (1000*2000 + 3000*3000) / (2000^2 + 3000^2)
        self.assertAlmostEqual(outcome.value, 11_000_000 / 13_000_000 * 100)
        self.assertEqual(outcome.payload.weighted_utilization, outcome.value)

    def test_per_core_frequencies_without_max_publish_payload_only(self):
        self.tree.write("/sys/devices/system/cpu/cpu0/cpufreq/scaling_cur_freq", "1200000")
        outcome = readers.CpuFrequencyReader(self.tree.sysfs, core_count=1).read()
        self.assertIsNone(outcome.value)
        self.assertEqual(outcome.payload.cores[0].current_mhz, 1200.0)

    def test_missing_cpufreq_is_not_supported(self):
        with mock.patch.object(readers.psutil, "cpu_freq", return_value=[]):
            outcome = readers.CpuFrequencyReader(self.tree.sysfs, core_count=2).read()
        self.assertIsInstance(outcome, Unavailable)
        self.assertEqual(outcome.reason, UnavailableReason.NOT_SUPPORTED)

    def test_weighted_utilization_ignores_unknown_max(self):
        cores = [CoreFrequency(0, 500.0, None), CoreFrequency(1, 1000.0, 2000.0)]
        self.assertEqual(readers.frequency_weighted_utilization(cores), 50.0)
        self.assertIsNone(readers.frequency_weighted_utilization([CoreFrequency(0, 500.0, None)]))

    def test_governor_payload_only(self):
        self.tree.write("/sys/devices/system/cpu/cpu0/cpufreq/scaling_governor", "schedutil")
        outcome = readers.CpuGovernorReader(self.tree.sysfs).read()
        self.assertEqual(outcome, Value(None, "schedutil"))

    def test_governor_permission_denied(self):
        self.tree.write("/sys/devices/system/cpu/cpu0/cpufreq/scaling_governor", "schedutil")
        with mock.patch.object(Path, "read_text", side_effect=PermissionError("denied")):
            outcome = readers.CpuGovernorReader(self.tree.sysfs).read()
        self.assertEqual(outcome.reason, UnavailableReason.PERMISSION_DENIED)

    def test_cpu_utilization_from_psutil(self):
        reader = readers.CpuUtilizationReader()
        self.assertFalse(reader.gated)
        with mock.patch.object(readers.psutil, "cpu_percent", return_value=37.5):
            reader.acquire()
            self.assertEqual(reader.read(), Value(37.5))

    def test_cpu_temperature_from_thermal_zone(self):
        self.tree.write("/sys/class/thermal/thermal_zone0/temp", "45500")
        outcome = readers.CpuTemperatureReader(self.tree.sysfs, use_psutil=False).read()
        self.assertEqual(outcome, Value(45.5))

    def test_cpu_temperature_prefers_psutil_sensor(self):
        Entry = namedtuple("Entry", "label current high critical")
        temps = {"acpitz": [Entry("", 30.0, None, None)], "coretemp": [Entry("Package", 55.0, 90.0, 100.0)]}
        with mock.patch.object(readers.psutil, "sensors_temperatures", return_value=temps, create=True):
            outcome = readers.CpuTemperatureReader(self.tree.sysfs).read()
        self.assertEqual(outcome, Value(55.0))

    def test_memory_usage(self):
        VM = namedtuple("VM", "total used percent")
        with mock.patch.object(readers.psutil, "virtual_memory", return_value=VM(8 * 1024**3, 2 * 1024**3, 25.0)):
            outcome = readers.MemoryUsageReader().read()
        self.assertEqual(outcome.value, 25.0)
        self.assertEqual(outcome.payload.total_gb, 8.0)
        self.assertEqual(outcome.payload.used_gb, 2.0)


class GpuReaderTests(unittest.TestCase):
    def setUp(self):
        self.tree = FakeSysfsTree()

    def tearDown(self):
        self.tree.cleanup()

    def test_kgsl_frequency_with_max_and_governor(self):
        self.tree.write("/sys/class/kgsl/kgsl-3d0/gpuclk", "585000000")
        self.tree.write("/sys/class/kgsl/kgsl-3d0/max_gpuclk", "900000000")
        self.tree.write("/sys/class/kgsl/kgsl-3d0/devfreq/governor", "msm-adreno-tz")

        reader = readers.GpuFrequencyReader(self.tree.sysfs, use_nvml=False)
        reader.acquire()
        outcome = reader.read()
        self.assertEqual(outcome.value, 585.0)
        self.assertEqual(outcome.payload.max_mhz, 900.0)
        self.assertEqual(outcome.payload.governor, "msm-adreno-tz")
        self.assertEqual(outcome.payload.source, "/sys/class/kgsl/kgsl-3d0/gpuclk")

        self.tree.write("/sys/class/kgsl/kgsl-3d0/gpuclk", "257000000")
        self.assertEqual(reader.read().value, 257.0)
        reader.release()

    def test_max_from_available_frequencies(self):
        self.tree.write("/sys/kernel/gpu/gpu_clock", "400")
        self.tree.write("/sys/kernel/gpu/gpu_freq_table", "200 400 850")
        outcome = readers.GpuFrequencyReader(self.tree.sysfs, use_nvml=False).read()
        self.assertEqual(outcome.value, 400.0)
        self.assertEqual(outcome.payload.max_mhz, 850.0)

    def test_no_gpu_node_is_not_supported(self):
        outcome = readers.GpuFrequencyReader(self.tree.sysfs, use_nvml=False).read()
        self.assertIsInstance(outcome, Unavailable)
        self.assertEqual(outcome.reason, UnavailableReason.NOT_SUPPORTED)

    def test_zero_frequency_is_transient(self):
        self.tree.write("/sys/class/kgsl/kgsl-3d0/gpuclk", "0")
        outcome = readers.GpuFrequencyReader(self.tree.sysfs, use_nvml=False).read()
        self.assertIsInstance(outcome, TransientError)

    def test_gpu_busy_percentage(self):
        self.tree.write("/sys/class/kgsl/kgsl-3d0/gpu_busy_percentage", "23 %")
        outcome = readers.GpuUtilizationReader(self.tree.sysfs, use_nvml=False).read()
        self.assertEqual(outcome, Value(23.0))

    def test_nvml_session_is_preferred(self):
        session = mock.Mock()
        session.graphics_clock_mhz.return_value = 1410.0
        session.max_graphics_clock_mhz.return_value = 1980.0
        with mock.patch.object(readers, "_open_nvml", return_value=session):
            reader = readers.GpuFrequencyReader(self.tree.sysfs)
            reader.acquire()
            outcome = reader.read()
            reader.release()
        self.assertEqual(outcome.value, 1410.0)
        self.assertEqual(outcome.payload.source, "nvml")
        session.close.assert_called_once()

    def test_shared_reader_keeps_session_until_last_release(self):
        session = mock.Mock()
        session.graphics_clock_mhz.return_value = 1410.0
        session.max_graphics_clock_mhz.return_value = 1980.0
        with mock.patch.object(readers, "_open_nvml", return_value=session) as open_nvml:
            reader = readers.GpuFrequencyReader(self.tree.sysfs)
            reader.acquire()
            reader.acquire()
            reader.release()
            session.close.assert_not_called()
            self.assertEqual(reader.read().payload.source, "nvml")

            reader.release()
            reader.release()
        open_nvml.assert_called_once()
        session.close.assert_called_once()

    def test_failed_open_does_not_count_as_a_hold(self):
        with mock.patch.object(readers, "_open_nvml", side_effect=[RuntimeError("driver gone"), None]) as open_nvml:
            reader = readers.GpuFrequencyReader(self.tree.sysfs)
            with self.assertRaises(RuntimeError):
                reader.acquire()
            reader.acquire()
        self.assertEqual(open_nvml.call_count, 2)


class BatteryReaderTests(unittest.TestCase):
    def setUp(self):
        self.tree = FakeSysfsTree()
        self.battery = "/sys/class/power_supply/battery"

    def tearDown(self):
        self.tree.cleanup()

    def test_power_from_voltage_and_current(self):
        self.tree.write(f"{self.battery}/voltage_now", "4000000")
        self.tree.write(f"{self.battery}/current_now", "-500000")
        self.tree.write(f"{self.battery}/status", "Discharging")
        outcome = readers.PowerReader(self.tree.sysfs).read()
        self.assertAlmostEqual(outcome.value, 2.0)
        self.assertFalse(outcome.payload.charging)
        self.assertAlmostEqual(outcome.payload.volts, 4.0)

    def test_power_is_negative_while_charging_and_scaled(self):
        self.tree.write(f"{self.battery}/voltage_now", "4000000")
        self.tree.write(f"{self.battery}/current_now", "1000000")
        self.tree.write(f"{self.battery}/status", "Charging")
        outcome = readers.PowerReader(self.tree.sysfs, multiplier=0.5).read()
        self.assertAlmostEqual(outcome.value, -2.0)
        self.assertTrue(outcome.payload.charging)

    def test_power_now_node(self):
        self.tree.write("/sys/class/power_supply/BAT0/power_now", "12500000")
        outcome = readers.PowerReader(self.tree.sysfs).read()
        self.assertAlmostEqual(outcome.value, 12.5)
        self.assertIsNone(outcome.payload.volts)

    def test_no_battery(self):
        outcome = readers.PowerReader(self.tree.sysfs).read()
        self.assertEqual(outcome.reason, UnavailableReason.NOT_SUPPORTED)
        outcome = readers.BatteryTemperatureReader(self.tree.sysfs).read()
        self.assertEqual(outcome.reason, UnavailableReason.NOT_SUPPORTED)

    def test_battery_temperature_in_tenths(self):
        self.tree.write(f"{self.battery}/temp", "312")
        self.assertEqual(readers.BatteryTemperatureReader(self.tree.sysfs).read(), Value(31.2))


class BuildReadersTests(unittest.TestCase):
    def test_one_reader_per_metric(self):
        built = readers.build_readers(sysfs_root="/tmp/does-not-matter", power_multiplier=2.0, use_nvml=False)
        self.assertEqual(set(built), set(MetricId))
        for metric_id, reader in built.items():
            self.assertEqual(reader.metric_id, metric_id)
        self.assertEqual(built[MetricId.POWER].multiplier, 2.0)
        self.assertFalse(built[MetricId.CPU_TEMPERATURE].use_psutil)
        self.assertFalse(built[MetricId.MEMORY_USAGE].gated)


if __name__ == "__main__":
    unittest.main()
