import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "core"))
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))

from benchmon_core.config import load_config
from benchmon_core.diagnostics import build_doctor_payload, probe_capabilities, redact, snapshot_payload
from benchmon_core.publisher import SnapshotPublisher
from benchmon_core.timeseries import TimeSeries
from benchmon_telemetry.models import (
    DataPoint,
    MetricId,
    NotSupported,
    Unavailable,
    UnavailableReason,
    Value,
)
from benchmon_telemetry.readers import MetricReader


class StaticReader(MetricReader):
    def __init__(self, metric_id, outcome):
        self.metric_id = metric_id
        self.outcome = outcome
        self.events = []

    def acquire(self):
        self.events.append("acquire")

    def release(self):
        self.events.append("release")

    def _read(self):
        self.events.append("read")
        return self.outcome


class DiagnosticsTests(unittest.TestCase):
    def test_probe_capabilities_reports_each_reader(self):
        gpu = StaticReader(MetricId.GPU_FREQUENCY, Unavailable(UnavailableReason.NOT_SUPPORTED, "no gpu"))
        gov = StaticReader(MetricId.CPU_GOVERNOR, Unavailable(UnavailableReason.PERMISSION_DENIED, "root"))
        temp = StaticReader(MetricId.CPU_TEMPERATURE, Value(48.0))

        report = probe_capabilities({r.metric_id: r for r in (gpu, gov, temp)})

        self.assertEqual(report["gpu_frequency"]["state"], "not_supported")
        self.assertEqual(report["gpu_frequency"]["detail"]["detail"], "no gpu")
        self.assertEqual(report["cpu_governor"]["state"], "requires_elevated_access")
        self.assertEqual(report["cpu_temperature"]["state"], "available")
        self.assertEqual(temp.events, ["acquire", "read", "release"])

    def test_doctor_payload(self):
        cfg = load_config(Path("/tmp/nonexistent-benchmon-config.json"))
        readers = {MetricId.POWER: StaticReader(MetricId.POWER, Value(1.0))}
        doctor = build_doctor_payload(cfg, readers)
        self.assertIn("platform", doctor)
        self.assertEqual(doctor["config"]["sysfs"]["root"], "/")
        self.assertEqual(list(doctor["capabilities"]), ["power"])

    def test_snapshot_payload(self):
        pub = SnapshotPublisher()
        pub.register(MetricId.POWER, TimeSeries(max_points=10))
        pub.publish(MetricId.POWER, DataPoint(1_000, 2.5))
        pub.publish_capability(MetricId.POWER, NotSupported("gone"))

        payload = snapshot_payload(pub.latest(), series=True)
        row = payload["metrics"]["power"]
        self.assertEqual(row["latest"], {"timestamp_ms": 1_000, "value": 2.5})
        self.assertEqual(row["series"], [[1_000, 2.5]])
        self.assertEqual(row["capability"], "not_supported")
        self.assertNotIn("series", snapshot_payload(pub.latest())["metrics"]["power"])

    def test_redact(self):
        self.assertEqual(redact({"api_token": "x", "nested": [{"password": "y", "ok": 1}]}),
                         {"api_token": "***REDACTED***", "nested": [{"password": "***REDACTED***", "ok": 1}]})


if __name__ == "__main__":
    unittest.main()
