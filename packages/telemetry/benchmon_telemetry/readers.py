"""Metric readers: one synchronous probe per monitored quantity.

Every reader returns a ``ReaderOutcome`` instead of raising when hardware or
access is missing. Readers that may be absent or privilege-restricted on a
given device are marked ``gated`` so the sampling loop wraps them in a
capability gate.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import psutil

from .models import (
    CoreFrequency,
    CpuFrequencies,
    GpuFrequency,
    MemoryUsage,
    MetricId,
    PowerReading,
    ReaderOutcome,
    TransientError,
    Unavailable,
    UnavailableReason,
    Value,
)
from .sysfs import Sysfs, SysfsError, parse_available_frequencies, parse_frequency_mhz


logger = logging.getLogger("benchmon.readers")

CPU_ROOT = "/sys/devices/system/cpu"

GPU_FREQUENCY_NODES = (
    "/sys/class/kgsl/kgsl-3d0/gpuclk",
    "/sys/class/kgsl/kgsl-3d0/devfreq/cur_freq",
    "/sys/class/devfreq/gpufreq/cur_freq",
    "/sys/kernel/gpu/gpu_clock",
    "/sys/devices/platform/galcore/gpu/gpu0/gpufreq/cur_freq",
    "/sys/class/misc/mali0/device/devfreq/*/cur_freq",
    "/sys/devices/platform/*.mali/devfreq/*/cur_freq",
    "/sys/class/drm/card0/gt_cur_freq_mhz",
)
GPU_MAX_FREQUENCY_NODES = (
    "/sys/class/kgsl/kgsl-3d0/max_gpuclk",
    "/sys/class/kgsl/kgsl-3d0/devfreq/max_freq",
    "/sys/class/devfreq/gpufreq/max_freq",
    "/sys/kernel/gpu/gpu_max_clock",
    "/sys/class/misc/mali0/device/devfreq/*/max_freq",
    "/sys/class/drm/card0/gt_max_freq_mhz",
)
GPU_AVAILABLE_FREQUENCY_NODES = (
    "/sys/class/kgsl/kgsl-3d0/gpu_available_frequencies",
    "/sys/class/kgsl/kgsl-3d0/devfreq/available_frequencies",
    "/sys/kernel/gpu/gpu_freq_table",
)
GPU_GOVERNOR_NODES = (
    "/sys/class/kgsl/kgsl-3d0/devfreq/governor",
    "/sys/class/devfreq/gpufreq/governor",
    "/sys/kernel/gpu/gpu_governor",
    "/sys/class/misc/mali0/device/devfreq/*/governor",
)
GPU_BUSY_NODES = (
    "/sys/class/kgsl/kgsl-3d0/gpu_busy_percentage",
    "/sys/kernel/gpu/gpu_busy",
    "/sys/class/drm/card0/device/gpu_busy_percent",
)

BATTERY_SUPPLY_NAMES = (
    "battery",
    "bms",
    "max17042-0",
    "max170xx_battery",
    "bq275xx-0",
    "bq27520",
    "BAT0",
    "BAT1",
)

THERMAL_ZONE_NODES = tuple(f"/sys/class/thermal/thermal_zone{i}/temp" for i in range(10))
PREFERRED_CPU_SENSORS = ("coretemp", "cpu_thermal", "k10temp", "acpitz")


def _is_denied(outcome: ReaderOutcome) -> bool:
    return isinstance(outcome, Unavailable) and outcome.reason is UnavailableReason.PERMISSION_DENIED


def frequency_weighted_utilization(cores: list[CoreFrequency] | tuple[CoreFrequency, ...]) -> float | None:
    """Share of peak clock in use, weighting big cores by their max frequency."""
    weighted_cur = 0.0
    weighted_max = 0.0
    for core in cores:
        if core.current_mhz > 0 and core.max_mhz:
            weighted_cur += core.current_mhz * core.max_mhz
            weighted_max += core.max_mhz * core.max_mhz
    if weighted_max <= 0:
        return None
    return max(0.0, min(100.0, weighted_cur / weighted_max * 100.0))


class MetricReader:
    """Base reader. Subclasses implement ``_read`` and may raise ``SysfsError``.

    ``acquire`` and ``release`` are counted: a reader shared by an exiting loop
    and its replacement keeps its sensor handles open until the last holder
    releases. Subclasses put handle setup in ``_open`` and teardown in
    ``_close``.
    """

    metric_id: MetricId
    gated = True
    _holds = 0
    _hold_lock = threading.Lock()

    def acquire(self) -> None:
        with MetricReader._hold_lock:
            self._holds += 1
            if self._holds == 1:
                try:
                    self._open()
                except Exception:
                    self._holds = 0
                    raise

    def release(self) -> None:
        with MetricReader._hold_lock:
            if self._holds <= 0:
                return
            self._holds -= 1
            if self._holds == 0:
                self._close()

    def _open(self) -> None:
        return None

    def _close(self) -> None:
        return None

    def read(self) -> ReaderOutcome:
        try:
            return self._read()
        except SysfsError as exc:
            return exc.outcome

    def _read(self) -> ReaderOutcome:
        raise NotImplementedError


class CpuUtilizationReader(MetricReader):
    metric_id = MetricId.CPU_UTILIZATION
    gated = False

    def _open(self) -> None:
        # Prime non-blocking CPU measurement.
        psutil.cpu_percent(interval=None)

    def _read(self) -> ReaderOutcome:
        return Value(float(psutil.cpu_percent(interval=None)))


class CpuFrequencyReader(MetricReader):
    metric_id = MetricId.CPU_FREQUENCY_PER_CORE

    def __init__(self, sysfs: Sysfs, core_count: int | None = None) -> None:
        self.sysfs = sysfs
        self.core_count = core_count or psutil.cpu_count(logical=True) or 1

    def _core_mhz(self, node: str) -> float | None:
        try:
            khz = self.sysfs.read_int(node)
        except SysfsError:
            return None
        return khz / 1000 if khz > 0 else None

    def _read(self) -> ReaderOutcome:
        cores: list[CoreFrequency] = []
        denied: SysfsError | None = None
        for core in range(self.core_count):
            base = f"{CPU_ROOT}/cpu{core}/cpufreq"
            try:
                _node, raw = self.sysfs.read_first((f"{base}/scaling_cur_freq", f"{base}/cpuinfo_cur_freq"))
            except SysfsError as exc:
                if _is_denied(exc.outcome):
                    denied = exc
                continue
            try:
                current = int(raw.split()[0]) / 1000
            except (IndexError, ValueError):
                continue
            cores.append(CoreFrequency(core=core, current_mhz=current, max_mhz=self._core_mhz(f"{base}/cpuinfo_max_freq")))

        if not cores:
            if denied is not None:
                raise denied
            cores = self._from_psutil()
        if not cores:
            return Unavailable(UnavailableReason.NOT_SUPPORTED, "no cpufreq data")

        utilization = frequency_weighted_utilization(cores)
        return Value(utilization, CpuFrequencies(cores=tuple(cores), weighted_utilization=utilization))

    def _from_psutil(self) -> list[CoreFrequency]:
        try:
            freqs = psutil.cpu_freq(percpu=True) or []
        except Exception:
            return []
        return [
            CoreFrequency(core=i, current_mhz=float(f.current), max_mhz=(float(f.max) if f.max else None))
            for i, f in enumerate(freqs)
            if f.current
        ]


class CpuGovernorReader(MetricReader):
    metric_id = MetricId.CPU_GOVERNOR

    def __init__(self, sysfs: Sysfs) -> None:
        self.sysfs = sysfs

    def _read(self) -> ReaderOutcome:
        name = self.sysfs.read_text(f"{CPU_ROOT}/cpu0/cpufreq/scaling_governor")
        if not name:
            return TransientError("empty governor name")
        return Value(None, name)


class _NvmlSession:
    def __init__(self) -> None:
        import pynvml  # type: ignore

        self._nvml = pynvml
        pynvml.nvmlInit()
        if pynvml.nvmlDeviceGetCount() < 1:
            pynvml.nvmlShutdown()
            raise RuntimeError("no NVML devices")
        self._handle = pynvml.nvmlDeviceGetHandleByIndex(0)

    def graphics_clock_mhz(self) -> float:
        return float(self._nvml.nvmlDeviceGetClockInfo(self._handle, self._nvml.NVML_CLOCK_GRAPHICS))

    def max_graphics_clock_mhz(self) -> float | None:
        try:
            return float(self._nvml.nvmlDeviceGetMaxClockInfo(self._handle, self._nvml.NVML_CLOCK_GRAPHICS))
        except Exception:
            return None

    def utilization_percent(self) -> float:
        return float(self._nvml.nvmlDeviceGetUtilizationRates(self._handle).gpu)

    def close(self) -> None:
        try:
            self._nvml.nvmlShutdown()
        except Exception:
            logger.debug("nvml shutdown failed", exc_info=True)


def _open_nvml() -> _NvmlSession | None:
    try:
        return _NvmlSession()
    except Exception:
        return None


class _NvmlReader(MetricReader):
    def __init__(self, sysfs: Sysfs, use_nvml: bool = True) -> None:
        self.sysfs = sysfs
        self.use_nvml = use_nvml
        self._nvml: _NvmlSession | None = None

    def _open(self) -> None:
        if self.use_nvml and self._nvml is None:
            self._nvml = _open_nvml()

    def _close(self) -> None:
        if self._nvml is not None:
            self._nvml.close()
            self._nvml = None


class GpuFrequencyReader(_NvmlReader):
    metric_id = MetricId.GPU_FREQUENCY

    def __init__(self, sysfs: Sysfs, use_nvml: bool = True) -> None:
        super().__init__(sysfs, use_nvml)
        self._node: str | None = None
        self._max_mhz: float | None = None
        self._governor: str | None = None

    def _read(self) -> ReaderOutcome:
        if self._nvml is not None:
            try:
                current = self._nvml.graphics_clock_mhz()
            except Exception as exc:
                return TransientError(f"nvml clock query failed: {exc}")
            return Value(current, GpuFrequency(current, self._nvml.max_graphics_clock_mhz(), None, "nvml"))

        if self._node is not None:
            try:
                raw = self.sysfs.read_text(self._node)
            except SysfsError:
                self._node = None
                raise
            node = self._node
        else:
            node, raw = self.sysfs.read_first(GPU_FREQUENCY_NODES)

        current = parse_frequency_mhz(raw)
        if current <= 0:
            return TransientError(f"{node}: invalid frequency {raw!r}")
        if self._node is None:
            self._node = node
            self._max_mhz = self._read_max()
            self._governor = self._read_governor()
            logger.info("gpu frequency node resolved", extra={"event": "gpu_node_resolved", "node": node})
        return Value(current, GpuFrequency(current, self._max_mhz, self._governor, node))

    def _read_max(self) -> float | None:
        try:
            _node, raw = self.sysfs.read_first(GPU_MAX_FREQUENCY_NODES)
            mhz = parse_frequency_mhz(raw)
            if mhz > 0:
                return mhz
        except SysfsError:
            pass
        try:
            _node, raw = self.sysfs.read_first(GPU_AVAILABLE_FREQUENCY_NODES)
        except SysfsError:
            return None
        freqs = parse_available_frequencies(raw)
        return max(freqs) if freqs else None

    def _read_governor(self) -> str | None:
        try:
            _node, raw = self.sysfs.read_first(GPU_GOVERNOR_NODES)
        except SysfsError:
            return None
        return raw or None


class GpuUtilizationReader(_NvmlReader):
    metric_id = MetricId.GPU_UTILIZATION

    def _read(self) -> ReaderOutcome:
        if self._nvml is not None:
            try:
                return Value(self._nvml.utilization_percent())
            except Exception as exc:
                return TransientError(f"nvml utilization query failed: {exc}")

        node, raw = self.sysfs.read_first(GPU_BUSY_NODES)
        try:
            percent = float(raw.replace("%", " ").split()[0])
        except (IndexError, ValueError):
            return TransientError(f"{node}: unparsable busy value {raw!r}")
        return Value(max(0.0, min(100.0, percent)))


def _battery_dir(sysfs: Sysfs) -> str:
    for name in BATTERY_SUPPLY_NAMES:
        node = f"/sys/class/power_supply/{name}"
        if sysfs.exists(node):
            return node
    raise SysfsError(Unavailable(UnavailableReason.NOT_SUPPORTED, "no battery power supply"))


class PowerReader(MetricReader):
    """Instantaneous battery power in watts, negative while charging."""

    metric_id = MetricId.POWER

    def __init__(self, sysfs: Sysfs, multiplier: float = 1.0) -> None:
        self.sysfs = sysfs
        self.multiplier = multiplier

    def _charging(self, battery: str) -> bool:
        try:
            return self.sysfs.read_text(f"{battery}/status").lower() == "charging"
        except SysfsError:
            return False

    def _read(self) -> ReaderOutcome:
        battery = _battery_dir(self.sysfs)
        charging = self._charging(battery)

        volts: float | None = None
        amps: float | None = None
        if self.sysfs.exists(f"{battery}/power_now"):
            watts = abs(self.sysfs.read_int(f"{battery}/power_now")) / 1_000_000
        else:
            # current_now is in microamperes, voltage_now in microvolts
            amps = self.sysfs.read_int(f"{battery}/current_now") / 1_000_000
            volts = self.sysfs.read_int(f"{battery}/voltage_now") / 1_000_000
            watts = abs(volts * amps)

        watts *= self.multiplier
        if charging:
            watts = -watts
        return Value(watts, PowerReading(watts=watts, volts=volts, amps=amps, charging=charging))


class CpuTemperatureReader(MetricReader):
    metric_id = MetricId.CPU_TEMPERATURE

    def __init__(self, sysfs: Sysfs, use_psutil: bool = True) -> None:
        self.sysfs = sysfs
        self.use_psutil = use_psutil

    def _from_psutil(self) -> float | None:
        try:
            temps = psutil.sensors_temperatures()
        except Exception:
            return None
        if not temps:
            return None

        for name in PREFERRED_CPU_SENSORS:
            entries = temps.get(name)
            if entries and entries[0].current is not None:
                return float(entries[0].current)

        for _name, entries in temps.items():
            if entries and entries[0].current is not None:
                return float(entries[0].current)
        return None

    def _read(self) -> ReaderOutcome:
        if self.use_psutil:
            celsius = self._from_psutil()
            if celsius is not None:
                return Value(celsius)

        node, raw = self.sysfs.read_first(THERMAL_ZONE_NODES)
        try:
            temp = float(raw)
        except ValueError:
            return TransientError(f"{node}: unparsable temperature {raw!r}")
        # Millidegrees on most kernels.
        return Value(temp / 1000 if temp > 1000 else temp)


class BatteryTemperatureReader(MetricReader):
    metric_id = MetricId.BATTERY_TEMPERATURE

    def __init__(self, sysfs: Sysfs) -> None:
        self.sysfs = sysfs

    def _read(self) -> ReaderOutcome:
        battery = _battery_dir(self.sysfs)
        # Tenths of a degree Celsius.
        return Value(self.sysfs.read_int(f"{battery}/temp") / 10)


class MemoryUsageReader(MetricReader):
    metric_id = MetricId.MEMORY_USAGE
    gated = False

    def _read(self) -> ReaderOutcome:
        vm = psutil.virtual_memory()
        usage = MemoryUsage(
            used_gb=(vm.used / (1024**3)),
            total_gb=(vm.total / (1024**3)),
            percent=float(vm.percent),
        )
        return Value(usage.percent, usage)


def build_readers(
    sysfs_root: str | Path = "/",
    power_multiplier: float = 1.0,
    use_nvml: bool = True,
) -> dict[MetricId, MetricReader]:
    sysfs = Sysfs(sysfs_root)
    readers: list[MetricReader] = [
        CpuUtilizationReader(),
        CpuFrequencyReader(sysfs),
        CpuGovernorReader(sysfs),
        GpuFrequencyReader(sysfs, use_nvml=use_nvml),
        GpuUtilizationReader(sysfs, use_nvml=use_nvml),
        PowerReader(sysfs, multiplier=power_multiplier),
        CpuTemperatureReader(sysfs, use_psutil=(str(sysfs_root) == "/")),
        BatteryTemperatureReader(sysfs),
        MemoryUsageReader(),
    ]
    return {r.metric_id: r for r in readers}
