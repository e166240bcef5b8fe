"""Persistent monitor settings schema and load/save helpers."""

from __future__ import annotations

import json
import os
import platform
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from benchmon_telemetry.models import MetricId


CONFIG_VERSION = 1

HISTORY_DURATION = "duration"
HISTORY_COUNT = "count"
LIVE_WINDOW_MS = 30_000
COUNT_HISTORY_POINTS = 100


@dataclass
class MetricConfig:
    enabled: bool = True
    period_ms: int = 1000
    timeout_ms: int = 500
    history: str = HISTORY_DURATION
    window_ms: int = LIVE_WINDOW_MS
    max_points: int = COUNT_HISTORY_POINTS


def _metric(period_ms: int, history: str = HISTORY_DURATION) -> MetricConfig:
    return MetricConfig(period_ms=period_ms, timeout_ms=min(500, period_ms), history=history)


def default_metrics() -> dict[str, MetricConfig]:
    return {
        MetricId.CPU_UTILIZATION.value: _metric(500),
        MetricId.POWER.value: _metric(500),
        MetricId.MEMORY_USAGE.value: _metric(1000),
        MetricId.CPU_TEMPERATURE.value: _metric(1000),
        MetricId.GPU_UTILIZATION.value: _metric(1000),
        MetricId.BATTERY_TEMPERATURE.value: _metric(2000),
        MetricId.GPU_FREQUENCY.value: _metric(2000, HISTORY_COUNT),
        MetricId.CPU_FREQUENCY_PER_CORE.value: _metric(2000, HISTORY_COUNT),
        MetricId.CPU_GOVERNOR.value: _metric(5000, HISTORY_COUNT),
    }


@dataclass
class SysfsConfig:
    root: str = "/"
    use_nvml: bool = True


@dataclass
class PowerConfig:
    multiplier: float = 1.0


@dataclass
class DiagnosticsConfig:
    keep_log_files: int = 7
    log_level: str = "INFO"
    collapse_repeats: bool = True


@dataclass
class AppConfig:
    config_version: int = CONFIG_VERSION
    metrics: dict[str, MetricConfig] = field(default_factory=default_metrics)
    sysfs: SysfsConfig = field(default_factory=SysfsConfig)
    power: PowerConfig = field(default_factory=PowerConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)

    def metric(self, metric_id: MetricId) -> MetricConfig:
        cfg = self.metrics.get(metric_id.value)
        if cfg is None:
            cfg = default_metrics()[metric_id.value]
            self.metrics[metric_id.value] = cfg
        return cfg


def config_root() -> Path:
    system = platform.system()
    if system == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        return base / "Benchmon"
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / "Benchmon"
    return Path.home() / ".config" / "benchmon"


def config_path() -> Path:
    return config_root() / "config.json"


def _merge(dataclass_type, raw: dict[str, Any]):
    defaults = dataclass_type()  # type: ignore[misc]
    if not isinstance(raw, dict):
        return defaults
    for k, v in raw.items():
        if hasattr(defaults, k):
            setattr(defaults, k, v)
    return defaults


def _merge_metrics(raw: Any) -> dict[str, MetricConfig]:
    metrics = default_metrics()
    if not isinstance(raw, dict):
        return metrics
    for key, value in raw.items():
        if key not in metrics or not isinstance(value, dict):
            continue
        base = metrics[key]
        for k, v in value.items():
            if hasattr(base, k):
                setattr(base, k, v)
    return metrics


def _normalize_metrics(cfg: AppConfig) -> None:
    for metric in cfg.metrics.values():
        metric.enabled = bool(metric.enabled)
        metric.period_ms = max(100, min(60_000, int(metric.period_ms)))
        metric.timeout_ms = max(50, min(metric.period_ms, int(metric.timeout_ms)))
        if metric.history not in (HISTORY_DURATION, HISTORY_COUNT):
            metric.history = HISTORY_DURATION
        metric.window_ms = max(1000, int(metric.window_ms))
        metric.max_points = max(2, int(metric.max_points))


def _normalize_power(cfg: AppConfig) -> None:
    cfg.power.multiplier = float(max(0.1, min(10.0, float(cfg.power.multiplier))))


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _normalize_diagnostics(cfg: AppConfig) -> None:
    level = str(cfg.diagnostics.log_level).upper()
    cfg.diagnostics.log_level = level if level in _LOG_LEVELS else "INFO"
    cfg.diagnostics.keep_log_files = max(1, int(cfg.diagnostics.keep_log_files))
    cfg.diagnostics.collapse_repeats = bool(cfg.diagnostics.collapse_repeats)


def _migrate(raw: dict[str, Any]) -> dict[str, Any]:
    """Bring an on-disk document up to ``CONFIG_VERSION``.

    Version 1 is the first released layout, so there is nothing to convert yet.
    Documents written by a newer build are read as-is; unknown keys are dropped
    by the merge and the file is rewritten at this version on the next save.
    """
    data = dict(raw)
    try:
        version = int(data.get("config_version", CONFIG_VERSION))
    except (TypeError, ValueError):
        version = CONFIG_VERSION
    if version != CONFIG_VERSION:
        data["config_version"] = CONFIG_VERSION
    return data


def load_config(path: Path | None = None) -> AppConfig:
    path = path or config_path()
    if not path.exists():
        return AppConfig()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return AppConfig()
    if not isinstance(raw, dict):
        return AppConfig()

    data = _migrate(raw)
    cfg = AppConfig(
        config_version=int(data.get("config_version", CONFIG_VERSION)),
        metrics=_merge_metrics(data.get("metrics", {})),
        sysfs=_merge(SysfsConfig, data.get("sysfs", {})),
        power=_merge(PowerConfig, data.get("power", {})),
        diagnostics=_merge(DiagnosticsConfig, data.get("diagnostics", {})),
    )

    _normalize_metrics(cfg)
    _normalize_power(cfg)
    _normalize_diagnostics(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path | None = None) -> Path:
    cfg.config_version = CONFIG_VERSION
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True), encoding="utf-8")
    return path
