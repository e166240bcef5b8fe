"""Doctor report: one-shot capability probe of every reader plus environment info."""

from __future__ import annotations

import os
import platform
import re
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from benchmon_telemetry.models import MetricId, Snapshot
from benchmon_telemetry.readers import MetricReader, build_readers

from .capability import CapabilityGate
from .config import AppConfig


_SECRET_RE = re.compile(r"(token|secret|password|apikey|api_key|auth)", re.IGNORECASE)


def jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {k: jsonable(v) for k, v in asdict(value).items()}
    if isinstance(value, Mapping):
        return {(k.value if isinstance(k, Enum) else str(k)): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if _SECRET_RE.search(k):
                out[k] = "***REDACTED***"
            else:
                out[k] = redact(v)
        return out
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def snapshot_payload(snap: Snapshot, series: bool = False) -> dict[str, Any]:
    metrics: dict[str, Any] = {}
    for metric_id, entry in snap.metrics.items():
        row: dict[str, Any] = {
            "latest": jsonable(entry.latest),
            "payload": jsonable(entry.payload),
            "points": len(entry.series),
            "capability": entry.capability.kind if entry.capability is not None else None,
            "last_error": entry.last_error,
        }
        if series:
            row["series"] = [[p.timestamp_ms, p.value] for p in entry.series]
        metrics[metric_id.value] = row
    return {"version": snap.version, "metrics": metrics}


def probe_capabilities(readers: Mapping[MetricId, MetricReader]) -> dict[str, Any]:
    """Probe every reader once through a fresh gate and report the resulting state."""
    report: dict[str, Any] = {}
    for metric_id, reader in readers.items():
        gate = CapabilityGate(reader.read, name=metric_id.value)
        reader.acquire()
        try:
            state = gate.probe()
        finally:
            reader.release()
        report[metric_id.value] = {
            "gated": reader.gated,
            "state": state.kind,
            "detail": jsonable(state),
        }
    return report


def _is_elevated() -> bool | None:
    geteuid = getattr(os, "geteuid", None)
    return geteuid() == 0 if geteuid is not None else None


def build_doctor_payload(cfg: AppConfig, readers: Mapping[MetricId, MetricReader] | None = None) -> dict[str, Any]:
    if readers is None:
        readers = build_readers(
            sysfs_root=cfg.sysfs.root,
            power_multiplier=cfg.power.multiplier,
            use_nvml=cfg.sysfs.use_nvml,
        )
    return {
        "ts_utc": datetime.now(timezone.utc).isoformat(),
        "platform": platform.platform(),
        "python": platform.python_version(),
        "elevated": _is_elevated(),
        "config": redact(asdict(cfg)),
        "capabilities": probe_capabilities(readers),
    }
