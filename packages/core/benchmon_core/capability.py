"""Capability gate: remembers permanent absence, retries transient failures."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from benchmon_telemetry.models import (
    TERMINAL_STATES,
    Available,
    CapabilityState,
    Error,
    Loading,
    NotSupported,
    ReaderOutcome,
    RequiresElevatedAccess,
    TransientError,
    Unavailable,
    UnavailableReason,
    Value,
)


logger = logging.getLogger("benchmon.capability")


class CapabilityGate:
    """State machine around one reader's probe.

    ``Loading`` resolves on the first probe. ``NotSupported`` and
    ``RequiresElevatedAccess`` are terminal: later calls to ``probe`` return
    the stored state without touching the reader. ``Error`` and ``Available``
    probe once per call, so retry pacing is whatever pacing the caller uses.
    """

    def __init__(self, probe: Callable[[], ReaderOutcome], name: str = "") -> None:
        self._probe = probe
        self.name = name
        self._state: CapabilityState = Loading()
        self._lock = threading.Lock()
        self._seen_available = False
        self.probe_count = 0
        self.last_outcome: ReaderOutcome | None = None

    @property
    def state(self) -> CapabilityState:
        return self._state

    @property
    def terminal(self) -> bool:
        return isinstance(self._state, TERMINAL_STATES)

    def probe(self) -> CapabilityState:
        with self._lock:
            if self.terminal:
                return self._state
            self.probe_count += 1
            outcome = self._probe()
            self.last_outcome = outcome
            self._transition(self._next_state(outcome))
            return self._state

    def _next_state(self, outcome: ReaderOutcome) -> CapabilityState:
        if isinstance(outcome, Value):
            return Available(outcome.payload if outcome.payload is not None else outcome.value)
        if isinstance(outcome, TransientError):
            return Error(outcome.cause)
        if isinstance(outcome, Unavailable):
            if self._seen_available:
                # A node that worked before and vanished is a per-tick failure (core offline).
                return Error(outcome.detail or outcome.reason.value)
            if outcome.reason is UnavailableReason.PERMISSION_DENIED:
                return RequiresElevatedAccess(outcome.detail)
            return NotSupported(outcome.detail)
        raise TypeError(f"unexpected reader outcome {outcome!r}")

    def _transition(self, new: CapabilityState) -> None:
        old = self._state
        self._state = new
        if isinstance(new, Available):
            self._seen_available = True
        if old.kind != new.kind:
            logger.info(
                f"capability {self.name or 'reader'} {old.kind} -> {new.kind}",
                extra={"event": "capability_changed", "metric": self.name, "state": new.kind},
            )
