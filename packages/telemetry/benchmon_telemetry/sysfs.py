"""Small helpers for reading kernel counter files with uniform failure mapping."""

from __future__ import annotations

import glob
from pathlib import Path

from .models import ReaderOutcome, TransientError, Unavailable, UnavailableReason


class SysfsError(Exception):
    """Carries the outcome a failed node read should map to."""

    def __init__(self, outcome: ReaderOutcome) -> None:
        super().__init__(getattr(outcome, "detail", None) or getattr(outcome, "cause", ""))
        self.outcome = outcome


class Sysfs:
    def __init__(self, root: str | Path = "/") -> None:
        self.root = Path(root)

    def path(self, node: str) -> Path:
        return self.root / node.lstrip("/")

    def exists(self, node: str) -> bool:
        return self.path(node).exists()

    def expand(self, pattern: str) -> list[str]:
        """Resolve a wildcard node pattern to sorted absolute-style node names."""
        if "*" not in pattern:
            return [pattern]
        matches = sorted(glob.glob(str(self.path(pattern))))
        root = str(self.root).rstrip("/")
        return ["/" + m[len(root):].lstrip("/") for m in matches]

    def read_text(self, node: str) -> str:
        path = self.path(node)
        try:
            return path.read_text(encoding="utf-8", errors="replace").strip()
        except FileNotFoundError:
            raise SysfsError(Unavailable(UnavailableReason.NOT_SUPPORTED, f"{node} not present"))
        except PermissionError:
            raise SysfsError(Unavailable(UnavailableReason.PERMISSION_DENIED, f"{node} requires elevated access"))
        except OSError as exc:
            raise SysfsError(TransientError(f"{node}: {exc}"))

    def read_int(self, node: str) -> int:
        raw = self.read_text(node)
        try:
            return int(raw.split()[0])
        except (IndexError, ValueError):
            raise SysfsError(TransientError(f"{node}: unparsable value {raw!r}"))

    def read_first(self, nodes: list[str] | tuple[str, ...]) -> tuple[str, str]:
        """Return ``(node, text)`` of the first readable node.

        Permission barriers win over plain absence so that a device which has
        the node but hides it behind root is reported as such.
        """
        denied: SysfsError | None = None
        last: SysfsError | None = None
        for pattern in nodes:
            for node in self.expand(pattern):
                try:
                    return node, self.read_text(node)
                except SysfsError as exc:
                    outcome = exc.outcome
                    if isinstance(outcome, Unavailable) and outcome.reason is UnavailableReason.PERMISSION_DENIED:
                        denied = denied or exc
                    elif not isinstance(outcome, Unavailable):
                        last = exc
        if denied is not None:
            raise denied
        if last is not None:
            raise last
        raise SysfsError(Unavailable(UnavailableReason.NOT_SUPPORTED, "no known node present"))


def parse_frequency_mhz(raw: str) -> float:
    """Normalize a frequency string to MHz.

    Bare integers above 10,000,000 are Hz, above 10,000 kHz, otherwise MHz.
    Values with an explicit ``MHz``/``KHz`` suffix use their digits. Returns
    0.0 when nothing usable is found.
    """
    clean = raw.strip()
    if not clean:
        return 0.0
    token = clean.split()[0]
    if token.isdigit():
        n = int(token)
        if n > 10_000_000:
            return n / 1_000_000
        if n > 10_000:
            return n / 1_000
        return float(n)

    digits = "".join(ch for ch in clean if ch.isdigit())
    if not digits:
        return 0.0
    lowered = clean.lower()
    if "khz" in lowered:
        return int(digits) / 1_000
    if "mhz" in lowered:
        return float(int(digits))
    return 0.0


def parse_available_frequencies(raw: str) -> list[float]:
    out = []
    for part in raw.replace(",", " ").split():
        mhz = parse_frequency_mhz(part)
        if mhz > 0:
            out.append(mhz)
    return out
