"""Run-level observability helpers for SpriteGate.

Provides lightweight, in-process metrics aggregation that can be surfaced
in CLI output and exported as JSON after a run.
"""

from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class RunMetricsCollector:
    """Collect counters for attempts, stop reasons, and spend."""

    run_started_at_epoch: float = field(default_factory=time.time)
    run_finished_at_epoch: float | None = None

    _attempts_total: int = 0
    _attempts_passed: int = 0
    _attempts_failed: int = 0
    _stop_reasons: Counter[str] = field(default_factory=Counter)
    _outcomes: Counter[str] = field(default_factory=Counter)
    _model_switches: list[tuple[str, str]] = field(default_factory=list)
    _repairs_applied: int = 0
    _repaired_frames: int = 0
    _input_tokens: int = 0
    _output_tokens: int = 0
    _spend_usd: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def record_attempt(self, passed: bool) -> None:
        """Record one attempt and whether it passed both gates."""
        with self._lock:
            self._attempts_total += 1
            if passed:
                self._attempts_passed += 1
            else:
                self._attempts_failed += 1

    def record_tokens(self, input_tokens: int, output_tokens: int, cost_usd: float) -> None:
        with self._lock:
            self._input_tokens += input_tokens
            self._output_tokens += output_tokens
            self._spend_usd += max(0.0, cost_usd)

    def record_model_switch(self, requested: str, actual: str) -> None:
        with self._lock:
            self._model_switches.append((requested, actual))

    def record_repair(self, repaired_frames: int) -> None:
        """Record an adopted frame repair."""
        with self._lock:
            self._repairs_applied += 1
            self._repaired_frames += repaired_frames

    def record_stop(self, stop_reason: str | None, outcome: str) -> None:
        """Record how a generation ended."""
        with self._lock:
            if stop_reason:
                self._stop_reasons[stop_reason] += 1
            self._outcomes[outcome] += 1

    def finish(self) -> None:
        """Mark the run as finished."""
        with self._lock:
            if self.run_finished_at_epoch is None:
                self.run_finished_at_epoch = time.time()

    def snapshot(self) -> dict[str, Any]:
        """Build a JSON-serializable snapshot of collected metrics."""
        with self._lock:
            now = time.time()
            finished_at = self.run_finished_at_epoch
            duration_seconds = max(
                0.0,
                (finished_at if finished_at is not None else now)
                - self.run_started_at_epoch,
            )
            return {
                "run_started_at_epoch": self.run_started_at_epoch,
                "run_finished_at_epoch": finished_at,
                "duration_seconds": duration_seconds,
                "attempts_total": self._attempts_total,
                "attempts_passed": self._attempts_passed,
                "attempts_failed": self._attempts_failed,
                "stop_reasons": dict(self._stop_reasons),
                "outcomes": dict(self._outcomes),
                "model_switches": [
                    {"requested": requested, "actual": actual}
                    for requested, actual in self._model_switches
                ],
                "repairs_applied": self._repairs_applied,
                "repaired_frames": self._repaired_frames,
                "token_usage": {
                    "input_tokens": self._input_tokens,
                    "output_tokens": self._output_tokens,
                    "total_tokens": self._input_tokens + self._output_tokens,
                },
                "spend_usd": round(self._spend_usd, 6),
            }


def write_run_summary(path: Path, payload: dict[str, Any]) -> None:
    """Write a run summary payload to disk as UTF-8 JSON.

    The file is written to a temporary sibling first and then renamed, so
    readers never observe a partial document.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(
        f".{path.name}.tmp-{os.getpid()}-{threading.get_ident()}"
    )
    tmp_path.write_text(
        json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8"
    )
    tmp_path.replace(path)
