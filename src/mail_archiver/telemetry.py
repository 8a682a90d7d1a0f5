"""Run-scoped observability context.

Every component receives a ``SyncTelemetry`` instead of touching process-wide
counters. Events and spans are emitted through structlog; exporting or
rendering them is left to the logging configuration.
"""

from __future__ import annotations

import time
import uuid
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import structlog


@dataclass
class HistogramSummary:
    """Constant-size summary of observed values."""

    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0


class SyncTelemetry:
    """Named events, counters, histograms and spans for one run."""

    def __init__(self, run_id: str | None = None, logger: Any | None = None) -> None:
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._logger = (logger or structlog.get_logger()).bind(run_id=self.run_id)
        self.events: Counter[str] = Counter()
        self.counters: Counter[str] = Counter()
        self.histograms: dict[str, HistogramSummary] = {}

    def event(self, name: str, *, level: str = "info", **fields: Any) -> None:
        """Record a named event and emit it as a log line."""

        self.events[name] += 1
        getattr(self._logger, level)(name, **fields)

    def increment(self, name: str, value: int = 1) -> None:
        self.counters[name] += value

    def observe(self, name: str, value: float) -> None:
        self.histograms.setdefault(name, HistogramSummary()).add(value)

    @contextmanager
    def span(self, name: str, **fields: Any) -> Iterator[None]:
        """Time a unit of work and log its outcome when it ends."""

        started = time.perf_counter()
        self._logger.debug("span_started", span=name, **fields)
        try:
            yield
        except BaseException as exc:
            self._logger.warning(
                "span_finished",
                span=name,
                status="error",
                error_type=type(exc).__name__,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
                **fields,
            )
            raise
        self._logger.debug(
            "span_finished",
            span=name,
            status="ok",
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
            **fields,
        )

    def snapshot(self) -> dict[str, Any]:
        """Return a plain-dict copy of everything recorded so far."""

        return {
            "run_id": self.run_id,
            "events": dict(self.events),
            "counters": dict(self.counters),
            "histograms": {
                name: {
                    "count": h.count,
                    "mean": h.mean,
                    "min": h.minimum,
                    "max": h.maximum,
                }
                for name, h in self.histograms.items()
            },
        }
