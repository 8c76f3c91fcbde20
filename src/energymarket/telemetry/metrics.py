from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from statistics import median

STAGES = ("simulating", "signing", "submitting", "confirming")


@dataclass(frozen=True)
class PercentileSummary:
    p50: float
    p95: float
    p99: float


@dataclass(frozen=True)
class PipelineSnapshot:
    runs: int
    terminal_states: dict[str, int]
    stage_latency_ms: dict[str, PercentileSummary | None]
    failure_rate: float


@dataclass
class _StageSamples:
    values: list[float] = field(default_factory=list)


class PipelineMetrics:
    def __init__(self) -> None:
        self._stages: dict[str, _StageSamples] = {stage: _StageSamples() for stage in STAGES}
        self._terminal: Counter[str] = Counter()
        self._runs = 0
        self._failures = 0

    def record_stage(self, stage: str, elapsed_ms: float) -> None:
        if stage not in self._stages:
            return
        self._stages[stage].values.append(elapsed_ms)

    def record_terminal(self, state: str, *, failed: bool, supersedes: str | None = None) -> None:
        """Count a run ending in ``state``; ``supersedes`` moves a run already counted elsewhere."""
        if supersedes is not None and self._terminal[supersedes] > 0:
            self._terminal[supersedes] -= 1
            if not self._terminal[supersedes]:
                del self._terminal[supersedes]
        else:
            self._runs += 1
        self._terminal[state] += 1
        if failed:
            self._failures += 1

    def snapshot(self) -> PipelineSnapshot:
        return PipelineSnapshot(
            runs=self._runs,
            terminal_states=dict(self._terminal),
            stage_latency_ms={stage: _summary(samples.values) for stage, samples in self._stages.items()},
            failure_rate=(self._failures / self._runs) if self._runs else 0.0,
        )


def _summary(values: list[float]) -> PercentileSummary | None:
    if not values:
        return None
    ordered = sorted(values)
    return PercentileSummary(
        p50=median(ordered),
        p95=_percentile(ordered, 95),
        p99=_percentile(ordered, 99),
    )


def _percentile(sorted_values: list[float], p: float) -> float:
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return sorted_values[0]
    index = int(round((p / 100) * (len(sorted_values) - 1)))
    return sorted_values[max(0, min(index, len(sorted_values) - 1))]
