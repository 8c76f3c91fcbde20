from __future__ import annotations

import unittest

from energymarket.telemetry.metrics import PipelineMetrics


class PipelineMetricsTests(unittest.TestCase):
    def test_snapshot_summarises_stage_latencies_and_failures(self) -> None:
        metrics = PipelineMetrics()
        for elapsed in (10.0, 20.0, 30.0, 40.0, 500.0):
            metrics.record_stage("simulating", elapsed)
        metrics.record_stage("signing", 1200.0)
        metrics.record_terminal("submitted", failed=False)
        metrics.record_terminal("simulate_failed", failed=True)
        metrics.record_terminal("confirmed", failed=False)
        metrics.record_terminal("simulate_failed", failed=True)

        snapshot = metrics.snapshot()

        self.assertEqual(snapshot.runs, 4)
        self.assertEqual(snapshot.terminal_states, {"submitted": 1, "simulate_failed": 2, "confirmed": 1})
        self.assertAlmostEqual(snapshot.failure_rate, 0.5)
        simulating = snapshot.stage_latency_ms["simulating"]
        assert simulating is not None
        self.assertEqual(simulating.p50, 30.0)
        self.assertEqual(simulating.p99, 500.0)
        signing = snapshot.stage_latency_ms["signing"]
        assert signing is not None
        self.assertEqual(signing.p95, 1200.0)
        self.assertIsNone(snapshot.stage_latency_ms["confirming"])

    def test_superseded_terminal_state_moves_without_adding_a_run(self) -> None:
        metrics = PipelineMetrics()
        metrics.record_terminal("submitted", failed=False)
        metrics.record_terminal("submitted", failed=False)
        metrics.record_terminal("submit_failed", failed=True, supersedes="submitted")

        snapshot = metrics.snapshot()

        self.assertEqual(snapshot.runs, 2)
        self.assertEqual(snapshot.terminal_states, {"submitted": 1, "submit_failed": 1})
        self.assertAlmostEqual(snapshot.failure_rate, 0.5)

    def test_empty_snapshot_and_unknown_stage(self) -> None:
        metrics = PipelineMetrics()
        metrics.record_stage("teleporting", 5.0)
        snapshot = metrics.snapshot()
        self.assertEqual(snapshot.runs, 0)
        self.assertEqual(snapshot.failure_rate, 0.0)
        self.assertNotIn("teleporting", snapshot.stage_latency_ms)


if __name__ == "__main__":
    unittest.main()
