"""Concurrent scenario stress tests.

Runs independent scenarios side by side, each on its own thread and in its
own namespace, against the default node.
"""

import concurrent.futures
from typing import Callable

import pytest

from lvm_e2e.config import HarnessConfig
from lvm_e2e.placement import StorageVariant
from lvm_e2e.scenario import Scenario

NUM_SCENARIOS = 5


@pytest.mark.stress
class TestConcurrentScenarios:
    """Stress test with parallel scenarios."""

    def test_parallel_snapshot_restore(self, scenario: Callable, harness_config: HarnessConfig):
        """Provision, snapshot, and restore thin volumes in parallel."""
        node = harness_config.node_for("default")
        scenarios = [scenario("stress-") for _ in range(NUM_SCENARIOS)]

        def run(s: Scenario) -> str:
            source = s.provision("vol", 1, StorageVariant.THIN, node)
            s.write_file(source, "data.txt", s.namespace)
            s.snapshot(source, "snap")
            restored = s.restore("snap", source, "restore")
            s.verify_file(restored, "data.txt", s.namespace)
            return s.namespace

        with concurrent.futures.ThreadPoolExecutor(max_workers=NUM_SCENARIOS) as executor:
            futures = {executor.submit(run, s): s for s in scenarios}
            failures = []
            for future in concurrent.futures.as_completed(futures):
                try:
                    future.result()
                except Exception as e:
                    failures.append(f"{futures[future].namespace}: {e}")

        assert not failures, "Parallel scenarios failed:\n" + "\n".join(failures)

    @pytest.mark.slow
    def test_rapid_lifecycle(self, scenario: Callable, harness_config: HarnessConfig):
        """Create and delete the same claim repeatedly; every LV is released."""
        s = scenario("stress-")
        node = harness_config.node_for("default")

        for i in range(10):
            volume = s.provision(f"cycle{i}", 1, StorageVariant.THIN, node)
            s.delete_volume(volume)
            s.verify_volume_released(volume.lv.name)
