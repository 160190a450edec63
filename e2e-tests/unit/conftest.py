"""Fixtures for the cluster-free unit suite."""

import copy

import pytest

from lvm_e2e.config import HarnessConfig
from lvm_e2e.fakes import FakeBackend
from lvm_e2e.placement import PlacementModel
from lvm_e2e.resource_tracker import ResourceTracker
from lvm_e2e.scenario import Scenario

CONFIG = {
    "storage_classes": {"thin": "lvm-thin", "thick": "lvm-thick"},
    "snapshot_class": "lvm-snapshots",
    "nodes": {
        "worker1": {
            "thin": {"volume_group": "vg-thin1", "pool": "pool0"},
            "thick": {"volume_group": "vg-thick1", "capacity_gib": 4, "overprovision_ratio": 5},
        },
        "worker2": {
            "thin": {"volume_group": "vg-thin2", "pool": "pool0"},
            "thick": {"volume_group": "vg-thick2", "capacity_gib": 4, "overprovision_ratio": 5},
        },
        "thin-only": {
            "thin": {"volume_group": "vg-thin3", "pool": "pool1"},
        },
    },
    "scenario_nodes": {"default": "worker1", "capacity_limit": "worker2"},
    "poll": {"timeout": 0.5, "interval": 0.01, "never_bound_window": 0.05},
}


@pytest.fixture
def config_data() -> dict:
    return copy.deepcopy(CONFIG)


@pytest.fixture
def config(config_data: dict) -> HarnessConfig:
    return HarnessConfig.from_dict(config_data)


@pytest.fixture
def backend(config: HarnessConfig) -> FakeBackend:
    return FakeBackend(config)


@pytest.fixture
def fake_scenario(backend: FakeBackend, config: HarnessConfig) -> Scenario:
    """Scenario over the in-memory backend, namespace already created."""
    k8s = backend.client()
    return Scenario(
        k8s,
        backend.lvm(),
        PlacementModel(config),
        config,
        ResourceTracker(k8s=k8s),
        prefix="unit-",
    ).setup()
