# LVM CSI driver E2E test library
"""Core infrastructure for E2E testing."""

from .config import HarnessConfig
from .k8s_client import ClaimPhase, ClaimRecord, K8sClient, SnapshotRecord
from .log_collector import LogCollector
from .lvm_monitor import LogicalVolume, LvmMonitor
from .placement import PlacementExpectation, PlacementModel, StorageVariant
from .poller import Poller, wait_until
from .resource_tracker import ResourceTracker, ResourceType
from .scenario import ProvisionedVolume, Scenario

__all__ = [
    "ClaimPhase",
    "ClaimRecord",
    "HarnessConfig",
    "K8sClient",
    "LogCollector",
    "LogicalVolume",
    "LvmMonitor",
    "PlacementExpectation",
    "PlacementModel",
    "Poller",
    "ProvisionedVolume",
    "ResourceTracker",
    "ResourceType",
    "Scenario",
    "SnapshotRecord",
    "StorageVariant",
    "wait_until",
]
