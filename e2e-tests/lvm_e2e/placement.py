"""Expected placement of logical volumes per storage variant and node.

Thin volumes land in the node's thin pool and may overcommit it. Thick
volumes land directly in the node's thick volume group, and the total
allocated there may not exceed pool capacity times the overprovisioning
ratio. A thick claim that would cross that limit stays unbound.
"""

from dataclasses import dataclass
from enum import Enum

from .config import HarnessConfig
from .errors import ConfigError, PlacementError
from .lvm_monitor import LogicalVolume


class StorageVariant(str, Enum):
    THIN = "thin"
    THICK = "thick"


@dataclass(frozen=True)
class PlacementExpectation:
    """Where a volume of one variant must land on one node."""

    variant: StorageVariant
    node: str
    expected_volume_group: str
    expected_pool: str | None = None
    capacity_limit_bytes: int | None = None  # None = not enforced


class PlacementModel:
    """Placement policy of the driver, read from the harness config."""

    def __init__(self, config: HarnessConfig):
        self.config = config

    def storage_class(self, variant: StorageVariant) -> str:
        return self.config.storage_classes[variant.value]

    def expect(self, variant: StorageVariant, node: str) -> PlacementExpectation:
        """Compute the placement expectation for a volume.

        Args:
            variant: Thin or thick
            node: Node the workload is pinned to

        Returns:
            PlacementExpectation

        Raises:
            ConfigError: If the node does not serve that variant
        """
        topology = self.config.nodes.get(node)
        if topology is None:
            raise ConfigError(f"node {node} is not part of the configured topology")
        device_class = topology.device_classes.get(variant.value)
        if device_class is None:
            raise ConfigError(f"node {node} has no {variant.value} device class")

        if variant is StorageVariant.THIN:
            return PlacementExpectation(
                variant=variant,
                node=node,
                expected_volume_group=device_class.volume_group,
                expected_pool=device_class.pool,
            )

        limit = None
        if device_class.capacity_bytes is not None:
            limit = int(device_class.capacity_bytes * device_class.overprovision_ratio)
        return PlacementExpectation(
            variant=variant,
            node=node,
            expected_volume_group=device_class.volume_group,
            capacity_limit_bytes=limit,
        )

    def check_placement(self, expectation: PlacementExpectation, lv: LogicalVolume) -> None:
        """Compare an LV against its expectation.

        Raises:
            PlacementError: Listing every field that does not match
        """
        mismatches = []
        if lv.volume_group != expectation.expected_volume_group:
            mismatches.append(
                f"volume group {lv.volume_group!r}, expected {expectation.expected_volume_group!r}"
            )
        if expectation.expected_pool is not None and lv.pool != expectation.expected_pool:
            mismatches.append(f"pool {lv.pool!r}, expected {expectation.expected_pool!r}")
        elif expectation.variant is StorageVariant.THICK and lv.pool is not None:
            mismatches.append(f"pool {lv.pool!r}, expected no pool")
        if mismatches:
            raise PlacementError(lv.name, mismatches)

    def admits(
        self, expectation: PlacementExpectation, allocated_bytes: int, requested_bytes: int
    ) -> bool:
        """Whether a new volume fits next to what is already allocated."""
        if expectation.capacity_limit_bytes is None:
            return True
        return allocated_bytes + requested_bytes <= expectation.capacity_limit_bytes
