"""Harness configuration loaded from YAML.

Everything that describes the cluster under test lives here: storage class
names, which volume group and pool each node serves, thick pool capacity and
overprovisioning ratio, poll budgets. The configuration is built once per
session and injected into the components that need it.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

log = logging.getLogger(__name__)

GiB = 1024**3

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "resources" / "harness.yaml"
CONFIG_ENV_VAR = "LVM_E2E_CONFIG"

VARIANT_KEYS = ("thin", "thick")


@dataclass(frozen=True)
class DeviceClass:
    """Where one storage variant lands on one node."""

    volume_group: str
    pool: str | None = None
    capacity_gib: float | None = None
    overprovision_ratio: float = 1.0

    @property
    def capacity_bytes(self) -> int | None:
        if self.capacity_gib is None:
            return None
        return int(self.capacity_gib * GiB)


@dataclass(frozen=True)
class NodeTopology:
    """Device classes served by a single node."""

    name: str
    device_classes: dict[str, DeviceClass] = field(default_factory=dict)


@dataclass(frozen=True)
class PollSettings:
    timeout: float = 180.0
    interval: float = 1.0
    never_bound_window: float = 30.0
    fail_fast_on_malformed: bool = False


@dataclass(frozen=True)
class WorkloadSettings:
    image: str = "ubuntu:22.04"
    command: tuple[str, ...] = ("sleep", "infinity")
    mount_path: str = "/test1"


@dataclass(frozen=True)
class LvmSettings:
    command_prefix: tuple[str, ...] = ()
    use_sudo: bool = True


@dataclass(frozen=True)
class LogSettings:
    namespace: str = "topolvm-system"
    controller_label: str = "app.kubernetes.io/component=controller"
    node_label: str = "app.kubernetes.io/component=node"
    lvmd_label: str = "app.kubernetes.io/component=lvmd"


@dataclass(frozen=True)
class HarnessConfig:
    """Static description of the cluster and LVM backend under test."""

    storage_classes: dict[str, str]
    nodes: dict[str, NodeTopology]
    scenario_nodes: dict[str, str]
    snapshot_class: str = "topolvm-provisioner"
    csi_driver: str = "topolvm.io"
    topology_key: str = "topology.topolvm.io/node"
    logical_volume_resource: str = "logicalvolumes.topolvm.io"
    filesystem_overhead: float = 0.1
    poll: PollSettings = field(default_factory=PollSettings)
    workload: WorkloadSettings = field(default_factory=WorkloadSettings)
    lvm: LvmSettings = field(default_factory=LvmSettings)
    logs: LogSettings = field(default_factory=LogSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HarnessConfig":
        """Build a config from a parsed YAML mapping.

        Raises:
            ConfigError: On missing sections or invalid values
        """
        if not isinstance(data, dict):
            raise ConfigError("harness config must be a mapping")

        storage_classes = data.get("storage_classes") or {}
        missing = [key for key in VARIANT_KEYS if key not in storage_classes]
        if missing:
            raise ConfigError(f"storage_classes is missing {', '.join(missing)}")

        nodes = {}
        for node_name, classes in (data.get("nodes") or {}).items():
            nodes[node_name] = _parse_node(node_name, classes or {})
        if not nodes:
            raise ConfigError("at least one node must be configured")

        scenario_nodes = dict(data.get("scenario_nodes") or {})
        for role, node_name in scenario_nodes.items():
            if node_name not in nodes:
                raise ConfigError(f"scenario node {role}={node_name} is not a configured node")

        overhead = float(data.get("filesystem_overhead", 0.1))
        if not 0 <= overhead < 1:
            raise ConfigError(f"filesystem_overhead must be in [0, 1), got {overhead}")

        try:
            poll = PollSettings(**(data.get("poll") or {}))
            workload_data = dict(data.get("workload") or {})
            if "command" in workload_data:
                workload_data["command"] = tuple(workload_data["command"])
            workload = WorkloadSettings(**workload_data)
            lvm_data = dict(data.get("lvm") or {})
            if "command_prefix" in lvm_data:
                lvm_data["command_prefix"] = tuple(lvm_data["command_prefix"])
            lvm = LvmSettings(**lvm_data)
            logs = LogSettings(**(data.get("logs") or {}))
        except TypeError as e:
            raise ConfigError(f"unknown configuration key: {e}") from e

        if poll.interval <= 0:
            raise ConfigError("poll.interval must be positive")

        optional = {
            key: data[key]
            for key in ("snapshot_class", "csi_driver", "topology_key", "logical_volume_resource")
            if key in data
        }
        return cls(
            storage_classes=dict(storage_classes),
            nodes=nodes,
            scenario_nodes=scenario_nodes,
            filesystem_overhead=overhead,
            poll=poll,
            workload=workload,
            lvm=lvm,
            logs=logs,
            **optional,
        )

    @classmethod
    def load(cls, path: str | Path | None = None) -> "HarnessConfig":
        """Load the config file.

        Args:
            path: Explicit path; falls back to $LVM_E2E_CONFIG, then the
                bundled resources/harness.yaml

        Returns:
            HarnessConfig
        """
        path = Path(path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
        log.info("Loading harness config from %s", path)
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"config file {path} does not exist") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"config file {path} is not valid YAML: {e}") from e
        return cls.from_dict(data)

    def node_for(self, role: str) -> str:
        """Node a scenario role is pinned to."""
        try:
            return self.scenario_nodes[role]
        except KeyError:
            raise ConfigError(f"no node assigned to scenario role {role!r}") from None

    def managed_volume_groups(self) -> set[str]:
        """All volume groups the driver provisions into."""
        return {
            device_class.volume_group
            for node in self.nodes.values()
            for device_class in node.device_classes.values()
        }


def _parse_node(node_name: str, classes: dict[str, Any]) -> NodeTopology:
    device_classes = {}
    for variant, settings in classes.items():
        if variant not in VARIANT_KEYS:
            raise ConfigError(f"node {node_name}: unknown variant {variant!r}")
        if not settings or "volume_group" not in settings:
            raise ConfigError(f"node {node_name}: {variant} needs a volume_group")
        try:
            device_class = DeviceClass(**settings)
        except TypeError as e:
            raise ConfigError(f"node {node_name}: {e}") from e
        if variant == "thin" and not device_class.pool:
            raise ConfigError(f"node {node_name}: thin device class needs a pool")
        if device_class.overprovision_ratio <= 0:
            raise ConfigError(f"node {node_name}: overprovision_ratio must be positive")
        device_classes[variant] = device_class
    return NodeTopology(name=node_name, device_classes=device_classes)
