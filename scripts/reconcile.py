#!/usr/bin/env python3
"""Report logical volumes that no LogicalVolume resource owns.

This script lists LVs in the volume groups the driver manages that have no
corresponding LogicalVolume resource in Kubernetes. It only reports; the LVM
host is never modified.

Residue can occur when:
- Tests are interrupted before cleanup runs
- A failed scenario's namespace was kept and later deleted by hand
- The driver's DeleteVolume call fails but the objects are removed

Usage:
    # Report residue for the bundled cluster layout
    ./scripts/reconcile.py

    # Other layout, show every volume
    ./scripts/reconcile.py --harness-config e2e-tests/resources/harness-daemonset.yaml -v

Exits 1 when residue was found.

The script must be run from the repository root, or with the package
installed (pip install -e .).
"""

import argparse
import logging
import sys
from pathlib import Path

# Add e2e-tests to path for imports
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root / "e2e-tests"))

from lvm_e2e.config import HarnessConfig  # noqa: E402
from lvm_e2e.errors import HarnessError  # noqa: E402
from lvm_e2e.k8s_client import K8sClient  # noqa: E402
from lvm_e2e.lvm_monitor import LogicalVolume, LvmMonitor  # noqa: E402

log = logging.getLogger("reconcile")


def get_owned_volume_ids(k8s: K8sClient, resource: str) -> set[str]:
    """Get the volumeIDs recorded by all LogicalVolume resources."""
    ids = set()
    for item in k8s.list_resources(resource):
        volume_id = (item.get("status") or {}).get("volumeID")
        if volume_id:
            ids.add(volume_id)
    return ids


def find_orphans(
    volumes: list[LogicalVolume], owned_ids: set[str], pools: set[tuple[str, str]]
) -> list[LogicalVolume]:
    """Find LVs that no LogicalVolume resource owns.

    Args:
        volumes: LVs in the managed volume groups
        owned_ids: volumeIDs from LogicalVolume resources
        pools: (volume group, pool) pairs that are thin pools, never orphans

    Returns:
        List of orphaned LVs
    """
    return [
        lv
        for lv in volumes
        if lv.name not in owned_ids and (lv.volume_group, lv.name) not in pools
    ]


def main():
    parser = argparse.ArgumentParser(
        description="Report LVs in managed volume groups with no LogicalVolume resource"
    )
    parser.add_argument(
        "--harness-config",
        help="Harness config YAML (default: e2e-tests/resources/harness.yaml)",
    )
    parser.add_argument(
        "--kubeconfig",
        help="Path to kubeconfig file (uses default if not specified)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show all volumes, not just orphans",
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    try:
        config = HarnessConfig.load(args.harness_config)
        k8s = K8sClient(kubeconfig=args.kubeconfig)
        lvm = LvmMonitor(
            k8s,
            volume_groups=config.managed_volume_groups(),
            logical_volume_resource=config.logical_volume_resource,
            command_prefix=config.lvm.command_prefix,
            use_sudo=config.lvm.use_sudo,
        )

        log.info("Fetching LogicalVolume resources...")
        owned_ids = get_owned_volume_ids(k8s, config.logical_volume_resource)
        log.info("  Found %d", len(owned_ids))

        log.info("Fetching LVs in %s...", ", ".join(sorted(config.managed_volume_groups())))
        volumes = lvm.list_logical_volumes()
        log.info("  Found %d", len(volumes))
    except HarnessError as e:
        log.error("Error: %s", e)
        return 2

    if args.verbose:
        for lv in volumes:
            log.info("  - %s/%s (%s)", lv.volume_group, lv.name, lv.pool or "thick")

    pools = {
        (device_class.volume_group, device_class.pool)
        for node in config.nodes.values()
        for device_class in node.device_classes.values()
        if device_class.pool
    }
    orphans = find_orphans(volumes, owned_ids, pools)

    if not orphans:
        log.info("No orphaned volumes found")
        return 0

    log.warning("Found %d orphaned volume(s):", len(orphans))
    for lv in orphans:
        log.warning(
            "  - %s/%s  pool=%s  size=%.2f GiB",
            lv.volume_group,
            lv.name,
            lv.pool or "-",
            lv.size_bytes / (1024**3),
        )
    return 1


if __name__ == "__main__":
    sys.exit(main())
