"""LVM host inventory for E2E tests.

Reads logical volume placement and size straight from LVM (lvs) so tests
can check what the driver actually allocated, independent of what the
Kubernetes objects claim.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import ExternalCallFailed, MalformedResponseError, NotFoundError, VolumeStillPresent

if TYPE_CHECKING:
    from .k8s_client import K8sClient

log = logging.getLogger(__name__)

LVS_FIELDS = "lv_name,vg_name,pool_lv,lv_size,segtype"
LVS_SEPARATOR = "|"


@dataclass(frozen=True)
class LogicalVolume:
    """LVM logical volume information."""

    name: str
    volume_group: str
    pool: str | None  # thin pool, None for thick volumes
    size_bytes: int
    segment_type: str = "linear"

    @property
    def is_thin_pool(self) -> bool:
        return self.segment_type == "thin-pool"


@dataclass
class LvmState:
    """Logical volumes present in the managed volume groups."""

    volumes: list[LogicalVolume]


def parse_lvs_output(stdout: str) -> list[LogicalVolume]:
    """Parse ``lvs --noheadings --units b --nosuffix --separator |`` output.

    Args:
        stdout: Raw lvs output, one volume per line

    Returns:
        List of LogicalVolume

    Raises:
        MalformedResponseError: On rows with the wrong shape or a bad size
    """
    volumes = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue

        parts = [part.strip() for part in line.split(LVS_SEPARATOR)]
        if len(parts) != 5:
            raise MalformedResponseError(f"unexpected lvs row {line!r}")

        name, vg_name, pool, size, segtype = parts
        if not name or not vg_name:
            raise MalformedResponseError(f"lvs row without name or volume group: {line!r}")
        try:
            size_bytes = int(size)
        except ValueError as e:
            raise MalformedResponseError(f"lvs row {line!r}: size {size!r} is not an integer") from e

        volumes.append(
            LogicalVolume(
                name=name,
                volume_group=vg_name,
                pool=pool or None,
                size_bytes=size_bytes,
                segment_type=segtype,
            )
        )
    return volumes


class LvmMonitor:
    """Query LVM state on the host backing the driver."""

    # Commands that require elevated privileges
    PRIVILEGED_COMMANDS = {"lvs"}

    def __init__(
        self,
        k8s: "K8sClient",
        volume_groups: set[str] | None = None,
        logical_volume_resource: str = "logicalvolumes.topolvm.io",
        command_prefix: tuple[str, ...] = (),
        use_sudo: bool = True,
    ):
        """Initialize LVM monitor.

        Args:
            k8s: Client used to map claims to their LogicalVolume resources
            volume_groups: Volume groups managed by the driver (None = all)
            logical_volume_resource: Driver CRD recording the LV behind a PV
            command_prefix: Prefix to reach the LVM host (e.g. docker exec <node>)
            use_sudo: Whether to use sudo for privileged commands (default: True)
        """
        self.k8s = k8s
        self.volume_groups = volume_groups
        self.logical_volume_resource = logical_volume_resource
        self.command_prefix = tuple(command_prefix)
        self.use_sudo = use_sudo

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        """Run an LVM command on the host and return the result.

        Raises:
            ExternalCallFailed: If the command cannot run or exits non-zero
        """
        full_cmd = list(self.command_prefix) + cmd
        if self.use_sudo and cmd and cmd[0] in self.PRIVILEGED_COMMANDS:
            full_cmd = ["sudo"] + full_cmd

        try:
            result = subprocess.run(full_cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            raise ExternalCallFailed(full_cmd, None, str(e)) from e
        if result.returncode != 0:
            raise ExternalCallFailed(full_cmd, result.returncode, result.stderr)
        return result

    def _lvs(self, *extra: str) -> list[LogicalVolume]:
        result = self._run(
            [
                "lvs",
                "--noheadings",
                "--units",
                "b",
                "--nosuffix",
                "--separator",
                LVS_SEPARATOR,
                "-o",
                LVS_FIELDS,
                *extra,
            ]
        )
        return parse_lvs_output(result.stdout)

    # -------------------------------------------------------------------------
    # Logical Volume Queries
    # -------------------------------------------------------------------------

    def get_logical_volume(self, name: str) -> LogicalVolume:
        """Get a logical volume by name.

        Args:
            name: LV name (the volumeID the driver recorded)

        Returns:
            LogicalVolume

        Raises:
            NotFoundError: If LVM does not know the volume (yet, or any more)
            MalformedResponseError: If more than one volume matches
        """
        volumes = self._lvs("--select", f"lv_name={name}")
        if not volumes:
            raise NotFoundError("logical volume", name)
        if len(volumes) > 1:
            groups = ", ".join(v.volume_group for v in volumes)
            raise MalformedResponseError(f"found multiple logical volumes named {name} in {groups}")
        return volumes[0]

    def get_logical_volume_name_for_claim(self, claim_name: str, namespace: str) -> str:
        """Resolve the LV name backing a PVC.

        Follows PVC -> PV name -> LogicalVolume resource -> status.volumeID.

        Raises:
            NotFoundError: If any link in the chain does not exist yet
        """
        claim = self.k8s.get_claim(claim_name, namespace)
        if not claim.volume_name:
            raise NotFoundError("persistentvolumeclaim", claim_name, namespace, "not bound to a volume yet")

        resource = self.k8s.get_object(
            self.logical_volume_resource, claim.volume_name, cluster_scoped=True
        )
        volume_id = (resource.get("status") or {}).get("volumeID")
        if not volume_id:
            raise NotFoundError(
                self.logical_volume_resource, claim.volume_name, detail="volumeID not set yet"
            )
        return volume_id

    def list_logical_volumes(self, volume_group: str | None = None) -> list[LogicalVolume]:
        """List logical volumes.

        Args:
            volume_group: Only this volume group (defaults to all managed groups)

        Returns:
            List of LogicalVolume
        """
        volumes = self._lvs()
        if volume_group:
            return [v for v in volumes if v.volume_group == volume_group]
        if self.volume_groups is not None:
            return [v for v in volumes if v.volume_group in self.volume_groups]
        return volumes

    def total_allocated(self, volume_group: str) -> int:
        """Sum of thick LV sizes in a volume group.

        Thin volumes and the thin pools holding them do not count.
        """
        return sum(
            v.size_bytes
            for v in self.list_logical_volumes(volume_group)
            if v.pool is None and not v.is_thin_pool
        )

    def check_deleted(self, name: str) -> None:
        """Probe that succeeds once the LV is gone.

        Raises:
            VolumeStillPresent: If the LV still exists
        """
        try:
            lv = self.get_logical_volume(name)
        except NotFoundError:
            return
        raise VolumeStillPresent(f"logical volume {name} still exists in {lv.volume_group}")

    # -------------------------------------------------------------------------
    # State Snapshots
    # -------------------------------------------------------------------------

    def capture_state(self) -> LvmState:
        return LvmState(volumes=self.list_logical_volumes())

    def diff_state(self, before: LvmState, after: LvmState) -> dict:
        """Compare two LVM states.

        Returns:
            Dict with added and removed LV names
        """
        before_names = {v.name for v in before.volumes}
        after_names = {v.name for v in after.volumes}
        return {
            "added": sorted(after_names - before_names),
            "removed": sorted(before_names - after_names),
        }
