"""Scenario steps shared by the E2E suites.

A Scenario owns one freshly created namespace. Its steps mutate the
cluster through kubectl, wait for the driver to converge, and check the
result on the LVM host against the placement model. Steps are strictly
sequential; any failed wait raises and ends the scenario.

On success teardown deletes everything and waits until every logical volume
the scenario saw is gone from the host. On failure the namespace is kept so
the state can be inspected.
"""

import logging
import shlex
import uuid
from dataclasses import dataclass

from .config import GiB, HarnessConfig
from .errors import (
    ConditionNotMet,
    ExternalCallFailed,
    MalformedResponseError,
    NotFoundError,
    PlacementError,
    TimeoutExceeded,
    UnexpectedBinding,
)
from .k8s_client import ClaimPhase, ClaimRecord, K8sClient, SnapshotRecord
from .lvm_monitor import LogicalVolume, LvmMonitor
from .placement import PlacementExpectation, PlacementModel, StorageVariant
from .poller import Poller
from .resource_tracker import ResourceTracker

log = logging.getLogger(__name__)


def parse_df_size(stdout: str) -> int:
    """Filesystem size in bytes from ``df -Pk <path>`` output."""
    lines = stdout.strip().splitlines()
    if len(lines) < 2:
        raise MalformedResponseError(f"unexpected df output {stdout!r}")
    fields = lines[-1].split()
    try:
        return int(fields[1]) * 1024
    except (IndexError, ValueError) as e:
        raise MalformedResponseError(f"unexpected df output {stdout!r}") from e


@dataclass
class ProvisionedVolume:
    """A claim submitted by a scenario together with its pinned workload."""

    claim: str
    workload: str
    variant: StorageVariant
    node: str
    size_gib: int
    expectation: PlacementExpectation
    lv: LogicalVolume | None = None

    @property
    def size_bytes(self) -> int:
        return self.size_gib * GiB


class Scenario:
    """Step library for one test case over its own namespace."""

    def __init__(
        self,
        k8s: K8sClient,
        lvm: LvmMonitor,
        model: PlacementModel,
        config: HarnessConfig,
        tracker: ResourceTracker,
        prefix: str = "e2e-",
    ):
        self.namespace = f"{prefix}{uuid.uuid4().hex[:10]}"
        self.k8s = k8s.with_namespace(self.namespace)
        self.lvm = lvm
        self.model = model
        self.config = config
        self.tracker = tracker
        give_up_on = (MalformedResponseError,) if config.poll.fail_fast_on_malformed else ()
        self.poller = Poller(config.poll.timeout, config.poll.interval, give_up_on)
        # LVs seen during the scenario, checked for removal on teardown
        self.resolved_volumes: list[str] = []

    def setup(self) -> "Scenario":
        self.k8s.create_namespace(self.namespace)
        self.tracker.track_namespace(self.namespace)
        log.info("Created scenario namespace %s", self.namespace)
        return self

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    def submit(
        self,
        claim: str,
        size_gib: int,
        variant: StorageVariant,
        node: str,
        workload: str | None = None,
        data_source: dict | None = None,
    ) -> ProvisionedVolume:
        """Create a PVC and a Pod pinned to node that mounts it. Does not wait."""
        expectation = self.model.expect(variant, node)
        workload = workload or f"{claim}-pod"
        restored_from = data_source["name"] if data_source else None

        self.k8s.create_pvc(
            claim, self.model.storage_class(variant), f"{size_gib}Gi", data_source=data_source
        )
        self.tracker.track_pvc(claim, self.namespace, restored_from=restored_from)

        self.k8s.create_pod_with_pvc(
            workload,
            claim,
            mount_path=self.config.workload.mount_path,
            image=self.config.workload.image,
            command=list(self.config.workload.command),
            node=node,
            topology_key=self.config.topology_key,
        )
        self.tracker.track_pod(workload, self.namespace)
        log.info("Submitted %s pvc %s (%dGi) with pod %s on %s", variant.value, claim, size_gib, workload, node)

        return ProvisionedVolume(
            claim=claim,
            workload=workload,
            variant=variant,
            node=node,
            size_gib=size_gib,
            expectation=expectation,
        )

    def provision(
        self,
        claim: str,
        size_gib: int,
        variant: StorageVariant,
        node: str,
        workload: str | None = None,
    ) -> ProvisionedVolume:
        """Submit a claim, wait until Bound, and check its logical volume."""
        volume = self.submit(claim, size_gib, variant, node, workload)
        self.wait_bound(claim)
        self.resolve_volume(volume)
        self.verify_placement(volume)
        return volume

    def _bound_claim(self, claim: str) -> ClaimRecord:
        record = self.k8s.get_claim(claim)
        if not record.bound:
            raise ConditionNotMet(f"pvc {claim} is {record.phase.value}")
        return record

    def wait_bound(self, claim: str) -> ClaimRecord:
        return self.poller.wait(lambda: self._bound_claim(claim), f"pvc {claim} to be Bound")

    def resolve_volume(self, volume: ProvisionedVolume) -> LogicalVolume:
        """Find the LV behind a claim on the host."""
        lv_name = self.poller.wait(
            lambda: self.lvm.get_logical_volume_name_for_claim(volume.claim, self.namespace),
            f"logical volume name of pvc {volume.claim}",
        )
        if lv_name not in self.resolved_volumes:
            self.resolved_volumes.append(lv_name)

        volume.lv = self.poller.wait(
            lambda: self.lvm.get_logical_volume(lv_name),
            f"logical volume {lv_name} on the host",
        )
        return volume.lv

    def verify_placement(self, volume: ProvisionedVolume) -> None:
        """Check volume group, pool and size of a resolved volume.

        Raises:
            PlacementError: If the LV is not where the model says it must be
        """
        if volume.lv is None:
            raise ConditionNotMet(f"pvc {volume.claim} has not been resolved to a logical volume")
        self.model.check_placement(volume.expectation, volume.lv)
        if volume.lv.size_bytes != volume.size_bytes:
            raise PlacementError(
                volume.lv.name,
                [f"size {volume.lv.size_bytes}, expected {volume.size_bytes}"],
            )

    def admits(self, variant: StorageVariant, node: str, size_gib: int) -> bool:
        """Whether the model lets a new claim of this size bind on node now."""
        expectation = self.model.expect(variant, node)
        allocated = self.lvm.total_allocated(expectation.expected_volume_group)
        return self.model.admits(expectation, allocated, size_gib * GiB)

    def verify_never_bound(self, claim: str, window: float | None = None) -> ClaimRecord:
        """Check that a claim stays unbound for the whole observation window.

        Raises:
            UnexpectedBinding: If the claim becomes Bound
            TimeoutExceeded: If the claim could not be observed at all
        """
        window = self.config.poll.never_bound_window if window is None else window
        pending_seen = False

        def probe() -> ClaimRecord:
            nonlocal pending_seen
            try:
                return self._bound_claim(claim)
            except ConditionNotMet:
                pending_seen = True
                raise

        try:
            record = self.poller.wait(probe, f"pvc {claim} to be Bound", timeout=window)
        except TimeoutExceeded:
            # Pending was observed; later read failures are not a binding
            if not pending_seen:
                raise
        else:
            raise UnexpectedBinding(f"pvc {claim} was bound to {record.volume_name}")

        record = self.k8s.get_claim(claim)
        if record.phase is not ClaimPhase.PENDING:
            raise UnexpectedBinding(f"pvc {claim} is {record.phase.value}, expected Pending")
        log.info("pvc %s stayed Pending for %ss", claim, window)
        return record

    # -------------------------------------------------------------------------
    # Data Inside Workloads
    # -------------------------------------------------------------------------

    def _exec(self, pod: str, command: list[str]) -> str:
        stdout, stderr, rc = self.k8s.exec_in_pod(pod, command)
        if rc != 0:
            raise ExternalCallFailed(["kubectl", "exec", pod, "--"] + command, rc, stderr)
        return stdout

    def write_file(self, volume: ProvisionedVolume, filename: str, content: str) -> str:
        """Write content to a file on the mounted volume and sync it."""
        path = f"{self.config.workload.mount_path}/{filename}"
        command = ["sh", "-c", f"echo {shlex.quote(content)} > {shlex.quote(path)} && sync"]
        self.poller.wait(lambda: self._exec(volume.workload, command), f"write {path} in {volume.workload}")
        return path

    def read_file(self, volume: ProvisionedVolume, filename: str) -> str:
        path = f"{self.config.workload.mount_path}/{filename}"

        def probe() -> str:
            content = self._exec(volume.workload, ["cat", path]).strip()
            if not content:
                raise ConditionNotMet(f"{path} is empty")
            return content

        return self.poller.wait(probe, f"read {path} in {volume.workload}")

    def verify_file(self, volume: ProvisionedVolume, filename: str, expected: str) -> None:
        """Check a file on the volume holds expected content.

        Raises:
            ConditionNotMet: If the content differs
        """
        content = self.read_file(volume, filename)
        if content != expected.strip():
            raise ConditionNotMet(
                f"{filename} in {volume.workload} holds {content!r}, expected {expected!r}"
            )

    def verify_filesystem_size(self, volume: ProvisionedVolume) -> int:
        """Check the mounted filesystem reflects the requested size.

        Filesystem metadata eats into the device, so the size reported by df
        may fall short of the request by the configured overhead.

        Returns:
            Filesystem size in bytes
        """
        mount_path = self.config.workload.mount_path
        minimum = int(volume.size_bytes * (1 - self.config.filesystem_overhead))

        def probe() -> int:
            size = parse_df_size(self._exec(volume.workload, ["df", "-Pk", mount_path]))
            if size < minimum:
                raise ConditionNotMet(
                    f"filesystem in {volume.workload} is {size} bytes, expected at least {minimum}"
                )
            return size

        return self.poller.wait(probe, f"filesystem of {volume.workload} to reach {volume.size_gib}Gi")

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def snapshot(self, source: ProvisionedVolume, name: str) -> SnapshotRecord:
        """Snapshot a bound claim and wait until it is ready to use."""
        self.k8s.create_snapshot(name, source.claim, self.config.snapshot_class)
        self.tracker.track_snapshot(name, self.namespace, source_pvc=source.claim)

        def probe() -> SnapshotRecord:
            record = self.k8s.get_snapshot(name)
            if record.ready_to_use is None:
                raise ConditionNotMet(f"volumesnapshot {name} has no status yet")
            if not record.ready_to_use:
                raise ConditionNotMet(f"volumesnapshot {name} is not ready to use")
            return record

        return self.poller.wait(probe, f"volumesnapshot {name} to be ready")

    def restore(
        self,
        snapshot: str,
        source: ProvisionedVolume,
        claim: str,
        size_gib: int | None = None,
        workload: str | None = None,
    ) -> ProvisionedVolume:
        """Restore a snapshot into a new claim on the source's node and check it.

        Args:
            snapshot: VolumeSnapshot name
            source: Volume the snapshot was taken from
            claim: Name of the restore PVC
            size_gib: Requested size; defaults to the source size, never smaller
            workload: Name of the Pod mounting the restore
        """
        size_gib = source.size_gib if size_gib is None else size_gib
        if size_gib < source.size_gib:
            raise ValueError(f"restore size {size_gib}Gi is smaller than source {source.size_gib}Gi")

        restored = self.submit(
            claim,
            size_gib,
            source.variant,
            source.node,
            workload,
            data_source={
                "apiGroup": "snapshot.storage.k8s.io",
                "kind": "VolumeSnapshot",
                "name": snapshot,
            },
        )
        record = self.wait_bound(claim)
        if record.requested_bytes != restored.size_bytes:
            raise ConditionNotMet(
                f"pvc {claim} requests {record.requested_bytes} bytes, expected {restored.size_bytes}"
            )
        self.resolve_volume(restored)
        self.verify_placement(restored)
        return restored

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def delete_volume(self, volume: ProvisionedVolume) -> None:
        """Delete the workload, then the claim, and wait for both to go."""
        timeout = int(self.config.poll.timeout)
        self.k8s.delete("pod", volume.workload, timeout=timeout)
        self.k8s.delete("pvc", volume.claim, timeout=timeout)
        self.verify_deleted("pod", volume.workload)
        self.verify_deleted("pvc", volume.claim)

    def delete_snapshot(self, name: str) -> None:
        self.k8s.delete("volumesnapshot", name, timeout=int(self.config.poll.timeout))
        self.verify_deleted("volumesnapshot", name)

    def verify_deleted(self, kind: str, name: str, cluster_scoped: bool = False) -> None:
        """Wait until a cluster object no longer exists."""

        def probe() -> None:
            try:
                self.k8s.get_object(kind, name, cluster_scoped=cluster_scoped)
            except NotFoundError:
                return
            raise ConditionNotMet(f"{kind} {name} still exists")

        self.poller.wait(probe, f"{kind} {name} to be deleted")

    def verify_claim_deleted(self, claim: str) -> None:
        self.verify_deleted("pvc", claim)

    def verify_pv_deleted(self, pv: str) -> None:
        self.verify_deleted("pv", pv, cluster_scoped=True)

    def verify_volume_released(self, lv_name: str) -> None:
        """Wait until the host no longer has the logical volume."""
        self.poller.wait(lambda: self.lvm.check_deleted(lv_name), f"logical volume {lv_name} to be removed")

    def verify_volume_survives(self, volume: ProvisionedVolume) -> LogicalVolume:
        """Check, once, that a claim still resolves to a correctly placed LV."""
        lv_name = self.lvm.get_logical_volume_name_for_claim(volume.claim, self.namespace)
        volume.lv = self.lvm.get_logical_volume(lv_name)
        self.model.check_placement(volume.expectation, volume.lv)
        return volume.lv

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def teardown(self, failed: bool) -> None:
        """Remove everything the scenario created.

        Args:
            failed: Keep the namespace for inspection instead of deleting it
        """
        if failed:
            log.warning("Scenario failed, keeping namespace %s for inspection", self.namespace)
            self.tracker.cleanup_all(strict=False, retain_namespace=self.namespace)
            return

        self.tracker.cleanup_all(timeout=int(self.config.poll.timeout))
        for lv_name in self.resolved_volumes:
            self.verify_volume_released(lv_name)
        log.info("Scenario namespace %s cleaned up", self.namespace)
