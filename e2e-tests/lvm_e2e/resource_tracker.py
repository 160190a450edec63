"""Resource tracker for coordinated E2E test cleanup.

Every object a test creates is registered here, and cleanup_all() removes
whatever is still left at the end. Resources are deleted in dependency order:
1. Pods (release PVC usage)
2. Restored PVCs (created from snapshots)
3. Snapshots (depend on source volumes)
4. Source PVCs (base volumes)
5. Cluster-scoped objects (StorageClasses, VolumeSnapshotClasses)
6. Namespaces

An object that is already gone counts as cleaned up.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING

from .errors import CleanupError, ExternalCallFailed, NotFoundError

if TYPE_CHECKING:
    from .k8s_client import K8sClient

log = logging.getLogger(__name__)


class ResourceType(IntEnum):
    """Resource types in cleanup priority order (lower = cleanup first)."""

    POD = 1
    RESTORED_PVC = 2  # PVC created from a snapshot
    SNAPSHOT = 3
    SOURCE_PVC = 4  # Original PVC (no data source)
    CLUSTER_SCOPED = 5
    NAMESPACE = 6


@dataclass
class TrackedResource:
    """A resource being tracked for cleanup."""

    kind: str  # K8s kind: "pod", "pvc", "volumesnapshot", ...
    name: str
    resource_type: ResourceType
    namespace: str | None = None  # None for cluster-scoped objects
    # For debugging dependency issues
    depends_on: str | None = None


def _namespace_name(resource: TrackedResource) -> str | None:
    return resource.name if resource.resource_type is ResourceType.NAMESPACE else None


@dataclass
class ResourceTracker:
    """Tracks test resources and coordinates cleanup in correct order.

    Usage:
        tracker = ResourceTracker(k8s)
        tracker.track_pvc("vol", namespace="snap-test-abc")
        tracker.track_snapshot("snap", namespace="snap-test-abc", source_pvc="vol")
        tracker.track_pvc("restore", namespace="snap-test-abc", restored_from="snap")
        tracker.track_pod("restore-pod", namespace="snap-test-abc")

        # At test end:
        tracker.cleanup_all()  # Deletes in correct order, exactly once
    """

    k8s: "K8sClient"
    resources: list[TrackedResource] = field(default_factory=list)
    consumed: bool = False

    def track(
        self,
        kind: str,
        name: str,
        resource_type: ResourceType,
        namespace: str | None = None,
        depends_on: str | None = None,
    ) -> None:
        if self.consumed:
            raise CleanupError(f"cannot track {kind} {name}: cleanup already ran")
        self.resources.append(
            TrackedResource(
                kind=kind,
                name=name,
                resource_type=resource_type,
                namespace=namespace,
                depends_on=depends_on,
            )
        )

    def track_pod(self, name: str, namespace: str) -> None:
        """Track a pod for cleanup."""
        self.track("pod", name, ResourceType.POD, namespace)

    def track_pvc(self, name: str, namespace: str, restored_from: str | None = None) -> None:
        """Track a PVC for cleanup.

        Args:
            name: PVC name
            namespace: PVC namespace
            restored_from: Snapshot this PVC was restored from (needs earlier cleanup)
        """
        resource_type = ResourceType.RESTORED_PVC if restored_from else ResourceType.SOURCE_PVC
        self.track("pvc", name, resource_type, namespace, depends_on=restored_from)

    def track_snapshot(self, name: str, namespace: str, source_pvc: str | None = None) -> None:
        """Track a snapshot for cleanup."""
        self.track("volumesnapshot", name, ResourceType.SNAPSHOT, namespace, depends_on=source_pvc)

    def track_storage_class(self, name: str, kind: str = "storageclass") -> None:
        """Track a cluster-scoped class object (StorageClass, VolumeSnapshotClass)."""
        self.track(kind, name, ResourceType.CLUSTER_SCOPED)

    def track_namespace(self, name: str) -> None:
        self.track("namespace", name, ResourceType.NAMESPACE)

    def cleanup_all(
        self, timeout: int = 60, strict: bool = True, retain_namespace: str | None = None
    ) -> list[str]:
        """Clean up all tracked resources in correct dependency order.

        Every registration is attempted even if earlier ones fail. Runs once;
        later calls do nothing.

        Args:
            timeout: Per-object deletion timeout in seconds
            strict: Raise CleanupError if kubectl itself failed
            retain_namespace: Leave this namespace and everything in it alone

        Returns:
            List of warning messages for resources that failed to delete

        Raises:
            CleanupError: If strict and any deletion could not be carried out
        """
        if self.consumed:
            return []
        self.consumed = True

        warnings = []

        # Sort by resource type (pods first, namespaces last)
        # Within same type, reverse creation order (LIFO)
        sorted_resources = sorted(
            enumerate(self.resources),
            key=lambda x: (x[1].resource_type, -x[0]),
        )

        for _, resource in sorted_resources:
            if retain_namespace and retain_namespace in (resource.namespace, _namespace_name(resource)):
                log.info("Keeping %s %s in retained namespace", resource.kind, resource.name)
                continue
            try:
                if resource.namespace is None:
                    self.k8s.delete(
                        resource.kind,
                        resource.name,
                        wait=True,
                        timeout=timeout,
                        cluster_scoped=True,
                    )
                else:
                    self.k8s.with_namespace(resource.namespace).delete(
                        resource.kind,
                        resource.name,
                        wait=True,
                        timeout=timeout,
                    )
            except NotFoundError:
                log.debug("%s %s already gone", resource.kind, resource.name)
            except ExternalCallFailed as e:
                msg = f"Failed to delete {resource.kind} {resource.name}: {e}"
                warnings.append(msg)
                log.warning(msg)

        # Clear tracked resources
        self.resources.clear()

        if strict and warnings:
            raise CleanupError("; ".join(warnings))
        return warnings

    def __len__(self) -> int:
        return len(self.resources)
