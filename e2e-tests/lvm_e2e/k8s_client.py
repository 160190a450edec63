"""Kubernetes client wrapper using kubectl for E2E tests."""

import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Any

import yaml

from .errors import ExternalCallFailed, MalformedResponseError, NotFoundError

log = logging.getLogger(__name__)

_QUANTITY_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)([A-Za-z]*)$")

_BINARY_UNITS = {
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
}

_DECIMAL_UNITS = {
    "": 1,
    "k": 1000,
    "K": 1000,
    "M": 1000**2,
    "G": 1000**3,
    "T": 1000**4,
    "P": 1000**5,
    "E": 1000**6,
}


def parse_quantity(quantity: str) -> int:
    """Parse a Kubernetes quantity string to bytes.

    Args:
        quantity: Quantity (e.g., "1Gi", "500M", "1073741824")

    Returns:
        Size in bytes

    Raises:
        ValueError: If the string is not a storage quantity
    """
    match = _QUANTITY_PATTERN.match(str(quantity).strip())
    if not match:
        raise ValueError(f"invalid quantity {quantity!r}")

    value, suffix = match.groups()
    multiplier = _BINARY_UNITS.get(suffix) or _DECIMAL_UNITS.get(suffix)
    if multiplier is None:
        raise ValueError(f"unknown quantity suffix in {quantity!r}")
    return int(float(value) * multiplier)


def _is_not_found(stderr: str) -> bool:
    return "NotFound" in stderr or "not found" in stderr.lower()


class ClaimPhase(str, Enum):
    PENDING = "Pending"
    BOUND = "Bound"
    LOST = "Lost"


@dataclass(frozen=True)
class ClaimRecord:
    """Typed view of a PersistentVolumeClaim."""

    name: str
    namespace: str | None
    phase: ClaimPhase
    requested_bytes: int
    capacity_bytes: int | None = None
    volume_name: str | None = None
    storage_class: str | None = None

    @property
    def bound(self) -> bool:
        return self.phase is ClaimPhase.BOUND

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "ClaimRecord":
        """Decode a PVC as returned by ``kubectl get pvc -o json``.

        A PVC the controller has not touched yet has no status; it is
        reported as Pending.

        Raises:
            MalformedResponseError: If required fields are missing or invalid
        """
        try:
            metadata = obj["metadata"]
            name = metadata["name"]
            requested = obj["spec"]["resources"]["requests"]["storage"]
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"PersistentVolumeClaim is missing field {e}") from e

        status = obj.get("status") or {}
        try:
            phase = ClaimPhase(status.get("phase", ClaimPhase.PENDING.value))
        except ValueError as e:
            raise MalformedResponseError(f"pvc {name}: unknown phase {status.get('phase')!r}") from e

        capacity = (status.get("capacity") or {}).get("storage")
        try:
            requested_bytes = parse_quantity(requested)
            capacity_bytes = parse_quantity(capacity) if capacity else None
        except ValueError as e:
            raise MalformedResponseError(f"pvc {name}: {e}") from e

        return cls(
            name=name,
            namespace=metadata.get("namespace"),
            phase=phase,
            requested_bytes=requested_bytes,
            capacity_bytes=capacity_bytes,
            volume_name=obj["spec"].get("volumeName") or None,
            storage_class=obj["spec"].get("storageClassName"),
        )


@dataclass(frozen=True)
class SnapshotRecord:
    """Typed view of a VolumeSnapshot."""

    name: str
    namespace: str | None
    ready_to_use: bool | None = None  # None until the snapshotter fills in status
    source_claim: str | None = None
    restore_size_bytes: int | None = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "SnapshotRecord":
        """Decode a VolumeSnapshot as returned by kubectl.

        Raises:
            MalformedResponseError: If required fields are missing or invalid
        """
        try:
            metadata = obj["metadata"]
            name = metadata["name"]
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"VolumeSnapshot is missing field {e}") from e

        status = obj.get("status") or {}
        ready = status.get("readyToUse")
        if ready is not None and not isinstance(ready, bool):
            raise MalformedResponseError(f"volumesnapshot {name}: readyToUse={ready!r} is not a bool")

        restore_size = status.get("restoreSize")
        try:
            restore_size_bytes = parse_quantity(restore_size) if restore_size else None
        except ValueError as e:
            raise MalformedResponseError(f"volumesnapshot {name}: {e}") from e

        source = (obj.get("spec") or {}).get("source") or {}
        return cls(
            name=name,
            namespace=metadata.get("namespace"),
            ready_to_use=ready,
            source_claim=source.get("persistentVolumeClaimName"),
            restore_size_bytes=restore_size_bytes,
        )


class K8sClient:
    """Wrapper for kubectl operations with proper error handling."""

    def __init__(self, namespace: str = "default", kubeconfig: str | None = None):
        """Initialize the K8s client.

        Args:
            namespace: Default namespace for operations
            kubeconfig: Path to kubeconfig file (uses KUBECONFIG env or default if None)
        """
        self.namespace = namespace
        self.kubeconfig = kubeconfig or os.environ.get("KUBECONFIG")

    def with_namespace(self, namespace: str) -> "K8sClient":
        """Return a client bound to another namespace."""
        return K8sClient(namespace=namespace, kubeconfig=self.kubeconfig)

    def _kubectl(
        self,
        args: list[str],
        input_data: str | None = None,
        timeout: int = 60,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run kubectl command.

        Args:
            args: kubectl arguments
            input_data: Optional stdin data
            timeout: Command timeout in seconds
            check: Whether to raise on non-zero exit

        Returns:
            CompletedProcess with stdout/stderr

        Raises:
            ExternalCallFailed: If kubectl cannot run, times out, or (with
                check) exits non-zero
        """
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        cmd.extend(args)

        try:
            result = subprocess.run(
                cmd,
                input=input_data,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ExternalCallFailed(cmd, None, str(e)) from e

        if check and result.returncode != 0:
            raise ExternalCallFailed(cmd, result.returncode, result.stderr)
        return result

    def _kubectl_json(
        self,
        args: list[str],
        kind: str,
        name: str,
        namespace: str | None = None,
        timeout: int = 60,
    ) -> dict:
        """Run kubectl command and parse JSON output.

        Args:
            args: kubectl arguments (without -o json)
            kind: Resource kind (for NotFoundError)
            name: Resource name (for NotFoundError)
            namespace: Namespace (for NotFoundError)
            timeout: Command timeout

        Returns:
            Parsed JSON object

        Raises:
            NotFoundError: If the resource does not exist
            ExternalCallFailed: On any other kubectl failure
            MalformedResponseError: If stdout is not a JSON object
        """
        result = self._kubectl(args + ["-o", "json"], timeout=timeout, check=False)
        if result.returncode != 0:
            if _is_not_found(result.stderr):
                raise NotFoundError(kind, name, namespace)
            raise ExternalCallFailed(["kubectl"] + args, result.returncode, result.stderr)

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"kubectl get {kind} {name}: invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"kubectl get {kind} {name}: expected an object")
        return data

    # -------------------------------------------------------------------------
    # Generic Resource Operations
    # -------------------------------------------------------------------------

    def apply(self, manifest: str | dict) -> dict:
        """Apply a manifest (create or update resource).

        Args:
            manifest: YAML string or dict to apply

        Returns:
            Applied resource as dict
        """
        if isinstance(manifest, dict):
            manifest = yaml.dump(manifest)

        result = self._kubectl(
            ["-n", self.namespace, "apply", "-f", "-", "-o", "json"],
            input_data=manifest,
        )
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"kubectl apply returned invalid JSON: {e}") from e

    def apply_file(self, path: str | os.PathLike) -> dict:
        """Apply a manifest file.

        Args:
            path: Path to YAML file

        Returns:
            Applied resource as dict
        """
        with open(path) as f:
            return self.apply(f.read())

    def delete(
        self,
        kind: str,
        name: str,
        wait: bool = True,
        timeout: int = 120,
        ignore_not_found: bool = True,
        cluster_scoped: bool = False,
    ) -> bool:
        """Delete a resource.

        Args:
            kind: Resource kind (e.g., "pvc", "pod")
            name: Resource name
            wait: Whether to wait for deletion
            timeout: Wait timeout in seconds
            ignore_not_found: Don't error if resource doesn't exist
            cluster_scoped: If True, don't use namespace (for PV, StorageClass, etc.)

        Returns:
            True if deleted, False if not found

        Raises:
            NotFoundError: If the resource is absent and ignore_not_found is False
        """
        args = ["delete", kind, name]
        if not cluster_scoped:
            args = ["-n", self.namespace] + args
        args.append(f"--wait={'true' if wait else 'false'}")
        if wait:
            args.extend(["--timeout", f"{timeout}s"])
        if ignore_not_found:
            args.append("--ignore-not-found=true")

        result = self._kubectl(args, timeout=timeout + 10, check=False)
        if result.returncode != 0:
            if _is_not_found(result.stderr):
                raise NotFoundError(kind, name, None if cluster_scoped else self.namespace)
            raise ExternalCallFailed(["kubectl"] + args, result.returncode, result.stderr)

        # --ignore-not-found exits 0 and prints nothing when the object is gone
        return bool(result.stdout.strip())

    def get_object(
        self,
        kind: str,
        name: str,
        namespace: str | None = None,
        cluster_scoped: bool = False,
    ) -> dict:
        """Get a resource by name.

        Args:
            kind: Resource kind
            name: Resource name
            namespace: Namespace (defaults to the client's namespace)
            cluster_scoped: If True, don't use namespace

        Returns:
            Resource dict

        Raises:
            NotFoundError: If the resource does not exist
        """
        if cluster_scoped:
            return self._kubectl_json(["get", kind, name], kind, name)
        ns = namespace or self.namespace
        return self._kubectl_json(["-n", ns, "get", kind, name], kind, name, ns)

    def list_resources(
        self, kind: str, label_selector: str | None = None
    ) -> list[dict]:
        """List resources of a kind.

        Args:
            kind: Resource kind
            label_selector: Optional label selector

        Returns:
            List of resource dicts
        """
        args = ["-n", self.namespace, "get", kind]
        if label_selector:
            args.extend(["-l", label_selector])

        result = self._kubectl_json(args, kind, label_selector or "*", self.namespace)
        return result.get("items", [])

    # -------------------------------------------------------------------------
    # Namespace Operations
    # -------------------------------------------------------------------------

    def create_namespace(self, name: str) -> None:
        self._kubectl(["create", "namespace", name])

    # -------------------------------------------------------------------------
    # PVC Operations
    # -------------------------------------------------------------------------

    def create_pvc(
        self,
        name: str,
        storage_class: str,
        size: str = "1Gi",
        access_mode: str = "ReadWriteOnce",
        data_source: dict | None = None,
    ) -> dict:
        """Create a PersistentVolumeClaim.

        Args:
            name: PVC name
            storage_class: StorageClass name
            size: Storage size (e.g., "1Gi")
            access_mode: Access mode
            data_source: Optional dataSource for restoring from a snapshot

        Returns:
            Created PVC resource
        """
        pvc = {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": name, "namespace": self.namespace},
            "spec": {
                "accessModes": [access_mode],
                "storageClassName": storage_class,
                "resources": {"requests": {"storage": size}},
            },
        }

        if data_source:
            pvc["spec"]["dataSource"] = data_source

        return self.apply(pvc)

    def get_claim(self, name: str, namespace: str | None = None) -> ClaimRecord:
        """Get a PVC as a ClaimRecord.

        Raises:
            NotFoundError: If the PVC does not exist
            MalformedResponseError: If the PVC cannot be decoded
        """
        return ClaimRecord.from_object(self.get_object("pvc", name, namespace))

    # -------------------------------------------------------------------------
    # Pod Operations
    # -------------------------------------------------------------------------

    def create_pod_with_pvc(
        self,
        pod_name: str,
        pvc_name: str,
        mount_path: str = "/mnt/data",
        image: str = "busybox:latest",
        command: list[str] | None = None,
        node: str | None = None,
        topology_key: str = "kubernetes.io/hostname",
    ) -> dict:
        """Create a Pod that mounts a PVC.

        Args:
            pod_name: Pod name
            pvc_name: PVC to mount
            mount_path: Mount path in container
            image: Container image
            command: Container command (defaults to sleep)
            node: Pin the Pod to this node through required node affinity
            topology_key: Node label the driver publishes its topology under

        Returns:
            Created Pod resource
        """
        if command is None:
            command = ["sleep", "3600"]

        pod = {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {"name": pod_name, "namespace": self.namespace},
            "spec": {
                "containers": [
                    {
                        "name": "test",
                        "image": image,
                        "command": list(command),
                        "volumeMounts": [{"name": "data", "mountPath": mount_path}],
                    }
                ],
                "volumes": [
                    {"name": "data", "persistentVolumeClaim": {"claimName": pvc_name}}
                ],
                "restartPolicy": "Never",
            },
        }

        if node:
            pod["spec"]["affinity"] = {
                "nodeAffinity": {
                    "requiredDuringSchedulingIgnoredDuringExecution": {
                        "nodeSelectorTerms": [
                            {
                                "matchExpressions": [
                                    {"key": topology_key, "operator": "In", "values": [node]}
                                ]
                            }
                        ]
                    }
                }
            }
        return self.apply(pod)

    def exec_in_pod(
        self,
        pod_name: str,
        command: list[str],
        container: str | None = None,
        timeout: int = 60,
    ) -> tuple[str, str, int]:
        """Execute command in a Pod.

        Args:
            pod_name: Pod name
            command: Command to execute
            container: Container name (optional)
            timeout: Execution timeout

        Returns:
            Tuple of (stdout, stderr, return_code)
        """
        args = ["-n", self.namespace, "exec", pod_name]
        if container:
            args.extend(["-c", container])
        args.append("--")
        args.extend(command)

        result = self._kubectl(args, timeout=timeout, check=False)
        return result.stdout, result.stderr, result.returncode

    # -------------------------------------------------------------------------
    # Snapshot Operations
    # -------------------------------------------------------------------------

    def create_snapshot(
        self,
        name: str,
        pvc_name: str,
        snapshot_class: str | None = None,
    ) -> dict:
        """Create a VolumeSnapshot.

        Args:
            name: Snapshot name
            pvc_name: Source PVC name
            snapshot_class: VolumeSnapshotClass name (optional)

        Returns:
            Created VolumeSnapshot resource
        """
        snapshot = {
            "apiVersion": "snapshot.storage.k8s.io/v1",
            "kind": "VolumeSnapshot",
            "metadata": {"name": name, "namespace": self.namespace},
            "spec": {
                "source": {"persistentVolumeClaimName": pvc_name},
            },
        }

        if snapshot_class:
            snapshot["spec"]["volumeSnapshotClassName"] = snapshot_class

        return self.apply(snapshot)

    def get_snapshot(self, name: str, namespace: str | None = None) -> SnapshotRecord:
        """Get a VolumeSnapshot as a SnapshotRecord.

        Raises:
            NotFoundError: If the snapshot does not exist
            MalformedResponseError: If the snapshot cannot be decoded
        """
        return SnapshotRecord.from_object(self.get_object("volumesnapshot", name, namespace))

    # -------------------------------------------------------------------------
    # Log Collection
    # -------------------------------------------------------------------------

    def get_pod_logs(
        self,
        pod_name: str,
        container: str | None = None,
        since: str | None = "5m",
        tail: int | None = None,
    ) -> str:
        """Get logs from a Pod.

        Args:
            pod_name: Pod name
            container: Container name (optional)
            since: Time duration (e.g., "5m")
            tail: Number of lines to return

        Returns:
            Log output (empty if the logs cannot be read)
        """
        args = ["-n", self.namespace, "logs", pod_name]
        if container:
            args.extend(["-c", container])
        if since:
            args.extend(["--since", since])
        if tail:
            args.extend(["--tail", str(tail)])

        try:
            result = self._kubectl(args, check=False)
        except ExternalCallFailed as e:
            log.warning("Cannot read logs of %s: %s", pod_name, e)
            return ""
        return result.stdout

    def get_events(self, field_selector: str | None = None) -> list[dict]:
        """Get events in the namespace.

        Args:
            field_selector: Optional field selector

        Returns:
            List of events
        """
        args = ["-n", self.namespace, "get", "events", "--sort-by=.lastTimestamp"]
        if field_selector:
            args.extend(["--field-selector", field_selector])

        return self._kubectl_json(args, "events", "*", self.namespace).get("items", [])

    # -------------------------------------------------------------------------
    # Utility Methods
    # -------------------------------------------------------------------------

    def cluster_info(self) -> bool:
        """Check if cluster is accessible.

        Returns:
            True if cluster is accessible
        """
        try:
            self._kubectl(["cluster-info"], timeout=10)
            return True
        except ExternalCallFailed:
            return False

    def get_csi_driver(self, name: str) -> dict:
        return self.get_object("csidriver", name, cluster_scoped=True)

    def get_storage_class(self, name: str) -> dict:
        return self.get_object("storageclass", name, cluster_scoped=True)
