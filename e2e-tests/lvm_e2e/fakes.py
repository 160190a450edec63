"""In-memory stand-ins for the cluster and the LVM host.

FakeBackend holds the state of a simulated driver: a claim binds once a Pod
that consumes it exists, the volume lands where the placement model says,
and a thick claim that does not fit stays Pending. FakeCluster exposes the
K8sClient surface over that state, one namespace at a time; FakeLvm is an
LvmMonitor whose lvs calls are answered from the same state.

Used by the unit suite to run scenarios without a cluster.
"""

import itertools
import shlex
import subprocess
from dataclasses import dataclass, field

from .config import HarnessConfig
from .errors import ExternalCallFailed, NotFoundError
from .k8s_client import ClaimRecord, SnapshotRecord, parse_quantity
from .lvm_monitor import LVS_SEPARATOR, LogicalVolume, LvmMonitor
from .placement import PlacementModel, StorageVariant


@dataclass
class FakeClaim:
    name: str
    namespace: str
    storage_class: str
    size: str
    data_source: dict | None = None
    pv: str | None = None

    @property
    def size_bytes(self) -> int:
        return parse_quantity(self.size)


@dataclass
class FakePod:
    name: str
    namespace: str
    claim: str
    node: str | None
    mount_path: str


@dataclass
class FakeSnapshot:
    name: str
    namespace: str
    claim: str
    files: dict[str, str] = field(default_factory=dict)
    reads: int = 0


class FakeBackend:
    """State shared by every FakeCluster view and the FakeLvm."""

    def __init__(
        self,
        config: HarnessConfig,
        snapshot_ready_after: int = 1,
        keep_volumes: bool = False,
        filesystem_overhead: float = 0.03,
    ):
        """Initialize the simulated driver.

        Args:
            config: Harness config describing nodes and storage classes
            snapshot_ready_after: Snapshot reads that report no status yet
            keep_volumes: Leak LVs when their claim is deleted
            filesystem_overhead: Share of an LV that df does not report
        """
        self.config = config
        self.model = PlacementModel(config)
        self.snapshot_ready_after = snapshot_ready_after
        self.keep_volumes = keep_volumes
        self.filesystem_overhead = filesystem_overhead

        self.namespaces: set[str] = set()
        self.claims: dict[tuple[str, str], FakeClaim] = {}
        self.pods: dict[tuple[str, str], FakePod] = {}
        self.snapshots: dict[tuple[str, str], FakeSnapshot] = {}
        self.pv_volumes: dict[str, str] = {}  # PV name -> LV name
        self.volumes: dict[str, LogicalVolume] = {}
        self.files: dict[str, dict[str, str]] = {}  # LV name -> path -> content
        self.deleted: list[tuple[str, str]] = []
        self.fail_deletes: set[tuple[str, str]] = set()

        self._ids = itertools.count(1)
        self._variants = {
            name: StorageVariant(variant) for variant, name in config.storage_classes.items()
        }

    def client(self, namespace: str = "default") -> "FakeCluster":
        return FakeCluster(self, namespace)

    def lvm(self) -> "FakeLvm":
        return FakeLvm(self)

    def allocated(self, volume_group: str) -> int:
        return sum(
            lv.size_bytes
            for lv in self.volumes.values()
            if lv.volume_group == volume_group and lv.pool is None and not lv.is_thin_pool
        )

    def reconcile(self) -> None:
        """Bind every claim that has a consumer and fits."""
        for claim in self.claims.values():
            if claim.pv is None:
                self._try_bind(claim)

    def _try_bind(self, claim: FakeClaim) -> None:
        consumers = [
            pod
            for pod in self.pods.values()
            if pod.namespace == claim.namespace and pod.claim == claim.name
        ]
        if not consumers or consumers[0].node is None:
            return

        variant = self._variants[claim.storage_class]
        expectation = self.model.expect(variant, consumers[0].node)
        if not self.model.admits(
            expectation, self.allocated(expectation.expected_volume_group), claim.size_bytes
        ):
            return

        n = next(self._ids)
        lv_name = f"lv-{n:04d}"
        claim.pv = f"pvc-{n:04d}"
        self.pv_volumes[claim.pv] = lv_name
        self.volumes[lv_name] = LogicalVolume(
            name=lv_name,
            volume_group=expectation.expected_volume_group,
            pool=expectation.expected_pool,
            size_bytes=claim.size_bytes,
            segment_type="thin" if expectation.expected_pool else "linear",
        )

        files = {}
        if claim.data_source:
            snapshot = self.snapshots.get((claim.namespace, claim.data_source["name"]))
            if snapshot is not None:
                files = dict(snapshot.files)
        self.files[lv_name] = files

    def release(self, claim: FakeClaim) -> None:
        if claim.pv is None:
            return
        lv_name = self.pv_volumes.pop(claim.pv)
        if not self.keep_volumes:
            self.volumes.pop(lv_name, None)
            self.files.pop(lv_name, None)


class FakeCluster:
    """K8sClient look-alike bound to one namespace of a FakeBackend."""

    def __init__(self, backend: FakeBackend, namespace: str = "default"):
        self.backend = backend
        self.namespace = namespace

    def with_namespace(self, namespace: str) -> "FakeCluster":
        return FakeCluster(self.backend, namespace)

    def cluster_info(self) -> bool:
        return True

    def _require_namespace(self, kind: str, name: str) -> None:
        if self.namespace not in self.backend.namespaces:
            raise ExternalCallFailed(
                ["kubectl", "-n", self.namespace, "apply", kind, name],
                1,
                f'namespaces "{self.namespace}" not found',
            )

    def create_namespace(self, name: str) -> None:
        if name in self.backend.namespaces:
            raise ExternalCallFailed(
                ["kubectl", "create", "namespace", name], 1, f'namespaces "{name}" already exists'
            )
        self.backend.namespaces.add(name)

    def create_pvc(
        self,
        name: str,
        storage_class: str,
        size: str = "1Gi",
        access_mode: str = "ReadWriteOnce",
        data_source: dict | None = None,
    ) -> dict:
        self._require_namespace("pvc", name)
        self.backend.claims[(self.namespace, name)] = FakeClaim(
            name=name,
            namespace=self.namespace,
            storage_class=storage_class,
            size=size,
            data_source=data_source,
        )
        return self.get_object("pvc", name)

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
        self._require_namespace("pod", pod_name)
        self.backend.pods[(self.namespace, pod_name)] = FakePod(
            name=pod_name,
            namespace=self.namespace,
            claim=pvc_name,
            node=node,
            mount_path=mount_path,
        )
        return self.get_object("pod", pod_name)

    def create_snapshot(self, name: str, pvc_name: str, snapshot_class: str | None = None) -> dict:
        self._require_namespace("volumesnapshot", name)
        claim = self.backend.claims.get((self.namespace, pvc_name))
        files = {}
        if claim is not None and claim.pv is not None:
            files = dict(self.backend.files[self.backend.pv_volumes[claim.pv]])
        self.backend.snapshots[(self.namespace, name)] = FakeSnapshot(
            name=name, namespace=self.namespace, claim=pvc_name, files=files
        )
        return {"metadata": {"name": name, "namespace": self.namespace}}

    def get_object(
        self,
        kind: str,
        name: str,
        namespace: str | None = None,
        cluster_scoped: bool = False,
    ) -> dict:
        backend = self.backend
        backend.reconcile()
        ns = namespace or self.namespace
        key = (ns, name)

        if kind == "pvc" and key in backend.claims:
            claim = backend.claims[key]
            spec = {
                "storageClassName": claim.storage_class,
                "resources": {"requests": {"storage": claim.size}},
            }
            if claim.pv is None:
                return {"metadata": {"name": name, "namespace": ns}, "spec": spec}
            spec["volumeName"] = claim.pv
            return {
                "metadata": {"name": name, "namespace": ns},
                "spec": spec,
                "status": {"phase": "Bound", "capacity": {"storage": claim.size}},
            }

        if kind == "pod" and key in backend.pods:
            return {"metadata": {"name": name, "namespace": ns}, "status": {"phase": "Running"}}

        if kind == "volumesnapshot" and key in backend.snapshots:
            snapshot = backend.snapshots[key]
            snapshot.reads += 1
            obj = {
                "metadata": {"name": name, "namespace": ns},
                "spec": {"source": {"persistentVolumeClaimName": snapshot.claim}},
            }
            if snapshot.reads > backend.snapshot_ready_after:
                obj["status"] = {"readyToUse": True}
            return obj

        if kind == "pv" and name in backend.pv_volumes:
            return {"metadata": {"name": name}}

        if kind == backend.config.logical_volume_resource and name in backend.pv_volumes:
            return {"metadata": {"name": name}, "status": {"volumeID": backend.pv_volumes[name]}}

        if kind == "namespace" and name in backend.namespaces:
            return {"metadata": {"name": name}}

        raise NotFoundError(kind, name, None if cluster_scoped else ns)

    def get_claim(self, name: str, namespace: str | None = None) -> ClaimRecord:
        return ClaimRecord.from_object(self.get_object("pvc", name, namespace))

    def get_snapshot(self, name: str, namespace: str | None = None) -> SnapshotRecord:
        return SnapshotRecord.from_object(self.get_object("volumesnapshot", name, namespace))

    def get_csi_driver(self, name: str) -> dict:
        if name != self.backend.config.csi_driver:
            raise NotFoundError("csidriver", name)
        return {"metadata": {"name": name}}

    def get_storage_class(self, name: str) -> dict:
        if name not in self.backend.config.storage_classes.values():
            raise NotFoundError("storageclass", name)
        return {"metadata": {"name": name}, "provisioner": self.backend.config.csi_driver}

    def delete(
        self,
        kind: str,
        name: str,
        wait: bool = True,
        timeout: int = 120,
        ignore_not_found: bool = True,
        cluster_scoped: bool = False,
    ) -> bool:
        backend = self.backend
        if (kind, name) in backend.fail_deletes:
            raise ExternalCallFailed(["kubectl", "delete", kind, name], 1, "connection refused")
        backend.deleted.append((kind, name))
        key = (self.namespace, name)

        found = False
        if kind == "pod":
            found = backend.pods.pop(key, None) is not None
        elif kind == "pvc":
            claim = backend.claims.pop(key, None)
            if claim is not None:
                backend.release(claim)
                found = True
        elif kind == "volumesnapshot":
            found = backend.snapshots.pop(key, None) is not None
        elif kind == "namespace" and name in backend.namespaces:
            self._delete_namespace(name)
            found = True

        if not found and not ignore_not_found:
            raise NotFoundError(kind, name, None if cluster_scoped else self.namespace)
        return found

    def _delete_namespace(self, name: str) -> None:
        backend = self.backend
        backend.namespaces.discard(name)
        for store in (backend.pods, backend.snapshots):
            for key in [k for k in store if k[0] == name]:
                del store[key]
        for key in [k for k in backend.claims if k[0] == name]:
            backend.release(backend.claims.pop(key))

    def exec_in_pod(
        self,
        pod_name: str,
        command: list[str],
        container: str | None = None,
        timeout: int = 60,
    ) -> tuple[str, str, int]:
        backend = self.backend
        backend.reconcile()
        pod = backend.pods.get((self.namespace, pod_name))
        if pod is None:
            return "", f'pods "{pod_name}" not found', 1
        claim = backend.claims.get((self.namespace, pod.claim))
        if claim is None or claim.pv is None:
            return "", "container not found (ContainerCreating)", 1
        lv_name = backend.pv_volumes[claim.pv]
        files = backend.files[lv_name]

        if command[:2] == ["sh", "-c"]:
            tokens = shlex.split(command[2])
            if tokens[0] == "echo" and ">" in tokens:
                idx = tokens.index(">")
                files[tokens[idx + 1]] = " ".join(tokens[1:idx]) + "\n"
                return "", "", 0
            return "", "sh: unsupported command", 127
        if command[0] == "cat":
            if command[1] not in files:
                return "", f"cat: {command[1]}: No such file or directory", 1
            return files[command[1]], "", 0
        if command[0] == "df":
            size = backend.volumes[lv_name].size_bytes
            blocks = int(size * (1 - backend.filesystem_overhead)) // 1024
            return (
                "Filesystem     1024-blocks  Used Available Capacity Mounted on\n"
                f"/dev/topolvm/{lv_name} {blocks} 0 {blocks} 0% {pod.mount_path}\n",
                "",
                0,
            )
        if command[0] == "sync":
            return "", "", 0
        return "", f"{command[0]}: not found", 127


class FakeLvm(LvmMonitor):
    """LvmMonitor answering lvs from a FakeBackend."""

    def __init__(self, backend: FakeBackend):
        super().__init__(
            backend.client(),
            volume_groups=backend.config.managed_volume_groups(),
            logical_volume_resource=backend.config.logical_volume_resource,
            use_sudo=False,
        )
        self.backend = backend

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        volumes = list(self.backend.volumes.values())
        if "--select" in cmd:
            wanted = cmd[cmd.index("--select") + 1].split("=", 1)[1]
            volumes = [lv for lv in volumes if lv.name == wanted]
        stdout = "".join(
            f"  {lv.name}{LVS_SEPARATOR}{lv.volume_group}{LVS_SEPARATOR}"
            f"{lv.pool or ''}{LVS_SEPARATOR}{lv.size_bytes}{LVS_SEPARATOR}{lv.segment_type}\n"
            for lv in volumes
        )
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")
