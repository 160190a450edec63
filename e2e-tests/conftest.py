"""Pytest configuration and fixtures for LVM CSI E2E tests."""

import logging
import os
import uuid
from pathlib import Path
from typing import Callable, Generator

import pytest

from lvm_e2e.config import CONFIG_ENV_VAR, HarnessConfig
from lvm_e2e.errors import HarnessError, NotFoundError
from lvm_e2e.k8s_client import K8sClient
from lvm_e2e.log_collector import LogCollector
from lvm_e2e.lvm_monitor import LvmMonitor, LvmState
from lvm_e2e.placement import PlacementModel
from lvm_e2e.resource_tracker import ResourceTracker
from lvm_e2e.scenario import Scenario

log = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Configuration
# -------------------------------------------------------------------------


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command line options."""
    parser.addoption(
        "--namespace",
        action="store",
        default=os.environ.get("TEST_NAMESPACE", "default"),
        help="Kubernetes namespace for cluster-level checks",
    )
    parser.addoption(
        "--kubeconfig",
        action="store",
        default=os.environ.get("KUBECONFIG"),
        help="Path to kubeconfig file",
    )
    parser.addoption(
        "--harness-config",
        action="store",
        default=os.environ.get(CONFIG_ENV_VAR),
        help="Harness config YAML (defaults to resources/harness.yaml)",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line("markers", "e2e: marks tests that need a live cluster")
    config.addinivalue_line("markers", "stress: marks tests as stress tests")
    config.addinivalue_line("markers", "slow: marks tests as slow running")
    config.addinivalue_line("markers", "snapshot: marks snapshot and restore tests")
    config.addinivalue_line("markers", "thick: marks thick provisioning tests")


# -------------------------------------------------------------------------
# Session-scoped Fixtures
# -------------------------------------------------------------------------


@pytest.fixture(scope="session")
def harness_config(request: pytest.FixtureRequest) -> HarnessConfig:
    """Cluster layout and poll budgets for the session."""
    return HarnessConfig.load(request.config.getoption("--harness-config"))


@pytest.fixture(scope="session")
def test_namespace(request: pytest.FixtureRequest) -> str:
    return request.config.getoption("--namespace")


@pytest.fixture(scope="session")
def k8s(request: pytest.FixtureRequest, test_namespace: str) -> K8sClient:
    """K8s client for the test session."""
    kubeconfig = request.config.getoption("--kubeconfig")
    client = K8sClient(namespace=test_namespace, kubeconfig=kubeconfig)

    # Verify cluster access
    if not client.cluster_info():
        pytest.skip("Cannot connect to Kubernetes cluster")

    return client


@pytest.fixture(scope="session")
def lvm(k8s: K8sClient, harness_config: HarnessConfig) -> LvmMonitor:
    """LVM monitor for the host backing the driver."""
    return LvmMonitor(
        k8s,
        volume_groups=harness_config.managed_volume_groups(),
        logical_volume_resource=harness_config.logical_volume_resource,
        command_prefix=harness_config.lvm.command_prefix,
        use_sudo=harness_config.lvm.use_sudo,
    )


@pytest.fixture(scope="session")
def placement(harness_config: HarnessConfig) -> PlacementModel:
    return PlacementModel(harness_config)


@pytest.fixture(scope="session")
def csi_driver(k8s: K8sClient, harness_config: HarnessConfig) -> dict:
    """Verify CSI driver is installed and return its info."""
    try:
        return k8s.get_csi_driver(harness_config.csi_driver)
    except NotFoundError:
        pytest.fail(f"CSI driver {harness_config.csi_driver} not found")


@pytest.fixture(scope="session")
def resources_dir() -> Path:
    """Path to resources directory."""
    return Path(__file__).parent / "resources"


@pytest.fixture(scope="session")
def storage_classes(
    k8s: K8sClient, harness_config: HarnessConfig, resources_dir: Path
) -> Generator[dict[str, str], None, None]:
    """Make sure the configured StorageClasses and VolumeSnapshotClass exist.

    Classes already installed with the driver are used as they are. Missing
    ones are created from resources/storageclasses/<name>.yaml and removed
    again at session end.
    """
    tracker = ResourceTracker(k8s=k8s)
    wanted = [("storageclass", name) for name in harness_config.storage_classes.values()]
    wanted.append(("volumesnapshotclass", harness_config.snapshot_class))

    for kind, name in wanted:
        try:
            k8s.get_object(kind, name, cluster_scoped=True)
            continue
        except NotFoundError:
            pass

        manifest = resources_dir / "storageclasses" / f"{name}.yaml"
        if not manifest.exists():
            pytest.skip(f"{kind} {name} is not installed and {manifest.name} does not exist")
        log.info("Creating %s %s from %s", kind, name, manifest)
        k8s.apply_file(manifest)
        tracker.track_storage_class(name, kind=kind)

    yield dict(harness_config.storage_classes)

    tracker.cleanup_all(strict=False)


# -------------------------------------------------------------------------
# Function-scoped Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def logs(k8s: K8sClient, harness_config: HarnessConfig) -> Generator[LogCollector, None, None]:
    """Log collector that starts fresh for each test."""
    collector = LogCollector(k8s, harness_config.logs)
    collector.start_collection()
    yield collector


@pytest.fixture
def unique_name() -> str:
    """Generate unique resource names for this test."""
    return f"e2e-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def lvm_state_before(lvm: LvmMonitor) -> LvmState:
    """Capture LVM state before test."""
    return lvm.capture_state()


@pytest.fixture
def scenario(
    request: pytest.FixtureRequest,
    k8s: K8sClient,
    lvm: LvmMonitor,
    placement: PlacementModel,
    harness_config: HarnessConfig,
    csi_driver: dict,
    storage_classes: dict[str, str],
) -> Generator[Callable[..., Scenario], None, None]:
    """Factory for scenarios, each in a fresh namespace.

    After the test every scenario is torn down. A failed test keeps the
    namespaces for inspection; a passing one must leave nothing behind, so
    teardown errors fail it.
    """
    created: list[Scenario] = []
    request.node.lvm_scenarios = created

    def create(prefix: str = "e2e-") -> Scenario:
        tracker = ResourceTracker(k8s=k8s)
        new = Scenario(k8s, lvm, placement, harness_config, tracker, prefix=prefix).setup()
        created.append(new)
        return new

    yield create

    report = getattr(request.node, "rep_call", None)
    failed = report is None or report.failed
    errors = []
    for s in reversed(created):
        try:
            s.teardown(failed)
        except HarnessError as e:
            errors.append(f"{s.namespace}: {e}")
    if errors:
        pytest.fail("Scenario teardown failed:\n" + "\n".join(errors))


# -------------------------------------------------------------------------
# Reporting Hooks
# -------------------------------------------------------------------------


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo):
    """Record per-phase reports and add LVM state and driver errors on failure."""
    outcome = yield
    report = outcome.get_result()
    setattr(item, f"rep_{report.when}", report)

    if report.when != "call" or not report.failed:
        return

    extra_info = []
    try:
        lvm = item.funcargs.get("lvm")
        before = item.funcargs.get("lvm_state_before")
        logs = item.funcargs.get("logs")

        if lvm and before:
            diff = lvm.diff_state(before, lvm.capture_state())
            extra_info.append("\n=== LVM State at Failure ===")
            extra_info.append(f"Added LVs: {', '.join(diff['added']) or '-'}")
            extra_info.append(f"Removed LVs: {', '.join(diff['removed']) or '-'}")

        for s in getattr(item, "lvm_scenarios", []):
            extra_info.append(f"\n=== Events in {s.namespace} (namespace kept) ===")
            for event in s.k8s.get_events()[-10:]:
                obj = event.get("involvedObject", {})
                extra_info.append(
                    f"{obj.get('kind')}/{obj.get('name')}: {event.get('reason')} {event.get('message')}"
                )

        if logs:
            errors = logs.find_errors(logs.collect_all())
            if errors:
                extra_info.append("\n=== Errors in Logs ===")
                for err in errors[:10]:  # First 10 errors
                    extra_info.append(f"[{err.source}] {err.message[:200]}")
    except HarnessError as e:
        extra_info.append(f"\n(diagnostics incomplete: {e})")

    if extra_info:
        report.longrepr = str(report.longrepr) + "\n" + "\n".join(extra_info)
