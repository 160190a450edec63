"""Tests for the LVM host inventory query."""

import subprocess
from unittest.mock import Mock

import pytest

from lvm_e2e import lvm_monitor
from lvm_e2e.errors import (
    ExternalCallFailed,
    MalformedResponseError,
    NotFoundError,
    VolumeStillPresent,
)
from lvm_e2e.k8s_client import ClaimPhase, ClaimRecord
from lvm_e2e.lvm_monitor import LogicalVolume, LvmMonitor, LvmState, parse_lvs_output

LVS_OUTPUT = """\
  pool0|vg-thin1||4294967296|thin-pool
  lv-thin|vg-thin1|pool0|1073741824|thin
  lv-thick-a|vg-thick1||3221225472|linear
  lv-thick-b|vg-thick1||2147483648|linear
"""


def completed(stdout: str = "", stderr: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def run(monkeypatch: pytest.MonkeyPatch) -> Mock:
    mock = Mock(return_value=completed(LVS_OUTPUT))
    monkeypatch.setattr(lvm_monitor.subprocess, "run", mock)
    return mock


@pytest.fixture
def k8s() -> Mock:
    return Mock()


@pytest.fixture
def monitor(run: Mock, k8s: Mock) -> LvmMonitor:
    return LvmMonitor(k8s, use_sudo=False)


def _claim(volume_name: str | None) -> ClaimRecord:
    return ClaimRecord(
        name="data",
        namespace="ns",
        phase=ClaimPhase.BOUND if volume_name else ClaimPhase.PENDING,
        requested_bytes=1024**3,
        volume_name=volume_name,
    )


def test_parse_lvs_output() -> None:
    volumes = parse_lvs_output(LVS_OUTPUT)

    assert volumes[1] == LogicalVolume("lv-thin", "vg-thin1", "pool0", 1073741824, "thin")
    assert volumes[0].is_thin_pool
    assert volumes[2].pool is None
    assert len(volumes) == 4


def test_parse_lvs_output_skips_blank_lines() -> None:
    assert parse_lvs_output("\n   \n") == []


@pytest.mark.parametrize(
    "line",
    [
        "lv|vg||1073741824",  # missing column
        "|vg||1073741824|linear",  # no name
        "lv|vg||1.0g|linear",  # size not in bytes
    ],
)
def test_parse_lvs_output_rejects_bad_rows(line: str) -> None:
    with pytest.raises(MalformedResponseError):
        parse_lvs_output(line)


def test_sudo_goes_before_command_prefix(run: Mock, k8s: Mock) -> None:
    monitor = LvmMonitor(k8s, command_prefix=("docker", "exec", "node1"))

    monitor.list_logical_volumes()

    cmd = run.call_args.args[0]
    assert cmd[:5] == ["sudo", "docker", "exec", "node1", "lvs"]
    assert "--units" in cmd and "--nosuffix" in cmd


def test_lvs_failure(monitor: LvmMonitor, run: Mock) -> None:
    run.return_value = completed(stderr="Volume group not found", returncode=5)

    with pytest.raises(ExternalCallFailed) as excinfo:
        monitor.list_logical_volumes()

    assert excinfo.value.returncode == 5


def test_missing_binary(monitor: LvmMonitor, run: Mock) -> None:
    run.side_effect = FileNotFoundError("lvs")

    with pytest.raises(ExternalCallFailed):
        monitor.list_logical_volumes()


def test_get_logical_volume_selects_by_name(monitor: LvmMonitor, run: Mock) -> None:
    run.return_value = completed("  lv-thin|vg-thin1|pool0|1073741824|thin\n")

    lv = monitor.get_logical_volume("lv-thin")

    assert lv.pool == "pool0"
    cmd = run.call_args.args[0]
    assert cmd[-2:] == ["--select", "lv_name=lv-thin"]


def test_get_logical_volume_not_found(monitor: LvmMonitor, run: Mock) -> None:
    run.return_value = completed("")

    with pytest.raises(NotFoundError):
        monitor.get_logical_volume("lv-gone")


def test_get_logical_volume_ambiguous(monitor: LvmMonitor, run: Mock) -> None:
    run.return_value = completed("  lv|vg-a||1024|linear\n  lv|vg-b||1024|linear\n")

    with pytest.raises(MalformedResponseError, match="multiple"):
        monitor.get_logical_volume("lv")


def test_name_for_claim_follows_logical_volume_resource(monitor: LvmMonitor, k8s: Mock) -> None:
    k8s.get_claim.return_value = _claim("pvc-1234")
    k8s.get_object.return_value = {"status": {"volumeID": "lv-abc"}}

    assert monitor.get_logical_volume_name_for_claim("data", "ns") == "lv-abc"
    k8s.get_claim.assert_called_once_with("data", "ns")
    k8s.get_object.assert_called_once_with(
        "logicalvolumes.topolvm.io", "pvc-1234", cluster_scoped=True
    )


def test_name_for_unbound_claim(monitor: LvmMonitor, k8s: Mock) -> None:
    k8s.get_claim.return_value = _claim(None)

    with pytest.raises(NotFoundError, match="not bound"):
        monitor.get_logical_volume_name_for_claim("data", "ns")


def test_name_before_volume_id_is_set(monitor: LvmMonitor, k8s: Mock) -> None:
    k8s.get_claim.return_value = _claim("pvc-1234")
    k8s.get_object.return_value = {"metadata": {"name": "pvc-1234"}}

    with pytest.raises(NotFoundError, match="volumeID not set"):
        monitor.get_logical_volume_name_for_claim("data", "ns")


def test_check_deleted(monitor: LvmMonitor, run: Mock) -> None:
    run.return_value = completed("  lv-abc|vg-thick1||1024|linear\n")
    with pytest.raises(VolumeStillPresent, match="vg-thick1"):
        monitor.check_deleted("lv-abc")

    run.return_value = completed("")
    monitor.check_deleted("lv-abc")


def test_list_filters_managed_groups(run: Mock, k8s: Mock) -> None:
    monitor = LvmMonitor(k8s, volume_groups={"vg-thick1"}, use_sudo=False)

    assert [lv.name for lv in monitor.list_logical_volumes()] == ["lv-thick-a", "lv-thick-b"]
    assert len(monitor.list_logical_volumes("vg-thin1")) == 2


def test_total_allocated_counts_thick_volumes(monitor: LvmMonitor) -> None:
    assert monitor.total_allocated("vg-thick1") == 5 * 1024**3


def test_diff_state() -> None:
    a = LogicalVolume("a", "vg", None, 1)
    b = LogicalVolume("b", "vg", None, 1)
    c = LogicalVolume("c", "vg", None, 1)

    diff = LvmMonitor(Mock()).diff_state(LvmState([a, b]), LvmState([b, c]))

    assert diff == {"added": ["c"], "removed": ["a"]}


def test_total_allocated_skips_thin_pool_in_shared_group(monitor: LvmMonitor, run: Mock) -> None:
    run.return_value = completed(
        "  pool0|vg1||4294967296|thin-pool\n"
        "  thin-a|vg1|pool0|1073741824|thin\n"
        "  thick-a|vg1||2147483648|linear\n"
    )

    assert monitor.total_allocated("vg1") == 2 * 1024**3
