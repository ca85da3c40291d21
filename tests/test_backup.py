import json
import os
import tarfile
from unittest.mock import patch

import pytest

from k8s_cluster_backup.backup import BackupOrchestrator, package_backup
from k8s_cluster_backup.errors import BackupInterrupted, PackagingError
from k8s_cluster_backup.manifest import Manifest
from k8s_cluster_backup.metadata import load_restore_metadata
from k8s_cluster_backup.models import ManifestEntry, PhaseStatus
from k8s_cluster_backup.snapshot import SnapshotCoordinator
from tests.utils import (
    CONTROL_PLANE,
    WORKER_A,
    WORKER_B,
    FakeProvider,
    FakeTransport,
    RecordingSleep,
    StaticResolver,
)

NODES = [CONTROL_PLANE, WORKER_A, WORKER_B]


@pytest.fixture
def transport():
    return FakeTransport(fetch_data=b"ETCD-SNAPSHOT")


def make_orchestrator(context, transport, provider, sleep=None):
    return BackupOrchestrator(
        context,
        transport,
        provider,
        resolver=StaticResolver(NODES),
        snapshot_coordinator=SnapshotCoordinator(context, provider, sleep=sleep or RecordingSleep()),
    )


def manifest_lines(context):
    with open(context.path("snapshots.manifest")) as f:
        return [line for line in f.read().splitlines() if line]


class TestBackupOrchestrator:
    def test_all_nodes_succeed(self, context, transport):
        report = make_orchestrator(context, transport, FakeProvider()).run_backup()

        lines = manifest_lines(context)
        assert len(lines) == 3
        assert sorted(lines) == sorted([
            "i-0cp,10.0.1.10,control-plane,snap-i-0cp",
            "i-0wa,10.0.1.11,worker-node,snap-i-0wa",
            "i-0wb,10.0.1.12,worker-node,snap-i-0wb",
        ])
        assert os.path.getsize(report.archive_path) > 0
        assert report.archive_path == context.backup_dir + ".tar.gz"
        assert not report.partial
        assert report.state_dump_path == context.path("etcd-backup.db")
        for node in NODES:
            assert os.path.isfile(context.node_path(node.address, "img"))
            assert os.path.isfile(context.node_path(node.address, "done"))

    def test_one_worker_never_gets_a_snapshot(self, context, transport):
        provider = FakeProvider(snapshot_script={"i-0wa": [None]})
        sleep = RecordingSleep()
        report = make_orchestrator(context, transport, provider, sleep=sleep).run_backup()

        lines = manifest_lines(context)
        assert len(lines) == 2
        assert not any("10.0.1.11" in line for line in lines)
        assert sleep.waits == [10, 20, 40, 80, 160]
        assert report.failed_snapshots == ["10.0.1.11"]
        assert report.snapshots["10.0.1.11"].attempts == 5
        assert os.path.getsize(report.archive_path) > 0

    def test_skip_disk_images(self, context, transport):
        context.config.skip_disk_images = True
        report = make_orchestrator(context, transport, FakeProvider()).run_backup()

        assert len(manifest_lines(context)) == 3
        assert report.state_dump_path is not None
        assert report.disks == {}
        assert not [c for c in transport.calls if c[0] == "stream"]
        leftovers = [n for n in os.listdir(context.backup_dir) if n.endswith((".img", ".done", ".status"))]
        assert leftovers == []

    def test_rerun_skips_completed_work(self, context, transport):
        Manifest(context.path("snapshots.manifest")).append(
            ManifestEntry("i-0wa", "10.0.1.11", WORKER_A.role, "snap-earlier"))
        open(context.node_path(WORKER_B.address, "done"), "w").close()
        provider = FakeProvider()

        report = make_orchestrator(context, transport, provider).run_backup()

        assert report.snapshots["10.0.1.11"].skipped
        assert ("create_snapshot", "vol-i-0wa") not in provider.calls
        assert len(manifest_lines(context)) == 3
        assert report.disks["10.0.1.12"].skipped
        streamed = [c[1] for c in transport.calls if c[0] == "stream"]
        assert sorted(streamed) == ["10.0.1.10", "10.0.1.11"]

    def test_failed_disk_copy_is_reported_not_fatal(self, context):
        transport = FakeTransport(stream_data={"10.0.1.12": (b"", b"No space left\n", 1)}, fetch_data=b"ETCD")
        report = make_orchestrator(context, transport, FakeProvider()).run_backup()

        assert report.failed_disks == ["10.0.1.12"]
        assert report.archive_path is not None

    def test_missing_etcdctl_is_a_warning(self, context):
        transport = FakeTransport(commands=())
        report = make_orchestrator(context, transport, FakeProvider()).run_backup()

        assert report.state_dump_path is None
        assert any("etcdctl" in w for w in report.warnings)
        assert report.archive_path is not None

    def test_status_store_tracks_phases(self, context, transport):
        orchestrator = make_orchestrator(context, transport, FakeProvider(snapshot_script={"i-0wb": [None]}))
        orchestrator.run_backup()

        store = orchestrator.status_store
        assert store.get("10.0.1.10", "snapshot") is PhaseStatus.DONE
        assert store.get("10.0.1.12", "snapshot") is PhaseStatus.FAILED
        assert store.get("10.0.1.11", "disk") is PhaseStatus.DONE

    def test_stop_during_snapshots_leaves_no_entry_and_no_archive(self, context, transport):
        class StoppingProvider(FakeProvider):
            def wait_snapshot_completed(self, snapshot_id, delay=15, max_attempts=40):
                context.stop_event.set()
                return True

        orchestrator = make_orchestrator(context, transport, StoppingProvider())
        with pytest.raises(BackupInterrupted):
            orchestrator.run_backup()

        assert manifest_lines(context) == []
        assert not os.path.exists(context.backup_dir + ".tar.gz")
        assert not [c for c in transport.calls if c[0] == "stream"]
        assert orchestrator.status_store.get("10.0.1.10", "snapshot") is PhaseStatus.NOT_STARTED

    def test_stop_during_state_dump_leaves_no_archive(self, context):
        class StoppingTransport(FakeTransport):
            def fetch(self, address, remote_path, local_path):
                super().fetch(address, remote_path, local_path)
                context.stop_event.set()

        orchestrator = make_orchestrator(context, StoppingTransport(fetch_data=b"ETCD"), FakeProvider())
        with pytest.raises(BackupInterrupted, match="etcd state dump"):
            orchestrator.run_backup()

        assert not os.path.exists(context.backup_dir + ".tar.gz")
        assert not os.path.exists(context.path("snapshot-metadata.json"))

    def test_stop_during_packaging_removes_archive(self, context, transport):
        def packaging_interrupted(backup_dir):
            tarball = package_backup(backup_dir)
            context.stop_event.set()
            return tarball

        with patch("k8s_cluster_backup.backup.package_backup", side_effect=packaging_interrupted):
            with pytest.raises(BackupInterrupted, match="packaging"):
                make_orchestrator(context, transport, FakeProvider()).run_backup()

        assert not os.path.exists(context.backup_dir + ".tar.gz")

    def test_metadata_lists_control_plane_first(self, context, transport):
        manifest = Manifest(context.path("snapshots.manifest"))
        manifest.append(ManifestEntry("i-0wb", "10.0.1.12", WORKER_B.role, "snap-wb"))
        manifest.append(ManifestEntry("i-0wa", "10.0.1.11", WORKER_A.role, "snap-wa"))

        make_orchestrator(context, transport, FakeProvider()).run_backup()

        # the control plane was snapshotted last, so its manifest row is last
        assert manifest_lines(context)[-1].startswith("i-0cp,")
        with open(context.path("snapshot-metadata.json")) as f:
            records = json.load(f)
        assert [r["NodeAddress"] for r in records] == ["10.0.1.10", "10.0.1.11", "10.0.1.12"]
        assert load_restore_metadata(context.backup_dir).node_address == "10.0.1.10"

    def test_writes_summary_and_metrics(self, context, transport):
        make_orchestrator(context, transport, FakeProvider()).run_backup()

        with open(context.path("backup_summary.csv")) as f:
            rows = f.read().splitlines()
        assert rows[0] == "timestamp,node,role,phase,status"
        assert any(row.endswith(",10.0.1.11,worker-node,snapshot,1") for row in rows)
        with open(context.path("backup-metrics.prom")) as f:
            metrics = f.read()
        assert "cluster_backup_manifest_entries 3.0" in metrics


class TestPackageBackup:
    def test_creates_tarball_next_to_directory(self, tmp_path):
        backup_dir = tmp_path / "nightly"
        backup_dir.mkdir()
        (backup_dir / "snapshots.manifest").write_text("i-0cp,10.0.1.10,control-plane,snap-1\n")

        tarball = package_backup(str(backup_dir))

        assert tarball == str(backup_dir) + ".tar.gz"
        with tarfile.open(tarball) as tar:
            assert "nightly/snapshots.manifest" in tar.getnames()

    def test_missing_directory_fails(self, tmp_path):
        with pytest.raises(PackagingError):
            package_backup(str(tmp_path / "absent"))
