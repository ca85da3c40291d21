import os
from unittest.mock import patch

import pytest

from k8s_cluster_backup import cli
from k8s_cluster_backup.errors import BackupInterrupted, DiscoveryError, FallbackDeclinedError
from k8s_cluster_backup.models import BackupReport


@pytest.fixture(autouse=True)
def no_signal_handlers():
    with patch("k8s_cluster_backup.cli.signal.signal"):
        yield


@pytest.fixture
def backup_mocks():
    with patch("k8s_cluster_backup.cli.BackupOrchestrator") as orchestrator, \
            patch("k8s_cluster_backup.cli.Ec2Provider") as provider, \
            patch("k8s_cluster_backup.cli.SSHTransport") as transport:
        yield orchestrator, provider, transport


class TestParseArgs:
    def test_backup_flags(self):
        args = cli.parse_args(["backup", "--master-ip", "10.0.1.10", "--backup-name", "nightly", "--skip-dd"])
        assert args.action == "backup"
        assert args.control_plane_address == "10.0.1.10"
        assert args.skip_disk_images is True

    def test_skip_dd_unset_defers_to_config(self):
        args = cli.parse_args(["backup", "--master-ip", "10.0.1.10", "--backup-name", "nightly"])
        assert args.skip_disk_images is None

    def test_restore_flags(self):
        args = cli.parse_args(["restore", "/backups/nightly", "--fallback", "never", "--node", "10.0.1.11"])
        assert args.backup_dir == "/backups/nightly"
        assert args.fallback == "never"
        assert args.node_address == "10.0.1.11"


class TestBackupCommand:
    def test_success(self, tmp_path, backup_mocks):
        orchestrator, provider, _ = backup_mocks
        orchestrator.return_value.run_backup.return_value = BackupReport(str(tmp_path / "nightly"))

        code = cli.main(["backup", "--master-ip", "10.0.1.10", "--backup-name", "nightly",
                         "--output-dir", str(tmp_path), "--region", "us-east-1"])

        assert code == 0
        context = orchestrator.call_args[0][0]
        assert context.backup_dir == str(tmp_path / "nightly")
        assert context.config.region == "us-east-1"
        provider.assert_called_once_with("us-east-1")
        assert os.path.isfile(tmp_path / "nightly" / "backup.log")

    def test_fatal_error_exits_nonzero(self, tmp_path, backup_mocks):
        orchestrator = backup_mocks[0]
        orchestrator.return_value.run_backup.side_effect = DiscoveryError("no members")
        code = cli.main(["backup", "--master-ip", "10.0.1.10", "--backup-name", "nightly",
                         "--output-dir", str(tmp_path)])
        assert code == 1

    def test_interrupt_exit_code(self, tmp_path, backup_mocks):
        orchestrator = backup_mocks[0]
        orchestrator.return_value.run_backup.side_effect = BackupInterrupted("stopped")
        code = cli.main(["backup", "--master-ip", "10.0.1.10", "--backup-name", "nightly",
                         "--output-dir", str(tmp_path)])
        assert code == 130

    def test_bad_config_file(self, tmp_path, backup_mocks):
        code = cli.main(["--config", str(tmp_path / "missing.yaml"), "backup", "--master-ip", "10.0.1.10",
                         "--backup-name", "nightly", "--output-dir", str(tmp_path)])
        assert code == 1
        backup_mocks[0].assert_not_called()


class TestRestoreCommand:
    def test_declined_fallback_exits_nonzero(self, tmp_path):
        with patch("k8s_cluster_backup.cli.RestoreOrchestrator") as orchestrator, \
                patch("k8s_cluster_backup.cli.Ec2Provider"):
            orchestrator.return_value.run_restore.side_effect = FallbackDeclinedError("declined")
            code = cli.main(["restore", str(tmp_path), "--fallback", "never",
                             "--log-file", str(tmp_path / "restore.log")])
        assert code == 1
        config = orchestrator.call_args[0][0]
        assert config.fallback == "never"

    def test_missing_backup_dir(self, tmp_path):
        with patch("k8s_cluster_backup.cli.Ec2Provider"):
            code = cli.main(["restore", str(tmp_path / "absent"), "--fallback", "never",
                             "--log-file", str(tmp_path / "restore.log")])
        assert code == 1
