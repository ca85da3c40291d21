import pytest

from k8s_cluster_backup.config import BackupContext, BackupRunConfig, RestoreConfig
from k8s_cluster_backup.manifest import NodeStatusStore


@pytest.fixture
def backup_config(tmp_path):
    return BackupRunConfig(
        control_plane_address="10.0.1.10",
        backup_dir=str(tmp_path / "nightly"),
        key_path=str(tmp_path / "id_rsa"),
        snapshot_poll_delay=0,
        export_infrastructure=False,
    )


@pytest.fixture
def context(backup_config):
    ctx = BackupContext(backup_config)
    ctx.ensure_dir()
    return ctx


@pytest.fixture
def status_store(context):
    return NodeStatusStore(context.path("node-status.json"))


@pytest.fixture
def restore_config(tmp_path):
    backup_dir = tmp_path / "nightly"
    backup_dir.mkdir(exist_ok=True)
    return RestoreConfig(backup_dir=str(backup_dir), instance_id="i-0restored", fallback="never")
