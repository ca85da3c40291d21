"""
Backup orchestration for the whole cluster.

Phases run strictly in order; work inside a phase runs one thread per node:

  1. resolve nodes (control plane first)
  2. EBS snapshots of every node, joined
  3. raw disk images of every node unless skipped, joined
  4. etcd state dump, restore metadata, infrastructure export
  5. summary, metrics and the final .tar.gz archive
"""
import logging
import os
import tarfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime

from .config import MANIFEST_NAME, METRICS_NAME, STATUS_STORE_NAME, SUMMARY_NAME
from .disk_image import DiskImageBackupWorker
from .errors import BackupInterrupted, ExportWarning, PackagingError, StateDumpWarning
from .etcd_dump import ControlPlaneStateDump
from .infra import TerraformerExport
from .inventory import KubeApiMemberSource, KubectlMemberSource, NodeInventoryResolver
from .manifest import Manifest, NodeStatusStore
from .metadata import write_backup_metadata
from .models import BackupReport, DiskBackupResult, PhaseStatus, SnapshotResult, SnapshotState
from .reporting import write_metrics, write_report_summary
from .snapshot import SnapshotCoordinator

logger = logging.getLogger(__name__)


def package_backup(backup_dir):
    """Compress the backup directory into <backup_dir>.tar.gz next to it."""
    backup_dir = os.path.abspath(backup_dir)
    tarball = f"{backup_dir}.tar.gz"
    logger.info("Compressing backup directory into tarball...")
    try:
        with tarfile.open(tarball, "w:gz") as tar:
            tar.add(backup_dir, arcname=os.path.basename(backup_dir))
    except (OSError, tarfile.TarError) as e:
        raise PackagingError(f"Backup tarball creation failed: {e}") from e
    if not os.path.isfile(tarball) or os.path.getsize(tarball) == 0:
        raise PackagingError(f"Backup tarball creation failed: {tarball} is missing or empty")
    logger.info("Cluster backup completed and archived at %s", tarball)
    return tarball


class BackupOrchestrator:
    def __init__(self, context, transport, provider, resolver=None, snapshot_coordinator=None,
                 disk_worker=None, state_dump=None, exporter=None):
        self.context = context
        self.transport = transport
        self.provider = provider
        context.ensure_dir()
        self.manifest = Manifest(context.path(MANIFEST_NAME))
        self.status_store = NodeStatusStore(context.path(STATUS_STORE_NAME))
        self.resolver = resolver or NodeInventoryResolver(self._member_source(), provider)
        self.snapshot_coordinator = snapshot_coordinator or SnapshotCoordinator(context, provider)
        self.disk_worker = disk_worker or DiskImageBackupWorker(context, transport, self.status_store)
        self.state_dump = state_dump or ControlPlaneStateDump(context, transport)
        self.exporter = exporter or TerraformerExport(context)

    def _member_source(self):
        if self.context.config.kubeconfig:
            return KubeApiMemberSource(self.context.config.kubeconfig)
        return KubectlMemberSource(self.transport)

    def _check_stop(self, phase):
        if self.context.stopping:
            raise BackupInterrupted(f"Backup interrupted during {phase}; no archive was written")

    def run_backup(self) -> BackupReport:
        config = self.context.config
        report = BackupReport(self.context.backup_dir)
        logger.info("Starting Kubernetes cluster backup for control plane %s into %s",
                    config.control_plane_address, self.context.backup_dir)

        report.nodes = self.resolver.resolve(config.control_plane_address)
        self._check_stop("node discovery")

        self.snapshot_phase(report.nodes, report)
        self._check_stop("snapshots")

        if config.skip_disk_images:
            logger.info("Skipping disk backups due to skip_disk_images")
        else:
            self.disk_phase(report.nodes, report)
            self._check_stop("disk backups")

        try:
            report.state_dump_path = self.state_dump.dump_state(report.nodes[0])
        except StateDumpWarning as e:
            logger.warning(str(e))
            report.warnings.append(str(e))
        self._check_stop("etcd state dump")

        write_backup_metadata(self.context, self.provider, self._entries_in_node_order(report.nodes))

        if config.export_infrastructure:
            try:
                self.exporter.export(report.nodes)
            except ExportWarning as e:
                logger.warning(str(e))
                report.warnings.append(str(e))
            self._check_stop("infrastructure export")

        report.finished_at = datetime.now()
        write_report_summary(report, self.context.path(SUMMARY_NAME))
        write_metrics(report, len(self.manifest), [self.context.path(METRICS_NAME), config.metrics_file])
        self._log_outcome(report)

        self._check_stop("reporting")
        report.archive_path = package_backup(self.context.backup_dir)
        if self.context.stopping:
            os.remove(report.archive_path)
            raise BackupInterrupted("Backup interrupted while packaging; archive removed")
        logger.info("Backup process finished.")
        return report

    def snapshot_phase(self, nodes, report):
        pending = []
        for node in nodes:
            entry = self.manifest.entry_for(node.address)
            if entry is not None:
                logger.info("Skipping snapshot of %s - manifest already has %s", node.address, entry.snapshot_id)
                report.snapshots[node.address] = SnapshotResult(
                    node, SnapshotState.COMPLETED, 0, entry=entry, skipped=True)
            else:
                pending.append(node)
        if not pending:
            return

        logger.info("Starting parallel snapshots for %d node(s)...", len(pending))
        for node in pending:
            self.status_store.set(node.address, "snapshot", PhaseStatus.IN_PROGRESS)
        with ThreadPoolExecutor(max_workers=len(pending), thread_name_prefix="snapshot") as executor:
            futures = {executor.submit(self.snapshot_coordinator.take_snapshot, node): node for node in pending}
            logger.info("Waiting for snapshots to complete . . . ")
            for future in as_completed(futures):
                node = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.exception("Snapshot worker for %s (%s) crashed: %s",
                                     node.address, node.infrastructure_id, e)
                    result = SnapshotResult(node, SnapshotState.FAILED, 0, error=e)
                self._record_snapshot(result)
                report.snapshots[node.address] = result
        logger.info("All snapshot operations completed.")

    def _record_snapshot(self, result):
        # The orchestrator thread is the manifest's only writer.
        address = result.node.address
        if result.ok and result.entry is not None:
            self.manifest.append(result.entry)
            self.status_store.set(address, "snapshot", PhaseStatus.DONE)
        elif result.cancelled:
            self.status_store.set(address, "snapshot", PhaseStatus.NOT_STARTED)
        else:
            self.status_store.set(address, "snapshot", PhaseStatus.FAILED)
            logger.error("Snapshot failed for %s (%s) after %d attempt(s)",
                         address, result.node.infrastructure_id, result.attempts)

    def disk_phase(self, nodes, report):
        logger.info("Starting parallel disk backups of %d node(s)...", len(nodes))
        with ThreadPoolExecutor(max_workers=len(nodes), thread_name_prefix="disk") as executor:
            futures = {executor.submit(self.disk_worker.backup_disk, node): node for node in nodes}
            logger.info("Waiting for disk backups to complete . . . ")
            for future in as_completed(futures):
                node = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.exception("Disk backup worker for %s crashed: %s", node.address, e)
                    self.status_store.set(node.address, "disk", PhaseStatus.FAILED)
                    result = DiskBackupResult(node, False, error=e)
                report.disks[node.address] = result
        logger.info("All disk backups completed.")

    def _entries_in_node_order(self, nodes):
        rank = {node.address: i for i, node in enumerate(nodes)}
        return sorted(self.manifest.entries, key=lambda e: rank.get(e.node_address, len(rank)))

    def _log_outcome(self, report):
        logger.info("Manifest holds %d of %d node(s)", len(self.manifest), len(report.nodes))
        if report.failed_snapshots:
            logger.error("Nodes without a snapshot: %s", ", ".join(report.failed_snapshots))
        if report.failed_disks:
            logger.error("Nodes without a disk image: %s (see <ip>.log and <ip>.status)",
                         ", ".join(report.failed_disks))
