"""
Run summaries: a CSV row per node and phase, and a Prometheus textfile.
"""
import logging
import os
from datetime import datetime

from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "timestamp,node,role,phase,status\n"


def write_summary(summary_file, timestamp, node, role, phase, status):
    """Append a summary line to the CSV summary file."""
    header = SUMMARY_HEADER if not os.path.exists(summary_file) else ""
    try:
        with open(summary_file, "a") as f:
            if header:
                f.write(header)
            f.write(f"{timestamp},{node},{role},{phase},{status}\n")
    except OSError as e:
        logger.error("Failed writing summary to %s: %s", summary_file, e)


def write_report_summary(report, summary_file):
    ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    for node in report.nodes:
        snap = report.snapshots.get(node.address)
        if snap is not None:
            write_summary(summary_file, ts, node.address, node.role.value, "snapshot", 1 if snap.ok else 0)
        disk = report.disks.get(node.address)
        if disk is not None:
            write_summary(summary_file, ts, node.address, node.role.value, "disk", 1 if disk.ok else 0)
    write_summary(summary_file, ts, "cluster", "control-plane", "etcd", 1 if report.state_dump_path else 0)


def build_registry(report, manifest_entries):
    registry = CollectorRegistry()
    snapshot_ok = Gauge(
        "cluster_backup_snapshot_success",
        "1 if the node's snapshot completed in this run",
        ["node", "role"], registry=registry,
    )
    disk_ok = Gauge(
        "cluster_backup_disk_image_success",
        "1 if the node's disk image is complete",
        ["node", "role"], registry=registry,
    )
    for node in report.nodes:
        if node.address in report.snapshots:
            snapshot_ok.labels(node=node.address, role=node.role.value).set(
                1 if report.snapshots[node.address].ok else 0)
        if node.address in report.disks:
            disk_ok.labels(node=node.address, role=node.role.value).set(
                1 if report.disks[node.address].ok else 0)

    Gauge("cluster_backup_manifest_entries", "Rows in the snapshot manifest",
          registry=registry).set(manifest_entries)
    Gauge("cluster_backup_state_dump_success", "1 if the etcd snapshot was saved",
          registry=registry).set(1 if report.state_dump_path else 0)
    finished = report.finished_at or datetime.now()
    Gauge("cluster_backup_duration_seconds", "Wall time of the backup run",
          registry=registry).set((finished - report.started_at).total_seconds())
    Gauge("cluster_backup_last_run_timestamp_seconds", "Unix time the backup run finished",
          registry=registry).set(finished.timestamp())
    return registry


def write_metrics(report, manifest_entries, paths):
    registry = build_registry(report, manifest_entries)
    for path in paths:
        if not path:
            continue
        try:
            write_to_textfile(path, registry)
            logger.info("Metrics written to %s", path)
        except OSError as e:
            logger.error("Failed writing metrics to %s: %s", path, e)
