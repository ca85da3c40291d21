"""
Command-line entry points.

Usage:
  Backup:
    k8s-cluster-backup backup --master-ip 10.0.1.10 --backup-name nightly --output-dir /backups

  Backup without raw disk images, with an alternate key:
    k8s-cluster-backup backup --master-ip 10.0.1.10 --backup-name quick --key-path ~/.ssh/ops.pem --skip-dd

  Restore:
    k8s-cluster-backup restore /backups/nightly --fallback ask
"""
import argparse
import logging
import os
import signal
import sys

from .backup import BackupOrchestrator
from .config import AGGREGATE_LOG_NAME, BackupContext, BackupRunConfig, RestoreConfig, load_config
from .errors import BackupInterrupted, ClusterBackupError, ConfigError
from .logsetup import setup_logging
from .provider import Ec2Provider
from .restore import RestoreOrchestrator
from .transport import SSHTransport

logger = logging.getLogger("k8s_cluster_backup")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="k8s-cluster-backup",
        description="Back up or restore a self-managed Kubernetes cluster on EC2",
    )
    parser.add_argument("--config", "-c", help="YAML config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="action", required=True)

    p1 = sub.add_parser("backup", help="Snapshot, image and archive every cluster node")
    p1.add_argument("--master-ip", "--control-plane", dest="control_plane_address", required=True,
                    help="IP address of the Kubernetes control plane node")
    p1.add_argument("--backup-name", required=True, help="Name for the backup folder and tarball")
    p1.add_argument("--output-dir", "-o", default=os.getcwd(),
                    help="Directory the backup folder is created in (default: current directory)")
    p1.add_argument("--key-path", "-k", help="Path to SSH private key")
    p1.add_argument("--skip-dd", "--skip-disk-images", dest="skip_disk_images", action="store_true",
                    default=None, help="Skip disk image backups (still take EBS snapshots)")
    p1.add_argument("--kubeconfig", help="List nodes through the Kubernetes API instead of kubectl over SSH")
    p1.add_argument("--region", help="AWS region")
    p1.add_argument("--metrics-file", help="Also write Prometheus metrics to this textfile")

    p2 = sub.add_parser("restore", help="Rebuild a node's disk from a prior backup")
    p2.add_argument("backup_dir", help="Backup directory to restore from")
    p2.add_argument("--region", help="AWS region")
    p2.add_argument("--instance-id", help="Restore onto this instance instead of applying terraform")
    p2.add_argument("--node", dest="node_address", help="Node address whose metadata to use (default: control plane)")
    p2.add_argument("--device", dest="device_name", help="Device path to attach at (default: /dev/xvdf)")
    p2.add_argument("--disk-image", help="Disk image used by the fallback path")
    p2.add_argument("--fallback", choices=["ask", "always", "never"],
                    help="What to do when the snapshot volume cannot be used (default: ask)")
    p2.add_argument("--log-file", default="restore.log", help="Restore log file (default: restore.log)")

    return parser.parse_args(argv)


def install_stop_handlers(stop_event):
    def _handler(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}; stopping after in-flight operations")
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def install_abort_handlers():
    def _handler(signum, frame):
        raise BackupInterrupted("Restore process interrupted.")

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_backup(args, file_config):
    config = BackupRunConfig.from_sources(
        file_config,
        control_plane_address=args.control_plane_address,
        backup_dir=os.path.join(args.output_dir, args.backup_name),
        key_path=args.key_path,
        skip_disk_images=args.skip_disk_images,
        kubeconfig=args.kubeconfig,
        region=args.region,
        metrics_file=args.metrics_file,
    )
    context = BackupContext(config)
    context.ensure_dir()
    setup_logging(context.path(AGGREGATE_LOG_NAME), args.verbose)
    install_stop_handlers(context.stop_event)

    orchestrator = BackupOrchestrator(context, SSHTransport.from_config(config), Ec2Provider(config.region))
    report = orchestrator.run_backup()
    if report.partial:
        logger.warning(f"Backup archived with failures: snapshots={report.failed_snapshots or 'ok'} "
                       f"disks={report.failed_disks or 'ok'}")
    return EXIT_OK


def run_restore(args, file_config):
    config = RestoreConfig.from_sources(
        file_config,
        backup_dir=args.backup_dir,
        region=args.region,
        instance_id=args.instance_id,
        node_address=args.node_address,
        device_name=args.device_name,
        disk_image=args.disk_image,
        fallback=args.fallback,
    )
    setup_logging(args.log_file, args.verbose)
    install_abort_handlers()
    RestoreOrchestrator(config, Ec2Provider(config.region)).run_restore()
    return EXIT_OK


def main(argv=None):
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)
    try:
        file_config = load_config(args.config)
        if args.action == "backup":
            return run_backup(args, file_config)
        return run_restore(args, file_config)
    except BackupInterrupted as e:
        logger.error(f"ERROR: {e}")
        return EXIT_INTERRUPTED
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_FAILURE
    except ClusterBackupError as e:
        logger.error(f"ERROR: {e}")
        return EXIT_FAILURE
    except FileNotFoundError as e:
        logger.error(f"ERROR: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
