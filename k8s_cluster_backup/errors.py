"""Error taxonomy for cluster backup and restore."""


class ClusterBackupError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(ClusterBackupError):
    pass


class TransportError(ClusterBackupError):
    """SSH connection or command execution failed."""


class DiscoveryError(ClusterBackupError):
    """Cluster nodes could not be enumerated or mapped to instances."""


class SnapshotError(ClusterBackupError):
    def __init__(self, node_address, infrastructure_id, attempts):
        self.node_address = node_address
        self.infrastructure_id = infrastructure_id
        self.attempts = attempts
        super().__init__(
            f"Snapshot failed after {attempts} attempts for {node_address} ({infrastructure_id})"
        )


class DiskBackupError(ClusterBackupError):
    def __init__(self, node_address, exit_status, log_path=None):
        self.node_address = node_address
        self.exit_status = exit_status
        self.log_path = log_path
        message = f"Disk image backup of {node_address} failed (code {exit_status})"
        if log_path:
            message += f". See {log_path}"
        super().__init__(message)


class StateDumpWarning(ClusterBackupError):
    """The etcd state dump was skipped, empty or unreadable. Never fatal."""


class PackagingError(ClusterBackupError):
    pass


class InfrastructureError(ClusterBackupError):
    """Terraform apply failed or produced no instance id."""


class RestoreMetadataError(ClusterBackupError):
    pass


class VolumeProvisionError(ClusterBackupError):
    pass


class AttachmentError(ClusterBackupError):
    pass


class FallbackDeclinedError(ClusterBackupError):
    pass


class FallbackFailedError(ClusterBackupError):
    pass


class BackupInterrupted(ClusterBackupError):
    """A termination signal was received while work was in flight."""


class ExportWarning(ClusterBackupError):
    """Infrastructure export was skipped or failed. Never fatal."""
