"""
Records passed between the backup and restore components.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class NodeRole(Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker-node"


class SnapshotState(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PhaseStatus(Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Node:
    address: str
    infrastructure_id: str
    role: NodeRole

    @property
    def is_control_plane(self) -> bool:
        return self.role is NodeRole.CONTROL_PLANE


@dataclass
class SnapshotAttempt:
    node_address: str
    infrastructure_id: str
    attempt_number: int
    wait_seconds: float
    snapshot_id: Optional[str] = None
    state: SnapshotState = SnapshotState.PENDING
    started_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ManifestEntry:
    infrastructure_id: str
    node_address: str
    role: NodeRole
    snapshot_id: str

    def to_line(self) -> str:
        return f"{self.infrastructure_id},{self.node_address},{self.role.value},{self.snapshot_id}"

    @classmethod
    def from_line(cls, line: str) -> "ManifestEntry":
        instance_id, address, role, snapshot_id = [p.strip() for p in line.split(",")]
        return cls(instance_id, address, NodeRole(role), snapshot_id)


@dataclass
class SnapshotResult:
    """Outcome of one node's snapshot coordinator run."""
    node: Node
    state: SnapshotState
    attempts: int
    entry: Optional[ManifestEntry] = None
    skipped: bool = False
    cancelled: bool = False
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.state is SnapshotState.COMPLETED


@dataclass
class DiskBackupResult:
    node: Node
    ok: bool
    exit_status: Optional[int] = None
    image_path: Optional[str] = None
    skipped: bool = False
    error: Optional[Exception] = None


@dataclass
class BackupReport:
    backup_dir: str
    nodes: List[Node] = field(default_factory=list)
    snapshots: Dict[str, SnapshotResult] = field(default_factory=dict)
    disks: Dict[str, DiskBackupResult] = field(default_factory=dict)
    state_dump_path: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    archive_path: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def failed_snapshots(self) -> List[str]:
        return [addr for addr, res in self.snapshots.items() if not res.ok]

    @property
    def failed_disks(self) -> List[str]:
        return [addr for addr, res in self.disks.items() if not res.ok]

    @property
    def partial(self) -> bool:
        return bool(self.failed_snapshots or self.failed_disks)


@dataclass
class RestoreMetadata:
    snapshot_id: str
    volume_size: int
    root_device: str
    image_id: Optional[str] = None
    node_address: Optional[str] = None


@dataclass
class RestoreContext:
    source_manifest: RestoreMetadata
    target_instance_id: Optional[str] = None
    availability_zone: Optional[str] = None
    created_volume_id: Optional[str] = None
    attachment_state: Optional[str] = None
    state: str = "START"
    history: List[str] = field(default_factory=lambda: ["START"])

    def advance(self, state: str):
        self.state = state
        self.history.append(state)

    @property
    def owns_volume(self) -> bool:
        """True while a created volume is not yet handed over to the instance."""
        return self.created_volume_id is not None and self.attachment_state not in ("attached", "deleted")
