"""
Raw disk image backup of a node's primary block device over SSH.

Per-node artifacts in the backup directory:
  <ip>.img     raw image streamed from `sudo dd` on the node
  <ip>.log     dd progress and errors from the remote side
  <ip>.status  exit status of the copy
  <ip>.done    present only after a successful copy; re-runs skip the node
"""
import logging
import os

from .errors import DiskBackupError, TransportError
from .models import DiskBackupResult, PhaseStatus

logger = logging.getLogger(__name__)

PHASE = "disk"
TRANSPORT_FAILURE_STATUS = 255


class DiskImageBackupWorker:
    def __init__(self, context, transport, status_store):
        self.context = context
        self.transport = transport
        self.status_store = status_store

    def _paths(self, node):
        node_path = self.context.node_path
        return (
            node_path(node.address, "done"),
            node_path(node.address, "log"),
            node_path(node.address, "status"),
            node_path(node.address, "img"),
        )

    def is_done(self, node):
        done_file = self._paths(node)[0]
        if not os.path.isfile(done_file):
            return False
        if self.status_store.get(node.address, PHASE) is not PhaseStatus.DONE:
            self.status_store.set(node.address, PHASE, PhaseStatus.DONE)
        return True

    def backup_disk(self, node) -> DiskBackupResult:
        done_file, node_log, node_status, image = self._paths(node)

        if self.is_done(node):
            logger.info("Skipping %s (%s) - already backed up", node.address, node.role.value)
            return DiskBackupResult(node, True, exit_status=0, image_path=image, skipped=True)

        logger.info("Backing up %s (%s)...", node.address, node.role.value)
        self.status_store.set(node.address, PHASE, PhaseStatus.IN_PROGRESS)
        config = self.context.config
        command = f"sudo dd if={config.source_device} bs={config.block_size} status=progress"

        with open(node_log, "wb") as err:
            try:
                with open(image, "wb") as sink:
                    status = self.transport.stream(node.address, command, sink, err)
                    sink.flush()
                    os.fsync(sink.fileno())
            except TransportError as e:
                err.write(f"{e}\n".encode())
                status = TRANSPORT_FAILURE_STATUS
            except OSError as e:
                # local write failed
                err.write(f"Writing {image} failed: {e}\n".encode())
                status = e.errno or 1

        with open(node_status, "w") as f:
            f.write(f"{status}\n")

        if status == 0:
            open(done_file, "w").close()
            self.status_store.set(node.address, PHASE, PhaseStatus.DONE)
            logger.info("Backup of %s (%s) completed", node.address, node.role.value)
            return DiskBackupResult(node, True, exit_status=0, image_path=image)

        if os.path.exists(done_file):
            os.remove(done_file)
        self.status_store.set(node.address, PHASE, PhaseStatus.FAILED)
        error = DiskBackupError(node.address, status, node_log)
        logger.error(str(error))
        return DiskBackupResult(node, False, exit_status=status, image_path=image, error=error)
