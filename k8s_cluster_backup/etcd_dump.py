import logging
import os
import shlex

from .config import ETCD_LOG_NAME, ETCD_SNAPSHOT_NAME
from .errors import StateDumpWarning, TransportError

logger = logging.getLogger(__name__)


class ControlPlaneStateDump:
    """Point-in-time etcd snapshot taken on the control plane and copied back."""

    def __init__(self, context, transport):
        self.context = context
        self.transport = transport

    def _snapshot_command(self):
        etcd = self.context.config.etcd
        remote = shlex.quote(etcd.remote_path)
        return (
            "sudo ETCDCTL_API=3 etcdctl"
            f" --endpoints={shlex.quote(etcd.endpoint)}"
            f" --cacert={shlex.quote(etcd.cacert)}"
            f" --cert={shlex.quote(etcd.cert)}"
            f" --key={shlex.quote(etcd.key)}"
            f" snapshot save {remote} && sudo chmod 0644 {remote}"
        )

    def dump_state(self, control_plane_node):
        """
        Returns the local snapshot path. Raises StateDumpWarning when the dump
        is skipped, fails or comes back empty; callers log it and carry on.
        """
        address = control_plane_node.address
        local_path = self.context.path(ETCD_SNAPSHOT_NAME)
        log_path = self.context.path(ETCD_LOG_NAME)
        remote_path = self.context.config.etcd.remote_path
        logger.info("Starting etcd snapshot from control plane node %s...", address)

        try:
            if not self.transport.has_command(address, "etcdctl"):
                raise StateDumpWarning("etcdctl not found on control plane node. Skipping etcd snapshot.")
            result = self.transport.run(address, self._snapshot_command())
        except TransportError as e:
            raise StateDumpWarning(f"etcd snapshot on {address} failed: {e}") from e

        with open(log_path, "w") as f:
            f.write(result.stdout)
            f.write(result.stderr)
        if not result.ok:
            raise StateDumpWarning(
                f"etcd snapshot failed on {address} (code {result.exit_status}). Check {log_path}"
            )

        try:
            self.transport.fetch(address, remote_path, local_path)
        except TransportError as e:
            raise StateDumpWarning(f"Could not copy etcd snapshot back: {e}. Check {log_path}") from e
        finally:
            self._remove_remote(address, remote_path)

        try:
            size = os.path.getsize(local_path)
        except OSError:
            size = 0
        if size == 0:
            raise StateDumpWarning(f"etcd snapshot empty or failed. Check {log_path}")
        logger.info("etcd snapshot saved to %s (%d bytes)", local_path, size)
        return local_path

    def _remove_remote(self, address, remote_path):
        try:
            self.transport.run(address, f"sudo rm -f {shlex.quote(remote_path)}")
        except TransportError as e:
            logger.debug("Could not remove %s on %s: %s", remote_path, address, e)
