"""
Remote-command transport over SSH.

Each call opens its own connection so that node workers running in parallel
threads never share a paramiko client.
"""
import logging
import shlex
import socket
from contextlib import contextmanager
from dataclasses import dataclass

import paramiko
from scp import SCPClient, SCPException

from .errors import TransportError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass
class RemoteResult:
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self):
        return self.exit_status == 0


class SSHTransport:
    def __init__(self, user="ubuntu", key_path=None, port=22, strict_host_keys=False,
                 connect_timeout=30):
        self.user = user
        self.key_path = key_path
        self.port = port
        self.strict_host_keys = strict_host_keys
        self.connect_timeout = connect_timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            user=config.ssh_user,
            key_path=config.key_path,
            port=config.ssh_port,
            strict_host_keys=config.strict_host_keys,
            connect_timeout=config.connect_timeout,
        )

    @contextmanager
    def _connect(self, address):
        client = paramiko.SSHClient()
        if self.strict_host_keys:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            # unknown host keys are accepted
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            kwargs = {
                "port": self.port,
                "username": self.user,
                "timeout": self.connect_timeout,
                "allow_agent": self.key_path is None,
                "look_for_keys": self.key_path is None,
            }
            if self.key_path:
                kwargs["pkey"] = paramiko.RSAKey.from_private_key_file(self.key_path)
            client.connect(address, **kwargs)
        except (paramiko.SSHException, OSError, socket.timeout) as e:
            client.close()
            raise TransportError(f"Failed to connect to {self.user}@{address}:{self.port} - {e}") from e
        try:
            yield client
        finally:
            client.close()

    def run(self, address, command):
        """Run a command and return its captured output and exit status."""
        logger.debug("Running on %s: %s", address, command)
        with self._connect(address) as client:
            try:
                _, stdout, stderr = client.exec_command(command)
                out = stdout.read().decode("utf-8", errors="replace")
                err = stderr.read().decode("utf-8", errors="replace")
                status = stdout.channel.recv_exit_status()
            except (paramiko.SSHException, OSError) as e:
                raise TransportError(f"Command failed on {address}: {e}") from e
        return RemoteResult(out, err, status)

    def stream(self, address, command, sink, stderr_sink=None):
        """
        Run a command and copy its stdout byte-for-byte into sink.

        stderr is drained into stderr_sink (a binary file) as it arrives so a
        chatty command cannot stall the channel. Returns the exit status.
        """
        logger.debug("Streaming from %s: %s", address, command)
        with self._connect(address) as client:
            try:
                channel = client.get_transport().open_session()
                channel.exec_command(command)
                while True:
                    while channel.recv_stderr_ready():
                        err = channel.recv_stderr(CHUNK_SIZE)
                        if stderr_sink is not None:
                            stderr_sink.write(err)
                    chunk = channel.recv(CHUNK_SIZE)
                    if not chunk:
                        break
                    sink.write(chunk)
                status = channel.recv_exit_status()
                while channel.recv_stderr_ready():
                    err = channel.recv_stderr(CHUNK_SIZE)
                    if stderr_sink is not None:
                        stderr_sink.write(err)
            except (paramiko.SSHException, OSError) as e:
                raise TransportError(f"Stream from {address} failed: {e}") from e
        return status

    def fetch(self, address, remote_path, local_path):
        """Download a remote file with SCP."""
        logger.debug("Fetching %s:%s to %s", address, remote_path, local_path)
        with self._connect(address) as client:
            scp_client = SCPClient(client.get_transport())
            try:
                scp_client.get(remote_path, local_path)
            except (SCPException, paramiko.SSHException, OSError) as e:
                raise TransportError(f"Fetching {remote_path} from {address} failed: {e}") from e
            finally:
                scp_client.close()

    def has_command(self, address, name):
        return self.run(address, f"command -v {shlex.quote(name)}").ok
