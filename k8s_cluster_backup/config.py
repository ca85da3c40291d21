"""
Configuration for backup and restore runs.

Settings come from three places, highest precedence first: command-line flags,
a YAML config file, then the dataclass defaults below. Example config file:

    region: us-gov-west-1
    ssh_user: ubuntu
    key_path: ~/.ssh/CJS KeyPair.pem
    retry_max: 5
    retry_wait: 10
    etcd:
      endpoint: https://127.0.0.1:2379
    restore:
      device_name: /dev/xvdf
      fallback: ask
"""
import os
import threading
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError

DEFAULT_REGION = "us-gov-west-1"
DEFAULT_KEY_NAME = "CJS KeyPair"
DEFAULT_KEY_PATH = os.path.join("~", ".ssh", f"{DEFAULT_KEY_NAME}.pem")

MANIFEST_NAME = "snapshots.manifest"
STATUS_STORE_NAME = "node-status.json"
AGGREGATE_LOG_NAME = "backup.log"
SUMMARY_NAME = "backup_summary.csv"
METRICS_NAME = "backup-metrics.prom"
ETCD_SNAPSHOT_NAME = "etcd-backup.db"
ETCD_LOG_NAME = "etcd.log"
SNAPSHOT_METADATA_NAME = "snapshot-metadata.json"
AMI_METADATA_NAME = "ami-metadata.json"
INFRA_EXPORT_DIR = "aws"


def load_config(config_file: Optional[str]) -> Dict[str, Any]:
    """Load and return the YAML (or JSON) configuration mapping."""
    if not config_file:
        return {}
    try:
        with open(os.path.expanduser(config_file), "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Error reading config file {config_file}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_file} must contain a mapping")
    return data


def _pick(cls, values: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls) if f.init}
    unknown = set(values) - names
    if unknown:
        raise ConfigError(f"Unknown {cls.__name__} setting(s): {', '.join(sorted(unknown))}")
    return values


@dataclass
class EtcdSettings:
    endpoint: str = "https://127.0.0.1:2379"
    cacert: str = "/etc/kubernetes/pki/etcd/ca.crt"
    cert: str = "/etc/kubernetes/pki/etcd/server.crt"
    key: str = "/etc/kubernetes/pki/etcd/server.key"
    remote_path: str = "/tmp/etcd-backup.db"


@dataclass
class BackupRunConfig:
    control_plane_address: str
    backup_dir: str
    region: str = DEFAULT_REGION
    ssh_user: str = "ubuntu"
    key_path: str = DEFAULT_KEY_PATH
    ssh_port: int = 22
    strict_host_keys: bool = False
    connect_timeout: float = 30
    skip_disk_images: bool = False
    retry_max: int = 5
    retry_wait: float = 10
    backoff_factor: float = 2
    snapshot_poll_delay: int = 15
    snapshot_poll_max_attempts: int = 40
    source_device: str = "/dev/nvme0n1"
    block_size: str = "64K"
    export_infrastructure: bool = True
    kubeconfig: Optional[str] = None
    metrics_file: Optional[str] = None
    etcd: EtcdSettings = field(default_factory=EtcdSettings)

    def __post_init__(self):
        if isinstance(self.etcd, dict):
            self.etcd = EtcdSettings(**_pick(EtcdSettings, self.etcd))
        self.key_path = os.path.expanduser(self.key_path)
        self.backup_dir = os.path.abspath(os.path.expanduser(self.backup_dir))
        if self.retry_max < 1:
            raise ConfigError("retry_max must be at least 1")
        if self.retry_wait < 0:
            raise ConfigError("retry_wait must not be negative")

    @classmethod
    def from_sources(cls, file_config: Dict[str, Any], **overrides) -> "BackupRunConfig":
        values = {k: v for k, v in file_config.items() if k != "restore"}
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**_pick(cls, values))
        except TypeError as e:
            raise ConfigError(str(e)) from e


@dataclass
class RestoreConfig:
    backup_dir: str
    region: str = DEFAULT_REGION
    device_name: str = "/dev/xvdf"
    volume_type: str = "gp3"
    terraform_dir: Optional[str] = None
    instance_output: Optional[str] = None
    instance_id: Optional[str] = None
    node_address: Optional[str] = None
    disk_image: Optional[str] = None
    attach_poll_delay: float = 5
    attach_timeout: float = 120
    fallback: str = "ask"
    use_sudo: bool = True

    def __post_init__(self):
        self.backup_dir = os.path.abspath(os.path.expanduser(self.backup_dir))
        if self.terraform_dir is None:
            self.terraform_dir = os.path.join(self.backup_dir, INFRA_EXPORT_DIR)
        if self.fallback not in ("ask", "always", "never"):
            raise ConfigError(f"Invalid fallback policy: {self.fallback}")

    @classmethod
    def from_sources(cls, file_config: Dict[str, Any], **overrides) -> "RestoreConfig":
        values = dict(file_config.get("restore") or {})
        if "region" in file_config and "region" not in values:
            values["region"] = file_config["region"]
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**_pick(cls, values))
        except TypeError as e:
            raise ConfigError(str(e)) from e


class BackupContext:
    """Everything one backup run needs, passed explicitly to each component."""

    def __init__(self, config: BackupRunConfig, stop_event: Optional[threading.Event] = None):
        self.config = config
        self.stop_event = stop_event or threading.Event()

    @property
    def backup_dir(self) -> str:
        return self.config.backup_dir

    def path(self, name: str) -> str:
        return os.path.join(self.config.backup_dir, name)

    def node_path(self, address: str, suffix: str) -> str:
        """Per-node artifact path, namespaced by the node address."""
        return self.path(f"{address}.{suffix}")

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def ensure_dir(self):
        os.makedirs(self.config.backup_dir, exist_ok=True)
