"""
Snapshot and image metadata records written at backup time and read at restore.

Both files hold a JSON list, control plane first:

  snapshot-metadata.json  [{"SnapshotId", "VolumeSize", "InstanceId", "NodeAddress", "Role"}]
  ami-metadata.json       [{"ImageId", "RootDeviceName", "InstanceId", "NodeAddress"}]
"""
import json
import logging
import os

from .config import AMI_METADATA_NAME, SNAPSHOT_METADATA_NAME
from .errors import RestoreMetadataError
from .models import NodeRole, RestoreMetadata
from .provider import AWS_ERRORS

logger = logging.getLogger(__name__)


def write_backup_metadata(context, provider, entries):
    snapshot_records = []
    image_records = []
    for entry in entries:
        try:
            snapshot = provider.describe_snapshot(entry.snapshot_id) or {}
            instance = provider.describe_instance(entry.infrastructure_id)
        except (LookupError,) + AWS_ERRORS as e:
            logger.warning("Could not describe %s / %s for metadata: %s",
                           entry.snapshot_id, entry.infrastructure_id, e)
            continue
        snapshot_records.append({
            "SnapshotId": entry.snapshot_id,
            "VolumeSize": snapshot.get("VolumeSize"),
            "InstanceId": entry.infrastructure_id,
            "NodeAddress": entry.node_address,
            "Role": entry.role.value,
        })
        image_records.append({
            "ImageId": instance.get("ImageId"),
            "RootDeviceName": instance.get("RootDeviceName"),
            "InstanceId": entry.infrastructure_id,
            "NodeAddress": entry.node_address,
        })

    for name, records in ((SNAPSHOT_METADATA_NAME, snapshot_records), (AMI_METADATA_NAME, image_records)):
        with open(context.path(name), "w") as f:
            json.dump(records, f, indent=2)
    logger.info("Wrote restore metadata for %d node(s)", len(snapshot_records))
    return snapshot_records, image_records


def _read_records(path):
    try:
        with open(path, "r") as f:
            records = json.load(f)
    except FileNotFoundError as e:
        raise RestoreMetadataError(f"Metadata file not found: {path}") from e
    except (ValueError, OSError) as e:
        raise RestoreMetadataError(f"Cannot read metadata file {path}: {e}") from e
    if not isinstance(records, list) or not records:
        raise RestoreMetadataError(f"Metadata file {path} holds no records")
    return records


def _select(records, node_address, path):
    if node_address is None:
        for record in records:
            if isinstance(record, dict) and record.get("Role") == NodeRole.CONTROL_PLANE.value:
                return record
        return records[0]
    for record in records:
        if isinstance(record, dict) and record.get("NodeAddress") == node_address:
            return record
    raise RestoreMetadataError(f"No record for node {node_address} in {path}")


def load_restore_metadata(backup_dir, node_address=None) -> RestoreMetadata:
    snapshot_path = os.path.join(backup_dir, SNAPSHOT_METADATA_NAME)
    ami_path = os.path.join(backup_dir, AMI_METADATA_NAME)
    snapshot = _select(_read_records(snapshot_path), node_address, snapshot_path)
    image = _select(_read_records(ami_path), node_address or snapshot.get("NodeAddress"), ami_path)

    missing = [
        name for name, value in (
            ("SnapshotId", snapshot.get("SnapshotId")),
            ("VolumeSize", snapshot.get("VolumeSize")),
            ("RootDeviceName", image.get("RootDeviceName")),
        )
        if value in (None, "", "null")
    ]
    if missing:
        raise RestoreMetadataError(f"Backup metadata is missing required field(s): {', '.join(missing)}")
    try:
        volume_size = int(snapshot["VolumeSize"])
    except (TypeError, ValueError) as e:
        raise RestoreMetadataError(f"Invalid VolumeSize: {snapshot['VolumeSize']!r}") from e

    return RestoreMetadata(
        snapshot_id=snapshot["SnapshotId"],
        volume_size=volume_size,
        root_device=image["RootDeviceName"],
        image_id=image.get("ImageId"),
        node_address=snapshot.get("NodeAddress") or node_address,
    )
