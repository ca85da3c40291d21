"""
EC2 compute directory, snapshot and volume services on top of boto3.
"""
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

logger = logging.getLogger(__name__)

AWS_ERRORS = (BotoCoreError, ClientError)


class Ec2Provider:
    def __init__(self, region: str, session=None, client=None):
        self.region = region
        if client is None:
            session = session or boto3.session.Session()
            client = session.client("ec2", region_name=region)
        self.ec2 = client

    # ---------- Compute directory ----------

    def describe_instances_by_private_address(self, address: str) -> List[str]:
        resp = self.ec2.describe_instances(
            Filters=[{"Name": "private-ip-address", "Values": [address]}]
        )
        return [
            inst["InstanceId"]
            for res in resp.get("Reservations", [])
            for inst in res.get("Instances", [])
        ]

    def describe_instance(self, instance_id: str) -> dict:
        resp = self.ec2.describe_instances(InstanceIds=[instance_id])
        for res in resp.get("Reservations", []):
            for inst in res.get("Instances", []):
                return {
                    "InstanceId": inst["InstanceId"],
                    "ImageId": inst.get("ImageId"),
                    "RootDeviceName": inst.get("RootDeviceName"),
                    "AvailabilityZone": inst.get("Placement", {}).get("AvailabilityZone"),
                    "BlockDeviceMappings": inst.get("BlockDeviceMappings", []),
                }
        raise LookupError(f"Instance {instance_id} not found")

    def describe_primary_volume(self, instance_id: str) -> Optional[str]:
        mappings = self.describe_instance(instance_id)["BlockDeviceMappings"]
        if not mappings:
            return None
        return mappings[0].get("Ebs", {}).get("VolumeId")

    def describe_image(self, image_id: str) -> Optional[dict]:
        resp = self.ec2.describe_images(ImageIds=[image_id])
        images = resp.get("Images", [])
        return images[0] if images else None

    # ---------- Snapshot service ----------

    def create_snapshot(self, volume_id: str, description: str) -> Optional[str]:
        """Start a snapshot. Returns None when the provider gives back no id."""
        try:
            resp = self.ec2.create_snapshot(VolumeId=volume_id, Description=description)
        except AWS_ERRORS as e:
            logger.warning("create_snapshot for %s failed: %s", volume_id, e)
            return None
        return resp.get("SnapshotId") or None

    def wait_snapshot_completed(self, snapshot_id: str, delay: int = 15, max_attempts: int = 40) -> bool:
        """Block until the snapshot completes. False on failure or when delay*max_attempts elapses."""
        waiter = self.ec2.get_waiter("snapshot_completed")
        try:
            waiter.wait(
                SnapshotIds=[snapshot_id],
                WaiterConfig={"Delay": delay, "MaxAttempts": max_attempts},
            )
        except WaiterError as e:
            logger.warning("Snapshot %s did not complete: %s", snapshot_id, e)
            return False
        return True

    def describe_snapshot(self, snapshot_id: str) -> Optional[dict]:
        resp = self.ec2.describe_snapshots(SnapshotIds=[snapshot_id])
        snaps = resp.get("Snapshots", [])
        return snaps[0] if snaps else None

    # ---------- Volume service ----------

    def create_volume_from_snapshot(self, snapshot_id: str, availability_zone: str,
                                    volume_type: str = "gp3") -> Optional[str]:
        try:
            resp = self.ec2.create_volume(
                SnapshotId=snapshot_id,
                AvailabilityZone=availability_zone,
                VolumeType=volume_type,
            )
        except AWS_ERRORS as e:
            logger.warning("create_volume from %s failed: %s", snapshot_id, e)
            return None
        volume_id = resp.get("VolumeId")
        if not volume_id or volume_id == "null":
            return None
        return volume_id

    def find_volume_at_device(self, instance_id: str, device: str) -> Optional[str]:
        resp = self.ec2.describe_volumes(
            Filters=[
                {"Name": "attachment.instance-id", "Values": [instance_id]},
                {"Name": "attachment.device", "Values": [device]},
            ]
        )
        volumes = resp.get("Volumes", [])
        return volumes[0]["VolumeId"] if volumes else None

    def attach_volume(self, volume_id: str, instance_id: str, device: str):
        self.ec2.attach_volume(VolumeId=volume_id, InstanceId=instance_id, Device=device)

    def detach_volume(self, volume_id: str, instance_id: Optional[str] = None):
        kwargs = {"VolumeId": volume_id}
        if instance_id:
            kwargs["InstanceId"] = instance_id
        self.ec2.detach_volume(**kwargs)

    def wait_volume_available(self, volume_id: str, delay: int = 15, max_attempts: int = 40):
        self.ec2.get_waiter("volume_available").wait(
            VolumeIds=[volume_id],
            WaiterConfig={"Delay": delay, "MaxAttempts": max_attempts},
        )

    def delete_volume(self, volume_id: str):
        self.ec2.delete_volume(VolumeId=volume_id)

    def describe_attachment_state(self, volume_id: str) -> Optional[str]:
        resp = self.ec2.describe_volumes(VolumeIds=[volume_id])
        volumes = resp.get("Volumes", [])
        if not volumes or not volumes[0].get("Attachments"):
            return None
        return volumes[0]["Attachments"][0].get("State")

    def wait_attachment(self, volume_id: str, delay: float = 5, timeout: float = 120,
                        sleep=time.sleep, clock=time.monotonic) -> Optional[str]:
        """Poll the attachment state until "attached" or the deadline passes."""
        deadline = clock() + timeout
        state = self.describe_attachment_state(volume_id)
        while state != "attached" and clock() < deadline:
            sleep(delay)
            state = self.describe_attachment_state(volume_id)
        return state


def snapshot_description(node) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"Backup snapshot for {node.role.value} ({node.address}, {node.infrastructure_id}) on {stamp}"
