"""In-memory stand-ins for the SSH transport and the EC2 provider."""
import os

from k8s_cluster_backup.models import Node, NodeRole
from k8s_cluster_backup.transport import RemoteResult

CONTROL_PLANE = Node("10.0.1.10", "i-0cp", NodeRole.CONTROL_PLANE)
WORKER_A = Node("10.0.1.11", "i-0wa", NodeRole.WORKER)
WORKER_B = Node("10.0.1.12", "i-0wb", NodeRole.WORKER)


class FakeTransport:
    """Records every call; responses are looked up by (address, command prefix)."""

    def __init__(self, responses=None, stream_data=None, fetch_data=b"", commands=("etcdctl", "kubectl")):
        self.responses = responses or {}
        self.stream_data = stream_data or {}
        self.fetch_data = fetch_data
        self.commands = set(commands)
        self.calls = []

    def run(self, address, command):
        self.calls.append(("run", address, command))
        for (addr, prefix), result in self.responses.items():
            if addr == address and command.startswith(prefix):
                if isinstance(result, Exception):
                    raise result
                return result
        return RemoteResult("", "", 0)

    def stream(self, address, command, sink, stderr_sink=None):
        self.calls.append(("stream", address, command))
        data = self.stream_data.get(address, (b"DISK", b"", 0))
        if isinstance(data, Exception):
            raise data
        out, err, status = data
        sink.write(out)
        if stderr_sink is not None:
            stderr_sink.write(err)
        return status

    def fetch(self, address, remote_path, local_path):
        self.calls.append(("fetch", address, remote_path))
        if isinstance(self.fetch_data, Exception):
            raise self.fetch_data
        with open(local_path, "wb") as f:
            f.write(self.fetch_data)

    def has_command(self, address, name):
        self.calls.append(("has_command", address, name))
        return name in self.commands


class FakeProvider:
    """
    Scripted EC2 provider.

    snapshot_script maps an instance id to the list of outcomes for successive
    create_snapshot calls: a snapshot id string, None (no id) or an exception.
    Once a script runs out, the last outcome repeats.
    """

    def __init__(self, address_map=None, snapshot_script=None, completed=True,
                 volume_id="vol-new", attachment_states=None, instances=None):
        self.address_map = address_map or {}
        self.snapshot_script = snapshot_script or {}
        self.completed = completed
        self.volume_id = volume_id
        self.attachment_states = list(attachment_states or ["attached"])
        self.instances = instances or {}
        self.calls = []
        self.existing_at_device = None

    def describe_instances_by_private_address(self, address):
        self.calls.append(("describe_instances_by_private_address", address))
        return list(self.address_map.get(address, []))

    def describe_instance(self, instance_id):
        self.calls.append(("describe_instance", instance_id))
        default = {
            "InstanceId": instance_id,
            "ImageId": "ami-123",
            "RootDeviceName": "/dev/xvda",
            "AvailabilityZone": "us-gov-west-1a",
            "BlockDeviceMappings": [{"DeviceName": "/dev/xvda", "Ebs": {"VolumeId": f"vol-{instance_id}"}}],
        }
        return self.instances.get(instance_id, default)

    def describe_primary_volume(self, instance_id):
        self.calls.append(("describe_primary_volume", instance_id))
        return f"vol-{instance_id}"

    def create_snapshot(self, volume_id, description):
        self.calls.append(("create_snapshot", volume_id))
        instance_id = volume_id[len("vol-"):]
        script = self.snapshot_script.get(instance_id, [f"snap-{instance_id}"])
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def wait_snapshot_completed(self, snapshot_id, delay=15, max_attempts=40):
        self.calls.append(("wait_snapshot_completed", snapshot_id))
        return self.completed

    def describe_snapshot(self, snapshot_id):
        return {"SnapshotId": snapshot_id, "VolumeSize": 50}

    def create_volume_from_snapshot(self, snapshot_id, availability_zone, volume_type="gp3"):
        self.calls.append(("create_volume_from_snapshot", snapshot_id, availability_zone))
        return self.volume_id

    def wait_volume_available(self, volume_id, delay=15, max_attempts=40):
        self.calls.append(("wait_volume_available", volume_id))

    def find_volume_at_device(self, instance_id, device):
        return self.existing_at_device

    def attach_volume(self, volume_id, instance_id, device):
        self.calls.append(("attach_volume", volume_id, instance_id, device))

    def detach_volume(self, volume_id, instance_id=None):
        self.calls.append(("detach_volume", volume_id))

    def delete_volume(self, volume_id):
        self.calls.append(("delete_volume", volume_id))

    def wait_attachment(self, volume_id, delay=5, timeout=120, sleep=None, clock=None):
        self.calls.append(("wait_attachment", volume_id))
        return self.attachment_states[-1]

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


class FakeMemberSource:
    def __init__(self, members):
        self.members = members

    def list_members(self, control_plane_address):
        return self.members


def member(name, internal_ip, extra=()):
    addresses = [{"type": "InternalIP", "address": internal_ip}]
    addresses += [{"type": t, "address": a} for t, a in extra]
    return {"name": name, "addresses": addresses}


class StaticResolver:
    def __init__(self, nodes):
        self.nodes = nodes

    def resolve(self, control_plane_address):
        return list(self.nodes)


class RecordingSleep:
    def __init__(self):
        self.waits = []

    def __call__(self, seconds):
        self.waits.append(seconds)


def write_file(path, data=b""):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
