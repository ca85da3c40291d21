"""
Node inventory: cluster members from the control plane, mapped to EC2 instance ids.
"""
import json
import logging
from typing import Dict, List

from kubernetes import client, config

from .errors import DiscoveryError, TransportError
from .models import Node, NodeRole
from .provider import AWS_ERRORS

logger = logging.getLogger(__name__)

KUBECTL_GET_NODES = "kubectl get nodes -o json"


class KubectlMemberSource:
    """Lists members by running kubectl on the control-plane node over SSH."""

    def __init__(self, transport):
        self.transport = transport

    def list_members(self, control_plane_address) -> List[Dict]:
        try:
            result = self.transport.run(control_plane_address, KUBECTL_GET_NODES)
        except TransportError as e:
            raise DiscoveryError(f"Cannot query control plane {control_plane_address}: {e}") from e
        if not result.ok:
            raise DiscoveryError(
                f"'{KUBECTL_GET_NODES}' failed on {control_plane_address} "
                f"(code {result.exit_status}): {result.stderr.strip()}"
            )
        try:
            items = json.loads(result.stdout).get("items", [])
        except (ValueError, AttributeError) as e:
            raise DiscoveryError(f"Unparseable node list from {control_plane_address}: {e}") from e
        return [
            {
                "name": item.get("metadata", {}).get("name"),
                "addresses": item.get("status", {}).get("addresses", []) or [],
            }
            for item in items
        ]


class KubeApiMemberSource:
    """Lists members through the Kubernetes API using a local kubeconfig."""

    def __init__(self, kubeconfig):
        config.load_kube_config(config_file=kubeconfig)
        logger.info("Using kubeconfig file: %s", kubeconfig)
        self.v1 = client.CoreV1Api()

    def list_members(self, control_plane_address) -> List[Dict]:
        try:
            nodes = self.v1.list_node()
        except (client.exceptions.ApiException, OSError) as e:
            raise DiscoveryError(f"Error listing cluster nodes: {e}") from e
        return [
            {
                "name": node.metadata.name,
                "addresses": [
                    {"type": a.type, "address": a.address}
                    for a in (node.status.addresses or [])
                ],
            }
            for node in nodes.items
        ]


class NodeInventoryResolver:
    def __init__(self, member_source, provider):
        self.member_source = member_source
        self.provider = provider

    def resolve(self, control_plane_address) -> List[Node]:
        """Control-plane node first, then every other member's InternalIP."""
        logger.info("Querying control plane node %s for cluster members...", control_plane_address)
        members = self.member_source.list_members(control_plane_address)
        if not members:
            raise DiscoveryError(f"Control plane {control_plane_address} reported no cluster members")

        control_name = None
        for member in members:
            if any(a.get("address") == control_plane_address for a in member["addresses"]):
                control_name = member["name"]
                break
        if control_name is None:
            raise DiscoveryError(
                f"No cluster member reports address {control_plane_address}; "
                "cannot tell the control plane apart from the workers"
            )
        logger.info("Control plane node name identified as: %s", control_name)

        worker_ips = [
            a["address"]
            for member in members
            if member["name"] != control_name
            for a in member["addresses"]
            if a.get("type") == "InternalIP"
        ]
        logger.info("Worker node IPs found: %s", ", ".join(worker_ips) or "none")

        nodes = [Node(control_plane_address, self._instance_id(control_plane_address), NodeRole.CONTROL_PLANE)]
        for ip in worker_ips:
            nodes.append(Node(ip, self._instance_id(ip), NodeRole.WORKER))
        for node in nodes:
            logger.info("%s,%s,%s", node.address, node.infrastructure_id, node.role.value)
        return nodes

    def _instance_id(self, address) -> str:
        try:
            ids = self.provider.describe_instances_by_private_address(address)
        except AWS_ERRORS as e:
            raise DiscoveryError(f"Instance lookup for {address} failed: {e}") from e
        if not ids:
            raise DiscoveryError(f"No instance has private address {address}")
        if len(ids) > 1:
            raise DiscoveryError(f"Address {address} matches several instances: {', '.join(ids)}")
        return ids[0]
