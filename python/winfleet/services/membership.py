"""
winfleet/services/membership.py

kubectl-backed cluster collaborators:
  - KubectlClusterMembership: Node readiness, cordon/uncordon and deletion.
  - KubectlInstanceLifecycle: releases an instance by deleting its Machine.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from winfleet.fleet.errors import TransientError
from winfleet.fleet.interfaces import ClusterMembershipAPI, InstanceLifecycleAPI, NodeStatus
from winfleet.utils.async_command_runner import CommandError
from winfleet.utils.k8s import delete_object, get_object, kubectl

logger = logging.getLogger(__name__)


def node_status_of(node: Dict[str, Any]) -> NodeStatus:
    """Map a Node object's `Ready` condition to NodeStatus."""
    conditions = (node.get("status", {}) or {}).get("conditions", []) or []
    ready = [c for c in conditions if c.get("type") == "Ready"]
    if ready and ready[0].get("status") == "True":
        return NodeStatus.READY
    return NodeStatus.NOT_READY


class KubectlClusterMembership(ClusterMembershipAPI):
    async def get_node_status(self, node_name: str) -> NodeStatus:
        try:
            node = await get_object("node", node_name)
        except CommandError as ex:
            raise TransientError(f"Reading node {node_name} failed: {ex}") from ex
        if node is None:
            return NodeStatus.ABSENT
        return node_status_of(node)

    async def set_schedulable(self, node_name: str, schedulable: bool) -> None:
        verb = "uncordon" if schedulable else "cordon"
        try:
            await kubectl([verb, node_name])
        except CommandError as ex:
            if ex.not_found:
                return
            raise TransientError(f"{verb} {node_name} failed: {ex}") from ex

    async def delete_node(self, node_name: str) -> None:
        try:
            await delete_object("node", node_name)
        except CommandError as ex:
            raise TransientError(f"Deleting node {node_name} failed: {ex}") from ex
        logger.info("Deleted node %s", node_name)


class KubectlInstanceLifecycle(InstanceLifecycleAPI):
    """Instances are Machines; deleting the Machine lets the machine API tear the VM down."""

    def __init__(self, machine_namespace: str) -> None:
        self.machine_namespace = machine_namespace

    async def terminate(self, instance_id: str) -> None:
        try:
            await delete_object("machines.machine.openshift.io", instance_id, self.machine_namespace)
        except CommandError as ex:
            raise TransientError(f"Deleting machine {instance_id} failed: {ex}") from ex
        logger.info("Released machine %s/%s", self.machine_namespace, instance_id)
