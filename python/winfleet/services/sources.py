"""
winfleet/services/sources.py

DesiredStateSource implementations:
  - YamlFleetSource: a YAML fleet file (see DesiredFleet).
  - KubectlMachineSource: Windows Machines managed by the cluster machine API.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import aiofiles
from pydantic import ValidationError

from winfleet.fleet.errors import SourceUnavailableError
from winfleet.fleet.interfaces import DesiredStateSource, RecordStore
from winfleet.models.instance import DesiredFleet, DesiredInstanceSpec, InstanceRecord
from winfleet.utils.async_command_runner import CommandError
from winfleet.utils.k8s import list_objects

logger = logging.getLogger(__name__)

WINDOWS_MACHINE_SELECTOR = "machine.openshift.io/os-id=Windows"


class YamlFleetSource(DesiredStateSource):
    """Reads the desired fleet from a YAML file on every pass."""

    def __init__(self, path: str) -> None:
        self.path = path

    async def list_desired(self) -> List[DesiredInstanceSpec]:
        try:
            async with aiofiles.open(self.path, "r") as f:
                raw = await f.read()
        except OSError as ex:
            raise SourceUnavailableError(f"Cannot read fleet file '{self.path}': {ex}") from ex
        try:
            return list(DesiredFleet.from_yaml(raw).instances)
        except (ValidationError, ValueError) as ex:
            raise SourceUnavailableError(f"Invalid fleet file '{self.path}': {ex}") from ex


def _internal_address(machine: Dict[str, Any]) -> Optional[str]:
    addresses = (machine.get("status", {}) or {}).get("addresses", []) or []
    for wanted in ("InternalIP", "InternalDNS"):
        for entry in addresses:
            if entry.get("type") == wanted and entry.get("address"):
                return str(entry["address"])
    return None


def machine_to_spec(
    machine: Dict[str, Any], known: Optional[InstanceRecord] = None
) -> Optional[DesiredInstanceSpec]:
    """
    Build a spec from a Machine object.

    A Machine that is being deleted is no longer desired. A Machine that cannot
    be bootstrapped yet (no address, or fields that do not validate) is still
    desired if the controller already manages it: `known` supplies what the
    Machine is missing, so a transient gap never turns into a teardown.

    Returns:
        The desired instance, or None when the Machine is not (or no longer) desired.
    """
    meta = machine.get("metadata", {}) or {}
    name = meta.get("name")
    if not name or meta.get("deletionTimestamp"):
        return None
    address = _internal_address(machine)
    if address is None:
        if known is None:
            logger.debug("Machine %s has no internal address yet", name)
            return None
        logger.debug("Machine %s has no internal address; keeping %s", name, known.address)
        address = known.address
    node_ref = ((machine.get("status", {}) or {}).get("nodeRef", {}) or {}).get("name")
    provider_spec = (((machine.get("spec", {}) or {}).get("providerSpec", {}) or {}).get("value", {}) or {})
    provider = str(provider_spec.get("kind", "machine")).replace("MachineProviderConfig", "").lower() or "machine"
    try:
        return DesiredInstanceSpec(
            instance_id=name,
            address=address,
            provider=provider,
            labels=dict(meta.get("labels", {}) or {}),
            node_name=node_ref or (known.node_name if known is not None else None),
        )
    except ValidationError:
        if known is None:
            raise
        logger.warning("Machine %s does not validate; keeping the managed instance as it is", name)
        return DesiredInstanceSpec(
            instance_id=known.instance_id,
            address=address,
            provider=provider,
            node_name=known.node_name,
        )


class KubectlMachineSource(DesiredStateSource):
    """
    Windows Machines in the machine API namespace.

    Only a Machine that is gone or marked for deletion leaves the desired set.
    When `store` is given, Machines that are temporarily incomplete keep the
    instances already recorded for them.
    """

    def __init__(
        self,
        machine_namespace: str,
        selector: str = WINDOWS_MACHINE_SELECTOR,
        store: Optional[RecordStore] = None,
    ) -> None:
        self.machine_namespace = machine_namespace
        self.selector = selector
        self.store = store

    async def list_desired(self) -> List[DesiredInstanceSpec]:
        try:
            machines = await list_objects(
                "machines.machine.openshift.io", self.machine_namespace, self.selector
            )
        except CommandError as ex:
            raise SourceUnavailableError(f"Cannot list machines: {ex}") from ex
        known: Dict[str, InstanceRecord] = {}
        if self.store is not None:
            known = {record.instance_id: record for record in await self.store.list()}

        specs = []
        for machine in machines:
            name = (machine.get("metadata", {}) or {}).get("name")
            try:
                spec = machine_to_spec(machine, known.get(name))
            except ValidationError as ex:
                logger.warning("Ignoring machine %s: %s", name, ex)
                continue
            if spec is not None:
                specs.append(spec)
        return specs
