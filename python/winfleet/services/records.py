"""
winfleet/services/records.py

RecordStore implementations:
  - MemoryRecordStore: a dict, for tests and dry runs.
  - KubectlRecordStore: one ConfigMap per instance. The bootstrap state and the
    configuration fingerprint are mirrored into annotations so operators can
    follow progress with plain `kubectl get configmaps -o yaml`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from winfleet.fleet.errors import SourceUnavailableError, TransientError
from winfleet.fleet.interfaces import RecordStore
from winfleet.models.instance import InstanceRecord
from winfleet.models.validator import parse_json_as
from winfleet.utils.async_command_runner import CommandError
from winfleet.utils.k8s import apply_manifest, delete_object, get_object, list_objects

RECORD_LABEL = "winfleet.io/instance-record"
STATE_ANNOTATION = "winfleet.io/bootstrap-state"
FINGERPRINT_ANNOTATION = "winfleet.io/config-fingerprint"
RECORD_KEY = "record"


class MemoryRecordStore(RecordStore):
    def __init__(self) -> None:
        self._records: Dict[str, InstanceRecord] = {}

    async def get(self, instance_id: str) -> Optional[InstanceRecord]:
        record = self._records.get(instance_id)
        return record.model_copy(deep=True) if record is not None else None

    async def list(self) -> List[InstanceRecord]:
        return [r.model_copy(deep=True) for _, r in sorted(self._records.items())]

    async def save(self, record: InstanceRecord) -> None:
        self._records[record.instance_id] = record.model_copy(deep=True)

    async def delete(self, instance_id: str) -> None:
        self._records.pop(instance_id, None)


def configmap_name(instance_id: str) -> str:
    return f"winfleet-instance-{instance_id.lower()}"


def record_to_configmap(record: InstanceRecord, namespace: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": configmap_name(record.instance_id),
            "namespace": namespace,
            "labels": {RECORD_LABEL: "true"},
            "annotations": {
                STATE_ANNOTATION: record.state.value,
                FINGERPRINT_ANNOTATION: str(record.fingerprint) if record.fingerprint else "",
            },
        },
        "data": {RECORD_KEY: record.model_dump_json()},
    }


def configmap_to_record(obj: Dict[str, Any]) -> InstanceRecord:
    """
    Raises:
        ValueError: If the ConfigMap does not hold a valid record.
    """
    raw = (obj.get("data", {}) or {}).get(RECORD_KEY)
    if not raw:
        raise ValueError(f"ConfigMap {obj.get('metadata', {}).get('name')} has no '{RECORD_KEY}' key")
    return parse_json_as(raw, InstanceRecord)


class KubectlRecordStore(RecordStore):
    def __init__(self, namespace: str) -> None:
        self.namespace = namespace

    async def get(self, instance_id: str) -> Optional[InstanceRecord]:
        try:
            obj = await get_object("configmap", configmap_name(instance_id), self.namespace)
        except CommandError as ex:
            raise TransientError(f"Reading record {instance_id} failed: {ex}") from ex
        return configmap_to_record(obj) if obj is not None else None

    async def list(self) -> List[InstanceRecord]:
        try:
            items = await list_objects("configmap", self.namespace, f"{RECORD_LABEL}=true")
        except CommandError as ex:
            raise SourceUnavailableError(f"Cannot list instance records: {ex}") from ex
        records = []
        for obj in items:
            try:
                records.append(configmap_to_record(obj))
            except ValueError as ex:
                raise SourceUnavailableError(f"Unreadable instance record: {ex}") from ex
        return sorted(records, key=lambda r: r.instance_id)

    async def save(self, record: InstanceRecord) -> None:
        try:
            await apply_manifest(record_to_configmap(record, self.namespace))
        except CommandError as ex:
            raise TransientError(f"Saving record {record.instance_id} failed: {ex}") from ex

    async def delete(self, instance_id: str) -> None:
        try:
            await delete_object("configmap", configmap_name(instance_id), self.namespace)
        except CommandError as ex:
            raise TransientError(f"Deleting record {instance_id} failed: {ex}") from ex
