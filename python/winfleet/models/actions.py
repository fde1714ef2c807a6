"""
winfleet/models/actions.py

The output of a reconciliation pass: one Action per observed instance.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, model_validator

from winfleet.models.instance import DesiredInstanceSpec, InstanceRecord


class ActionKind(str, Enum):
    CREATE = "Create"
    RESUME = "Resume"
    RECONFIGURE = "Reconfigure"
    DELETE = "Delete"
    NOOP = "NoOp"


class Action(BaseModel):
    """
    A unit of per-instance work. `Create` carries the desired spec, every other
    kind carries the record snapshot it was computed from.
    """

    kind: ActionKind
    instance_id: str
    spec: Optional[DesiredInstanceSpec] = None
    record: Optional[InstanceRecord] = None

    @model_validator(mode="after")
    def check_payload(self) -> Action:
        if self.kind == ActionKind.CREATE and self.spec is None:
            raise ValueError("Create actions require a spec.")
        if self.kind != ActionKind.CREATE and self.record is None:
            raise ValueError(f"{self.kind.value} actions require a record.")
        return self

    @classmethod
    def create(cls, spec: DesiredInstanceSpec) -> Action:
        return cls(kind=ActionKind.CREATE, instance_id=spec.instance_id, spec=spec)

    @classmethod
    def for_record(cls, kind: ActionKind, record: InstanceRecord) -> Action:
        return cls(kind=kind, instance_id=record.instance_id, record=record)
