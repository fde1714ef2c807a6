"""
winfleet/models/instance.py

Defines Pydantic models describing the fleet:
 - BootstrapState / Operation
 - DesiredInstanceSpec and DesiredFleet (what should exist)
 - ConfigurationFingerprint (what a correctly configured instance looks like)
 - InstanceRecord (the controller's view of one instance)
"""

from __future__ import annotations

import re
import time
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

NODE_IDENTITY_PREFIX = "system:node:"


class BootstrapState(str, Enum):
    """Per-instance bootstrap progress."""

    UNCONFIGURED = "Unconfigured"
    CONNECTING = "Connecting"
    STAGING_PAYLOAD = "StagingPayload"
    CONFIGURING_NETWORK = "ConfiguringNetwork"
    AWAITING_IDENTITY = "AwaitingIdentity"
    ACTIVATING_SERVICES = "ActivatingServices"
    READY = "Ready"
    FAILED = "Failed"
    DECONFIGURING = "Deconfiguring"
    REMOVED = "Removed"


FORWARD_STATES: List[BootstrapState] = [
    BootstrapState.UNCONFIGURED,
    BootstrapState.CONNECTING,
    BootstrapState.STAGING_PAYLOAD,
    BootstrapState.CONFIGURING_NETWORK,
    BootstrapState.AWAITING_IDENTITY,
    BootstrapState.ACTIVATING_SERVICES,
    BootstrapState.READY,
]

# Steps that build on a staged payload; they only make sense for the
# configuration the payload was staged for.
PINNED_STATES = frozenset(
    {
        BootstrapState.CONFIGURING_NETWORK,
        BootstrapState.AWAITING_IDENTITY,
        BootstrapState.ACTIVATING_SERVICES,
    }
)


class Operation(str, Enum):
    """Which lifecycle the record is currently being driven through."""

    CREATE = "create"
    RECONFIGURE = "reconfigure"
    DELETE = "delete"


class DesiredInstanceSpec(BaseModel):
    """
    An instance that should be a cluster member, as declared by the fleet source.

    Attributes:
        instance_id: Provider-stable identifier (e.g. an EC2 instance id or Machine name).
        address: Reachable address of the instance's SSH endpoint.
        provider: Name of the fleet source that produced this spec.
        network_role: Role of the instance in the cluster network.
        labels: Selector labels copied from the fleet source.
        node_name: Kubernetes node name; defaults to the lower-cased instance id.
    """

    instance_id: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    provider: str = "static"
    network_role: str = "worker"
    labels: Dict[str, str] = Field(default_factory=dict)
    node_name: Optional[str] = None

    class Config:
        frozen = True

    @model_validator(mode="before")
    @classmethod
    def default_node_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("node_name") and data.get("instance_id"):
            data = {**data, "node_name": str(data["instance_id"]).lower()}
        return data

    @field_validator("node_name")
    @classmethod
    def validate_node_name(cls, val: Optional[str]) -> Optional[str]:
        if val is not None and not is_dns1123_name(val):
            raise ValueError(f"node_name '{val}' is not a valid DNS-1123 name")
        return val


class DesiredFleet(BaseModel):
    """The full desired set, e.g. as loaded from a YAML fleet file."""

    instances: List[DesiredInstanceSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_ids(self) -> DesiredFleet:
        ids = [spec.instance_id for spec in self.instances]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate instance_id(s) in the desired fleet.")
        return self

    @classmethod
    def from_yaml(cls, yaml_str: str) -> DesiredFleet:
        """Deserialize a DesiredFleet from a YAML string."""
        data = yaml.safe_load(yaml_str) or {}
        return cls.model_validate(data)

    def to_yaml(self, *, sort_keys: bool = False) -> str:
        return yaml.dump(self.model_dump(), sort_keys=sort_keys)


class ConfigurationFingerprint(BaseModel):
    """Opaque, comparable summary of a correct instance configuration."""

    digest: str

    class Config:
        frozen = True

    def __str__(self) -> str:
        return f"sha256:{self.digest}"


class InstanceRecord(BaseModel):
    """
    The controller's view of one instance. Only the bootstrap state machine
    running in the instance's worker mutates it.
    """

    instance_id: str
    address: str
    node_name: str
    state: BootstrapState = BootstrapState.UNCONFIGURED
    fingerprint: Optional[ConfigurationFingerprint] = None
    last_transition: float = Field(default_factory=time.time)
    error_count: int = 0
    last_error: Optional[str] = None

    operation: Operation = Operation.CREATE
    non_retryable: bool = False
    failed_state: Optional[BootstrapState] = None
    failed_fingerprint: Optional[ConfigurationFingerprint] = None
    next_attempt_at: Optional[float] = None
    step_attempts: int = 0
    poll_attempts: int = 0
    target_fingerprint: Optional[ConfigurationFingerprint] = None
    state_entered_at: float = Field(default_factory=time.time)
    csr_request_id: Optional[str] = None
    remote_configured: bool = False
    services_started: bool = False
    terminated: bool = False

    def building_stale(self, current: ConfigurationFingerprint) -> bool:
        """
        True if a partly built forward path (or a failure inside one) was staged
        for a configuration other than `current`.
        """
        state = self.failed_state if self.state == BootstrapState.FAILED else self.state
        if state not in PINNED_STATES or self.target_fingerprint is None:
            return False
        return self.target_fingerprint != current

    @property
    def identity(self) -> str:
        """The node identity this instance requests certificates for."""
        return f"{NODE_IDENTITY_PREFIX}{self.node_name}"

    @classmethod
    def from_spec(cls, spec: DesiredInstanceSpec) -> InstanceRecord:
        return cls(
            instance_id=spec.instance_id,
            address=spec.address,
            node_name=spec.node_name or spec.instance_id.lower(),
        )


_DNS1123 = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


def is_dns1123_name(name: str) -> bool:
    """True if `name` is a valid DNS-1123 subdomain (Kubernetes node name)."""
    return len(name) <= 253 and bool(_DNS1123.match(name))
