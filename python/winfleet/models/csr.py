"""
winfleet/models/csr.py

Defines Pydantic models for node certificate signing requests (CSRs):
 - CSRDecision
 - CertificateRequest
 - IssuedIdentity
"""

from __future__ import annotations

import time
from enum import Enum
from typing import FrozenSet, List

from pydantic import BaseModel, Field

NODES_GROUP = "system:nodes"
AUTHENTICATED_GROUP = "system:authenticated"

# Usages a kubelet client certificate is requested with.
NODE_CLIENT_USAGES: List[str] = ["digital signature", "key encipherment", "client auth"]

ALLOWED_NODE_USAGES: FrozenSet[str] = frozenset(
    {"digital signature", "key encipherment", "client auth", "server auth"}
)


class CSRDecision(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    DENIED = "Denied"


class CertificateRequest(BaseModel):
    """
    A pending or decided certificate signing request.

    Attributes:
        request_id: Cluster-unique name of the request.
        requester: Identity claim, taken from the CSR subject common name.
        groups: Group claims, taken from the CSR subject organizations.
        usages: Requested key usages.
        submitted_at: Epoch seconds of submission.
        decision: Pending until decided exactly once.
    """

    request_id: str
    requester: str
    groups: List[str] = Field(default_factory=list)
    usages: List[str] = Field(default_factory=list)
    submitted_at: float = Field(default_factory=time.time)
    decision: CSRDecision = CSRDecision.PENDING


class IssuedIdentity(BaseModel):
    """Certificate and key the kubelet authenticates with once approved."""

    certificate_pem: str
    private_key_pem: str
