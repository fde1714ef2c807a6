"""
winfleet/services/certificates.py

CertificateAuthorityAPI backed by Kubernetes CertificateSigningRequests:
  - build_node_csr / parse_csr_subject: PEM handling with `cryptography`.
  - KubectlCertificateAuthority: submits CSRs on behalf of bootstrapping
    instances (keeping the private key in a Secret until the kubelet gets it),
    lists and decides them with `kubectl certificate approve|deny`.
"""

from __future__ import annotations

import base64
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from winfleet.fleet.errors import TransientError
from winfleet.fleet.interfaces import CertificateAuthorityAPI
from winfleet.models.csr import NODES_GROUP, CertificateRequest, CSRDecision, IssuedIdentity
from winfleet.models.instance import NODE_IDENTITY_PREFIX
from winfleet.utils.async_command_runner import CommandError
from winfleet.utils.k8s import (
    apply_manifest,
    delete_object,
    get_k8s_secret_data,
    get_object,
    kubectl,
    list_objects,
    put_k8s_secret_data,
)

logger = logging.getLogger(__name__)

KUBELET_CLIENT_SIGNER = "kubernetes.io/kube-apiserver-client-kubelet"
KUBELET_SERVING_SIGNER = "kubernetes.io/kubelet-serving"
NODE_SIGNERS = (KUBELET_CLIENT_SIGNER, KUBELET_SERVING_SIGNER)
CSR_LABEL = "winfleet.io/csr"


def build_node_csr(identity: str) -> Tuple[str, str]:
    """
    Generate an EC P-256 key and a CSR for `identity` in the nodes group.

    Returns:
        (csr_pem, private_key_pem)
    """
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, NODES_GROUP),
            x509.NameAttribute(NameOID.COMMON_NAME, identity),
        ]
    )
    csr = x509.CertificateSigningRequestBuilder().subject_name(subject).sign(key, hashes.SHA256())
    csr_pem = csr.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return csr_pem, key_pem


def parse_csr_subject(csr_pem: str) -> Tuple[str, List[str]]:
    """
    Extract (common name, organizations) from a PEM CSR.

    Raises:
        ValueError: If the PEM cannot be parsed or has no common name.
    """
    csr = x509.load_pem_x509_csr(csr_pem.encode("ascii"))
    cns = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not cns:
        raise ValueError("CSR subject has no common name")
    orgs = [str(a.value) for a in csr.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)]
    return str(cns[0].value), orgs


def _decision_of(obj: Dict[str, Any]) -> CSRDecision:
    conditions = (obj.get("status", {}) or {}).get("conditions", []) or []
    types = {c.get("type") for c in conditions if c.get("status", "True") == "True"}
    if "Denied" in types or "Failed" in types:
        return CSRDecision.DENIED
    if "Approved" in types:
        return CSRDecision.APPROVED
    return CSRDecision.PENDING


def _timestamp(value: Optional[str]) -> float:
    if not value:
        return 0.0
    return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()


def csr_object_to_request(obj: Dict[str, Any]) -> CertificateRequest:
    """
    Translate a CertificateSigningRequest object. The identity claim comes from the
    CSR subject, never from object metadata; an unparseable request yields an empty
    claim (which no policy accepts).
    """
    meta = obj.get("metadata", {}) or {}
    spec = obj.get("spec", {}) or {}
    requester, groups = "", []
    try:
        requester, groups = parse_csr_subject(base64.b64decode(spec.get("request", "")).decode("ascii"))
    except ValueError as ex:
        logger.warning("CSR %s has an unreadable request: %s", meta.get("name"), ex)
    return CertificateRequest(
        request_id=meta.get("name", ""),
        requester=requester,
        groups=groups,
        usages=list(spec.get("usages", []) or []),
        submitted_at=_timestamp(meta.get("creationTimestamp")),
        decision=_decision_of(obj),
    )


class KubectlCertificateAuthority(CertificateAuthorityAPI):
    """Kubernetes CSR API through kubectl."""

    def __init__(self, namespace: str) -> None:
        self.namespace = namespace

    async def submit_request(self, identity: str, usage: List[str]) -> str:
        node_name = identity[len(NODE_IDENTITY_PREFIX):] if identity.startswith(NODE_IDENTITY_PREFIX) else identity
        request_id = f"winfleet-{node_name}-{secrets.token_hex(4)}"
        csr_pem, key_pem = build_node_csr(identity)
        try:
            await put_k8s_secret_data(
                request_id,
                self.namespace,
                {"tls.key": key_pem},
                labels={CSR_LABEL: request_id},
            )
            await apply_manifest(
                {
                    "apiVersion": "certificates.k8s.io/v1",
                    "kind": "CertificateSigningRequest",
                    "metadata": {"name": request_id, "labels": {CSR_LABEL: request_id}},
                    "spec": {
                        "request": base64.b64encode(csr_pem.encode("ascii")).decode("ascii"),
                        "signerName": KUBELET_CLIENT_SIGNER,
                        "usages": list(usage),
                    },
                }
            )
        except CommandError as ex:
            raise TransientError(f"Submitting CSR for {identity} failed: {ex}") from ex
        logger.info("Submitted CSR %s for %s", request_id, identity)
        return request_id

    async def get_status(self, request_id: str) -> CSRDecision:
        try:
            obj = await get_object("csr", request_id)
        except CommandError as ex:
            raise TransientError(f"Reading CSR {request_id} failed: {ex}") from ex
        if obj is None:
            return CSRDecision.DENIED
        return _decision_of(obj)

    async def approve(self, request_id: str) -> None:
        await kubectl(["certificate", "approve", request_id])

    async def deny(self, request_id: str) -> None:
        await kubectl(["certificate", "deny", request_id])

    async def list_requests(self) -> List[CertificateRequest]:
        items = await list_objects("csr")
        return [
            csr_object_to_request(obj)
            for obj in items
            if (obj.get("spec", {}) or {}).get("signerName") in NODE_SIGNERS
        ]

    async def get_issued_identity(self, request_id: str) -> Optional[IssuedIdentity]:
        try:
            obj = await get_object("csr", request_id)
            key_data = await get_k8s_secret_data(request_id, self.namespace)
        except CommandError as ex:
            raise TransientError(f"Reading issued identity {request_id} failed: {ex}") from ex
        cert_b64 = ((obj or {}).get("status", {}) or {}).get("certificate")
        if not cert_b64 or not key_data or "tls.key" not in key_data:
            return None
        return IssuedIdentity(
            certificate_pem=base64.b64decode(cert_b64).decode("ascii"),
            private_key_pem=key_data["tls.key"],
        )

    async def release_request(self, request_id: str) -> None:
        try:
            await delete_object("secret", request_id, self.namespace)
        except CommandError as ex:
            raise TransientError(f"Deleting key secret {request_id} failed: {ex}") from ex
        logger.debug("Released key secret %s", request_id)
