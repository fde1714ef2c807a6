"""
winfleet/models/payload.py

Describes the files every Windows instance needs staged before it can join:
the node binaries, the network plugin executables, the CNI config template and
the HNS PowerShell module.
"""

from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, Field

KUBELET = "kube-node/kubelet.exe"
KUBE_PROXY = "kube-node/kube-proxy.exe"
HYBRID_OVERLAY = "hybrid-overlay-node.exe"
FLANNEL = "cni/flannel.exe"
HOST_LOCAL = "cni/host-local.exe"
WIN_BRIDGE = "cni/win-bridge.exe"
WIN_OVERLAY = "cni/win-overlay.exe"
CNI_TEMPLATE = "cni/cni-conf-template.json"
HNS_MODULE = "powershell/hns.psm1"

REQUIRED_PAYLOAD_FILES: List[str] = [
    KUBELET,
    KUBE_PROXY,
    HYBRID_OVERLAY,
    FLANNEL,
    HOST_LOCAL,
    WIN_BRIDGE,
    WIN_OVERLAY,
    CNI_TEMPLATE,
    HNS_MODULE,
]


class PayloadFile(BaseModel):
    """
    A single payload file.

    Attributes:
        relative_path: POSIX-style path relative to the payload root.
        local_path: Absolute path on the controller's filesystem.
        sha256: Lower-case hex digest of the file contents.
    """

    relative_path: str
    local_path: str
    sha256: str

    class Config:
        frozen = True


class PayloadManifest(BaseModel):
    """All payload files, keyed by relative path."""

    files: Dict[str, PayloadFile] = Field(default_factory=dict)

    def checksums(self) -> Dict[str, str]:
        return {rel: f.sha256 for rel, f in sorted(self.files.items())}

    def get(self, relative_path: str) -> PayloadFile:
        try:
            return self.files[relative_path]
        except KeyError as ex:
            raise KeyError(f"Payload file '{relative_path}' is not in the manifest") from ex
