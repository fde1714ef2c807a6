"""
winfleet/services/node.py

Renders what the node services on a Windows instance need: where everything
lives under the remote directory, the kubelet kubeconfig, and the kubelet and
kube-proxy service command lines.
"""

from __future__ import annotations

from typing import List

import yaml
from pydantic import BaseModel

from winfleet.models.network import ClusterNetworkConfig
from winfleet.models.payload import KUBE_PROXY, KUBELET
from winfleet.services.network import NetworkPlugin
from winfleet.utils.windows import win_join

KUBELET_SERVICE = "kubelet"
KUBE_PROXY_SERVICE = "kube-proxy"

WINDOWS_TAINT = "os=Windows:NoSchedule"
WINDOWS_NODE_LABEL = "node.openshift.io/os_id=Windows"


class RemoteLayout(BaseModel):
    """Well-known paths on the instance, all below `root`."""

    root: str

    def payload(self, relative_path: str) -> str:
        return win_join(self.root, relative_path)

    @property
    def kubeconfig(self) -> str:
        return win_join(self.root, "kubeconfig")

    @property
    def client_cert(self) -> str:
        return win_join(self.root, "pki", "kubelet-client.pem")

    @property
    def client_key(self) -> str:
        return win_join(self.root, "pki", "kubelet-client-key.pem")

    @property
    def ca_bundle(self) -> str:
        return win_join(self.root, "pki", "ca.crt")

    @property
    def cni_bin_dir(self) -> str:
        return win_join(self.root, "cni")

    @property
    def cni_conf_dir(self) -> str:
        return win_join(self.root, "cni", "config")

    @property
    def cni_config(self) -> str:
        return win_join(self.cni_conf_dir, "cni.conf")

    def log(self, name: str) -> str:
        return win_join(self.root, "log", f"{name}.log")


def render_kubeconfig(api_server_url: str, layout: RemoteLayout, node_name: str) -> str:
    """Kubeconfig for the kubelet, pointing at the issued client certificate."""
    config = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": "cluster",
                "cluster": {
                    "server": api_server_url,
                    "certificate-authority": layout.ca_bundle,
                },
            }
        ],
        "users": [
            {
                "name": f"system:node:{node_name}",
                "user": {
                    "client-certificate": layout.client_cert,
                    "client-key": layout.client_key,
                },
            }
        ],
        "contexts": [
            {
                "name": "kubelet",
                "context": {"cluster": "cluster", "user": f"system:node:{node_name}"},
            }
        ],
        "current-context": "kubelet",
    }
    return yaml.safe_dump(config, sort_keys=False)


def kubelet_command_line(layout: RemoteLayout, node_name: str, node_ip: str) -> str:
    args: List[str] = [
        layout.payload(KUBELET),
        "--windows-service",
        f"--kubeconfig={layout.kubeconfig}",
        f"--hostname-override={node_name}",
        f"--node-ip={node_ip}",
        "--cgroups-per-qos=false",
        '--enforce-node-allocatable=""',
        f"--cni-bin-dir={layout.cni_bin_dir}",
        f"--cni-conf-dir={layout.cni_conf_dir}",
        f"--register-with-taints={WINDOWS_TAINT}",
        f"--node-labels={WINDOWS_NODE_LABEL}",
        "--logtostderr=false",
        f"--log-file={layout.log(KUBELET_SERVICE)}",
    ]
    return " ".join(args)


def kube_proxy_command_line(
    layout: RemoteLayout,
    node_name: str,
    plugin: NetworkPlugin,
    network: ClusterNetworkConfig,
) -> str:
    args: List[str] = [
        layout.payload(KUBE_PROXY),
        "--windows-service",
        f"--kubeconfig={layout.kubeconfig}",
        f"--hostname-override={node_name}",
        "--proxy-mode=kernelspace",
        f"--network-name={plugin.hns_network}",
        f"--cluster-cidr={network.cluster_network_cidr}",
        "--feature-gates=WinOverlay=true",
        "--logtostderr=false",
        f"--log-file={layout.log(KUBE_PROXY_SERVICE)}",
    ]
    return " ".join(args)
