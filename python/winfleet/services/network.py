"""
winfleet/services/network.py

Network plugin selection for Windows instances and the two ClusterNetworkSource
implementations:
  - StaticNetworkSource: parameters from FleetSettings.
  - KubectlNetworkSource: the cluster's `networks.operator.openshift.io/cluster`.

Only OVN-Kubernetes in hybrid-overlay mode can carry Windows pods; any other
network type is a configuration error for every instance.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from winfleet.fleet.errors import ConfigurationError, SourceUnavailableError
from winfleet.fleet.interfaces import ClusterNetworkSource
from winfleet.models.network import ClusterNetworkConfig
from winfleet.models.payload import HNS_MODULE, HYBRID_OVERLAY, WIN_OVERLAY
from winfleet.models.settings import FleetSettings
from winfleet.utils.async_command_runner import CommandError
from winfleet.utils.k8s import get_object
from winfleet.utils.windows import win_join

OVN_KUBERNETES = "OVNKubernetes"

# Network types we recognise but cannot bootstrap Windows instances onto
UNSUPPORTED_MODES: Dict[str, str] = {
    "OpenShiftSDN": "OpenShiftSDN has no Windows data plane; migrate to OVNKubernetes with hybrid overlay",
}


class NetworkPlugin(BaseModel):
    """
    How pod networking is wired on an instance for one cluster network mode.

    Attributes:
        mode: Cluster network type this plugin serves.
        cni_type: CNI plugin binary name used in the CNI config.
        cni_binary: Payload path of the CNI plugin.
        service_name: Windows service running the overlay component.
        service_binary: Payload path of the overlay component.
        hns_network: Name of the HNS network the overlay component creates.
    """

    mode: str
    cni_type: str
    cni_binary: str
    service_name: str
    service_binary: str
    hns_network: str

    def service_command_line(
        self,
        remote_dir: str,
        node_name: str,
        kubeconfig: str,
        network: ClusterNetworkConfig,
    ) -> str:
        args = [
            win_join(remote_dir, self.service_binary),
            f"--node {node_name}",
            f"--k8s-kubeconfig {kubeconfig}",
            "--windows-service",
            f"--logfile {win_join(remote_dir, 'log', self.service_name + '.log')}",
        ]
        if network.vxlan_port is not None:
            args.append(f"--hybrid-overlay-vxlan-port={network.vxlan_port}")
        return " ".join(args)


PLUGINS: Dict[str, NetworkPlugin] = {
    OVN_KUBERNETES: NetworkPlugin(
        mode=OVN_KUBERNETES,
        cni_type="win-overlay",
        cni_binary=WIN_OVERLAY,
        service_name="hybrid-overlay-node",
        service_binary=HYBRID_OVERLAY,
        hns_network="OVNKubernetesHybridOverlayNetwork",
    ),
}


def select_plugin(network: ClusterNetworkConfig) -> NetworkPlugin:
    """
    Pick the network plugin for the active cluster network.

    Raises:
        ConfigurationError: For unknown or unsupported network modes, or a
            hybrid overlay without a Windows pod CIDR.
    """
    if network.mode in UNSUPPORTED_MODES:
        raise ConfigurationError(
            f"Unsupported cluster network mode '{network.mode}': {UNSUPPORTED_MODES[network.mode]}"
        )
    plugin = PLUGINS.get(network.mode)
    if plugin is None:
        raise ConfigurationError(f"Unknown cluster network mode '{network.mode}'")
    if network.mode == OVN_KUBERNETES and not network.hybrid_cluster_network_cidr:
        raise ConfigurationError(
            "OVNKubernetes must be configured with a hybrid overlay cluster network for Windows nodes"
        )
    return plugin


_PLACEHOLDER = re.compile(r"{{\s*([A-Z_]+)\s*}}")


def render_cni_config(template: str, plugin: NetworkPlugin, network: ClusterNetworkConfig) -> str:
    """
    Fill the CNI config template's `{{ NAME }}` placeholders.

    Raises:
        ConfigurationError: On unknown placeholders or if the result is not JSON.
    """
    values = {
        "CNI_TYPE": plugin.cni_type,
        "HNS_NETWORK": plugin.hns_network,
        "SERVICE_NETWORK_CIDR": network.service_network_cidr,
        "CLUSTER_NETWORK_CIDR": network.cluster_network_cidr,
        "HYBRID_CLUSTER_NETWORK_CIDR": network.hybrid_cluster_network_cidr or "",
    }
    unknown = sorted({m.group(1) for m in _PLACEHOLDER.finditer(template)} - set(values))
    if unknown:
        raise ConfigurationError(f"CNI template has unknown placeholders: {', '.join(unknown)}")

    rendered = _PLACEHOLDER.sub(lambda m: values[m.group(1)], template)
    try:
        json.loads(rendered)
    except json.JSONDecodeError as ex:
        raise ConfigurationError(f"Rendered CNI config is not valid JSON: {ex}") from ex
    return rendered


def hns_module_path(remote_dir: str) -> str:
    return win_join(remote_dir, HNS_MODULE)


class StaticNetworkSource(ClusterNetworkSource):
    """Network parameters pinned in settings."""

    def __init__(self, settings: FleetSettings) -> None:
        if not settings.network_mode:
            raise ValueError("StaticNetworkSource requires settings.network_mode")
        self._config = ClusterNetworkConfig(
            mode=settings.network_mode,
            cluster_network_cidr=settings.cluster_network_cidr,
            service_network_cidr=settings.service_network_cidr,
            hybrid_cluster_network_cidr=settings.hybrid_cluster_network_cidr,
            vxlan_port=settings.vxlan_port,
        )

    async def get_network_config(self) -> ClusterNetworkConfig:
        return self._config


def _first_cidr(entries: Optional[List[Any]]) -> Optional[str]:
    if not entries:
        return None
    first = entries[0]
    if isinstance(first, dict):
        return first.get("cidr")
    return str(first)


def parse_network_operator(obj: Dict[str, Any]) -> ClusterNetworkConfig:
    """Translate a `networks.operator.openshift.io` object into ClusterNetworkConfig."""
    spec = obj.get("spec", {}) or {}
    default_network = spec.get("defaultNetwork", {}) or {}
    hybrid = (default_network.get("ovnKubernetesConfig", {}) or {}).get(
        "hybridOverlayConfig", {}
    ) or {}
    fields: Dict[str, Any] = {"mode": default_network.get("type", "")}
    cluster_cidr = _first_cidr(spec.get("clusterNetwork"))
    service_cidr = _first_cidr(spec.get("serviceNetwork"))
    if cluster_cidr:
        fields["cluster_network_cidr"] = cluster_cidr
    if service_cidr:
        fields["service_network_cidr"] = service_cidr
    fields["hybrid_cluster_network_cidr"] = _first_cidr(hybrid.get("hybridClusterNetwork"))
    fields["vxlan_port"] = hybrid.get("hybridOverlayVXLANPort")
    return ClusterNetworkConfig(**fields)


class KubectlNetworkSource(ClusterNetworkSource):
    """Reads the cluster network operator configuration."""

    async def get_network_config(self) -> ClusterNetworkConfig:
        try:
            obj = await get_object("networks.operator.openshift.io", "cluster")
        except CommandError as ex:
            raise SourceUnavailableError(f"Cannot read cluster network config: {ex}") from ex
        if obj is None:
            raise SourceUnavailableError("Cluster network operator config 'cluster' not found")
        try:
            return parse_network_operator(obj)
        except (ValidationError, ValueError) as ex:
            raise SourceUnavailableError(f"Unreadable cluster network config: {ex}") from ex
