import hashlib
import json
import os

import pytest
import yaml

from winfleet.fleet.errors import ConfigurationError
from winfleet.models.network import ClusterNetworkConfig
from winfleet.models.payload import KUBELET, REQUIRED_PAYLOAD_FILES
from winfleet.services.network import (
    StaticNetworkSource,
    parse_network_operator,
    render_cni_config,
    select_plugin,
)
from winfleet.services.node import (
    RemoteLayout,
    kube_proxy_command_line,
    kubelet_command_line,
    render_kubeconfig,
)
from winfleet.services.payload import load_payload_manifest
from winfleet.tests.fakes import CNI_TEMPLATE_TEXT, OVN_NETWORK, make_settings, write_payload


@pytest.mark.asyncio
async def test_manifest_hashes_every_file(tmp_path):
    payload_dir = str(tmp_path / "payload")
    write_payload(payload_dir)
    with open(os.path.join(payload_dir, "extra.txt"), "w") as f:
        f.write("extra")

    manifest = await load_payload_manifest(payload_dir)

    assert set(REQUIRED_PAYLOAD_FILES) | {"extra.txt"} == set(manifest.files)
    kubelet = manifest.get(KUBELET)
    with open(kubelet.local_path, "rb") as f:
        assert kubelet.sha256 == hashlib.sha256(f.read()).hexdigest()


@pytest.mark.asyncio
async def test_manifest_requires_payload_files(tmp_path):
    payload_dir = str(tmp_path / "payload")
    write_payload(payload_dir)
    os.remove(os.path.join(payload_dir, "kube-node", "kubelet.exe"))

    with pytest.raises(ConfigurationError, match="kube-node/kubelet.exe"):
        await load_payload_manifest(payload_dir)


@pytest.mark.asyncio
async def test_manifest_requires_directory(tmp_path):
    with pytest.raises(ConfigurationError):
        await load_payload_manifest(str(tmp_path / "nope"))


def test_ovn_hybrid_overlay_plugin_selected():
    plugin = select_plugin(OVN_NETWORK)
    assert plugin.cni_type == "win-overlay"
    assert plugin.service_name == "hybrid-overlay-node"


@pytest.mark.parametrize(
    "network",
    [
        ClusterNetworkConfig(mode="OpenShiftSDN"),
        ClusterNetworkConfig(mode="Calico"),
        ClusterNetworkConfig(mode="OVNKubernetes"),
    ],
)
def test_unsupported_networks_are_configuration_errors(network):
    with pytest.raises(ConfigurationError) as info:
        select_plugin(network)
    assert not info.value.retryable


def test_cni_config_rendered_from_template():
    plugin = select_plugin(OVN_NETWORK)
    rendered = json.loads(render_cni_config(CNI_TEMPLATE_TEXT, plugin, OVN_NETWORK))
    assert rendered["type"] == "win-overlay"
    assert rendered["name"] == "OVNKubernetesHybridOverlayNetwork"
    assert rendered["ipam"]["subnet"] == "10.132.0.0/14"
    assert rendered["policies"][0]["value"]["ExceptionList"] == ["10.128.0.0/14", "172.30.0.0/16"]


def test_cni_template_with_unknown_placeholder_rejected():
    plugin = select_plugin(OVN_NETWORK)
    with pytest.raises(ConfigurationError, match="NOPE"):
        render_cni_config('{"type": "{{ NOPE }}"}', plugin, OVN_NETWORK)


def test_network_operator_config_parsed():
    obj = {
        "spec": {
            "clusterNetwork": [{"cidr": "10.128.0.0/14", "hostPrefix": 23}],
            "serviceNetwork": ["172.30.0.0/16"],
            "defaultNetwork": {
                "type": "OVNKubernetes",
                "ovnKubernetesConfig": {
                    "hybridOverlayConfig": {
                        "hybridClusterNetwork": [{"cidr": "10.132.0.0/14", "hostPrefix": 23}],
                        "hybridOverlayVXLANPort": 9898,
                    }
                },
            },
        }
    }
    network = parse_network_operator(obj)
    assert network == ClusterNetworkConfig(
        mode="OVNKubernetes",
        cluster_network_cidr="10.128.0.0/14",
        service_network_cidr="172.30.0.0/16",
        hybrid_cluster_network_cidr="10.132.0.0/14",
        vxlan_port=9898,
    )
    plugin = select_plugin(network)
    assert "--hybrid-overlay-vxlan-port=9898" in plugin.service_command_line(
        "C:\\k", "win-1", "C:\\k\\kubeconfig", network
    )


@pytest.mark.asyncio
async def test_static_network_source(tmp_path):
    settings = make_settings(
        str(tmp_path), network_mode="OVNKubernetes", hybrid_cluster_network_cidr="10.132.0.0/14"
    )
    assert await StaticNetworkSource(settings).get_network_config() == OVN_NETWORK


def test_kubelet_registers_windows_taint_and_label():
    layout = RemoteLayout(root="C:\\k")
    cmd = kubelet_command_line(layout, "win-1", "10.0.0.1")
    assert cmd.startswith("C:\\k\\kube-node\\kubelet.exe ")
    assert "--register-with-taints=os=Windows:NoSchedule" in cmd
    assert "--node-labels=node.openshift.io/os_id=Windows" in cmd
    assert "--hostname-override=win-1 " in cmd


def test_kube_proxy_uses_overlay_network():
    layout = RemoteLayout(root="C:\\k")
    cmd = kube_proxy_command_line(layout, "win-1", select_plugin(OVN_NETWORK), OVN_NETWORK)
    assert "--network-name=OVNKubernetesHybridOverlayNetwork" in cmd
    assert "--cluster-cidr=10.128.0.0/14" in cmd


def test_kubeconfig_points_at_issued_certificate():
    layout = RemoteLayout(root="C:\\k")
    config = yaml.safe_load(render_kubeconfig("https://api:6443", layout, "win-1"))
    user = config["users"][0]
    assert user["name"] == "system:node:win-1"
    assert user["user"]["client-certificate"] == "C:\\k\\pki\\kubelet-client.pem"
    assert config["clusters"][0]["cluster"]["server"] == "https://api:6443"

