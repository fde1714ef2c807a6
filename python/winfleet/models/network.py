"""
winfleet/models/network.py

Cluster network parameters that decide how an instance's pod network is wired.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class ClusterNetworkConfig(BaseModel):
    """
    The active cluster network, as reported by the cluster or configured statically.

    Attributes:
        mode: Network type, e.g. "OVNKubernetes".
        cluster_network_cidr: Pod network CIDR.
        service_network_cidr: Service network CIDR.
        hybrid_cluster_network_cidr: Pod CIDR reserved for Windows nodes (hybrid overlay).
        vxlan_port: Custom VXLAN port for the overlay, if any.
    """

    mode: str
    cluster_network_cidr: str = "10.128.0.0/14"
    service_network_cidr: str = "172.30.0.0/16"
    hybrid_cluster_network_cidr: Optional[str] = None
    vxlan_port: Optional[int] = Field(default=None, ge=1, le=65535)

    class Config:
        frozen = True
