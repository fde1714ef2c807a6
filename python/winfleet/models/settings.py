# winfleet/models/settings.py

from typing import Optional

from pydantic_settings import BaseSettings

from winfleet import __version__


class FleetSettings(BaseSettings):
    """
    Pydantic settings for the fleet controller.
    By default, these fields map to environment variables prefixed with `WINFLEET_`.
    For example, `WINFLEET_MAX_CONCURRENCY`, `WINFLEET_PRIVATE_KEY_PATH`, etc.
    """

    namespace: str = "winfleet"
    machine_namespace: str = "openshift-machine-api"

    # Payload staged onto every instance, and where it lands remotely
    payload_dir: str = "/payload"
    remote_dir: str = "C:\\k"

    # SSH access to instances
    ssh_user: str = "Administrator"
    ssh_port: int = 22
    private_key_path: str = "/etc/private-key/private-key.pem"

    # What the kubelet on each instance talks to
    api_server_url: str = "https://api-int.cluster.local:6443"
    cluster_ca_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"

    # Desired set: a YAML fleet file, or Windows Machine objects if unset
    fleet_file: Optional[str] = None

    # Network: read from the cluster unless network_mode is set
    network_mode: Optional[str] = None
    cluster_network_cidr: str = "10.128.0.0/14"
    service_network_cidr: str = "172.30.0.0/16"
    hybrid_cluster_network_cidr: Optional[str] = None
    vxlan_port: Optional[int] = None

    # Scheduling
    max_concurrency: int = 4
    resync_interval_seconds: float = 30.0
    csr_watch_interval_seconds: float = 5.0

    # Backoff (seconds)
    backoff_initial_seconds: float = 2.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 300.0

    # Bounded suspensions
    max_connect_attempts: int = 10
    max_staging_attempts: int = 3
    max_teardown_attempts: int = 5
    identity_timeout_seconds: float = 600.0
    readiness_timeout_seconds: float = 900.0

    # Controller build identity, part of the configuration fingerprint
    build_version: str = __version__
    build_commit: str = "unknown"

    class Config:
        env_prefix = "WINFLEET_"
