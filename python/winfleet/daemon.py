"""
winfleet/daemon.py

The fleet daemon:
  1) Loads FleetSettings from WINFLEET_* environment variables.
  2) Points the bootstrap machine at the mounted instance SSH private key. The
     key is re-read on every pass; until it exists, passes are abandoned.
  3) Builds the collaborators (kubectl/ssh backed) and the reconciliation core.
  4) Runs the fleet controller and the certificate approval gate side by side
     until SIGTERM/SIGINT, then lets in-flight workers stop at their last
     persisted step.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from winfleet.fleet.bootstrap import BootstrapStateMachine
from winfleet.fleet.controller import FleetController
from winfleet.fleet.csr_gate import CertificateApprovalGate
from winfleet.fleet.interfaces import ClusterNetworkSource, DesiredStateSource, RecordStore
from winfleet.fleet.version import ConfigurationVersionTracker
from winfleet.models.settings import FleetSettings
from winfleet.services.certificates import KubectlCertificateAuthority
from winfleet.services.credentials import KeyFileCredentials
from winfleet.services.membership import KubectlClusterMembership, KubectlInstanceLifecycle
from winfleet.services.network import KubectlNetworkSource, StaticNetworkSource
from winfleet.services.records import KubectlRecordStore
from winfleet.services.sources import KubectlMachineSource, YamlFleetSource
from winfleet.utils.backoff import BackoffPolicy
from winfleet.utils.ssh import SSHTransport

logger = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_desired_source(settings: FleetSettings, store: RecordStore) -> DesiredStateSource:
    if settings.fleet_file:
        return YamlFleetSource(settings.fleet_file)
    return KubectlMachineSource(settings.machine_namespace, store=store)


def build_network_source(settings: FleetSettings) -> ClusterNetworkSource:
    if settings.network_mode:
        return StaticNetworkSource(settings)
    return KubectlNetworkSource()


async def run_daemon(settings: FleetSettings, stop: asyncio.Event) -> None:
    """Wire everything from `settings` and run until `stop` is set."""
    policy = BackoffPolicy.from_settings(settings)

    store = KubectlRecordStore(settings.namespace)
    ca = KubectlCertificateAuthority(settings.namespace)
    tracker = ConfigurationVersionTracker(
        payload_dir=settings.payload_dir,
        network_source=build_network_source(settings),
        build_version=settings.build_version,
        build_commit=settings.build_commit,
    )
    gate = CertificateApprovalGate(ca, store)
    machine = BootstrapStateMachine(
        transport=SSHTransport(port=settings.ssh_port),
        ca=ca,
        membership=KubectlClusterMembership(),
        lifecycle=KubectlInstanceLifecycle(settings.machine_namespace),
        store=store,
        tracker=tracker,
        credentials=KeyFileCredentials(settings.private_key_path, settings.ssh_user),
        settings=settings,
        policy=policy,
        on_request_submitted=gate.notify,
    )
    controller = FleetController(
        machine=machine,
        source=build_desired_source(settings, store),
        store=store,
        tracker=tracker,
        max_concurrency=settings.max_concurrency,
        resync_interval=settings.resync_interval_seconds,
        policy=policy,
    )

    logger.info(
        "winfleet %s (%s) managing namespace %s",
        settings.build_version,
        settings.build_commit,
        settings.namespace,
    )
    await asyncio.gather(
        controller.run(stop),
        gate.run(stop, settings.csr_watch_interval_seconds),
    )


async def _main() -> None:
    configure_logging()
    settings = FleetSettings()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)
    await run_daemon(settings, stop)
    logger.info("Daemon stopped.")


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
