"""
winfleet/fleet/bootstrap.py

The per-instance bootstrap state machine.

Forward path:
    Unconfigured -> Connecting -> StagingPayload -> ConfiguringNetwork
      -> AwaitingIdentity -> ActivatingServices -> Ready
Reverse path:
    (any) -> Deconfiguring -> Removed -> (Unconfigured for reconfigure | deleted)

`advance()` performs exactly one step and persists the result. Every step is
idempotent: remote effects are checked before they are applied, so replaying a
step after a crash or a lost connection converges on the same host state.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

import aiofiles

from winfleet.fleet.errors import (
    BootstrapError,
    ConfigurationError,
    RemoteConnectionError,
    SecurityError,
    SourceUnavailableError,
    TransientError,
)
from winfleet.fleet.interfaces import (
    CertificateAuthorityAPI,
    ClusterMembershipAPI,
    CredentialSource,
    InstanceLifecycleAPI,
    NodeStatus,
    RecordStore,
    RemoteExecutionTransport,
    Session,
)
from winfleet.fleet.version import ConfigurationVersionTracker
from winfleet.models.csr import NODE_CLIENT_USAGES, CSRDecision
from winfleet.models.instance import PINNED_STATES, BootstrapState, InstanceRecord, Operation
from winfleet.models.payload import CNI_TEMPLATE
from winfleet.models.settings import FleetSettings
from winfleet.models.ssh import InstanceCredentials
from winfleet.services.network import PLUGINS, NetworkPlugin, hns_module_path, render_cni_config, select_plugin
from winfleet.services.node import (
    KUBE_PROXY_SERVICE,
    KUBELET_SERVICE,
    RemoteLayout,
    kube_proxy_command_line,
    kubelet_command_line,
    render_kubeconfig,
)
from winfleet.utils.backoff import BackoffPolicy
from winfleet.utils.windows import WindowsHost

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class PayloadMismatchError(TransientError):
    """A staged file still does not match its expected checksum after copying."""


class StepTimeoutError(TransientError):
    """A polled step ran out of time. Fails the record at once, retryable later."""


class BootstrapStateMachine:
    """
    Drives one InstanceRecord at a time through bootstrap and teardown.

    The machine itself holds no per-instance state other than cached remote
    sessions; everything needed to resume lives on the record.
    """

    def __init__(
        self,
        transport: RemoteExecutionTransport,
        ca: CertificateAuthorityAPI,
        membership: ClusterMembershipAPI,
        lifecycle: InstanceLifecycleAPI,
        store: RecordStore,
        tracker: ConfigurationVersionTracker,
        credentials: CredentialSource,
        settings: FleetSettings,
        policy: Optional[BackoffPolicy] = None,
        clock: Clock = time.time,
        on_request_submitted: Optional[Callable[[], None]] = None,
    ) -> None:
        self.transport = transport
        self.ca = ca
        self.membership = membership
        self.lifecycle = lifecycle
        self.store = store
        self.tracker = tracker
        self.credentials = credentials
        self.settings = settings
        self.policy = policy or BackoffPolicy.from_settings(settings)
        self.clock = clock
        self.on_request_submitted = on_request_submitted
        self.layout = RemoteLayout(root=settings.remote_dir)
        self._sessions: Dict[str, Session] = {}
        self._credentials: Optional[InstanceCredentials] = None
        self._cluster_ca: Optional[bytes] = None
        self._steps: Dict[BootstrapState, Callable[[InstanceRecord], Awaitable[InstanceRecord]]] = {
            BootstrapState.UNCONFIGURED: self._start,
            BootstrapState.CONNECTING: self._connect,
            BootstrapState.STAGING_PAYLOAD: self._stage_payload,
            BootstrapState.CONFIGURING_NETWORK: self._configure_network,
            BootstrapState.AWAITING_IDENTITY: self._await_identity,
            BootstrapState.ACTIVATING_SERVICES: self._activate_services,
            BootstrapState.DECONFIGURING: self._deconfigure,
            BootstrapState.REMOVED: self._removed,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @staticmethod
    def is_settled(record: InstanceRecord) -> bool:
        """True when advancing the record would do nothing until something external changes."""
        if record.state in (BootstrapState.READY, BootstrapState.FAILED):
            return True
        return record.state == BootstrapState.REMOVED and record.terminated

    async def advance(self, record: InstanceRecord) -> InstanceRecord:
        """
        Perform one step for `record`.

        A settled record, or one whose next attempt is not due yet, is returned
        unchanged. Step errors are recorded on the returned record and never raised.

        Args:
            record: The record to advance. It is not mutated.

        Returns:
            The updated (already persisted) record.
        """
        if self.is_settled(record):
            return record
        if record.next_attempt_at is not None and self.clock() < record.next_attempt_at:
            return record

        working = record.model_copy(deep=True)
        step = self._steps[working.state]
        try:
            if working.state in PINNED_STATES and working.building_stale(self.tracker.current_fingerprint()):
                return await self._rebuild(working)
            return await step(working)
        except BootstrapError as ex:
            return await self._on_error(working, ex)
        except SourceUnavailableError as ex:
            return await self._on_error(working, TransientError(str(ex)))

    async def begin_teardown(self, record: InstanceRecord, operation: Operation) -> InstanceRecord:
        """
        Start the reverse path. A record already tearing down only has its
        operation escalated from reconfigure to delete.
        """
        working = record.model_copy(deep=True)
        if working.state in (BootstrapState.DECONFIGURING, BootstrapState.REMOVED):
            if operation == Operation.DELETE and working.operation != Operation.DELETE:
                logger.info("[%s] teardown escalated to delete", working.instance_id)
                working.operation = Operation.DELETE
                await self.store.save(working)
            return working

        working.operation = operation
        working.non_retryable = False
        working.failed_state = None
        working.failed_fingerprint = None
        return await self._transition(working, BootstrapState.DECONFIGURING)

    async def resume(self, record: InstanceRecord) -> InstanceRecord:
        """
        Move a Failed record back to the state it failed in, with a fresh budget.
        A failure inside a forward path staged for an older configuration is
        rebuilt from scratch instead.
        """
        if record.state != BootstrapState.FAILED:
            return record
        working = record.model_copy(deep=True)
        stale = working.building_stale(self.tracker.current_fingerprint())
        target = working.failed_state or BootstrapState.UNCONFIGURED
        working.non_retryable = False
        working.failed_state = None
        working.failed_fingerprint = None
        if stale:
            return await self._rebuild(working)

        if target == BootstrapState.ACTIVATING_SERVICES and not working.services_started:
            target = BootstrapState.AWAITING_IDENTITY
        if target == BootstrapState.AWAITING_IDENTITY:
            # A timed out or denied request is never reused
            await self._release_request(working)
        logger.info("[%s] resuming at %s", working.instance_id, target.value)
        return await self._transition(working, target)

    async def refresh_credentials(self) -> InstanceCredentials:
        """
        Reload the instance credentials.

        Raises:
            SourceUnavailableError: While no credentials are available.
        """
        self._credentials = await self.credentials.load()
        return self._credentials

    async def create(self, record: InstanceRecord) -> InstanceRecord:
        """Persist a brand new record."""
        working = record.model_copy(deep=True)
        working.operation = Operation.CREATE
        now = self.clock()
        working.last_transition = now
        working.state_entered_at = now
        await self.store.save(working)
        logger.info("[%s] record created for node %s", working.instance_id, working.node_name)
        return working

    async def close(self, instance_id: str) -> None:
        """Drop the cached session for an instance, if any."""
        session = self._sessions.pop(instance_id, None)
        if session is not None:
            await self.transport.close(session)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _transition(self, record: InstanceRecord, state: BootstrapState) -> InstanceRecord:
        now = self.clock()
        logger.info("[%s] %s -> %s", record.instance_id, record.state.value, state.value)
        record.state = state
        record.last_transition = now
        record.state_entered_at = now
        record.step_attempts = 0
        record.poll_attempts = 0
        record.next_attempt_at = None
        await self.store.save(record)
        return record

    async def _wait(self, record: InstanceRecord) -> InstanceRecord:
        """
        Schedule another poll of the current step. A successful poll ends any run
        of errors, so only consecutive errors count against the step budget.
        """
        record.poll_attempts += 1
        record.step_attempts = 0
        record.next_attempt_at = self.clock() + self.policy.delay(record.poll_attempts)
        await self.store.save(record)
        return record

    async def _rebuild(self, record: InstanceRecord) -> InstanceRecord:
        """Tear down a partly built instance and start over with the current configuration."""
        logger.info("[%s] partly built for %s; rebuilding", record.instance_id, record.target_fingerprint)
        record.operation = Operation.RECONFIGURE
        return await self._transition(record, BootstrapState.DECONFIGURING)

    async def _release_request(self, record: InstanceRecord) -> None:
        if record.csr_request_id is not None:
            await self.ca.release_request(record.csr_request_id)
            record.csr_request_id = None

    async def _fail(self, record: InstanceRecord, reason: str, retryable: bool) -> InstanceRecord:
        failed_in = record.state
        record.last_error = reason
        record.failed_state = failed_in
        record.non_retryable = not retryable
        try:
            record.failed_fingerprint = self.tracker.current_fingerprint()
        except SourceUnavailableError:
            record.failed_fingerprint = None
        logger.error(
            "[%s] failed in %s (%s): %s",
            record.instance_id,
            failed_in.value,
            "retryable" if retryable else "non-retryable",
            reason,
        )
        await self._transition(record, BootstrapState.FAILED)
        if retryable:
            record.next_attempt_at = self.clock() + self.policy.delay(record.error_count)
            await self.store.save(record)
        return record

    def _budget(self, record: InstanceRecord, ex: BootstrapError) -> int:
        if record.state == BootstrapState.DECONFIGURING:
            return self.settings.max_teardown_attempts
        if isinstance(ex, PayloadMismatchError):
            return self.settings.max_staging_attempts
        return self.settings.max_connect_attempts

    async def _on_error(self, record: InstanceRecord, ex: BootstrapError) -> InstanceRecord:
        record.error_count += 1
        record.step_attempts += 1
        record.last_error = f"{type(ex).__name__}: {ex}"
        if isinstance(ex, RemoteConnectionError):
            await self.close(record.instance_id)

        if not ex.retryable:
            return await self._fail(record, record.last_error, retryable=False)
        if isinstance(ex, StepTimeoutError):
            return await self._fail(record, record.last_error, retryable=True)

        if record.step_attempts < self._budget(record, ex):
            logger.warning(
                "[%s] %s attempt %d failed: %s",
                record.instance_id,
                record.state.value,
                record.step_attempts,
                ex,
            )
            record.next_attempt_at = self.clock() + self.policy.delay(record.step_attempts)
            await self.store.save(record)
            return record

        if isinstance(ex, PayloadMismatchError):
            return await self._fail(record, f"payload verification kept failing: {ex}", retryable=False)

        if record.state == BootstrapState.DECONFIGURING and record.operation == Operation.DELETE:
            if record.remote_configured:
                logger.warning(
                    "[%s] instance unreachable during teardown; cleaning up cluster side only",
                    record.instance_id,
                )
                record.remote_configured = False
                record.services_started = False
                record.step_attempts = 0
                record.next_attempt_at = None
                await self.store.save(record)
                return record

        return await self._fail(record, record.last_error, retryable=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _host(self, record: InstanceRecord) -> WindowsHost:
        session = self._sessions.get(record.instance_id)
        if session is None:
            credentials = self._credentials or await self.refresh_credentials()
            session = await self.transport.connect(record.address, credentials)
            self._sessions[record.instance_id] = session
        return WindowsHost(self.transport, session)

    async def _cluster_ca_bundle(self) -> bytes:
        if self._cluster_ca is None:
            try:
                async with aiofiles.open(self.settings.cluster_ca_path, "rb") as f:
                    self._cluster_ca = await f.read()
            except OSError as ex:
                raise ConfigurationError(
                    f"Cannot read cluster CA bundle '{self.settings.cluster_ca_path}': {ex}"
                ) from ex
        return self._cluster_ca

    def _teardown_plugins(self) -> List[NetworkPlugin]:
        try:
            return [select_plugin(self.tracker.network_config())]
        except (ConfigurationError, SourceUnavailableError):
            # Cannot tell which plugin was installed; clean up after all of them
            return list(PLUGINS.values())

    # ------------------------------------------------------------------
    # Forward steps
    # ------------------------------------------------------------------

    async def _start(self, record: InstanceRecord) -> InstanceRecord:
        return await self._transition(record, BootstrapState.CONNECTING)

    async def _connect(self, record: InstanceRecord) -> InstanceRecord:
        await self._host(record)
        return await self._transition(record, BootstrapState.STAGING_PAYLOAD)

    async def _stage_payload(self, record: InstanceRecord) -> InstanceRecord:
        host = await self._host(record)
        record.target_fingerprint = self.tracker.current_fingerprint()
        manifest = self.tracker.expected_payload()
        mismatched: List[str] = []
        copied = 0
        for rel, payload_file in sorted(manifest.files.items()):
            remote_path = self.layout.payload(rel)
            if await host.file_sha256(remote_path) == payload_file.sha256:
                continue
            if not record.remote_configured:
                record.remote_configured = True
                await self.store.save(record)
            await host.copy_file(payload_file.local_path, remote_path)
            copied += 1
            if await host.file_sha256(remote_path) != payload_file.sha256:
                mismatched.append(rel)

        if mismatched:
            raise PayloadMismatchError(f"checksum mismatch after copy: {', '.join(mismatched)}")
        logger.info("[%s] payload staged (%d of %d files copied)", record.instance_id, copied, len(manifest.files))
        return await self._transition(record, BootstrapState.CONFIGURING_NETWORK)

    async def _configure_network(self, record: InstanceRecord) -> InstanceRecord:
        network = self.tracker.network_config()
        plugin = select_plugin(network)
        host = await self._host(record)

        template_path = self.tracker.expected_payload().get(CNI_TEMPLATE).local_path
        async with aiofiles.open(template_path, "r") as f:
            template = await f.read()
        cni_config = render_cni_config(template, plugin, network)

        record.remote_configured = True
        if await host.write_file(self.layout.cni_config, cni_config.encode("utf-8")):
            logger.info("[%s] wrote CNI config for %s", record.instance_id, plugin.mode)
        kubeconfig = render_kubeconfig(self.settings.api_server_url, self.layout, record.node_name)
        await host.write_file(self.layout.kubeconfig, kubeconfig.encode("utf-8"))

        await host.ensure_service(
            plugin.service_name,
            plugin.service_command_line(self.layout.root, record.node_name, self.layout.kubeconfig, network),
        )
        await host.ensure_running(plugin.service_name)
        return await self._transition(record, BootstrapState.AWAITING_IDENTITY)

    async def _await_identity(self, record: InstanceRecord) -> InstanceRecord:
        if record.csr_request_id is None:
            record.csr_request_id = await self.ca.submit_request(record.identity, list(NODE_CLIENT_USAGES))
            await self.store.save(record)
            if self.on_request_submitted is not None:
                self.on_request_submitted()
            return record

        decision = await self.ca.get_status(record.csr_request_id)
        if decision == CSRDecision.APPROVED:
            return await self._transition(record, BootstrapState.ACTIVATING_SERVICES)
        if decision == CSRDecision.DENIED:
            raise SecurityError(f"certificate request {record.csr_request_id} was denied")

        if self.clock() - record.state_entered_at >= self.settings.identity_timeout_seconds:
            raise StepTimeoutError(
                f"no decision on certificate request {record.csr_request_id} "
                f"after {self.settings.identity_timeout_seconds:.0f}s"
            )
        return await self._wait(record)

    async def _activate_services(self, record: InstanceRecord) -> InstanceRecord:
        if not record.services_started:
            if record.csr_request_id is None:
                return await self._transition(record, BootstrapState.AWAITING_IDENTITY)
            issued = await self.ca.get_issued_identity(record.csr_request_id)
            if issued is None:
                return await self._await_readiness(record, "certificate not issued yet")

            host = await self._host(record)
            await host.write_file(self.layout.client_cert, issued.certificate_pem.encode("ascii"))
            await host.write_file(self.layout.client_key, issued.private_key_pem.encode("ascii"))
            await host.write_file(self.layout.ca_bundle, await self._cluster_ca_bundle())

            network = self.tracker.network_config()
            plugin = select_plugin(network)
            await host.ensure_service(
                KUBELET_SERVICE, kubelet_command_line(self.layout, record.node_name, record.address)
            )
            await host.ensure_running(KUBELET_SERVICE)
            await host.ensure_service(
                KUBE_PROXY_SERVICE,
                kube_proxy_command_line(self.layout, record.node_name, plugin, network),
            )
            await host.ensure_running(KUBE_PROXY_SERVICE)
            record.services_started = True
            await self.store.save(record)
        if record.csr_request_id is not None:
            # The key now lives on the host only
            await self._release_request(record)
            await self.store.save(record)

        status = await self.membership.get_node_status(record.node_name)
        if status != NodeStatus.READY:
            return await self._await_readiness(record, f"node is {status.value}")

        if record.target_fingerprint != self.tracker.current_fingerprint():
            return await self._rebuild(record)
        await self.membership.set_schedulable(record.node_name, True)
        record.fingerprint = record.target_fingerprint
        record.last_error = None
        logger.info("[%s] node %s is Ready at %s", record.instance_id, record.node_name, record.fingerprint)
        return await self._transition(record, BootstrapState.READY)

    async def _await_readiness(self, record: InstanceRecord, why: str) -> InstanceRecord:
        if self.clock() - record.state_entered_at >= self.settings.readiness_timeout_seconds:
            raise StepTimeoutError(
                f"node not ready after {self.settings.readiness_timeout_seconds:.0f}s: {why}"
            )
        return await self._wait(record)

    # ------------------------------------------------------------------
    # Reverse steps
    # ------------------------------------------------------------------

    async def _deconfigure(self, record: InstanceRecord) -> InstanceRecord:
        await self.membership.set_schedulable(record.node_name, False)

        if record.remote_configured:
            host = await self._host(record)
            plugins = self._teardown_plugins()
            for service in [KUBE_PROXY_SERVICE, KUBELET_SERVICE] + [p.service_name for p in plugins]:
                await host.remove_service(service)
            await host.remove_file(self.layout.cni_config)
            for plugin in plugins:
                await host.remove_hns_network(plugin.hns_network, hns_module_path(self.layout.root))
            for path in (self.layout.client_cert, self.layout.client_key, self.layout.kubeconfig):
                await host.remove_file(path)
        await self._release_request(record)
        record.services_started = False

        if record.operation == Operation.DELETE:
            await self.membership.delete_node(record.node_name)
        await self.close(record.instance_id)
        return await self._transition(record, BootstrapState.REMOVED)

    async def _removed(self, record: InstanceRecord) -> InstanceRecord:
        if record.operation == Operation.RECONFIGURE:
            record.fingerprint = None
            record.target_fingerprint = None
            record.services_started = False
            return await self._transition(record, BootstrapState.UNCONFIGURED)

        if not record.terminated:
            await self.lifecycle.terminate(record.instance_id)
            record.terminated = True
            await self.store.save(record)
            logger.info("[%s] instance released for termination", record.instance_id)
        await self.store.delete(record.instance_id)
        logger.info("[%s] record deleted", record.instance_id)
        return record
