"""
winfleet/fleet/csr_gate.py

The certificate approval gate. Node certificates are approved only when the
request is for a node identity this controller is currently bootstrapping,
under the exact request id that instance submitted. Everything else is denied.

Decisions are applied to the certificate authority exactly once; a request
whose instance has not yet recorded its request id is deferred, not denied.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from winfleet.fleet.errors import SourceUnavailableError, TransientError
from winfleet.fleet.interfaces import CertificateAuthorityAPI, RecordStore
from winfleet.models.csr import (
    ALLOWED_NODE_USAGES,
    AUTHENTICATED_GROUP,
    NODES_GROUP,
    CertificateRequest,
    CSRDecision,
)
from winfleet.models.instance import (
    NODE_IDENTITY_PREFIX,
    BootstrapState,
    InstanceRecord,
    is_dns1123_name,
)
from winfleet.utils.async_command_runner import CommandError
from winfleet.utils.waiting import wait_any

logger = logging.getLogger(__name__)

NODE_GROUPS = frozenset({NODES_GROUP, AUTHENTICATED_GROUP})
AUTH_USAGES = frozenset({"client auth", "server auth"})


def check_identity_claim(request: CertificateRequest) -> Optional[str]:
    """Reason the identity claim is unacceptable, or None."""
    if not request.requester.startswith(NODE_IDENTITY_PREFIX):
        return f"requester '{request.requester}' is not a node identity"
    node_name = request.requester[len(NODE_IDENTITY_PREFIX):]
    if not is_dns1123_name(node_name):
        return f"node name '{node_name}' is not a valid DNS-1123 name"
    if NODES_GROUP not in request.groups:
        return f"groups {request.groups} do not include {NODES_GROUP}"
    extra = sorted(set(request.groups) - NODE_GROUPS)
    if extra:
        return f"groups {extra} are not node groups"
    return None


def check_usages(request: CertificateRequest) -> Optional[str]:
    """Reason the requested usages are unacceptable, or None."""
    usages = set(request.usages)
    if not usages:
        return "no usages requested"
    extra = sorted(usages - ALLOWED_NODE_USAGES)
    if extra:
        return f"usages {extra} are not allowed for nodes"
    if not usages & AUTH_USAGES:
        return "usages include neither client auth nor server auth"
    return None


def check_pending_record(
    request: CertificateRequest, records: List[InstanceRecord]
) -> Optional[str]:
    """Reason no bootstrapping record vouches for the request, or None."""
    matching = [r for r in records if r.identity == request.requester]
    if not matching:
        return f"no instance record for {request.requester}"
    if not any(r.state == BootstrapState.AWAITING_IDENTITY for r in matching):
        states = ", ".join(r.state.value for r in matching)
        return f"instance for {request.requester} is not awaiting an identity ({states})"
    if not any(
        r.state == BootstrapState.AWAITING_IDENTITY and r.csr_request_id == request.request_id
        for r in matching
    ):
        return f"request id {request.request_id} is not the one recorded for {request.requester}"
    return None


def evaluate(
    request: CertificateRequest, records: List[InstanceRecord]
) -> Tuple[CSRDecision, Optional[str]]:
    """
    Apply the approval policy to one request.

    Args:
        request: The certificate request.
        records: Every instance record currently known.

    Returns:
        (decision, reason): reason is None for Approved, the first failed check otherwise.
    """
    for reason in (
        check_identity_claim(request),
        check_usages(request),
        check_pending_record(request, records),
    ):
        if reason is not None:
            return CSRDecision.DENIED, reason
    return CSRDecision.APPROVED, None


class CertificateApprovalGate:
    """Watches certificate requests and decides node requests exactly once."""

    def __init__(self, ca: CertificateAuthorityAPI, store: RecordStore) -> None:
        self.ca = ca
        self.store = store
        self._decided: Dict[str, CSRDecision] = {}
        self._wakeup = asyncio.Event()

    def notify(self) -> None:
        """Wake the watch loop, e.g. right after a request was submitted."""
        self._wakeup.set()

    def decision_for(self, request_id: str) -> Optional[CSRDecision]:
        return self._decided.get(request_id)

    async def decide(
        self,
        request: CertificateRequest,
        records: Optional[List[InstanceRecord]] = None,
    ) -> CSRDecision:
        """
        Decide a request and apply the decision to the certificate authority.
        Deciding an already decided request is a no-op returning the same decision.
        """
        if request.request_id in self._decided:
            return self._decided[request.request_id]
        if records is None:
            records = await self.store.list()

        decision, reason = evaluate(request, records)
        if decision == CSRDecision.APPROVED:
            await self.ca.approve(request.request_id)
            logger.info("Approved CSR %s for %s", request.request_id, request.requester)
        else:
            await self.ca.deny(request.request_id)
            logger.warning(
                "Denied CSR %s for '%s': %s", request.request_id, request.requester, reason
            )
        self._decided[request.request_id] = decision
        return decision

    @staticmethod
    def is_decidable(request: CertificateRequest, records: List[InstanceRecord]) -> bool:
        """
        False while a bootstrapping instance with this identity has not yet
        recorded which request is its own.
        """
        return not any(
            r.identity == request.requester
            and r.state == BootstrapState.AWAITING_IDENTITY
            and r.csr_request_id is None
            for r in records
        )

    async def watch_once(self) -> Dict[str, CSRDecision]:
        """
        Decide every pending request that can be decided now.

        Returns:
            Decisions made during this pass, keyed by request id.

        Raises:
            SourceUnavailableError: If requests or records cannot be listed.
        """
        try:
            requests = await self.ca.list_requests()
        except (CommandError, TransientError) as ex:
            raise SourceUnavailableError(f"Cannot list certificate requests: {ex}") from ex
        records = await self.store.list()

        made: Dict[str, CSRDecision] = {}
        for request in sorted(requests, key=lambda r: (r.submitted_at, r.request_id)):
            if request.request_id in self._decided:
                continue
            if request.decision != CSRDecision.PENDING:
                self._decided[request.request_id] = request.decision
                continue
            if not self.is_decidable(request, records):
                logger.debug("Deferring CSR %s for %s", request.request_id, request.requester)
                continue
            try:
                made[request.request_id] = await self.decide(request, records)
            except (CommandError, TransientError) as ex:
                logger.warning("Could not apply decision for CSR %s: %s", request.request_id, ex)
        return made

    async def run(self, stop: asyncio.Event, interval: float) -> None:
        """Poll until `stop` is set; `notify()` triggers an early pass."""
        logger.info("Certificate approval gate started (interval=%ss)", interval)
        while not stop.is_set():
            self._wakeup.clear()
            try:
                await self.watch_once()
            except SourceUnavailableError as ex:
                logger.warning("Certificate gate pass skipped: %s", ex)
            await wait_any([stop, self._wakeup], interval)
        logger.info("Certificate approval gate stopped")
