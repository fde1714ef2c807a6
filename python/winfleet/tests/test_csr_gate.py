import asyncio
import random

import pytest

from winfleet.fleet.csr_gate import CertificateApprovalGate, evaluate
from winfleet.models.csr import CertificateRequest, CSRDecision
from winfleet.models.instance import BootstrapState, InstanceRecord
from winfleet.services.records import MemoryRecordStore
from winfleet.tests.fakes import FakeCertificateAuthority

CLIENT_USAGES = ["digital signature", "key encipherment", "client auth"]


def awaiting(node: str, request_id=None, state=BootstrapState.AWAITING_IDENTITY) -> InstanceRecord:
    return InstanceRecord(
        instance_id=node.upper(),
        address="10.0.0.1",
        node_name=node,
        state=state,
        csr_request_id=request_id,
    )


def request(requester="system:node:win-1", groups=None, usages=None, request_id="csr-1"):
    return CertificateRequest(
        request_id=request_id,
        requester=requester,
        groups=["system:nodes", "system:authenticated"] if groups is None else groups,
        usages=CLIENT_USAGES if usages is None else usages,
    )


def test_recorded_request_of_bootstrapping_node_approved():
    decision, reason = evaluate(request(), [awaiting("win-1", "csr-1")])
    assert decision == CSRDecision.APPROVED
    assert reason is None


@pytest.mark.parametrize(
    "req, records",
    [
        (request(requester="win-1"), [awaiting("win-1", "csr-1")]),
        (request(requester="system:node:Win_1"), [awaiting("win-1", "csr-1")]),
        (request(groups=["system:authenticated"]), [awaiting("win-1", "csr-1")]),
        (request(groups=["system:nodes", "system:masters"]), [awaiting("win-1", "csr-1")]),
        (request(usages=[]), [awaiting("win-1", "csr-1")]),
        (request(usages=["digital signature", "code signing", "client auth"]), [awaiting("win-1", "csr-1")]),
        (request(usages=["digital signature", "key encipherment"]), [awaiting("win-1", "csr-1")]),
        (request(), []),
        (request(), [awaiting("win-2", "csr-1")]),
        (request(), [awaiting("win-1", "csr-1", state=BootstrapState.READY)]),
        (request(), [awaiting("win-1", "csr-9")]),
    ],
)
def test_everything_else_denied(req, records):
    decision, reason = evaluate(req, records)
    assert decision == CSRDecision.DENIED
    assert reason


@pytest.mark.asyncio
async def test_watch_once_decides_exactly_once():
    ca = FakeCertificateAuthority()
    store = MemoryRecordStore()
    gate = CertificateApprovalGate(ca, store)
    request_id = await ca.submit_request("system:node:win-1", CLIENT_USAGES)
    await store.save(awaiting("win-1", request_id))

    assert await gate.watch_once() == {request_id: CSRDecision.APPROVED}
    assert await gate.watch_once() == {}
    assert await gate.decide(ca.requests[request_id]) == CSRDecision.APPROVED
    assert ca.approved == [request_id]
    assert ca.denied == []


@pytest.mark.asyncio
async def test_request_deferred_until_its_id_is_recorded():
    ca = FakeCertificateAuthority()
    store = MemoryRecordStore()
    gate = CertificateApprovalGate(ca, store)
    await store.save(awaiting("win-1", None))
    request_id = await ca.submit_request("system:node:win-1", CLIENT_USAGES)

    assert await gate.watch_once() == {}
    assert gate.decision_for(request_id) is None

    await store.save(awaiting("win-1", request_id))
    assert await gate.watch_once() == {request_id: CSRDecision.APPROVED}


@pytest.mark.asyncio
async def test_requests_decided_elsewhere_are_left_alone():
    ca = FakeCertificateAuthority()
    gate = CertificateApprovalGate(ca, MemoryRecordStore())
    injected = ca.inject("system:node:win-1")
    await ca.approve(injected.request_id)
    ca.approved.clear()

    assert await gate.watch_once() == {}
    assert ca.approved == [] and ca.denied == []
    assert gate.decision_for(injected.request_id) == CSRDecision.APPROVED


@pytest.mark.asyncio
async def test_malicious_request_for_bootstrapping_identity_denied():
    ca = FakeCertificateAuthority()
    store = MemoryRecordStore()
    gate = CertificateApprovalGate(ca, store)
    legit = await ca.submit_request("system:node:win-1", CLIENT_USAGES)
    await store.save(awaiting("win-1", legit))
    forged = ca.inject("system:node:win-1", request_id="csr-forged")

    decisions = await gate.watch_once()

    assert decisions == {legit: CSRDecision.APPROVED, forged.request_id: CSRDecision.DENIED}
    assert ca.denied == ["csr-forged"]


@pytest.mark.asyncio
async def test_gate_safety_under_random_requests():
    rng = random.Random(1234)
    ca = FakeCertificateAuthority()
    store = MemoryRecordStore()
    gate = CertificateApprovalGate(ca, store)

    legitimate = set()
    for n in range(5):
        node = f"win-{n}"
        if n % 2 == 0:
            request_id = await ca.submit_request(f"system:node:{node}", CLIENT_USAGES)
            legitimate.add(request_id)
            await store.save(awaiting(node, request_id))
        else:
            await store.save(awaiting(node, f"csr-unseen-{n}", state=BootstrapState.READY))

    requesters = [f"system:node:win-{n}" for n in range(8)] + ["system:admin", "system:node:", "win-1"]
    group_choices = [["system:nodes"], ["system:nodes", "system:masters"], [], ["system:authenticated"]]
    usage_choices = [CLIENT_USAGES, ["server auth"], ["code signing"], [], ["client auth", "cert sign"]]
    for i in range(200):
        ca.inject(
            rng.choice(requesters),
            groups=rng.choice(group_choices),
            usages=rng.choice(usage_choices),
            request_id=rng.choice([f"csr-r{i}", f"csr-{rng.randint(1, 5)}x"]),
        )

    for _ in range(3):
        await gate.watch_once()

    assert set(ca.approved) == legitimate
    assert len(ca.approved) == len(set(ca.approved))
    assert len(ca.denied) == len(set(ca.denied))
    assert all(r.decision != CSRDecision.PENDING for r in ca.requests.values())


@pytest.mark.asyncio
async def test_run_loop_stops():
    ca = FakeCertificateAuthority()
    store = MemoryRecordStore()
    gate = CertificateApprovalGate(ca, store)
    request_id = await ca.submit_request("system:node:win-1", CLIENT_USAGES)
    await store.save(awaiting("win-1", request_id))

    stop = asyncio.Event()
    task = asyncio.ensure_future(gate.run(stop, interval=0.01))
    for _ in range(100):
        if ca.approved:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1.0)
    assert ca.approved == [request_id]
