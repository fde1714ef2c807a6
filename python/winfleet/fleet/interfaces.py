"""
winfleet/fleet/interfaces.py

Abstract collaborators the reconciliation core talks to. Production
implementations shell out to `ssh`/`scp`/`kubectl`; tests substitute in-memory
doubles.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from winfleet.models.csr import CertificateRequest, CSRDecision, IssuedIdentity
from winfleet.models.instance import DesiredInstanceSpec, InstanceRecord
from winfleet.models.network import ClusterNetworkConfig
from winfleet.models.ssh import InstanceCredentials


class NodeStatus(str, Enum):
    READY = "Ready"
    NOT_READY = "NotReady"
    ABSENT = "Absent"


class CommandResult(BaseModel):
    """Exit code and combined output of a remote command."""

    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Session:
    """An established remote session to one instance."""

    def __init__(self, address: str) -> None:
        self.address = address


class RemoteExecutionTransport(ABC):
    """Remote command execution and file copy on an instance."""

    @abstractmethod
    async def connect(self, address: str, credentials: InstanceCredentials) -> Session:
        """
        Open a session.

        Raises:
            RemoteConnectionError: If the instance cannot be reached or refuses the session.
        """

    @abstractmethod
    async def copy_file(self, session: Session, src: str, dst: str) -> None:
        """
        Copy local file `src` to remote path `dst`.

        Raises:
            RemoteConnectionError: On connection loss.
            RemoteCommandError: If the copy itself fails.
        """

    @abstractmethod
    async def run_command(self, session: Session, cmd: str) -> CommandResult:
        """
        Run a PowerShell script on the instance. Non-zero exit codes are returned,
        not raised.

        Raises:
            RemoteConnectionError: On connection loss.
        """

    async def close(self, session: Session) -> None:
        """Release a session. Stateless transports need not override this."""


class CertificateAuthorityAPI(ABC):
    """Cluster certificate signing."""

    @abstractmethod
    async def submit_request(self, identity: str, usage: List[str]) -> str:
        """Submit a CSR for `identity` and return its request id."""

    @abstractmethod
    async def get_status(self, request_id: str) -> CSRDecision:
        """Return the current decision; an unknown request is reported as Denied."""

    @abstractmethod
    async def approve(self, request_id: str) -> None:
        pass

    @abstractmethod
    async def deny(self, request_id: str) -> None:
        pass

    @abstractmethod
    async def list_requests(self) -> List[CertificateRequest]:
        """All requests currently known to the cluster, decided or not."""

    @abstractmethod
    async def get_issued_identity(self, request_id: str) -> Optional[IssuedIdentity]:
        """Certificate and key for an approved request, None until issued."""

    @abstractmethod
    async def release_request(self, request_id: str) -> None:
        """
        Forget the private key held for `request_id` once it is installed or the
        request is abandoned. Releasing an unknown request is not an error.
        """


class ClusterMembershipAPI(ABC):
    """Node objects in the cluster."""

    @abstractmethod
    async def get_node_status(self, node_name: str) -> NodeStatus:
        pass

    @abstractmethod
    async def set_schedulable(self, node_name: str, schedulable: bool) -> None:
        """Cordon or uncordon the node. A missing node is not an error."""

    @abstractmethod
    async def delete_node(self, node_name: str) -> None:
        """Delete the Node object. A missing node is not an error."""


class InstanceLifecycleAPI(ABC):
    """Owner of the underlying virtual machines."""

    @abstractmethod
    async def terminate(self, instance_id: str) -> None:
        """Signal that the instance may be torn down. Only called after Removed."""


class CredentialSource(ABC):
    """Where the credentials for reaching instances come from."""

    @abstractmethod
    async def load(self) -> InstanceCredentials:
        """
        Raises:
            SourceUnavailableError: While no usable credentials are available.
        """


class DesiredStateSource(ABC):
    """Where the desired instance set comes from."""

    @abstractmethod
    async def list_desired(self) -> List[DesiredInstanceSpec]:
        """
        Raises:
            SourceUnavailableError: If the desired set cannot be read.
        """


class ClusterNetworkSource(ABC):
    """Where the active cluster network configuration comes from."""

    @abstractmethod
    async def get_network_config(self) -> ClusterNetworkConfig:
        """
        Raises:
            SourceUnavailableError: If the configuration cannot be read.
        """


class RecordStore(ABC):
    """
    Persistence for InstanceRecords. Implementations should expose each record's
    state and fingerprint where operators can see them.
    """

    @abstractmethod
    async def get(self, instance_id: str) -> Optional[InstanceRecord]:
        pass

    @abstractmethod
    async def list(self) -> List[InstanceRecord]:
        """
        Raises:
            SourceUnavailableError: If records cannot be read.
        """

    @abstractmethod
    async def save(self, record: InstanceRecord) -> None:
        pass

    @abstractmethod
    async def delete(self, instance_id: str) -> None:
        """Delete a record; deleting a missing record is a no-op."""
