"""
winfleet/utils/ssh.py

RemoteExecutionTransport over the OpenSSH server that ships with Windows Server,
using the local `ssh` and `scp` binaries with ephemeral known_hosts and private
key files. This includes:
  - ssh_get_server_key: minimal handshake to retrieve the server host key (TOFU).
  - SSHTransport.connect: TOFU + a check command, so an unreachable instance
    surfaces as RemoteConnectionError before any step runs.
  - SSHTransport.run_command: PowerShell via -EncodedCommand, so no quoting
    survives the trip through cmd.exe.
  - SSHTransport.copy_file: scp to a forward-slash Windows path.

ssh exits with 255 on connection errors, which we map to RemoteConnectionError;
any other exit code is the remote command's own.
"""

from __future__ import annotations

import base64
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Tuple

import aiofiles
import aiofiles.ospath

from winfleet.fleet.errors import RemoteCommandError, RemoteConnectionError
from winfleet.fleet.interfaces import CommandResult, RemoteExecutionTransport, Session
from winfleet.models.ssh import InstanceCredentials, SSHConfig
from winfleet.utils.async_command_runner import CommandError, run_process
from winfleet.utils.ephemeral_file import ephemeral_file

logger = logging.getLogger(__name__)

SSH_CONNECTION_ERROR = 255

_SCP_CONNECTION_MARKERS = (
    "Connection refused",
    "Connection timed out",
    "Connection closed",
    "No route to host",
    "Could not resolve hostname",
    "lost connection",
)


def encode_powershell(script: str) -> str:
    """Encode a script for `powershell.exe -EncodedCommand` (base64 of UTF-16LE)."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


class SSHSession(Session):
    """A session is the verified SSHConfig; ssh itself is connectionless per command."""

    def __init__(self, config: SSHConfig) -> None:
        super().__init__(config.hostname)
        self.config = config


def _base_options(key_path: str, kh_path: str, strict: str) -> List[str]:
    return [
        "-i",
        key_path,
        "-o",
        "BatchMode=yes",
        "-o",
        "ConnectTimeout=15",
        "-o",
        f"StrictHostKeyChecking={strict}",
        "-o",
        f"UserKnownHostsFile={kh_path}",
        "-o",
        "GlobalKnownHostsFile=/dev/null",
    ]


@asynccontextmanager
async def _ssh_files(cfg: SSHConfig) -> AsyncGenerator[Tuple[str, str], None]:
    """Yield (private key path, known_hosts path) for the duration of one command."""
    # OpenSSH rejects key files without a trailing newline
    key = cfg.private_key if cfg.private_key.endswith("\n") else cfg.private_key + "\n"
    async with ephemeral_file("ssh_idkey", content=key, prefix="sshpk-") as pk_path:
        known_hosts = "".join(line + "\n" for line in (cfg.host_keys or []))
        async with ephemeral_file(
            "ssh_known_hosts", content=known_hosts, prefix="sshkh-"
        ) as kh_path:
            yield pk_path, kh_path


async def ssh_get_server_key(cfg: SSHConfig) -> List[str]:
    """
    Perform a minimal SSH handshake with StrictHostKeyChecking=accept-new
    to retrieve the server's host key lines (TOFU).

    Returns:
      A list of lines from ephemeral known_hosts (the server's keys).

    Raises:
      RemoteConnectionError: if the handshake fails or no host keys were recorded.
    """
    async with _ssh_files(cfg.model_copy(update={"host_keys": []})) as (pk_path, kh_path):
        ssh_cmd = (
            ["ssh", "-p", str(cfg.port)]
            + _base_options(pk_path, kh_path, "accept-new")
            + [f"{cfg.user}@{cfg.hostname}", "exit", "0"]
        )
        try:
            result = await run_process(ssh_cmd)
        except CommandError as ex:
            raise RemoteConnectionError(str(ex)) from ex
        if result.return_code != 0:
            raise RemoteConnectionError(
                f"SSH handshake with {cfg.hostname} failed (exit {result.return_code})"
            )

        lines: List[str] = []
        if await aiofiles.ospath.exists(kh_path):
            async with aiofiles.open(kh_path, "r", encoding="utf-8") as fkh:
                content = await fkh.readlines()
                lines = [ln.strip() for ln in content if ln.strip()]

        if not lines:
            raise RemoteConnectionError(
                f"SSH handshake with {cfg.hostname} recorded no host keys."
            )
        return lines


class SSHTransport(RemoteExecutionTransport):
    """Runs PowerShell on Windows instances through OpenSSH."""

    def __init__(self, port: int = 22) -> None:
        self.port = port

    async def connect(self, address: str, credentials: InstanceCredentials) -> Session:
        cfg = SSHConfig(
            user=credentials.user,
            hostname=address,
            port=self.port,
            private_key=credentials.private_key,
        )
        cfg.host_keys = await ssh_get_server_key(cfg)
        session = SSHSession(cfg)
        check = await self.run_command(session, "$PSVersionTable.PSVersion.Major")
        if not check.ok:
            raise RemoteConnectionError(
                f"PowerShell unavailable on {address} (exit {check.exit_code})"
            )
        logger.debug("Connected to %s as %s", address, credentials.user)
        return session

    async def run_command(self, session: Session, cmd: str) -> CommandResult:
        cfg = _config_of(session)
        async with _ssh_files(cfg) as (pk_path, kh_path):
            ssh_cmd = (
                ["ssh", "-p", str(cfg.port)]
                + _base_options(pk_path, kh_path, "yes")
                + [
                    f"{cfg.user}@{cfg.hostname}",
                    "powershell.exe",
                    "-NoProfile",
                    "-NonInteractive",
                    "-EncodedCommand",
                    encode_powershell(cmd),
                ]
            )
            try:
                result = await run_process(ssh_cmd)
            except CommandError as ex:
                raise RemoteConnectionError(str(ex)) from ex

        if result.return_code == SSH_CONNECTION_ERROR:
            raise RemoteConnectionError(
                f"SSH connection to {cfg.hostname} failed: {result.stderr}"
            )
        output = result.stdout if result.return_code == 0 else f"{result.stdout}\n{result.stderr}"
        return CommandResult(exit_code=result.return_code, output=output.strip())

    async def copy_file(self, session: Session, src: str, dst: str) -> None:
        cfg = _config_of(session)
        remote = dst.replace("\\", "/")
        async with _ssh_files(cfg) as (pk_path, kh_path):
            scp_cmd = (
                ["scp", "-q", "-P", str(cfg.port)]
                + _base_options(pk_path, kh_path, "yes")
                + [src, f"{cfg.user}@{cfg.hostname}:{remote}"]
            )
            try:
                result = await run_process(scp_cmd)
            except CommandError as ex:
                raise RemoteConnectionError(str(ex)) from ex

        if result.return_code == 0:
            return
        if result.return_code == SSH_CONNECTION_ERROR or any(
            marker in result.stderr for marker in _SCP_CONNECTION_MARKERS
        ):
            raise RemoteConnectionError(
                f"scp to {cfg.hostname} failed: {result.stderr}"
            )
        raise RemoteCommandError(
            f"scp of {src} to {cfg.hostname}:{remote} failed",
            result.return_code,
            result.stderr,
        )


def _config_of(session: Session) -> SSHConfig:
    if not isinstance(session, SSHSession):
        raise TypeError(f"SSHTransport cannot use session of type {type(session).__name__}")
    if not session.config.host_keys:
        raise RemoteConnectionError("SSH session has no verified host keys.")
    return session.config
