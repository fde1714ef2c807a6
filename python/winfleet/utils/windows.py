"""
winfleet/utils/windows.py

Idempotent Windows host operations expressed as PowerShell and executed through a
RemoteExecutionTransport session. Every mutating helper checks whether its effect
already holds before acting:
  - file_sha256 / write_file / copy_file / remove_file
  - service_status / ensure_service / ensure_running / remove_service
  - remove_hns_network
"""

from __future__ import annotations

import base64
import hashlib
import logging
from typing import Optional

from winfleet.fleet.errors import RemoteCommandError
from winfleet.fleet.interfaces import CommandResult, RemoteExecutionTransport, Session

logger = logging.getLogger(__name__)

MISSING = "MISSING"
RUNNING = "Running"


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted literal."""
    return "'" + value.replace("'", "''") + "'"


def win_join(*parts: str) -> str:
    """Join Windows path components, accepting POSIX-style relative parts."""
    cleaned = [p.replace("/", "\\").strip("\\") for p in parts if p]
    head = parts[0].replace("/", "\\").rstrip("\\") if parts else ""
    return "\\".join([head] + cleaned[1:])


def win_dirname(path: str) -> str:
    return path.rsplit("\\", 1)[0] if "\\" in path else path


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_hash_script(path: str) -> str:
    q = ps_quote(path)
    return (
        f"if (Test-Path -LiteralPath {q}) "
        f"{{ (Get-FileHash -Algorithm SHA256 -LiteralPath {q}).Hash }} "
        f"else {{ '{MISSING}' }}"
    )


def ensure_dir_script(path: str) -> str:
    return f"New-Item -ItemType Directory -Force -Path {ps_quote(path)} | Out-Null"


def write_file_script(path: str, content: bytes) -> str:
    b64 = base64.b64encode(content).decode("ascii")
    return (
        f"{ensure_dir_script(win_dirname(path))}; "
        f"[IO.File]::WriteAllBytes({ps_quote(path)}, [Convert]::FromBase64String('{b64}'))"
    )


def remove_file_script(path: str) -> str:
    return f"Remove-Item -LiteralPath {ps_quote(path)} -Force -ErrorAction SilentlyContinue"


def service_status_script(name: str) -> str:
    return (
        f"$s = Get-Service -Name {ps_quote(name)} -ErrorAction SilentlyContinue; "
        f"if ($s) {{ $s.Status }} else {{ '{MISSING}' }}"
    )


def create_service_script(name: str, command_line: str) -> str:
    # sc.exe requires the space after 'binPath=' and 'start='
    return f"sc.exe create {ps_quote(name)} binPath= {ps_quote(command_line)} start= auto"


def start_service_script(name: str) -> str:
    return f"Start-Service -Name {ps_quote(name)}"


def stop_service_script(name: str) -> str:
    return f"Stop-Service -Name {ps_quote(name)} -Force"


def delete_service_script(name: str) -> str:
    return f"sc.exe delete {ps_quote(name)}"


def remove_hns_network_script(name: str, hns_module: str) -> str:
    return (
        f"Import-Module {ps_quote(hns_module)}; "
        f"Get-HnsNetwork | Where-Object {{ $_.Name -eq {ps_quote(name)} }} | Remove-HnsNetwork"
    )


class WindowsHost:
    """Idempotent operations on one Windows instance through an open session."""

    def __init__(self, transport: RemoteExecutionTransport, session: Session) -> None:
        self.transport = transport
        self.session = session

    async def _run(self, script: str) -> CommandResult:
        return await self.transport.run_command(self.session, script)

    async def _check(self, script: str, what: str) -> str:
        result = await self._run(script)
        if not result.ok:
            raise RemoteCommandError(
                f"{what} failed on {self.session.address} (exit {result.exit_code})",
                result.exit_code,
                result.output,
            )
        return result.output.strip()

    async def file_sha256(self, path: str) -> Optional[str]:
        """Lower-case SHA-256 of a remote file, or None if it does not exist."""
        out = await self._check(file_hash_script(path), f"hashing {path}")
        if out == MISSING or not out:
            return None
        return out.lower()

    async def write_file(self, path: str, content: bytes) -> bool:
        """Write `content` unless the remote file already matches. Returns True if written."""
        if await self.file_sha256(path) == sha256_hex(content):
            return False
        await self._check(write_file_script(path, content), f"writing {path}")
        return True

    async def copy_file(self, local_path: str, remote_path: str) -> None:
        await self._check(ensure_dir_script(win_dirname(remote_path)), "creating directory")
        await self.transport.copy_file(self.session, local_path, remote_path)

    async def remove_file(self, path: str) -> None:
        if await self.file_sha256(path) is None:
            return
        await self._check(remove_file_script(path), f"removing {path}")

    async def service_status(self, name: str) -> Optional[str]:
        out = await self._check(service_status_script(name), f"querying service {name}")
        return None if out == MISSING or not out else out

    async def ensure_service(self, name: str, command_line: str) -> None:
        """Create the service if it does not exist yet."""
        if await self.service_status(name) is not None:
            return
        logger.info("[%s] creating service %s", self.session.address, name)
        await self._check(create_service_script(name, command_line), f"creating service {name}")

    async def ensure_running(self, name: str) -> None:
        if await self.service_status(name) == RUNNING:
            return
        logger.info("[%s] starting service %s", self.session.address, name)
        await self._check(start_service_script(name), f"starting service {name}")

    async def remove_service(self, name: str) -> None:
        """Stop and delete the service if it exists."""
        status = await self.service_status(name)
        if status is None:
            return
        if status == RUNNING:
            await self._check(stop_service_script(name), f"stopping service {name}")
        await self._check(delete_service_script(name), f"deleting service {name}")

    async def remove_hns_network(self, name: str, hns_module: str) -> None:
        if await self.file_sha256(hns_module) is None:
            # Module never staged => nothing was ever created with it
            return
        await self._check(remove_hns_network_script(name, hns_module), f"removing HNS network {name}")
