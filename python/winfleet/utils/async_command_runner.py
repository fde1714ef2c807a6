"""
winfleet/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic, used for
every local `kubectl`, `ssh` and `scp` invocation.

  - run_process: run once, return (return code, stdout, stderr) without judging them.
  - run_command: run with retries, raise CommandError on unexpected return codes.

Usage example:
    from winfleet.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["kubectl", "get", "nodes", "-o", "json"])
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Dict, List, NamedTuple, Optional

from winfleet.utils.async_retry import async_retry
from winfleet.utils.backoff import BackoffPolicy

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Represents a failure when executing a local command.

    Attributes:
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured stderr, empty when the command was sensitive.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr

    @property
    def not_found(self) -> bool:
        """True if kubectl reported a missing object."""
        text = f"{self} {self.stderr}"
        return "NotFound" in text or "not found" in text


class ProcessResult(NamedTuple):
    return_code: int
    stdout: str
    stderr: str


async def run_process(
    command: List[str],
    *,
    env: Optional[Dict[str, str]] = None,
    input_data: Optional[str] = None,
) -> ProcessResult:
    """
    Run a local command once and capture its output.

    Raises:
        CommandError: Only if the executable cannot be started.
    """
    proc_env = None
    if env:
        proc_env = os.environ.copy()
        proc_env.update(env)

    stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
        )
    except FileNotFoundError as ex:
        raise CommandError(f"Executable not found: {command[0]}") from ex

    stdout_bytes, stderr_bytes = await proc.communicate(
        input=input_data.encode() if input_data else None
    )
    return ProcessResult(
        return_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_bytes.decode(errors="replace").strip(),
        stderr=stderr_bytes.decode(errors="replace").strip(),
    )


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 1,
    policy: Optional[BackoffPolicy] = None,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries.

    If the command's return code is not in `successful_return_codes`, CommandError is
    raised. If `error_parser` returns a message for the captured stderr, that short
    message is used instead of the generic one. When `sensitive=True`, the command,
    stdout and stderr are omitted from the error.

    Args:
        command (List[str]): The command and arguments to execute.
        sensitive (bool): If True, hides command details in the raised error.
        env (Optional[Dict[str, str]]): Additional environment variables.
        input_data (Optional[str]): If provided, passed to stdin.
        successful_return_codes (Optional[List[int]]): Defaults to [0].
        retries (int): Total attempts. Defaults to 1 (no retry).
        policy (Optional[BackoffPolicy]): Delay between attempts.
        error_parser (Optional[Callable[[str], Optional[str]]]): Maps stderr to a short message.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails after all attempts.
    """
    ok_codes = successful_return_codes or [0]

    @async_retry(retries=retries, policy=policy, retry_on=(CommandError,))
    async def _inner_run_command() -> str:
        result = await run_process(command, env=env, input_data=input_data)

        if result.return_code not in ok_codes:
            short_message = error_parser(result.stderr) if error_parser else None
            if short_message is not None:
                raise CommandError(short_message, result.return_code, result.stderr)

            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {result.stdout}"
                    f"\nStderr: {result.stderr}"
                )
            logger.debug("%s exited with %s", command[0], result.return_code)
            raise CommandError(
                f"Command failed with return code {result.return_code}.{detail}",
                result.return_code,
                "" if sensitive else result.stderr,
            )

        return result.stdout

    return await _inner_run_command()
