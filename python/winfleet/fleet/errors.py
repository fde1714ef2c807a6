"""
winfleet/fleet/errors.py

Error taxonomy for instance bootstrap and fleet reconciliation:
  - TransientError: retried with backoff, bounded, then escalated to Failed.
  - ConfigurationError: fatal for the instance, never retried unattended.
  - SecurityError: a trust decision went against the instance; never retried.
  - SourceUnavailableError: the controller could not observe desired/actual state.
"""

from __future__ import annotations


class BootstrapError(Exception):
    """Base class for step-level errors recorded on an InstanceRecord."""

    retryable: bool = True


class TransientError(BootstrapError):
    """Something that is expected to succeed if tried again later."""

    retryable = True


class RemoteConnectionError(TransientError):
    """The remote session could not be established (distinct from a failed command)."""


class RemoteCommandError(TransientError):
    """A remote command ran but returned a non-zero exit code."""

    def __init__(self, message: str, exit_code: int, output: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class ConfigurationError(BootstrapError):
    """Invalid configuration; retrying without an operator change cannot help."""

    retryable = False


class SecurityError(BootstrapError):
    """A certificate request was denied."""

    retryable = False


class SourceUnavailableError(Exception):
    """The desired or actual fleet state (or tracker inputs) could not be read."""
