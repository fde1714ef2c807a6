"""
winfleet/fleet/version.py

The configuration-version tracker. A ConfigurationFingerprint summarises
everything that makes up a correctly configured instance:
  - the SHA-256 of every staged payload file,
  - the cluster network mode and its parameters,
  - the controller build identity.

Records carrying a different fingerprint are stale and get reconfigured.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Optional

from winfleet.fleet.errors import ConfigurationError, SourceUnavailableError
from winfleet.fleet.interfaces import ClusterNetworkSource
from winfleet.models.instance import ConfigurationFingerprint, InstanceRecord
from winfleet.models.network import ClusterNetworkConfig
from winfleet.models.payload import PayloadManifest
from winfleet.services.payload import load_payload_manifest

logger = logging.getLogger(__name__)


def _not_refreshed() -> SourceUnavailableError:
    return SourceUnavailableError("Configuration version tracker has not been refreshed")


class ConfigurationVersionTracker:
    """
    Holds the last observed payload manifest and network configuration, and
    derives the current fingerprint from them.
    """

    def __init__(
        self,
        payload_dir: str,
        network_source: ClusterNetworkSource,
        build_version: str,
        build_commit: str = "unknown",
    ) -> None:
        self.payload_dir = payload_dir
        self.network_source = network_source
        self.build_version = build_version
        self.build_commit = build_commit
        self._manifest: Optional[PayloadManifest] = None
        self._network: Optional[ClusterNetworkConfig] = None
        self._fingerprint: Optional[ConfigurationFingerprint] = None

    async def refresh(self) -> ConfigurationFingerprint:
        """
        Re-read the payload directory and the cluster network configuration.

        Returns:
            The fingerprint for the refreshed inputs.

        Raises:
            SourceUnavailableError: If either input cannot be read. The previously
                refreshed inputs are kept.
        """
        try:
            manifest = await load_payload_manifest(self.payload_dir)
        except (ConfigurationError, OSError) as ex:
            raise SourceUnavailableError(f"Cannot read payload: {ex}") from ex
        network = await self.network_source.get_network_config()

        previous = self._fingerprint
        self._manifest = manifest
        self._network = network
        self._fingerprint = self._compute(manifest, network)
        if previous != self._fingerprint:
            logger.info("Configuration fingerprint is now %s", self._fingerprint)
        return self._fingerprint

    def _compute(self, manifest: PayloadManifest, network: ClusterNetworkConfig) -> ConfigurationFingerprint:
        canonical = json.dumps(
            {
                "payload": manifest.checksums(),
                "network": network.model_dump(mode="json"),
                "build": {"version": self.build_version, "commit": self.build_commit},
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return ConfigurationFingerprint(digest=hashlib.sha256(canonical.encode("utf-8")).hexdigest())

    def current_fingerprint(self) -> ConfigurationFingerprint:
        if self._fingerprint is None:
            raise _not_refreshed()
        return self._fingerprint

    def is_stale(self, record: InstanceRecord) -> bool:
        """True if the record was configured against anything but the current inputs."""
        return record.fingerprint != self.current_fingerprint()

    def expected_payload(self) -> PayloadManifest:
        if self._manifest is None:
            raise _not_refreshed()
        return self._manifest

    def network_config(self) -> ClusterNetworkConfig:
        if self._network is None:
            raise _not_refreshed()
        return self._network
