"""
winfleet/services/credentials.py

CredentialSource implementations:
  - StaticCredentials: credentials known up front.
  - KeyFileCredentials: the instance SSH private key, read from a mounted
    Secret on every pass. Until the Secret exists the daemon keeps running and
    every pass is abandoned.
"""

from __future__ import annotations

import logging
from typing import Optional

import aiofiles
from pydantic import ValidationError

from winfleet.fleet.errors import SourceUnavailableError
from winfleet.fleet.interfaces import CredentialSource
from winfleet.models.ssh import InstanceCredentials

logger = logging.getLogger(__name__)


class StaticCredentials(CredentialSource):
    def __init__(self, credentials: InstanceCredentials) -> None:
        self.credentials = credentials

    async def load(self) -> InstanceCredentials:
        return self.credentials


class KeyFileCredentials(CredentialSource):
    def __init__(self, path: str, user: str = "Administrator") -> None:
        self.path = path
        self.user = user
        self._last: Optional[InstanceCredentials] = None

    async def load(self) -> InstanceCredentials:
        try:
            async with aiofiles.open(self.path, "r") as f:
                private_key = await f.read()
        except OSError as ex:
            raise SourceUnavailableError(f"Private key '{self.path}' is not available: {ex}") from ex
        try:
            credentials = InstanceCredentials(user=self.user, private_key=private_key)
        except ValidationError as ex:
            raise SourceUnavailableError(f"Private key '{self.path}' is unusable: {ex}") from ex

        if self._last is None or self._last.private_key != credentials.private_key:
            logger.info("Loaded instance private key from %s", self.path)
        self._last = credentials
        return credentials
