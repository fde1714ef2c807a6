"""
winfleet/services/payload.py

Builds the PayloadManifest for the local payload directory: every file with its
SHA-256, keyed by POSIX path relative to the payload root.
"""

from __future__ import annotations

import hashlib
import os
from typing import Dict, List

import aiofiles

from winfleet.fleet.errors import ConfigurationError
from winfleet.models.payload import REQUIRED_PAYLOAD_FILES, PayloadFile, PayloadManifest

_CHUNK = 1024 * 1024


async def file_sha256(path: str) -> str:
    """Stream a local file through SHA-256."""
    digest = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(_CHUNK)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def _walk(payload_dir: str) -> List[str]:
    return sorted(
        os.path.relpath(os.path.join(root, name), payload_dir).replace(os.sep, "/")
        for root, _dirs, files in os.walk(payload_dir)
        for name in files
    )


async def load_payload_manifest(
    payload_dir: str, required: List[str] = REQUIRED_PAYLOAD_FILES
) -> PayloadManifest:
    """
    Hash every file below `payload_dir`.

    Raises:
        ConfigurationError: If the directory or any required file is missing.
    """
    if not os.path.isdir(payload_dir):
        raise ConfigurationError(f"Payload directory '{payload_dir}' does not exist")

    relative_paths = _walk(payload_dir)
    missing = sorted(set(required) - set(relative_paths))
    if missing:
        raise ConfigurationError(f"Payload is missing required files: {', '.join(missing)}")

    files: Dict[str, PayloadFile] = {}
    for rel in relative_paths:
        local = os.path.join(payload_dir, *rel.split("/"))
        files[rel] = PayloadFile(relative_path=rel, local_path=local, sha256=await file_sha256(local))
    return PayloadManifest(files=files)
