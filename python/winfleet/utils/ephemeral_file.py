"""
winfleet/utils/ephemeral_file.py

Provides an async context manager for ephemeral files (SSH keys, known_hosts)
that live in `/dev/shm` when available, so secrets never touch disk.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiofiles


def _default_parent_dir() -> Optional[str]:
    return "/dev/shm" if os.path.isdir("/dev/shm") else None


@asynccontextmanager
async def ephemeral_file(
    file_name: str,
    *,
    content: Optional[str] = None,
    mode: int = 0o600,
    prefix: str = "winfleet-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Create one ephemeral file in a private temporary directory and yield its path.

    Args:
        file_name: Name of the file inside the ephemeral directory.
        content: If given, written to the file before yielding.
        mode: Permission bits applied to the file.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the directory; defaults to `/dev/shm`.

    Yields:
        str: The ephemeral file path. The directory is removed on exit.
    """
    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir or _default_parent_dir(), prefix=prefix)
    path = os.path.join(ephemeral_dir, file_name)
    try:
        if content is not None:
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(content)
            os.chmod(path, mode)
        yield path
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
