"""
winfleet/utils/waiting.py

Interruptible sleeps for the long-running loops.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence


async def wait_any(events: Sequence[asyncio.Event], timeout: Optional[float]) -> bool:
    """
    Wait until any of `events` is set or `timeout` seconds pass.

    Returns:
        bool: True if an event was set, False on timeout.
    """
    if any(e.is_set() for e in events):
        return True
    waiters = [asyncio.ensure_future(e.wait()) for e in events]
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for w in waiters:
            w.cancel()
    return bool(done)
