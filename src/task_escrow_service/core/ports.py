"""
Ports (interfaces) used by the task ledger.

The ledger depends on Protocols instead of concrete implementations so the
value-transfer backend and the clock can be swapped for test doubles.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Protocol

# Zero-argument callable returning the current timezone-aware UTC time.
Clock = Callable[[], datetime]


class ValueTransfer(Protocol):
    """
    Moves native currency into and out of escrow custody.

    Both calls either complete fully or raise; a raised exception means
    no value moved.
    """

    async def collect(self, payer_id: str, amount: int, reference: str) -> None:
        """Take `amount` from the payer into custody."""
        ...

    async def payout(self, recipient_id: str, amount: int, reference: str) -> None:
        """Pay `amount` out of custody to the recipient."""
        ...
