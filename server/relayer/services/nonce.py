"""Serialized sequence-number assignment for the relayer account.

Two concurrent submissions must never build transactions from the same
stale nonce read, or one would silently replace the other. The lock is held
from the fresh read until the transaction has been handed to the node.

The node's pending count is authoritative. The locally assigned counter only
bridges a node that has not yet counted our latest sends; it is dropped as
soon as the ledger shows the transaction at the reported count is gone.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from relayer.services.ledger import LedgerClient, TxLookup

logger = logging.getLogger(__name__)


@dataclass
class NonceReservation:
    nonce: int
    conflicted: bool = False
    # Set by the caller once the node accepted the transaction
    tx_hash: str | None = None


class NonceManager:
    def __init__(self, ledger: LedgerClient):
        self._ledger = ledger
        self._lock = asyncio.Lock()
        self._next: int | None = None
        # nonce -> hash we sent under it; None when the hash is unknown to us
        self._sent: dict[int, str | None] = {}

    @property
    def next_nonce(self) -> int | None:
        """Lowest nonce the next reservation may use (None when in sync with the node)."""
        return self._next

    @asynccontextmanager
    async def reserve(
        self, on_reserved: Callable[[int], None] | None = None
    ) -> AsyncIterator[NonceReservation]:
        """Hold the assignment lock and yield the nonce for one transaction.

        ``on_reserved`` runs once the nonce is held, before the body. The
        nonce counts as used when the block exits cleanly, or when the
        caller marks the reservation conflicted before raising: the node
        already knows a transaction with that number.
        """
        async with self._lock:
            nonce = await self._resolve()
            reservation = NonceReservation(nonce=nonce)
            if on_reserved is not None:
                on_reserved(nonce)
            try:
                yield reservation
            except BaseException:
                if reservation.conflicted:
                    self._consume(nonce, None)
                raise
            self._consume(nonce, reservation.tx_hash)

    def _consume(self, nonce: int, tx_hash: str | None) -> None:
        self._sent[nonce] = tx_hash
        self._next = nonce + 1

    async def _resolve(self) -> int:
        fresh = await self._ledger.get_nonce()
        self._sent = {n: h for n, h in self._sent.items() if n >= fresh}
        if self._next is None or fresh >= self._next:
            return fresh

        # The node counts fewer transactions than we handed it. Either it has
        # not caught up yet, or the transaction at `fresh` left its pool.
        if fresh in self._sent:
            tx_hash = self._sent[fresh]
            if tx_hash is None or await self._ledger.get_receipt(tx_hash) is not TxLookup.NOT_FOUND:
                logger.debug("Pending nonce %d lags local assignment, using %d", fresh, self._next)
                return self._next

        logger.warning(
            "Pending nonce fell back to %d (local assignment was at %d); resyncing with the ledger",
            fresh,
            self._next,
        )
        self._next = None
        self._sent.clear()
        return fresh
