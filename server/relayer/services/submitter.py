"""Builds and fires the meta-vote transaction without waiting for inclusion."""

import logging
from collections.abc import Callable

from relayer.core.validation import short_signature
from relayer.services.base import REJECTION_MESSAGES, RejectionReason, VoteIntent
from relayer.services.ledger import (
    FeePolicy,
    LedgerClient,
    LedgerRejected,
    MetaVoteTransaction,
    TransactionHandle,
)
from relayer.services.nonce import NonceManager

logger = logging.getLogger(__name__)

# Contract revert strings for creator-side funding; checked before the
# node's generic "insufficient funds" which is about the relayer's wallet.
_CREATOR_FUNDS_MARKERS = ("Insufficient relayer funds", "doesn't have enough funds")
_NONCE_MARKERS = ("nonce", "already known", "replacement transaction underpriced")


class SubmissionFailed(Exception):
    """The ledger refused the meta-vote transaction."""

    def __init__(self, reason: RejectionReason, detail: str = ""):
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail

    @property
    def message(self) -> str:
        return REJECTION_MESSAGES[self.reason]


def classify_rejection(message: str) -> RejectionReason:
    """Map a ledger rejection message onto the closed rejection taxonomy."""
    lowered = message.lower()
    if "bad signature" in lowered:
        return RejectionReason.BAD_SIGNATURE
    if "already voted" in lowered:
        return RejectionReason.ALREADY_VOTED
    if any(marker in message for marker in _CREATOR_FUNDS_MARKERS):
        return RejectionReason.CREATOR_UNDERFUNDED
    if "insufficient funds" in lowered:
        return RejectionReason.RELAYER_UNDERFUNDED
    if "whitelist" in lowered or "invalid proof" in lowered:
        return RejectionReason.NOT_WHITELISTED
    if any(marker in lowered for marker in _NONCE_MARKERS):
        return RejectionReason.NONCE_CONFLICT
    if "gas" in lowered:
        return RejectionReason.GAS_ERROR
    return RejectionReason.UNKNOWN


class VoteSubmitter:
    """Submits meta-votes with a fixed gas budget and capped fees.

    No pre-flight estimate: a reverting estimate tells nothing and costs a
    round trip. Nonce conflicts are retried here with a fresh assignment,
    invisibly to the caller.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        nonces: NonceManager,
        fees: FeePolicy,
        nonce_conflict_retries: int = 2,
    ):
        self._ledger = ledger
        self._nonces = nonces
        self._fees = fees
        self._nonce_conflict_retries = nonce_conflict_retries

    @property
    def fees(self) -> FeePolicy:
        return self._fees

    async def submit_vote(
        self,
        intent: VoteIntent,
        correlation_id: str,
        on_reserved: Callable[[int], None] | None = None,
    ) -> TransactionHandle:
        """Send the vote and return as soon as the node accepts it.

        ``on_reserved`` is called with the nonce once it is held, right before
        the transaction is signed and sent.

        Raises SubmissionFailed when the ledger refuses, LedgerUnreachable
        when the node cannot be reached.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._nonces.reserve(on_reserved) as reservation:
                    logger.info(
                        "[%s] Submitting metaVote: poll %d, candidate %d, voter %s, "
                        "nonce %d, proof %d, signature %s",
                        correlation_id,
                        intent.poll_id,
                        intent.candidate_id,
                        intent.voter,
                        reservation.nonce,
                        len(intent.merkle_proof),
                        short_signature(intent.signature),
                    )
                    try:
                        handle = await self._ledger.submit(
                            self._build(intent, reservation.nonce, self._fees)
                        )
                    except LedgerRejected as e:
                        if classify_rejection(e.message) is RejectionReason.NONCE_CONFLICT:
                            reservation.conflicted = True
                        raise
                    reservation.tx_hash = handle.tx_hash
            except LedgerRejected as e:
                reason = classify_rejection(e.message)
                if (
                    reason is RejectionReason.NONCE_CONFLICT
                    and attempt <= self._nonce_conflict_retries
                ):
                    logger.warning(
                        "[%s] Nonce conflict (%s), retrying with a fresh nonce (%d/%d)",
                        correlation_id,
                        e.message,
                        attempt,
                        self._nonce_conflict_retries,
                    )
                    continue
                logger.error("[%s] Ledger rejected metaVote: %s", correlation_id, e.message)
                raise SubmissionFailed(reason, e.message) from e

            logger.info(
                "[%s] Transaction submitted: %s (nonce %d)",
                correlation_id,
                handle.tx_hash,
                handle.nonce,
            )
            return handle

    async def resubmit(
        self, intent: VoteIntent, nonce: int, fees: FeePolicy
    ) -> TransactionHandle:
        """Re-send the same vote under an existing nonce with new fees.

        Used only to replace a stuck transaction; bypasses nonce assignment.
        Raises LedgerError on failure.
        """
        return await self._ledger.submit(self._build(intent, nonce, fees))

    @staticmethod
    def _build(intent: VoteIntent, nonce: int, fees: FeePolicy) -> MetaVoteTransaction:
        return MetaVoteTransaction(
            poll_id=intent.poll_id,
            candidate_id=intent.candidate_id,
            voter=intent.voter,
            signature=intent.signature,
            merkle_proof=list(intent.merkle_proof),
            nonce=nonce,
            fees=fees,
        )
