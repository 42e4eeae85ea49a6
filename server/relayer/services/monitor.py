"""Confirmation monitor: tracks submitted votes to a terminal state.

Each SubmissionAttempt moves through an explicit state machine:

    PENDING --receipt ok-------> CONFIRMED
    PENDING --receipt failed---> REVERTED
    PENDING --stuck------------> REPLACED   (one same-nonce, higher-fee resend)
    REPLACED --receipt---------> CONFIRMED | REVERTED
    PENDING | REPLACED --ladder exhausted--> UNRESOLVED

Polls are delayed callbacks on an injected Scheduler, so the whole ladder can
be driven by hand in tests. Nothing here ever blocks a request, and nothing
is persisted: a restart forgets in-flight attempts, the ledger keeps the truth.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from relayer.services.base import RejectionReason, VoteIntent
from relayer.services.ledger import (
    FeePolicy,
    LedgerClient,
    LedgerError,
    LedgerRejected,
    Receipt,
)
from relayer.services.submitter import VoteSubmitter, classify_rejection

logger = logging.getLogger(__name__)


class AttemptState(str, Enum):
    PENDING = "pending"
    REPLACED = "replaced"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    UNRESOLVED = "unresolved"


TERMINAL_STATES = frozenset(
    {AttemptState.CONFIRMED, AttemptState.REVERTED, AttemptState.UNRESOLVED}
)

TRANSITIONS: dict[AttemptState, frozenset[AttemptState]] = {
    AttemptState.PENDING: frozenset(
        {
            AttemptState.REPLACED,
            AttemptState.CONFIRMED,
            AttemptState.REVERTED,
            AttemptState.UNRESOLVED,
        }
    ),
    AttemptState.REPLACED: frozenset(
        {AttemptState.CONFIRMED, AttemptState.REVERTED, AttemptState.UNRESOLVED}
    ),
    AttemptState.CONFIRMED: frozenset(),
    AttemptState.REVERTED: frozenset(),
    AttemptState.UNRESOLVED: frozenset(),
}


class InvalidTransition(Exception):
    """Raised when an attempt is moved along an edge the state machine lacks."""


@dataclass
class SubmissionAttempt:
    """In-flight bookkeeping for one submitted VoteIntent."""

    correlation_id: str
    intent: VoteIntent
    tx_hash: str
    nonce: int
    submitted_at: float = field(default_factory=time.time)
    state: AttemptState = AttemptState.PENDING
    polls: int = 0
    replacement_attempted: bool = False
    replacement_tx_hash: str | None = None
    final_tx_hash: str | None = None
    finished_at: float | None = None

    @property
    def tx_hashes(self) -> list[str]:
        hashes = [self.tx_hash]
        if self.replacement_tx_hash:
            hashes.append(self.replacement_tx_hash)
        return hashes

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: AttemptState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"{self.correlation_id}: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.finished_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.correlation_id,
            "state": self.state.value,
            "pollId": self.intent.poll_id,
            "voter": self.intent.voter,
            "nonce": self.nonce,
            "txHash": self.tx_hash,
            "replacementTxHash": self.replacement_tx_hash,
            "polls": self.polls,
            "submittedAt": self.submitted_at,
        }


@dataclass(frozen=True)
class MonitorPolicy:
    """Timing ladder for receipt polling.

    The first check waits ``first_check_seconds``; after n polls the next
    waits ``n * backoff_seconds``. A replacement goes out after ``max_polls``
    pending polls, and ``replacement_polls`` more polls end in UNRESOLVED.
    """

    first_check_seconds: float = 10.0
    backoff_seconds: float = 5.0
    max_polls: int = 5
    replacement_polls: int = 3

    def delay_after(self, polls: int) -> float:
        if polls == 0:
            return self.first_check_seconds
        return polls * self.backoff_seconds

    @property
    def total_polls(self) -> int:
        return self.max_polls + self.replacement_polls


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None: ...

    async def shutdown(self) -> None: ...


class AsyncioScheduler:
    """Runs each delayed callback as its own event-loop task."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def call_later(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        task = asyncio.create_task(self._run(delay, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(delay)
        try:
            await callback()
        except Exception:
            logger.exception("Scheduled confirmation check failed")

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class ConfirmationMonitor:
    def __init__(
        self,
        ledger: LedgerClient,
        submitter: VoteSubmitter,
        scheduler: Scheduler,
        replacement_fees: FeePolicy,
        policy: MonitorPolicy | None = None,
    ):
        self._ledger = ledger
        self._submitter = submitter
        self._scheduler = scheduler
        self._replacement_fees = replacement_fees
        self._policy = policy or MonitorPolicy()
        self._attempts: dict[str, SubmissionAttempt] = {}
        # Every hash (original or replacement) maps back to its attempt.
        self._by_hash: dict[str, str] = {}

    @property
    def policy(self) -> MonitorPolicy:
        return self._policy

    def __len__(self) -> int:
        return len(self._attempts)

    def get(self, correlation_id: str) -> SubmissionAttempt | None:
        return self._attempts.get(correlation_id)

    def attempt_for_hash(self, tx_hash: str) -> SubmissionAttempt | None:
        correlation_id = self._by_hash.get(tx_hash.lower())
        if correlation_id is None:
            return None
        return self._attempts.get(correlation_id)

    def snapshot(self) -> list[dict[str, Any]]:
        return [attempt.to_dict() for attempt in self._attempts.values()]

    def track(self, attempt: SubmissionAttempt) -> None:
        """Start monitoring a freshly submitted attempt. Never blocks."""
        if attempt.correlation_id in self._attempts:
            raise ValueError(f"Attempt {attempt.correlation_id} is already tracked")
        self._attempts[attempt.correlation_id] = attempt
        self._by_hash[attempt.tx_hash.lower()] = attempt.correlation_id
        self._schedule(attempt)

    async def shutdown(self) -> None:
        if self._attempts:
            logger.warning(
                "Stopping confirmation monitor with %d attempts in flight: %s",
                len(self._attempts),
                ", ".join(self._attempts),
            )
        await self._scheduler.shutdown()

    def _schedule(self, attempt: SubmissionAttempt) -> None:
        delay = self._policy.delay_after(attempt.polls)
        cid = attempt.correlation_id
        self._scheduler.call_later(delay, lambda: self.check(cid))

    async def check(self, correlation_id: str) -> AttemptState | None:
        """Run one poll for an attempt and schedule the next one if needed.

        Returns the attempt's state after the poll, or None when the attempt
        is no longer tracked.
        """
        attempt = self._attempts.get(correlation_id)
        if attempt is None:
            return None

        attempt.polls += 1
        cid = attempt.correlation_id
        logger.info(
            "[%s] Checking confirmation (poll %d/%d): %s",
            cid,
            attempt.polls,
            self._policy.total_polls,
            ", ".join(attempt.tx_hashes),
        )

        receipt = await self._find_receipt(attempt)
        if receipt is not None:
            await self._settle(attempt, receipt)
            return attempt.state

        if not attempt.replacement_attempted and attempt.polls >= self._policy.max_polls:
            await self._replace(attempt)
        elif attempt.replacement_attempted and attempt.polls >= self._policy.total_polls:
            logger.error(
                "[%s] UNRESOLVED: no receipt after %d polls for %s (nonce %d). "
                "Manual inspection required.",
                cid,
                attempt.polls,
                ", ".join(attempt.tx_hashes),
                attempt.nonce,
            )
            self._finish(attempt, AttemptState.UNRESOLVED)
            return attempt.state
        else:
            logger.info("[%s] Transaction still pending", cid)

        self._schedule(attempt)
        return attempt.state

    async def _find_receipt(self, attempt: SubmissionAttempt) -> Receipt | None:
        for tx_hash in attempt.tx_hashes:
            try:
                result = await self._ledger.get_receipt(tx_hash)
            except LedgerError as e:
                logger.warning(
                    "[%s] Receipt lookup failed for %s: %s", attempt.correlation_id, tx_hash, e
                )
                continue
            if isinstance(result, Receipt):
                return result
        return None

    async def _settle(self, attempt: SubmissionAttempt, receipt: Receipt) -> None:
        cid = attempt.correlation_id
        attempt.final_tx_hash = receipt.tx_hash
        if attempt.replacement_tx_hash and receipt.tx_hash == attempt.replacement_tx_hash:
            logger.info("[%s] Replacement %s superseded %s", cid, receipt.tx_hash, attempt.tx_hash)

        if not receipt.succeeded:
            logger.error(
                "[%s] Transaction reverted: %s (block %d, gas used %d). "
                "The vote did not take effect; the voter must sign again.",
                cid,
                receipt.tx_hash,
                receipt.block_number,
                receipt.gas_used,
            )
            self._finish(attempt, AttemptState.REVERTED)
            return

        logger.info(
            "[%s] Transaction confirmed: %s (block %d, gas used %d)",
            cid,
            receipt.tx_hash,
            receipt.block_number,
            receipt.gas_used,
        )
        self._finish(attempt, AttemptState.CONFIRMED)

        intent = attempt.intent
        try:
            recorded = await self._ledger.has_voted(intent.poll_id, intent.voter)
        except LedgerError as e:
            logger.warning("[%s] Could not verify recorded vote: %s", cid, e)
            return
        if recorded:
            logger.info("[%s] Vote recorded on chain for %s", cid, intent.voter)
        else:
            logger.error(
                "[%s] CRITICAL: transaction %s confirmed but no vote recorded for %s in poll %d",
                cid,
                receipt.tx_hash,
                intent.voter,
                intent.poll_id,
            )

    async def _replace(self, attempt: SubmissionAttempt) -> None:
        cid = attempt.correlation_id
        fees = self._replacement_fees
        attempt.replacement_attempted = True
        logger.warning(
            "[%s] Transaction may be stuck: %s. Replacing with nonce %d, "
            "maxFeePerGas %d, maxPriorityFeePerGas %d, gas %d",
            cid,
            attempt.tx_hash,
            attempt.nonce,
            fees.max_fee_per_gas,
            fees.max_priority_fee_per_gas,
            fees.gas_limit,
        )
        try:
            handle = await self._submitter.resubmit(attempt.intent, attempt.nonce, fees)
        except LedgerRejected as e:
            if classify_rejection(e.message) is RejectionReason.NONCE_CONFLICT:
                logger.info(
                    "[%s] Replacement refused (%s); original was likely mined, still polling",
                    cid,
                    e.message,
                )
            else:
                logger.error("[%s] Failed to replace transaction: %s", cid, e.message)
            return
        except LedgerError as e:
            logger.error("[%s] Failed to replace transaction: %s", cid, e)
            return

        attempt.replacement_tx_hash = handle.tx_hash
        attempt.transition(AttemptState.REPLACED)
        self._by_hash[handle.tx_hash.lower()] = cid
        logger.info("[%s] Replacement transaction submitted: %s", cid, handle.tx_hash)

    def _finish(self, attempt: SubmissionAttempt, state: AttemptState) -> None:
        attempt.transition(state)
        self._attempts.pop(attempt.correlation_id, None)
        for tx_hash in attempt.tx_hashes:
            self._by_hash.pop(tx_hash.lower(), None)
