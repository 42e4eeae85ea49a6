"""Read-only eligibility checks run before spending a submission.

Advisory only: the ledger's own execution is the final word, and a vote
confirming concurrently can still make a passing check stale.
"""

import logging
from dataclasses import dataclass

from relayer.core.time import Clock, unix_now
from relayer.services.base import REJECTION_MESSAGES, RejectionReason, VoteIntent
from relayer.services.ledger import FeePolicy, LedgerClient, PollSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: RejectionReason | None = None
    poll: PollSnapshot | None = None

    @property
    def message(self) -> str:
        if self.reason is None:
            return ""
        return REJECTION_MESSAGES[self.reason]


def _ineligible(reason: RejectionReason, poll: PollSnapshot | None = None) -> EligibilityResult:
    return EligibilityResult(eligible=False, reason=reason, poll=poll)


class EligibilityChecker:
    """Validates a VoteIntent against fresh ledger state.

    Checks short-circuit on the first failure. The self-vote check runs
    before any ledger read: it needs nothing but the relayer's own address,
    and it must fail regardless of the poll's state.
    """

    def __init__(self, ledger: LedgerClient, fees: FeePolicy, clock: Clock = unix_now):
        self._ledger = ledger
        self._fees = fees
        self._clock = clock

    async def check(self, intent: VoteIntent) -> EligibilityResult:
        """Raises LedgerUnreachable if any read fails; never submits anything."""
        if intent.voter.lower() == self._ledger.address.lower():
            return _ineligible(RejectionReason.RELAYER_SELF_VOTE)

        poll = await self._ledger.get_poll_snapshot(intent.poll_id)
        if poll is None:
            return _ineligible(RejectionReason.POLL_NOT_FOUND)

        if self._clock() > poll.end_time:
            return _ineligible(RejectionReason.POLL_ENDED, poll)

        if intent.candidate_id >= poll.candidate_count:
            return _ineligible(RejectionReason.INVALID_CANDIDATE, poll)

        # Membership itself is verified on-chain; an empty proof can never pass it.
        if not poll.is_public and not intent.merkle_proof:
            return _ineligible(RejectionReason.NOT_WHITELISTED, poll)

        if await self._ledger.has_voted(intent.poll_id, intent.voter):
            return _ineligible(RejectionReason.ALREADY_VOTED, poll)

        if poll.is_full:
            return _ineligible(RejectionReason.POLL_FULL, poll)

        relayer = await self._ledger.get_relayer_state()
        if not relayer.authorized:
            return _ineligible(RejectionReason.RELAYER_UNAUTHORIZED, poll)

        if relayer.balance < self._fees.worst_case_cost:
            logger.error(
                "Relayer %s underfunded: balance %d wei, worst-case submission %d wei",
                relayer.address,
                relayer.balance,
                self._fees.worst_case_cost,
            )
            return _ineligible(RejectionReason.RELAYER_UNDERFUNDED, poll)

        allowance = await self._ledger.get_creator_allowance(poll.creator)
        if allowance.total == 0:
            return _ineligible(RejectionReason.CREATOR_UNDERFUNDED, poll)

        return EligibilityResult(eligible=True, poll=poll)
