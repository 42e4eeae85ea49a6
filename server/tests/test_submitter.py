"""Tests for meta-vote submission and rejection classification."""

import pytest
from conftest import SUBMIT_FEES, FakeLedger, make_intent

from relayer.services.base import RejectionReason
from relayer.services.ledger import FeePolicy, LedgerRejected, LedgerUnreachable
from relayer.services.nonce import NonceManager
from relayer.services.submitter import SubmissionFailed, VoteSubmitter, classify_rejection


def _submitter(ledger: FakeLedger, retries: int = 2) -> VoteSubmitter:
    return VoteSubmitter(ledger, NonceManager(ledger), SUBMIT_FEES, nonce_conflict_retries=retries)


# =============================================================================
# classify_rejection()
# =============================================================================


class TestClassifyRejection:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("execution reverted: Bad signature", RejectionReason.BAD_SIGNATURE),
            ("execution reverted: Already voted", RejectionReason.ALREADY_VOTED),
            ("Voter has already voted", RejectionReason.ALREADY_VOTED),
            ("execution reverted: Insufficient relayer funds", RejectionReason.CREATOR_UNDERFUNDED),
            ("Creator doesn't have enough funds", RejectionReason.CREATOR_UNDERFUNDED),
            (
                "insufficient funds for gas * price + value",
                RejectionReason.RELAYER_UNDERFUNDED,
            ),
            ("execution reverted: Not whitelisted", RejectionReason.NOT_WHITELISTED),
            ("execution reverted: Invalid proof", RejectionReason.NOT_WHITELISTED),
            ("nonce too low", RejectionReason.NONCE_CONFLICT),
            ("already known", RejectionReason.NONCE_CONFLICT),
            ("replacement transaction underpriced", RejectionReason.NONCE_CONFLICT),
            ("intrinsic gas too low", RejectionReason.GAS_ERROR),
            ("something odd happened", RejectionReason.UNKNOWN),
        ],
    )
    def test_maps_ledger_messages(self, message, expected):
        assert classify_rejection(message) is expected

    def test_creator_funds_checked_before_relayer_funds(self):
        # The contract's message mentions funds too; it is about the creator.
        assert (
            classify_rejection("Insufficient relayer funds: insufficient funds for reimbursement")
            is RejectionReason.CREATOR_UNDERFUNDED
        )


# =============================================================================
# VoteSubmitter.submit_vote()
# =============================================================================


class TestSubmitVote:
    @pytest.mark.asyncio
    async def test_returns_handle_without_waiting_for_receipt(self, ledger):
        handle = await _submitter(ledger).submit_vote(make_intent(), "vote-1")
        assert handle.nonce == 0
        assert handle.tx_hash in ledger.transactions
        assert ledger.calls["get_receipt"] == 0

    @pytest.mark.asyncio
    async def test_uses_fixed_fee_policy(self, ledger):
        intent = make_intent(candidate_id=2, merkle_proof=["0x" + "cd" * 32])
        await _submitter(ledger).submit_vote(intent, "vote-1")
        tx = ledger.sent[0]
        assert tx.fees == SUBMIT_FEES
        assert tx.fees.gas_limit == 500_000
        assert tx.fees.max_fee_per_gas == 80 * 10**9
        assert tx.fees.max_priority_fee_per_gas == 30 * 10**9
        assert tx.candidate_id == 2
        assert tx.merkle_proof == ["0x" + "cd" * 32]
        assert tx.signature == intent.signature

    @pytest.mark.asyncio
    async def test_consecutive_submissions_use_consecutive_nonces(self, ledger):
        submitter = _submitter(ledger)
        first = await submitter.submit_vote(make_intent(), "vote-1")
        second = await submitter.submit_vote(make_intent(candidate_id=1), "vote-2")
        assert (first.nonce, second.nonce) == (0, 1)

    @pytest.mark.asyncio
    async def test_bad_signature_surfaces_exact_reason(self, ledger):
        ledger.submit_errors.append(LedgerRejected("execution reverted: Bad signature"))
        with pytest.raises(SubmissionFailed) as exc_info:
            await _submitter(ledger).submit_vote(make_intent(), "vote-1")
        assert exc_info.value.reason is RejectionReason.BAD_SIGNATURE
        assert exc_info.value.detail == "execution reverted: Bad signature"
        assert exc_info.value.message == "Invalid signature provided for vote verification"

    @pytest.mark.asyncio
    async def test_bad_signature_is_not_retried(self, ledger):
        ledger.submit_errors.append(LedgerRejected("Bad signature"))
        with pytest.raises(SubmissionFailed):
            await _submitter(ledger).submit_vote(make_intent(), "vote-1")
        assert ledger.calls["submit"] == 1

    @pytest.mark.asyncio
    async def test_nonce_conflict_retried_transparently(self, ledger):
        ledger.submit_errors.append(LedgerRejected("nonce too low"))
        submitter = _submitter(ledger)
        handle = await submitter.submit_vote(make_intent(), "vote-1")
        assert ledger.calls["submit"] == 2
        # The conflicting number is skipped on the retry
        assert handle.nonce == 1

    @pytest.mark.asyncio
    async def test_nonce_conflict_gives_up_after_retries(self, ledger):
        ledger.submit_errors.extend(LedgerRejected("nonce too low") for _ in range(3))
        with pytest.raises(SubmissionFailed) as exc_info:
            await _submitter(ledger, retries=2).submit_vote(make_intent(), "vote-1")
        assert exc_info.value.reason is RejectionReason.NONCE_CONFLICT
        assert ledger.calls["submit"] == 3

    @pytest.mark.asyncio
    async def test_rejection_does_not_consume_nonce(self, ledger):
        ledger.submit_errors.append(LedgerRejected("execution reverted: Already voted"))
        submitter = _submitter(ledger)
        with pytest.raises(SubmissionFailed):
            await submitter.submit_vote(make_intent(), "vote-1")
        handle = await submitter.submit_vote(make_intent(candidate_id=1), "vote-2")
        assert handle.nonce == 0

    @pytest.mark.asyncio
    async def test_unreachable_ledger_propagates(self, ledger):
        ledger.failures["submit"] = LedgerUnreachable("sendRawTransaction timed out")
        with pytest.raises(LedgerUnreachable):
            await _submitter(ledger).submit_vote(make_intent(), "vote-1")


class TestResubmit:
    @pytest.mark.asyncio
    async def test_reuses_given_nonce_and_fees(self, ledger):
        submitter = _submitter(ledger)
        handle = await submitter.submit_vote(make_intent(), "vote-1")
        bumped = FeePolicy.from_gwei(600_000, 100, 35)
        replacement = await submitter.resubmit(make_intent(), handle.nonce, bumped)
        assert replacement.nonce == handle.nonce
        assert replacement.tx_hash != handle.tx_hash
        assert ledger.sent[-1].fees == bumped
        assert ledger.calls["get_nonce"] == 1
