"""Types shared by the eligibility checker, the submitter and the monitor."""

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum


class RejectionReason(str, Enum):
    """Why a vote was not (or could not be) relayed.

    One closed set for both the read-side checks and the ledger's own
    refusals, so callers can tell "retry is pointless" from "retry might help".
    """

    INVALID_INPUT = "invalid_input"
    POLL_NOT_FOUND = "poll_not_found"
    POLL_ENDED = "poll_ended"
    INVALID_CANDIDATE = "invalid_candidate"
    NOT_WHITELISTED = "not_whitelisted"
    ALREADY_VOTED = "already_voted"
    POLL_FULL = "poll_full"
    RELAYER_SELF_VOTE = "relayer_self_vote"
    RELAYER_UNAUTHORIZED = "relayer_unauthorized"
    RELAYER_UNDERFUNDED = "relayer_underfunded"
    CREATOR_UNDERFUNDED = "creator_underfunded"
    BAD_SIGNATURE = "bad_signature"
    NONCE_CONFLICT = "nonce_conflict"
    GAS_ERROR = "gas_error"
    UNKNOWN = "unknown"


REJECTION_MESSAGES: dict[RejectionReason, str] = {
    RejectionReason.INVALID_INPUT: "Invalid vote request",
    RejectionReason.POLL_NOT_FOUND: "Poll not found",
    RejectionReason.POLL_ENDED: "Poll has ended",
    RejectionReason.INVALID_CANDIDATE: "Invalid candidate ID",
    RejectionReason.NOT_WHITELISTED: "Voter is not whitelisted for this private poll",
    RejectionReason.ALREADY_VOTED: "Voter has already voted in this poll",
    RejectionReason.POLL_FULL: "Poll has reached its maximum number of voters",
    RejectionReason.RELAYER_SELF_VOTE: (
        "The relayer wallet cannot vote. Please use a different wallet."
    ),
    RejectionReason.RELAYER_UNAUTHORIZED: (
        "Relayer is not authorized to submit votes. Please contact the administrator."
    ),
    RejectionReason.RELAYER_UNDERFUNDED: (
        "Relayer service wallet needs more funds. "
        "Please try again later or contact the administrator."
    ),
    RejectionReason.CREATOR_UNDERFUNDED: "Insufficient funds from poll creator to cover gas fees",
    RejectionReason.BAD_SIGNATURE: "Invalid signature provided for vote verification",
    RejectionReason.NONCE_CONFLICT: "Transaction nonce error. Please try again.",
    RejectionReason.GAS_ERROR: "Transaction gas error. Please try again later.",
    RejectionReason.UNKNOWN: "Failed to submit vote. Please try again later.",
}


@dataclass(frozen=True)
class VoteIntent:
    """A voter's signed, off-chain authorization for one vote."""

    poll_id: int
    candidate_id: int
    voter: str
    signature: str
    merkle_proof: list[str] = field(default_factory=list)


def new_correlation_id() -> str:
    """Return a log correlation id like ``vote-1718000000000-4821``."""
    return f"vote-{int(time.time() * 1000)}-{secrets.randbelow(10_000):04d}"
