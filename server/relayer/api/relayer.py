"""Relayer endpoints: status check and gasless vote submission."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from relayer.api.deps import get_relayer
from relayer.core.rate_limit import limiter, submit_vote_limit
from relayer.schemas.status import FailureResponse, StatusResponse
from relayer.schemas.vote import SubmitVoteResponse, VoteIntentIn
from relayer.services.base import RejectionReason
from relayer.services.ledger import LedgerError
from relayer.services.relayer import OutcomeKind, RelayerService, SubmissionOutcome

logger = logging.getLogger(__name__)

router = APIRouter()

# Ledger-side submission failures: the vote itself may be fine, the send was not
SERVER_SIDE_REASONS = frozenset(
    {RejectionReason.NONCE_CONFLICT, RejectionReason.GAS_ERROR, RejectionReason.UNKNOWN}
)


def status_code_for(outcome: SubmissionOutcome) -> int:
    if outcome.kind is OutcomeKind.ACCEPTED:
        return 200
    if outcome.kind is OutcomeKind.PENDING:
        return 202
    if outcome.kind is OutcomeKind.UNAVAILABLE:
        return 503
    if outcome.reason in SERVER_SIDE_REASONS:
        return 500
    return 400


@router.get(
    "/status",
    response_model=StatusResponse,
    responses={503: {"model": FailureResponse}},
)
async def get_status(relayer: RelayerService = Depends(get_relayer)):
    """Fresh relayer address, authorization and balance. Never cached."""
    try:
        relayer_status = await relayer.status()
    except LedgerError as e:
        logger.error("Error in status check: %s", e)
        return JSONResponse(
            status_code=503,
            content=FailureResponse(message="Ledger is unreachable").model_dump(),
        )
    return StatusResponse(
        address=relayer_status.address,
        authorized=relayer_status.authorized,
        balance=str(relayer_status.balance_ether),
    )


@router.post(
    "/submit-vote",
    response_model=SubmitVoteResponse,
    response_model_exclude_none=True,
    responses={
        202: {"model": SubmitVoteResponse},
        400: {"model": SubmitVoteResponse},
        429: {"model": FailureResponse},
        500: {"model": SubmitVoteResponse},
        503: {"model": SubmitVoteResponse},
    },
)
@limiter.limit(submit_vote_limit)
async def submit_vote(
    vote: VoteIntentIn,
    request: Request,
    relayer: RelayerService = Depends(get_relayer),
):
    """Relay a signed vote. Returns once the node accepts the transaction."""
    outcome = await relayer.submit_vote(vote.to_intent())
    body = SubmitVoteResponse(
        success=outcome.success,
        message=outcome.message,
        txHash=outcome.tx_hash,
        reason=outcome.reason.value if outcome.reason else None,
        requestId=outcome.correlation_id,
    )
    if outcome.kind is OutcomeKind.ACCEPTED:
        return body
    return JSONResponse(
        status_code=status_code_for(outcome),
        content=body.model_dump(exclude_none=True),
    )
