"""Pydantic schemas for vote submission."""

from pydantic import BaseModel, Field, field_validator

from relayer.core.validation import (
    MAX_UINT16,
    MAX_UINT256,
    normalize_address,
    normalize_proof,
    normalize_signature,
)
from relayer.services.base import VoteIntent


class VoteIntentIn(BaseModel):
    """Body of POST /submit-vote. Field names follow the wire format."""

    pollId: int = Field(..., ge=0, le=MAX_UINT256)
    candidateId: int = Field(..., ge=0, le=MAX_UINT16)
    voter: str = Field(..., min_length=1, max_length=64)
    signature: str = Field(..., min_length=1, max_length=200)
    merkleProof: list[str] = Field(default_factory=list)

    @field_validator("pollId", "candidateId", mode="before")
    @classmethod
    def parse_unsigned(cls, v):
        # Clients may send big ids as decimal strings; bools and floats are not ids
        if isinstance(v, str) and v.strip().isdigit():
            return int(v.strip())
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError("must be an unsigned integer")
        return v

    @field_validator("voter")
    @classmethod
    def validate_voter(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("signature")
    @classmethod
    def validate_signature(cls, v: str) -> str:
        return normalize_signature(v)

    @field_validator("merkleProof", mode="before")
    @classmethod
    def default_proof(cls, v):
        return [] if v is None else v

    @field_validator("merkleProof")
    @classmethod
    def validate_proof(cls, v: list[str]) -> list[str]:
        return normalize_proof(v)

    def to_intent(self) -> VoteIntent:
        return VoteIntent(
            poll_id=self.pollId,
            candidate_id=self.candidateId,
            voter=self.voter,
            signature=self.signature,
            merkle_proof=list(self.merkleProof),
        )


class SubmitVoteResponse(BaseModel):
    success: bool
    message: str
    txHash: str | None = None
    reason: str | None = None
    requestId: str | None = None
