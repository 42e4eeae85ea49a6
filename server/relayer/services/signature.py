"""EIP-712 typed data for vote authorizations.

The voting contract verifies a signature over ``Vote{pollId, candidateId,
voter}`` bound to one contract address and one chain id. Recovering the
signer here lets the relayer refuse a forged intent without a ledger call.
"""

from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from web3 import Web3

from relayer.services.base import VoteIntent

DOMAIN_NAME = "GasOptimizedVotingSystem"
DOMAIN_VERSION = "1"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

VOTE_TYPE = [
    {"name": "pollId", "type": "uint256"},
    {"name": "candidateId", "type": "uint16"},
    {"name": "voter", "type": "address"},
]


class InvalidSignature(Exception):
    """The signature bytes cannot be recovered to any signer."""


def build_vote_typed_data(
    poll_id: int,
    candidate_id: int,
    voter: str,
    contract_address: str,
    chain_id: int,
) -> dict[str, Any]:
    return {
        "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, "Vote": VOTE_TYPE},
        "primaryType": "Vote",
        "domain": {
            "name": DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(contract_address),
        },
        "message": {
            "pollId": poll_id,
            "candidateId": candidate_id,
            "voter": Web3.to_checksum_address(voter),
        },
    }


def recover_vote_signer(intent: VoteIntent, contract_address: str, chain_id: int) -> str:
    """Return the checksummed address that signed ``intent``."""
    signable = encode_typed_data(
        full_message=build_vote_typed_data(
            intent.poll_id, intent.candidate_id, intent.voter, contract_address, chain_id
        )
    )
    try:
        return Account.recover_message(signable, signature=intent.signature)
    except (BadSignature, KeyValidationError, ValueError, TypeError) as e:
        raise InvalidSignature(str(e)) from e


def sign_vote(
    private_key: str,
    poll_id: int,
    candidate_id: int,
    contract_address: str,
    chain_id: int,
) -> str:
    """Sign a vote as the holder of ``private_key``; returns 0x-prefixed hex."""
    voter = Account.from_key(private_key).address
    signable = encode_typed_data(
        full_message=build_vote_typed_data(
            poll_id, candidate_id, voter, contract_address, chain_id
        )
    )
    signed = Account.sign_message(signable, private_key=private_key)
    return Web3.to_hex(signed.signature)
