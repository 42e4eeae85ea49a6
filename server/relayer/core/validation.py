"""Input validation for the off-chain vote authorization fields."""

import re

from web3 import Web3

HEX_PATTERN = re.compile(r"^0x[0-9a-fA-F]*$")

# 65-byte r || s || v secp256k1 signature
SIGNATURE_HEX_LENGTH = 2 + 65 * 2
# Merkle proof elements are bytes32
PROOF_ELEMENT_HEX_LENGTH = 2 + 32 * 2

MAX_UINT16 = 2**16 - 1
MAX_UINT256 = 2**256 - 1
MAX_PROOF_LENGTH = 64


def normalize_address(value: str) -> str:
    """
    Validate an account address and return its checksummed form.

    Accepts lower-case, upper-case or already-checksummed hex. Raises
    ValueError for anything that is not a 20-byte hex address.
    """
    value = value.strip()
    if not Web3.is_address(value):
        raise ValueError("must be a 20-byte hex address")
    return Web3.to_checksum_address(value)


def normalize_signature(value: str) -> str:
    """Validate a 65-byte hex signature; returns it lower-cased with 0x prefix."""
    value = value.strip()
    if not value.startswith("0x"):
        value = "0x" + value
    if not HEX_PATTERN.match(value):
        raise ValueError("must be hex encoded")
    if len(value) != SIGNATURE_HEX_LENGTH:
        raise ValueError("must be a 65-byte signature")
    return value.lower()


def normalize_proof(values: list[str]) -> list[str]:
    """Validate a Merkle proof: at most MAX_PROOF_LENGTH bytes32 hex values."""
    if len(values) > MAX_PROOF_LENGTH:
        raise ValueError(f"must contain at most {MAX_PROOF_LENGTH} elements")
    normalized = []
    for element in values:
        element = element.strip()
        if not HEX_PATTERN.match(element) or len(element) != PROOF_ELEMENT_HEX_LENGTH:
            raise ValueError("elements must be 32-byte hex values")
        normalized.append(element.lower())
    return normalized


def short_signature(signature: str, length: int = 12) -> str:
    """Return a log-safe prefix of a signature."""
    return f"{signature[:length]}..."
