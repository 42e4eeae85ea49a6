"""Ledger client: every read and write against the voting contract.

Pure I/O with timeouts. Transport failures surface as LedgerUnreachable,
refusals by the node or the contract as LedgerRejected. No caching except
the chain id, which cannot change for a running node.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, TypeVar

import aiohttp
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

logger = logging.getLogger(__name__)

T = TypeVar("T")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
GWEI = 10**9

VOTING_ABI = [
    {
        "type": "function",
        "name": "metaVote",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_pollId", "type": "uint256"},
            {"name": "_candidateId", "type": "uint16"},
            {"name": "_voter", "type": "address"},
            {"name": "_merkleProof", "type": "bytes32[]"},
            {"name": "_signature", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "hasVoted",
        "stateMutability": "view",
        "inputs": [
            {"name": "_pollId", "type": "uint256"},
            {"name": "_voter", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "getPollDetails",
        "stateMutability": "view",
        "inputs": [{"name": "_pollId", "type": "uint256"}],
        "outputs": [
            {"name": "title", "type": "string"},
            {"name": "creator", "type": "address"},
            {"name": "endTime", "type": "uint64"},
            {"name": "candidateCount", "type": "uint16"},
            {"name": "isPublic", "type": "bool"},
            {"name": "voterCount", "type": "uint64"},
            {"name": "maxVoters", "type": "uint64"},
        ],
    },
    {
        "type": "function",
        "name": "relayerAllowance",
        "stateMutability": "view",
        "inputs": [
            {"name": "", "type": "address"},
            {"name": "", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "isAuthorizedRelayer",
        "stateMutability": "view",
        "inputs": [{"name": "_relayer", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


class LedgerError(Exception):
    """Base class for ledger client failures."""


class LedgerUnreachable(LedgerError):
    """The node could not be reached or did not answer in time."""


class LedgerRejected(LedgerError):
    """The node or the contract refused the request (e.g. reverted execution)."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class PollSnapshot:
    """Read-only view of a poll, fetched fresh for every eligibility check."""

    poll_id: int
    title: str
    creator: str
    end_time: int
    candidate_count: int
    is_public: bool
    voter_count: int
    max_voters: int

    @property
    def is_full(self) -> bool:
        return self.voter_count >= self.max_voters


@dataclass(frozen=True)
class CreatorAllowance:
    """Creator funds available to reimburse this relayer, in wei."""

    general: int
    relayer_specific: int

    @property
    def total(self) -> int:
        return self.general + self.relayer_specific


@dataclass(frozen=True)
class RelayerState:
    address: str
    balance: int
    authorized: bool
    nonce: int


@dataclass(frozen=True)
class FeePolicy:
    """Fixed gas budget and EIP-1559 fee caps, all in wei except gas_limit."""

    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    @classmethod
    def from_gwei(cls, gas_limit: int, max_fee_gwei: int, priority_fee_gwei: int) -> FeePolicy:
        return cls(
            gas_limit=gas_limit,
            max_fee_per_gas=max_fee_gwei * GWEI,
            max_priority_fee_per_gas=priority_fee_gwei * GWEI,
        )

    @property
    def worst_case_cost(self) -> int:
        return self.gas_limit * self.max_fee_per_gas


@dataclass(frozen=True)
class MetaVoteTransaction:
    poll_id: int
    candidate_id: int
    voter: str
    signature: str
    nonce: int
    fees: FeePolicy
    merkle_proof: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TransactionHandle:
    tx_hash: str
    nonce: int


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    succeeded: bool
    block_number: int
    gas_used: int


class TxLookup(str, Enum):
    """Receipt lookup outcomes other than a mined receipt."""

    PENDING = "pending"
    NOT_FOUND = "not_found"


class LedgerClient(Protocol):
    """Everything the relayer needs from the ledger."""

    @property
    def address(self) -> str: ...

    async def get_poll_snapshot(self, poll_id: int) -> PollSnapshot | None: ...

    async def has_voted(self, poll_id: int, voter: str) -> bool: ...

    async def get_creator_allowance(self, creator: str) -> CreatorAllowance: ...

    async def get_relayer_state(self) -> RelayerState: ...

    async def get_nonce(self) -> int: ...

    async def get_chain_id(self) -> int: ...

    async def get_gas_price(self) -> int: ...

    async def submit(self, transaction: MetaVoteTransaction) -> TransactionHandle: ...

    async def get_receipt(self, tx_hash: str) -> Receipt | TxLookup: ...

    async def aclose(self) -> None: ...


def _rejection_message(exc: Exception) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc)


class Web3LedgerClient:
    """LedgerClient over JSON-RPC with web3.py's async provider.

    Transactions are signed locally with the relayer key and sent raw, so the
    node never needs an unlocked account.
    """

    def __init__(
        self,
        provider_url: str,
        contract_address: str,
        private_key: str,
        timeout: float = 10.0,
        chain_id: int | None = None,
    ):
        self._w3 = AsyncWeb3(AsyncHTTPProvider(provider_url, request_kwargs={"timeout": timeout}))
        self._account = Account.from_key(private_key)
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=VOTING_ABI
        )
        self._timeout = timeout
        self._chain_id = chain_id

    @property
    def address(self) -> str:
        return self._account.address

    async def _call(self, description: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except TransactionNotFound:
            raise
        except TimeoutError as e:
            raise LedgerUnreachable(f"{description} timed out after {self._timeout}s") from e
        except (aiohttp.ClientError, OSError) as e:
            raise LedgerUnreachable(f"{description} failed: {type(e).__name__}") from e
        except ContractLogicError as e:
            raise LedgerRejected(_rejection_message(e)) from e
        except (Web3Exception, ValueError) as e:
            raise LedgerRejected(_rejection_message(e)) from e

    async def get_poll_snapshot(self, poll_id: int) -> PollSnapshot | None:
        try:
            details = await self._call(
                f"getPollDetails({poll_id})",
                self._contract.functions.getPollDetails(poll_id).call(),
            )
        except LedgerRejected as e:
            logger.info("Poll %s not readable: %s", poll_id, e.message)
            return None

        title, creator, end_time, candidate_count, is_public, voter_count, max_voters = details
        if creator == ZERO_ADDRESS:
            return None
        return PollSnapshot(
            poll_id=poll_id,
            title=title,
            creator=creator,
            end_time=end_time,
            candidate_count=candidate_count,
            is_public=is_public,
            voter_count=voter_count,
            max_voters=max_voters,
        )

    async def has_voted(self, poll_id: int, voter: str) -> bool:
        return await self._call(
            f"hasVoted({poll_id})",
            self._contract.functions.hasVoted(poll_id, voter).call(),
        )

    async def get_creator_allowance(self, creator: str) -> CreatorAllowance:
        general, relayer_specific = await asyncio.gather(
            self._call(
                "relayerAllowance(general)",
                self._contract.functions.relayerAllowance(creator, ZERO_ADDRESS).call(),
            ),
            self._call(
                "relayerAllowance(relayer)",
                self._contract.functions.relayerAllowance(creator, self.address).call(),
            ),
        )
        return CreatorAllowance(general=general, relayer_specific=relayer_specific)

    async def get_relayer_state(self) -> RelayerState:
        balance, authorized, nonce = await asyncio.gather(
            self._call("getBalance", self._w3.eth.get_balance(self.address)),
            self._call(
                "isAuthorizedRelayer",
                self._contract.functions.isAuthorizedRelayer(self.address).call(),
            ),
            self.get_nonce(),
        )
        return RelayerState(
            address=self.address, balance=balance, authorized=authorized, nonce=nonce
        )

    async def get_nonce(self) -> int:
        return await self._call(
            "getTransactionCount",
            self._w3.eth.get_transaction_count(self.address, "pending"),
        )

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self._call("chainId", self._w3.eth.chain_id)
        return self._chain_id

    async def get_gas_price(self) -> int:
        return await self._call("gasPrice", self._w3.eth.gas_price)

    async def submit(self, transaction: MetaVoteTransaction) -> TransactionHandle:
        chain_id = await self.get_chain_id()
        fees = transaction.fees
        call = self._contract.functions.metaVote(
            transaction.poll_id,
            transaction.candidate_id,
            Web3.to_checksum_address(transaction.voter),
            [Web3.to_bytes(hexstr=element) for element in transaction.merkle_proof],
            Web3.to_bytes(hexstr=transaction.signature),
        )
        tx = await self._call(
            "build metaVote",
            call.build_transaction(
                {
                    "from": self.address,
                    "nonce": transaction.nonce,
                    "gas": fees.gas_limit,
                    "maxFeePerGas": fees.max_fee_per_gas,
                    "maxPriorityFeePerGas": fees.max_priority_fee_per_gas,
                    "chainId": chain_id,
                }
            ),
        )
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._call(
            "sendRawTransaction", self._w3.eth.send_raw_transaction(signed.raw_transaction)
        )
        return TransactionHandle(tx_hash=Web3.to_hex(tx_hash), nonce=transaction.nonce)

    async def get_receipt(self, tx_hash: str) -> Receipt | TxLookup:
        try:
            receipt = await self._call(
                "getTransactionReceipt", self._w3.eth.get_transaction_receipt(tx_hash)
            )
        except TransactionNotFound:
            try:
                await self._call("getTransaction", self._w3.eth.get_transaction(tx_hash))
            except TransactionNotFound:
                return TxLookup.NOT_FOUND
            return TxLookup.PENDING

        return Receipt(
            tx_hash=tx_hash,
            succeeded=receipt["status"] == 1,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )

    async def aclose(self) -> None:
        await self._w3.provider.disconnect()
