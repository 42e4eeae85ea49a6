"""Pytest configuration and fixtures for relayer tests."""

import asyncio
import os
from collections import Counter
from collections.abc import Awaitable, Callable, Generator

# Well-known development keys (Hardhat accounts #0 and #1); never funded anywhere real.
RELAYER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
RELAYER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
VOTER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
VOTER_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
CREATOR_ADDRESS = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
CONTRACT_ADDRESS = "0x4995f6754359b2ec0b9d537c2f839e3dc01f6240"
CHAIN_ID = 31337

# Settings are read at import time by the app; configure before importing it.
os.environ.setdefault("RELAYER_PRIVATE_KEY", RELAYER_KEY)
os.environ.setdefault("PROVIDER_URL", "http://127.0.0.1:8545")
os.environ.setdefault("CONTRACT_ADDRESS", CONTRACT_ADDRESS)
os.environ.setdefault("CHAIN_ID", str(CHAIN_ID))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from relayer.main import app  # noqa: E402
from relayer.services.base import VoteIntent  # noqa: E402
from relayer.services.eligibility import EligibilityChecker  # noqa: E402
from relayer.services.ledger import (  # noqa: E402
    GWEI,
    CreatorAllowance,
    FeePolicy,
    LedgerRejected,
    MetaVoteTransaction,
    PollSnapshot,
    Receipt,
    RelayerState,
    TransactionHandle,
    TxLookup,
)
from relayer.services.monitor import ConfirmationMonitor, MonitorPolicy  # noqa: E402
from relayer.services.nonce import NonceManager  # noqa: E402
from relayer.services.relayer import RelayerService  # noqa: E402
from relayer.services.submitter import VoteSubmitter  # noqa: E402

NOW = 1_700_000_000
ONE_ETHER = 10**18

SUBMIT_FEES = FeePolicy.from_gwei(500_000, 80, 30)
REPLACEMENT_FEES = FeePolicy.from_gwei(600_000, 100, 35)

SIGNATURE = "0x" + "11" * 65


def fixed_clock() -> int:
    return NOW


class FakeLedger:
    """In-memory LedgerClient.

    Behaves like a node in front of the voting contract: it refuses a second
    transaction for a nonce unless it pays a higher fee, keeps sent
    transactions pending until ``mine`` is called, and records votes when a
    transaction is mined successfully. Every call yields to the event loop so
    concurrent callers interleave.
    """

    def __init__(self, address: str = RELAYER_ADDRESS):
        self._address = address
        self.polls: dict[int, PollSnapshot] = {}
        self.voted: set[tuple[int, str]] = set()
        self.allowances: dict[str, CreatorAllowance] = {}
        self.balance = 10 * ONE_ETHER
        self.authorized = True
        self.chain_id = CHAIN_ID
        self.gas_price = 30 * GWEI
        self.pending_nonce = 0
        # When False the node's pending count lags behind sent transactions
        self.track_pending = True
        self.never_confirm = False

        self.sent: list[MetaVoteTransaction] = []
        self.transactions: dict[str, MetaVoteTransaction] = {}
        self.by_nonce: dict[int, MetaVoteTransaction] = {}
        self.mined_nonces: set[int] = set()
        self.receipts: dict[str, Receipt] = {}

        self.calls: Counter[str] = Counter()
        self.failures: dict[str, Exception] = {}
        self.submit_errors: list[Exception] = []
        self.delays: dict[str, float] = {}
        self.closed = False

    @property
    def address(self) -> str:
        return self._address

    def add_poll(self, poll_id: int = 1, **overrides) -> PollSnapshot:
        fields = {
            "poll_id": poll_id,
            "title": f"Poll {poll_id}",
            "creator": CREATOR_ADDRESS,
            "end_time": NOW + 3600,
            "candidate_count": 3,
            "is_public": True,
            "voter_count": 0,
            "max_voters": 100,
        }
        fields.update(overrides)
        poll = PollSnapshot(**fields)
        self.polls[poll_id] = poll
        self.allowances.setdefault(
            poll.creator, CreatorAllowance(general=ONE_ETHER, relayer_specific=0)
        )
        return poll

    def mine(self, tx_hash: str, succeeded: bool = True, record_vote: bool = True) -> Receipt:
        tx = self.transactions[tx_hash]
        receipt = Receipt(
            tx_hash=tx_hash,
            succeeded=succeeded,
            block_number=100 + len(self.receipts),
            gas_used=120_000,
        )
        self.receipts[tx_hash] = receipt
        self.mined_nonces.add(tx.nonce)
        if succeeded and record_vote:
            self.voted.add((tx.poll_id, tx.voter.lower()))
        return receipt

    def evict(self, tx_hash: str) -> None:
        """Drop an unmined transaction from the pool; the pending count falls back to it."""
        tx = self.transactions[tx_hash]
        del self.by_nonce[tx.nonce]
        self.pending_nonce = min(self.pending_nonce, tx.nonce)

    async def _enter(self, name: str) -> None:
        self.calls[name] += 1
        await asyncio.sleep(self.delays.get(name, 0))
        if name in self.failures:
            raise self.failures[name]

    async def get_poll_snapshot(self, poll_id: int) -> PollSnapshot | None:
        await self._enter("get_poll_snapshot")
        return self.polls.get(poll_id)

    async def has_voted(self, poll_id: int, voter: str) -> bool:
        await self._enter("has_voted")
        return (poll_id, voter.lower()) in self.voted

    async def get_creator_allowance(self, creator: str) -> CreatorAllowance:
        await self._enter("get_creator_allowance")
        return self.allowances.get(creator, CreatorAllowance(general=0, relayer_specific=0))

    async def get_relayer_state(self) -> RelayerState:
        await self._enter("get_relayer_state")
        return RelayerState(
            address=self._address,
            balance=self.balance,
            authorized=self.authorized,
            nonce=self.pending_nonce,
        )

    async def get_nonce(self) -> int:
        await self._enter("get_nonce")
        return self.pending_nonce

    async def get_chain_id(self) -> int:
        await self._enter("get_chain_id")
        return self.chain_id

    async def get_gas_price(self) -> int:
        await self._enter("get_gas_price")
        return self.gas_price

    async def submit(self, transaction: MetaVoteTransaction) -> TransactionHandle:
        await self._enter("submit")
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        if transaction.nonce in self.mined_nonces:
            raise LedgerRejected("nonce too low")
        existing = self.by_nonce.get(transaction.nonce)
        if existing is not None and (
            transaction.fees.max_fee_per_gas <= existing.fees.max_fee_per_gas
        ):
            raise LedgerRejected("replacement transaction underpriced")

        self.sent.append(transaction)
        tx_hash = f"0x{len(self.sent):064x}"
        self.transactions[tx_hash] = transaction
        self.by_nonce[transaction.nonce] = transaction
        if self.track_pending:
            self.pending_nonce = max(self.pending_nonce, transaction.nonce + 1)
        return TransactionHandle(tx_hash=tx_hash, nonce=transaction.nonce)

    async def get_receipt(self, tx_hash: str) -> Receipt | TxLookup:
        await self._enter("get_receipt")
        if tx_hash in self.receipts and not self.never_confirm:
            return self.receipts[tx_hash]
        tx = self.transactions.get(tx_hash)
        # Only the transaction currently holding its nonce is in the pool
        if tx is not None and self.by_nonce.get(tx.nonce) is tx:
            return TxLookup.PENDING
        return TxLookup.NOT_FOUND

    async def aclose(self) -> None:
        self.closed = True


class ManualScheduler:
    """Scheduler that only runs callbacks when a test asks it to."""

    def __init__(self):
        self.scheduled: list[tuple[float, Callable[[], Awaitable[None]]]] = []
        self.shut_down = False

    def call_later(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        self.scheduled.append((delay, callback))

    async def run_next(self) -> float:
        """Run the earliest scheduled callback; returns the delay it was scheduled with."""
        delay, callback = self.scheduled.pop(0)
        await callback()
        return delay

    async def run_all(self, limit: int = 50) -> list[float]:
        delays = []
        while self.scheduled:
            assert len(delays) < limit, "scheduler did not settle"
            delays.append(await self.run_next())
        return delays

    async def shutdown(self) -> None:
        self.shut_down = True
        self.scheduled.clear()


def make_intent(
    poll_id: int = 1,
    candidate_id: int = 0,
    voter: str = VOTER_ADDRESS,
    signature: str = SIGNATURE,
    merkle_proof: list[str] | None = None,
) -> VoteIntent:
    return VoteIntent(
        poll_id=poll_id,
        candidate_id=candidate_id,
        voter=voter,
        signature=signature,
        merkle_proof=merkle_proof or [],
    )


def voter_address(n: int) -> str:
    """Distinct, well-formed voter addresses for concurrency tests."""
    return "0x" + f"{n + 1:040x}"


def build_service(
    ledger: FakeLedger,
    scheduler: ManualScheduler,
    *,
    request_budget_seconds: float = 5.0,
    verify_signatures: bool = False,
    nonce_conflict_retries: int = 2,
) -> RelayerService:
    submitter = VoteSubmitter(
        ledger, NonceManager(ledger), SUBMIT_FEES, nonce_conflict_retries=nonce_conflict_retries
    )
    monitor = ConfirmationMonitor(
        ledger, submitter, scheduler, REPLACEMENT_FEES, MonitorPolicy()
    )
    return RelayerService(
        ledger,
        EligibilityChecker(ledger, SUBMIT_FEES, clock=fixed_clock),
        submitter,
        monitor,
        contract_address=CONTRACT_ADDRESS,
        request_budget_seconds=request_budget_seconds,
        chain_id=CHAIN_ID,
        verify_signatures=verify_signatures,
        min_balance_warning_wei=ONE_ETHER // 20,
    )


@pytest.fixture
def ledger() -> FakeLedger:
    """A ledger with one open public poll (id 1) funded by its creator."""
    fake = FakeLedger()
    fake.add_poll(1)
    return fake


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def service(ledger: FakeLedger, scheduler: ManualScheduler) -> RelayerService:
    return build_service(ledger, scheduler)


@pytest.fixture(scope="function")
def client(service: RelayerService) -> Generator[TestClient, None, None]:
    """Create a test client serving the in-memory relayer."""
    app.state.relayer = service
    with TestClient(app) as c:
        yield c
    app.state.relayer = None
