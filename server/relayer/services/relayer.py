"""Relayer orchestration: eligibility -> submission -> background monitoring.

The service is the single translator from component failures to the small
outcome taxonomy the API reports. It keeps no durable state: every decision
re-reads the ledger, and in-flight attempts live only in the monitor.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from web3 import Web3

from relayer.core.config import Settings
from relayer.services.base import (
    REJECTION_MESSAGES,
    RejectionReason,
    VoteIntent,
    new_correlation_id,
)
from relayer.services.eligibility import EligibilityChecker
from relayer.services.ledger import (
    FeePolicy,
    LedgerClient,
    LedgerError,
    LedgerUnreachable,
    Web3LedgerClient,
)
from relayer.services.monitor import (
    AsyncioScheduler,
    ConfirmationMonitor,
    MonitorPolicy,
    SubmissionAttempt,
)
from relayer.services.nonce import NonceManager
from relayer.services.signature import InvalidSignature, recover_vote_signer
from relayer.services.submitter import SubmissionFailed, VoteSubmitter

logger = logging.getLogger(__name__)

# Reasons that describe the relayer's own health rather than the vote.
UNAVAILABLE_REASONS = frozenset(
    {RejectionReason.RELAYER_UNDERFUNDED, RejectionReason.RELAYER_UNAUTHORIZED}
)


class OutcomeKind(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"
    PENDING = "pending"  # still sending when the request budget ran out


@dataclass(frozen=True)
class SubmissionOutcome:
    kind: OutcomeKind
    message: str
    reason: RejectionReason | None = None
    tx_hash: str | None = None
    correlation_id: str | None = None

    @property
    def success(self) -> bool:
        return self.kind is OutcomeKind.ACCEPTED


@dataclass(frozen=True)
class RelayerStatus:
    address: str
    authorized: bool
    balance: int  # wei

    @property
    def balance_ether(self) -> Decimal:
        return Web3.from_wei(self.balance, "ether")


@dataclass
class _Progress:
    # Set once a nonce is held; past that point the send is never cancelled
    submitting: bool = False


def _for_reason(
    reason: RejectionReason, correlation_id: str, message: str | None = None
) -> SubmissionOutcome:
    kind = OutcomeKind.UNAVAILABLE if reason in UNAVAILABLE_REASONS else OutcomeKind.REJECTED
    return SubmissionOutcome(
        kind=kind,
        reason=reason,
        message=message or REJECTION_MESSAGES[reason],
        correlation_id=correlation_id,
    )


class RelayerService:
    def __init__(
        self,
        ledger: LedgerClient,
        checker: EligibilityChecker,
        submitter: VoteSubmitter,
        monitor: ConfirmationMonitor,
        *,
        contract_address: str,
        request_budget_seconds: float = 15.0,
        chain_id: int | None = None,
        verify_signatures: bool = False,
        min_balance_warning_wei: int = 0,
    ):
        self._ledger = ledger
        self._checker = checker
        self._submitter = submitter
        self._monitor = monitor
        self._contract_address = contract_address
        self._request_budget = request_budget_seconds
        self._chain_id = chain_id
        self._verify_signatures = verify_signatures
        self._min_balance_warning_wei = min_balance_warning_wei
        # Submissions that outlived their request; kept referenced until done.
        self._stragglers: set[asyncio.Task] = set()

    @property
    def ledger(self) -> LedgerClient:
        return self._ledger

    @property
    def monitor(self) -> ConfirmationMonitor:
        return self._monitor

    @property
    def fees(self) -> FeePolicy:
        return self._submitter.fees

    async def submit_vote(self, intent: VoteIntent) -> SubmissionOutcome:
        """Check and submit one vote within the request budget.

        Always returns a definite outcome; confirmation continues in the
        background after this returns.
        """
        correlation_id = new_correlation_id()
        logger.info(
            "[%s] Processing vote: poll %d, candidate %d, voter %s",
            correlation_id,
            intent.poll_id,
            intent.candidate_id,
            intent.voter,
        )
        progress = _Progress()
        task = asyncio.create_task(self._process(intent, correlation_id, progress))
        done, _ = await asyncio.wait({task}, timeout=self._request_budget)
        if task in done:
            return task.result()

        if progress.submitting:
            logger.warning(
                "[%s] Request budget of %.1fs exceeded while sending; "
                "submission continues in the background",
                correlation_id,
                self._request_budget,
            )
            self._stragglers.add(task)
            task.add_done_callback(self._stragglers.discard)
            return SubmissionOutcome(
                kind=OutcomeKind.PENDING,
                message=(
                    "Vote submission is taking longer than expected. "
                    "Verify on-chain before retrying."
                ),
                correlation_id=correlation_id,
            )

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.error(
            "[%s] Eligibility check exceeded the %.1fs request budget",
            correlation_id,
            self._request_budget,
        )
        return SubmissionOutcome(
            kind=OutcomeKind.UNAVAILABLE,
            message="The ledger did not respond in time. Please try again.",
            correlation_id=correlation_id,
        )

    async def _process(
        self, intent: VoteIntent, correlation_id: str, progress: _Progress
    ) -> SubmissionOutcome:
        try:
            if self._verify_signatures and not await self._signature_matches(
                intent, correlation_id
            ):
                return _for_reason(RejectionReason.BAD_SIGNATURE, correlation_id)

            result = await self._checker.check(intent)
        except LedgerError as e:
            logger.error("[%s] Ledger read failed during eligibility check: %s", correlation_id, e)
            return SubmissionOutcome(
                kind=OutcomeKind.UNAVAILABLE,
                message="Ledger is unreachable. Please try again later.",
                correlation_id=correlation_id,
            )

        if not result.eligible:
            logger.info("[%s] Ineligible: %s", correlation_id, result.reason.value)
            return _for_reason(result.reason, correlation_id)

        def mark_submitting(nonce: int) -> None:
            progress.submitting = True

        try:
            handle = await self._submitter.submit_vote(
                intent, correlation_id, on_reserved=mark_submitting
            )
        except SubmissionFailed as e:
            return _for_reason(e.reason, correlation_id, e.message)
        except LedgerUnreachable as e:
            logger.error("[%s] Ledger unreachable while submitting: %s", correlation_id, e)
            return SubmissionOutcome(
                kind=OutcomeKind.UNAVAILABLE,
                message="Ledger is unreachable. Please try again later.",
                correlation_id=correlation_id,
            )
        self._monitor.track(
            SubmissionAttempt(
                correlation_id=correlation_id,
                intent=intent,
                tx_hash=handle.tx_hash,
                nonce=handle.nonce,
            )
        )
        return SubmissionOutcome(
            kind=OutcomeKind.ACCEPTED,
            message="Vote submitted successfully",
            tx_hash=handle.tx_hash,
            correlation_id=correlation_id,
        )

    async def _signature_matches(self, intent: VoteIntent, correlation_id: str) -> bool:
        if self._chain_id is None:
            self._chain_id = await self._ledger.get_chain_id()
        try:
            signer = recover_vote_signer(intent, self._contract_address, self._chain_id)
        except InvalidSignature as e:
            logger.info("[%s] Unrecoverable signature: %s", correlation_id, e)
            return False
        if signer.lower() != intent.voter.lower():
            logger.info(
                "[%s] Signature recovers to %s, not voter %s", correlation_id, signer, intent.voter
            )
            return False
        return True

    async def status(self) -> RelayerStatus:
        """Fresh relayer status. Raises LedgerError; the API softens it."""
        state = await self._ledger.get_relayer_state()
        status = RelayerStatus(
            address=state.address, authorized=state.authorized, balance=state.balance
        )
        self._warn_if_low(status)
        return status

    async def startup_check(self) -> None:
        """Log authorization and balance at startup. Ledger failures are only logged."""
        logger.info("Relayer service initialized with address: %s", self._ledger.address)
        try:
            status = await self.status()
        except LedgerError as e:
            logger.error("Failed to check relayer status at startup: %s", e)
            return
        logger.info(
            "Relayer authorization status: %s, balance: %s",
            status.authorized,
            status.balance_ether,
        )
        if not status.authorized:
            logger.error(
                "WARNING: relayer %s is not authorized in the contract; "
                "it must be authorized by the default relayer wallet",
                status.address,
            )

    def _warn_if_low(self, status: RelayerStatus) -> None:
        if status.balance < self._min_balance_warning_wei:
            logger.warning(
                "Relayer wallet balance is critically low (%s). Please add funds to %s",
                status.balance_ether,
                status.address,
            )

    async def aclose(self) -> None:
        await self._monitor.shutdown()
        for task in list(self._stragglers):
            task.cancel()
        await asyncio.gather(*self._stragglers, return_exceptions=True)
        await self._ledger.aclose()


def create_relayer_service(settings: Settings) -> RelayerService:
    """Wire the production service from settings."""
    ledger = Web3LedgerClient(
        provider_url=settings.provider_url,
        contract_address=settings.contract_address,
        private_key=settings.relayer_private_key,
        timeout=settings.ledger_timeout_seconds,
        chain_id=settings.chain_id,
    )
    fees = FeePolicy.from_gwei(
        settings.gas_limit, settings.max_fee_gwei, settings.priority_fee_gwei
    )
    replacement_fees = FeePolicy.from_gwei(
        settings.replacement_gas_limit,
        settings.replacement_max_fee_gwei,
        settings.replacement_priority_fee_gwei,
    )
    submitter = VoteSubmitter(
        ledger,
        NonceManager(ledger),
        fees,
        nonce_conflict_retries=settings.nonce_conflict_retries,
    )
    monitor = ConfirmationMonitor(
        ledger,
        submitter,
        AsyncioScheduler(),
        replacement_fees,
        MonitorPolicy(
            first_check_seconds=settings.monitor_first_check_seconds,
            backoff_seconds=settings.monitor_backoff_seconds,
            max_polls=settings.monitor_max_polls,
            replacement_polls=settings.monitor_replacement_polls,
        ),
    )
    return RelayerService(
        ledger,
        EligibilityChecker(ledger, fees),
        submitter,
        monitor,
        contract_address=settings.contract_address,
        request_budget_seconds=settings.request_budget_seconds,
        chain_id=settings.chain_id,
        verify_signatures=settings.verify_signatures,
        min_balance_warning_wei=Web3.to_wei(settings.min_balance_warning, "ether"),
    )
