"""Per-trade lifecycle state machine.

Drives one trade through:
receipt upload → remote validation → proof generation → blockchain submission → settlement.

The machine owns its TradeRuntimeState exclusively. Phases run strictly in
sequence; every ledger call is a suspension point. Confirmed failures stop in
`invalid` / `proof_failed` and wait for an explicit user action; nothing here
retries automatically.
"""

import asyncio
import logging
import time
from contextlib import nullcontext
from typing import AsyncContextManager, Callable

from tradeflow.config import settings
from tradeflow.engine.deadline import time_remaining
from tradeflow.models.runtime import RETRYABLE_PHASES, TradePhase, TradeRuntimeState
from tradeflow.models.trade import CreatedTrade
from tradeflow.services.contract_errors import describe_error
from tradeflow.services.ledger_client import LedgerClient, LedgerError
from tradeflow.services.receipt_gate import Receipt, ReceiptRejected, check_receipt

logger = logging.getLogger(__name__)

SubmissionSlot = Callable[[str], AsyncContextManager]
ChangeCallback = Callable[[TradeRuntimeState], None]

_UPLOAD_PHASES = frozenset({TradePhase.UPLOADING, TradePhase.VALIDATING})
_PROOF_PHASES = frozenset({
    TradePhase.VALID,
    TradePhase.GENERATING_PROOF,
    TradePhase.PROOF_READY,
    TradePhase.SUBMITTING_TO_BLOCKCHAIN,
})


class InvalidTransition(Exception):
    """A user action was requested in a state that does not allow it."""


def _unserialized_slot(trade_id: str) -> AsyncContextManager:
    return nullcontext()


class TradeStateMachine:
    def __init__(
        self,
        trade: CreatedTrade,
        client: LedgerClient,
        submission_slot: SubmissionSlot | None = None,
        on_change: ChangeCallback | None = None,
        clock: Callable[[], float] = time.time,
        grace_seconds: float | None = None,
        max_receipt_bytes: int | None = None,
    ):
        self.trade = trade
        self.trade_id = trade.trade_id
        self.client = client
        # Serialization across trades is the coordinator's job; a lone machine submits directly
        self._submission_slot = submission_slot or _unserialized_slot
        self._on_change = on_change
        self._clock = clock
        self.grace_seconds = grace_seconds if grace_seconds is not None else settings.settlement_grace_seconds
        self.max_receipt_bytes = max_receipt_bytes
        self._validated = False
        self._proof_ready = False
        self._state = TradeRuntimeState(
            trade_id=trade.trade_id,
            time_remaining=time_remaining(trade.expires_at, clock()),
        )

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def state(self) -> TradeRuntimeState:
        """A copy of the current runtime state."""
        return self._state.copy()

    @property
    def status(self) -> TradePhase:
        return self._state.status

    @property
    def can_resume(self) -> bool:
        return self._state.status == TradePhase.PROOF_FAILED and self._validated

    def _notify(self):
        if self._on_change is not None:
            self._on_change(self._state.copy())

    def _set(self, status: TradePhase | None = None, **changes) -> bool:
        """Apply a transition. Returns False (and changes nothing) once terminal."""
        if self._state.is_terminal:
            logger.debug(
                f"[{self.trade_id}] Ignoring transition to {status} from terminal {self._state.status.value}"
            )
            return False
        previous = self._state.status
        for key, value in changes.items():
            setattr(self._state, key, value)
        if status is not None:
            self._state.status = status
            if status != previous:
                logger.info(f"[{self.trade_id}] {previous.value} -> {status.value}")
        self._notify()
        return True

    def _back_to_pending(self, **changes):
        self._set(TradePhase.PENDING, **changes)
        # Countdown resumes from the absolute deadline, not the frozen value
        self.tick()

    # ------------------------------------------------------------------
    # Deadline
    # ------------------------------------------------------------------

    def tick(self, now: float | None = None):
        """Recompute remaining time while pending; expire when it hits zero."""
        if self._state.status != TradePhase.PENDING:
            return
        now = self._clock() if now is None else now
        remaining = time_remaining(self.trade.expires_at, now)
        if remaining == 0:
            logger.warning(f"[{self.trade_id}] Payment deadline reached, trade expired")
            self._set(TradePhase.EXPIRED, time_remaining=0)
        else:
            self._state.time_remaining = remaining

    # ------------------------------------------------------------------
    # Receipt → validation → proof → submission
    # ------------------------------------------------------------------

    def begin_upload(self, receipt: Receipt | None) -> Receipt | None:
        """Gate a file selection. Returns the accepted receipt, or None if rejected.

        Rejections leave the trade pending with `error` set; nothing is sent.
        """
        if self._state.status != TradePhase.PENDING:
            raise InvalidTransition(
                f"Cannot upload a receipt while trade is {self._state.status.value}"
            )
        self.tick()
        if self._state.status == TradePhase.EXPIRED:
            raise InvalidTransition("Trade has expired")

        try:
            accepted = check_receipt(receipt, self.max_receipt_bytes)
        except ReceiptRejected as e:
            logger.info(f"[{self.trade_id}] Receipt rejected: {e}")
            self._set(error=str(e))
            return None

        if not self._set(TradePhase.UPLOADING, error=None):
            return None
        return accepted

    async def run_pipeline(self, receipt: Receipt):
        """Upload and validate an accepted receipt, then prove and submit."""
        try:
            upload = await self.client.upload_receipt(self.trade_id, receipt)
            if not self._set(TradePhase.VALIDATING, uploaded_filename=upload.filename or receipt.filename):
                return
            result = await self.client.validate_receipt(self.trade_id)
        except LedgerError as e:
            logger.error(f"[{self.trade_id}] Receipt upload/validation error: {e}")
            self._back_to_pending(error=e.message or "Failed to process receipt")
            return

        if not result.is_valid:
            logger.warning(
                f"[{self.trade_id}] Receipt invalid: expected={result.expected_hash} actual={result.actual_hash}"
            )
            self._set(
                TradePhase.INVALID,
                error=f"Receipt validation failed: {result.details}",
                validation_details=result.details,
                expected_hash=result.expected_hash,
                actual_hash=result.actual_hash,
            )
            return

        self._validated = True
        if not self._set(
            TradePhase.VALID,
            validation_details=result.details,
            expected_hash=result.expected_hash,
            actual_hash=result.actual_hash,
        ):
            return
        await self._generate_proof()

    async def handle_receipt(self, receipt: Receipt | None):
        """File selection through to the end of the pipeline."""
        accepted = self.begin_upload(receipt)
        if accepted is not None:
            await self.run_pipeline(accepted)

    async def _generate_proof(self):
        if not self._set(TradePhase.GENERATING_PROOF, error=None):
            return
        try:
            result = await self.client.generate_proof(self.trade_id)
        except LedgerError as e:
            logger.error(f"[{self.trade_id}] Proof generation error: {e}")
            self._set(TradePhase.PROOF_FAILED, error=e.message or "Failed to generate proof")
            return

        if not result.success:
            logger.error(f"[{self.trade_id}] Proof generation failed: {result.message}")
            self._set(TradePhase.PROOF_FAILED, error=result.message or "Proof generation failed")
            return

        self._proof_ready = True
        logger.info(f"[{self.trade_id}] Proof ready (proof_id={result.proof_id})")
        if not self._set(TradePhase.PROOF_READY):
            return
        await self._submit_proof()

    async def _submit_proof(self):
        async with self._submission_slot(self.trade_id):
            if not self._set(TradePhase.SUBMITTING_TO_BLOCKCHAIN, error=None):
                return
            try:
                result = await self.client.submit_blockchain_proof(self.trade_id)
            except LedgerError as e:
                logger.error(f"[{self.trade_id}] Blockchain submission error: {e}")
                self._set(
                    TradePhase.PROOF_FAILED,
                    error=describe_error(e.message, "Failed to submit proof to blockchain"),
                )
                return

        if not result.success:
            logger.error(f"[{self.trade_id}] Blockchain submission failed: {result.message}")
            self._set(
                TradePhase.PROOF_FAILED,
                error=describe_error(result.message, "Blockchain submission failed"),
            )
            return

        logger.info(f"[{self.trade_id}] Proof submitted on-chain: {result.tx_hash}")
        if not self._set(TradePhase.BLOCKCHAIN_SUBMITTED, blockchain_tx_hash=result.tx_hash):
            return
        await asyncio.sleep(self.grace_seconds)
        self._set(TradePhase.SETTLED, settlement_tx_hash=result.tx_hash)

    # ------------------------------------------------------------------
    # User actions and external events
    # ------------------------------------------------------------------

    def retry(self):
        """invalid / proof_failed → pending with a clean slate."""
        if self._state.status not in RETRYABLE_PHASES:
            raise InvalidTransition(f"Nothing to retry while trade is {self._state.status.value}")
        self._validated = False
        self._proof_ready = False
        self._state.clear_diagnostics()
        self._back_to_pending()

    def begin_resume(self):
        """Leave proof_failed for the phase that failed, before any call is made.

        A second resume then sees a busy trade and raises InvalidTransition.
        """
        if not self.can_resume:
            raise InvalidTransition(f"Cannot resume while trade is {self._state.status.value}")
        self._set(TradePhase.PROOF_READY if self._proof_ready else TradePhase.GENERATING_PROOF, error=None)

    async def continue_proof(self):
        if self._proof_ready:
            await self._submit_proof()
        else:
            await self._generate_proof()

    async def resume(self):
        """Re-run the failed proof phase without re-uploading the receipt."""
        self.begin_resume()
        await self.continue_proof()

    def mark_settled(self, tx_hash: str | None) -> bool:
        """The ledger reports this trade settled (possibly via another device)."""
        if self._state.is_terminal:
            return False
        logger.info(f"[{self.trade_id}] Settlement observed in ledger (tx={tx_hash})")
        return self._set(
            TradePhase.SETTLED,
            settlement_tx_hash=tx_hash or self._state.settlement_tx_hash,
            error=None,
        )

    def recover(self, message: str):
        """Put a trade whose phase crashed unexpectedly back into a retryable state."""
        if self._state.status in _UPLOAD_PHASES:
            self._back_to_pending(error=message)
        elif self._state.status in _PROOF_PHASES:
            self._set(TradePhase.PROOF_FAILED, error=message)
