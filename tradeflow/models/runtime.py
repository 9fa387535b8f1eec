"""Per-trade runtime state owned by a TradeStateMachine."""

from dataclasses import dataclass, replace
from enum import Enum


class TradePhase(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    VALIDATING = "validating"
    VALID = "valid"
    INVALID = "invalid"
    GENERATING_PROOF = "generating_proof"
    PROOF_READY = "proof_ready"
    PROOF_FAILED = "proof_failed"
    SUBMITTING_TO_BLOCKCHAIN = "submitting_to_blockchain"
    BLOCKCHAIN_SUBMITTED = "blockchain_submitted"
    SETTLED = "settled"
    EXPIRED = "expired"


TERMINAL_PHASES = frozenset({TradePhase.SETTLED, TradePhase.EXPIRED})
RETRYABLE_PHASES = frozenset({TradePhase.INVALID, TradePhase.PROOF_FAILED})


@dataclass
class TradeRuntimeState:
    trade_id: str
    status: TradePhase = TradePhase.PENDING
    time_remaining: int = 0
    error: str | None = None
    uploaded_filename: str | None = None
    validation_details: str | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
    blockchain_tx_hash: str | None = None
    settlement_tx_hash: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PHASES

    def copy(self) -> "TradeRuntimeState":
        return replace(self)

    def clear_diagnostics(self):
        self.error = None
        self.uploaded_filename = None
        self.validation_details = None
        self.expected_hash = None
        self.actual_hash = None
