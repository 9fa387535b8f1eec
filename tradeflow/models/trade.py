"""Trade records as served by the backend ledger."""

from enum import IntEnum

from pydantic import BaseModel


class LedgerStatus(IntEnum):
    PENDING = 0
    SETTLED = 1
    EXPIRED = 2


class Trade(BaseModel):
    """Full ledger record for one trade (GET /api/trades/{trade_id})."""

    trade_id: str
    order_id: str
    buyer: str
    seller: str | None = None
    token_amount: str
    cny_amount: str  # CNY in cents
    exchange_rate: str | None = None
    payment_nonce: str
    created_at: int
    expires_at: int  # unix seconds
    status: LedgerStatus = LedgerStatus.PENDING
    escrow_tx_hash: str | None = None
    settlement_tx_hash: str | None = None
    proof_hash: str | None = None
    pdf_filename: str | None = None
    pdf_uploaded_at: str | None = None
    token: str | None = None

    model_config = {"extra": "ignore"}


class CreatedTrade(BaseModel):
    """A trade returned by execute-fill, with the CNY amount merged in client-side."""

    trade_id: str
    order_id: str
    tx_hash: str  # escrow creation transaction
    alipay_id: str
    alipay_name: str
    payment_nonce: str
    expires_at: int
    cny_amount: str = "0"

    model_config = {"extra": "ignore"}
