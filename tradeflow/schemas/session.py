"""Pydantic schemas for the session API."""

from pydantic import BaseModel, Field

from tradeflow.models.runtime import TradePhase, TradeRuntimeState
from tradeflow.models.trade import CreatedTrade
from tradeflow.schemas.ledger import MatchPlan
from tradeflow.utils.formatting import format_cny_amount, format_time


class SessionCreate(BaseModel):
    match_plan: MatchPlan
    buyer_address: str = Field(min_length=1)


class TradeStatusRead(BaseModel):
    trade_id: str
    order_id: str
    status: TradePhase
    time_remaining: int
    countdown: str
    cny_amount: str  # yuan, two decimals
    alipay_id: str
    alipay_name: str
    payment_nonce: str
    escrow_tx_hash: str
    error: str | None = None
    uploaded_filename: str | None = None
    validation_details: str | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
    blockchain_tx_hash: str | None = None
    settlement_tx_hash: str | None = None

    @classmethod
    def build(cls, trade: CreatedTrade, state: TradeRuntimeState) -> "TradeStatusRead":
        return cls(
            trade_id=trade.trade_id,
            order_id=trade.order_id,
            status=state.status,
            time_remaining=state.time_remaining,
            countdown=format_time(state.time_remaining),
            cny_amount=format_cny_amount(trade.cny_amount),
            alipay_id=trade.alipay_id,
            alipay_name=trade.alipay_name,
            payment_nonce=trade.payment_nonce,
            escrow_tx_hash=trade.tx_hash,
            error=state.error,
            uploaded_filename=state.uploaded_filename,
            validation_details=state.validation_details,
            expected_hash=state.expected_hash,
            actual_hash=state.actual_hash,
            blockchain_tx_hash=state.blockchain_tx_hash,
            settlement_tx_hash=state.settlement_tx_hash,
        )


class SessionRead(BaseModel):
    session_id: str
    all_settled: bool
    trades: list[TradeStatusRead]


class RefreshRead(BaseModel):
    trade_id: str
    settled: bool
    message: str
