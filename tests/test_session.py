"""Tests for the session coordinator and registry."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradeflow.engine.deadline import DeadlineTimer
from tradeflow.engine.registry import SessionNotFound, SessionRegistry
from tradeflow.engine.session import SessionCoordinator, TradeNotInSession, TradeSyncTimeout, fill_cny_cents
from tradeflow.engine.trade_machine import InvalidTransition
from tradeflow.models.runtime import TradePhase
from tradeflow.models.trade import CreatedTrade, LedgerStatus, Trade
from tradeflow.schemas.ledger import (
    BlockchainSubmissionResult,
    Fill,
    MatchPlan,
    ProofGenerationResult,
    UploadReceiptResponse,
    ValidationResult,
)
from tradeflow.services.ledger_client import LedgerClient, LedgerError, TradeNotFoundError
from tradeflow.services.receipt_gate import Receipt

NOW = 1_700_000_000
USDC = "0xdFCd0F5aE31008BC94224735a81881D651Ab1A8B"
PDF = Receipt(filename="receipt.pdf", content_type="application/pdf", data=b"%PDF-1.7")


def _fill(order_id: str, amount: str = "100000000", rate: str = "700") -> Fill:
    return Fill(
        order_id=order_id,
        seller="0xseller",
        fill_amount=amount,
        exchange_rate=rate,
        alipay_id="alipay",
        alipay_name="Seller",
        token=USDC,
    )


def _created(trade_id: str, order_id: str) -> CreatedTrade:
    return CreatedTrade(
        trade_id=trade_id,
        order_id=order_id,
        tx_hash="0xescrow",
        alipay_id="alipay",
        alipay_name="Seller",
        payment_nonce="42",
        expires_at=NOW + 900,
    )


def _ledger_trade(trade_id: str, status: LedgerStatus = LedgerStatus.PENDING) -> Trade:
    return Trade(
        trade_id=trade_id,
        order_id="0xorder",
        buyer="0xbuyer",
        token_amount="100000000",
        cny_amount="70000",
        payment_nonce="42",
        created_at=NOW,
        expires_at=NOW + 900,
        status=status,
        settlement_tx_hash="0xledger" if status == LedgerStatus.SETTLED else None,
    )


def _client() -> AsyncMock:
    client = AsyncMock(spec=LedgerClient)
    client.execute_fill.return_value = [_created("T1", "O1"), _created("T2", "O2")]
    client.get_trade.side_effect = lambda trade_id: _ledger_trade(trade_id)
    client.upload_receipt.return_value = UploadReceiptResponse(filename="receipt.pdf", size=8)
    client.validate_receipt.return_value = ValidationResult(is_valid=True, expected_hash="h", actual_hash="h")
    client.generate_proof.return_value = ProofGenerationResult(success=True)
    client.submit_blockchain_proof.return_value = BlockchainSubmissionResult(success=True, tx_hash="0xtx")
    return client


def _coordinator(client=None, **kwargs) -> SessionCoordinator:
    options = dict(
        clock=lambda: NOW,
        grace_seconds=0,
        sync_attempts=3,
        sync_delay=0,
        settlement_attempts=2,
        settlement_interval=0,
    )
    options.update(kwargs)
    return SessionCoordinator(client or _client(), **options)


def _plan(*order_ids: str) -> MatchPlan:
    return MatchPlan(fills=[_fill(o) for o in order_ids], total_filled="200000000")


# ---------------------------------------------------------------------------
# 1. CNY amounts
# ---------------------------------------------------------------------------

def test_fill_cny_cents_uses_token_decimals():
    # 100 USDC (6 decimals) at 700 cents per token
    assert fill_cny_cents(_fill("O1", amount="100000000", rate="700")) == "70000"


def test_fill_cny_cents_rounds_half_up():
    assert fill_cny_cents(_fill("O1", amount="1500", rate="1000")) == "2"


# ---------------------------------------------------------------------------
# 2. Opening a session
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_open_merges_cny_amounts_and_adopts_trades():
    client = _client()
    coordinator = _coordinator(client)

    trades = await coordinator.open(_plan("O1", "O2"), "0xbuyer")

    assert [t.trade_id for t in trades] == ["T1", "T2"]
    assert {t.cny_amount for t in trades} == {"70000"}
    sent_plan = client.execute_fill.call_args.args[0]
    assert all(f.cny_amount == "70000" for f in sent_plan.fills)
    assert set(coordinator.statuses()) == {"T1", "T2"}
    assert all(s == TradePhase.PENDING for s in coordinator.statuses().values())


@pytest.mark.asyncio
async def test_open_sync_timeout_adopts_nothing():
    client = _client()
    client.get_trade.side_effect = TradeNotFoundError("Trade not found", status_code=404)
    coordinator = _coordinator(client)

    with pytest.raises(TradeSyncTimeout, match="ledger sync timed out"):
        await coordinator.open(_plan("O1"), "0xbuyer")

    assert coordinator.trades == []
    assert client.get_trade.call_count == 3 * 2


@pytest.mark.asyncio
async def test_open_with_no_created_trades_fails():
    client = _client()
    client.execute_fill.return_value = []
    coordinator = _coordinator(client)

    with pytest.raises(LedgerError):
        await coordinator.open(_plan("O1"), "0xbuyer")
    client.get_trade.assert_not_called()


def test_adopt_ignores_duplicate_trade_ids():
    coordinator = _coordinator()
    coordinator.adopt([_created("T1", "O1"), _created("T1", "O1")])
    assert len(coordinator.trades) == 1


# ---------------------------------------------------------------------------
# 3. Lifecycle through the coordinator
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_all_settled_fires_once_with_final_statuses():
    fired = []
    coordinator = _coordinator(on_all_settled=lambda statuses: fired.append(dict(statuses)))
    coordinator.adopt([_created("T1", "O1"), _created("T2", "O2")])

    coordinator.submit_receipt("T1", PDF)
    await coordinator.wait_idle()
    assert fired == []
    assert coordinator.all_settled is False

    coordinator.submit_receipt("T2", PDF)
    await coordinator.wait_idle()

    assert coordinator.all_settled is True
    assert fired == [{"T1": TradePhase.SETTLED, "T2": TradePhase.SETTLED}]

    coordinator.machine("T1").mark_settled("0xagain")
    assert len(fired) == 1


@pytest.mark.asyncio
async def test_expired_trade_blocks_completion():
    fired = []
    coordinator = _coordinator(on_all_settled=lambda s: fired.append(s))
    coordinator.adopt([_created("T1", "O1"), _created("T2", "O2")])

    coordinator.submit_receipt("T1", PDF)
    await coordinator.wait_idle()
    coordinator.tick(NOW + 900)

    assert coordinator.statuses()["T2"] == TradePhase.EXPIRED
    assert coordinator.all_settled is False
    assert fired == []


@pytest.mark.asyncio
async def test_submissions_never_overlap():
    client = _client()
    in_flight = 0
    max_in_flight = 0
    order = []

    async def _submit(trade_id):
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        order.append(trade_id)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return BlockchainSubmissionResult(success=True, tx_hash=f"0x{trade_id}")

    client.submit_blockchain_proof.side_effect = _submit
    coordinator = _coordinator(client)
    coordinator.adopt([_created(f"T{i}", f"O{i}") for i in range(4)])

    for i in range(4):
        coordinator.submit_receipt(f"T{i}", PDF)
    await coordinator.wait_idle()

    assert max_in_flight == 1
    assert order == ["T0", "T1", "T2", "T3"]
    assert coordinator.all_settled is True


@pytest.mark.asyncio
async def test_submissions_admitted_in_ready_order():
    client = _client()
    in_flight = 0
    max_in_flight = 0
    order = []

    async def _prove(trade_id):
        # T0 uploads first but its proof takes longer
        await asyncio.sleep(0.05 if trade_id == "T0" else 0.01)
        return ProofGenerationResult(success=True)

    async def _submit(trade_id):
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        order.append(trade_id)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return BlockchainSubmissionResult(success=True, tx_hash=f"0x{trade_id}")

    client.generate_proof.side_effect = _prove
    client.submit_blockchain_proof.side_effect = _submit
    coordinator = _coordinator(client)
    coordinator.adopt([_created("T0", "O0"), _created("T1", "O1")])

    coordinator.submit_receipt("T0", PDF)
    coordinator.submit_receipt("T1", PDF)
    await coordinator.wait_idle()

    assert order == ["T1", "T0"]
    assert max_in_flight == 1
    assert coordinator.all_settled is True


@pytest.mark.asyncio
async def test_rejected_receipt_stays_pending():
    coordinator = _coordinator()
    coordinator.adopt([_created("T1", "O1")])

    state = coordinator.submit_receipt("T1", None)

    assert state.status == TradePhase.PENDING
    assert state.error == "Please select a PDF file"
    await coordinator.wait_idle()


@pytest.mark.asyncio
async def test_retry_and_resume_guarded():
    coordinator = _coordinator()
    coordinator.adopt([_created("T1", "O1")])

    with pytest.raises(InvalidTransition):
        coordinator.retry("T1")
    with pytest.raises(InvalidTransition):
        coordinator.resume("T1")
    with pytest.raises(TradeNotInSession):
        coordinator.retry("nope")


@pytest.mark.asyncio
async def test_resume_after_submission_failure():
    client = _client()
    client.submit_blockchain_proof.side_effect = [
        LedgerError("nonce too low"),
        BlockchainSubmissionResult(success=True, tx_hash="0xtx"),
    ]
    coordinator = _coordinator(client)
    coordinator.adopt([_created("T1", "O1")])

    coordinator.submit_receipt("T1", PDF)
    await coordinator.wait_idle()
    assert coordinator.statuses()["T1"] == TradePhase.PROOF_FAILED

    coordinator.resume("T1")
    await coordinator.wait_idle()

    assert coordinator.all_settled is True
    client.upload_receipt.assert_called_once()


@pytest.mark.asyncio
async def test_second_resume_rejected_while_first_runs():
    client = _client()
    client.generate_proof.side_effect = [LedgerError("prover unavailable"), ProofGenerationResult(success=True)]
    coordinator = _coordinator(client)
    coordinator.adopt([_created("T1", "O1")])
    coordinator.submit_receipt("T1", PDF)
    await coordinator.wait_idle()

    state = coordinator.resume("T1")
    assert state.status == TradePhase.GENERATING_PROOF
    with pytest.raises(InvalidTransition):
        coordinator.resume("T1")
    await coordinator.wait_idle()

    assert coordinator.all_settled is True
    assert client.generate_proof.call_count == 2


@pytest.mark.asyncio
async def test_unexpected_phase_error_is_recovered():
    client = _client()
    client.generate_proof.side_effect = RuntimeError("boom")
    coordinator = _coordinator(client)
    coordinator.adopt([_created("T1", "O1")])

    coordinator.submit_receipt("T1", PDF)
    await coordinator.wait_idle()

    state = coordinator.snapshot()["T1"]
    assert state.status == TradePhase.PROOF_FAILED
    assert state.error == "Unexpected error: boom"


def test_snapshot_is_read_only():
    coordinator = _coordinator()
    coordinator.adopt([_created("T1", "O1")])
    snapshot = coordinator.snapshot()

    with pytest.raises(TypeError):
        snapshot["T1"] = None
    snapshot["T1"].status = TradePhase.SETTLED
    assert coordinator.statuses()["T1"] == TradePhase.PENDING


# ---------------------------------------------------------------------------
# 4. Settlement checks
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_check_settlement_marks_trade_settled():
    client = _client()
    client.get_trade.side_effect = lambda trade_id: _ledger_trade(trade_id, LedgerStatus.SETTLED)
    coordinator = _coordinator(client)
    coordinator.adopt([_created("T1", "O1")])

    assert await coordinator.check_settlement("T1") is True
    state = coordinator.snapshot()["T1"]
    assert state.status == TradePhase.SETTLED
    assert state.settlement_tx_hash == "0xledger"


@pytest.mark.asyncio
async def test_check_settlement_not_yet_visible():
    coordinator = _coordinator()
    coordinator.adopt([_created("T1", "O1")])

    assert await coordinator.check_settlement("T1", attempts=1, interval=0) is False
    assert coordinator.statuses()["T1"] == TradePhase.PENDING


@pytest.mark.asyncio
async def test_settlement_watch_starts_after_submission():
    client = _client()
    # Long grace period: the ledger watch settles the trade first
    coordinator = _coordinator(client, grace_seconds=10)
    client.get_trade.side_effect = lambda trade_id: _ledger_trade(trade_id, LedgerStatus.SETTLED)
    coordinator.adopt([_created("T1", "O1")])

    coordinator.submit_receipt("T1", PDF)
    for _ in range(20):
        await asyncio.sleep(0)
        if coordinator.all_settled:
            break

    assert coordinator.snapshot()["T1"].settlement_tx_hash == "0xledger"
    await coordinator.close()


@pytest.mark.asyncio
async def test_settlement_watch_stops_once_grace_period_settles(caplog):
    client = _client()
    coordinator = _coordinator(client, settlement_attempts=20, settlement_interval=0.01)
    coordinator.adopt([_created("T1", "O1")])

    coordinator.submit_receipt("T1", PDF)
    await coordinator.wait_idle()

    assert coordinator.statuses()["T1"] == TradePhase.SETTLED
    client.get_trade.assert_not_called()
    assert "Settlement polling timed out" not in caplog.text


# ---------------------------------------------------------------------------
# 5. Registry
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_registry_open_get_close():
    client = _client()
    timer = DeadlineTimer(clock=lambda: NOW, interval_seconds=1)
    registry = SessionRegistry(client, timer, grace_seconds=0, sync_attempts=1, sync_delay=0)

    coordinator = await registry.open_session(_plan("O1", "O2"), "0xbuyer")

    assert registry.get(coordinator.session_id) is coordinator
    assert len(registry) == 1
    assert timer.status()["sessions"] == 1

    await registry.close_session(coordinator.session_id)
    with pytest.raises(SessionNotFound):
        registry.get(coordinator.session_id)
    assert timer.status()["sessions"] == 0


@pytest.mark.asyncio
async def test_registry_timer_expires_trades():
    clock = MagicMock(return_value=NOW)
    timer = DeadlineTimer(clock=clock, interval_seconds=1)
    registry = SessionRegistry(_client(), timer, sync_attempts=1, sync_delay=0)
    coordinator = await registry.open_session(_plan("O1", "O2"), "0xbuyer")

    clock.return_value = NOW + 900
    timer.tick()

    assert set(coordinator.statuses().values()) == {TradePhase.EXPIRED}


@pytest.mark.asyncio
async def test_registry_close_all_closes_client():
    client = _client()
    registry = SessionRegistry(client, DeadlineTimer(clock=lambda: NOW), sync_attempts=1, sync_delay=0)
    await registry.open_session(_plan("O1"), "0xbuyer")

    await registry.close_all()

    assert len(registry) == 0
    client.close.assert_awaited_once()
