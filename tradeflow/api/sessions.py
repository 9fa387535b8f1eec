"""Buyer session API: create trades, upload receipts, drive retries and settlement checks."""

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from tradeflow.api.deps import get_registry
from tradeflow.engine.registry import SessionNotFound, SessionRegistry
from tradeflow.engine.session import SessionCoordinator, TradeNotInSession, TradeSyncTimeout
from tradeflow.engine.trade_machine import InvalidTransition
from tradeflow.schemas.session import RefreshRead, SessionCreate, SessionRead, TradeStatusRead
from tradeflow.services.ledger_client import LedgerError
from tradeflow.services.receipt_gate import Receipt

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

NOT_YET_SETTLED = "Trade may be settled but not yet visible. Please refresh."


def _session_read(coordinator: SessionCoordinator) -> SessionRead:
    snapshot = coordinator.snapshot()
    return SessionRead(
        session_id=coordinator.session_id,
        all_settled=coordinator.all_settled,
        trades=[TradeStatusRead.build(t, snapshot[t.trade_id]) for t in coordinator.trades],
    )


def _trade_read(coordinator: SessionCoordinator, trade_id: str) -> TradeStatusRead:
    trade = next(t for t in coordinator.trades if t.trade_id == trade_id)
    return TradeStatusRead.build(trade, coordinator.machine(trade_id).state)


def _get_session(registry: SessionRegistry, session_id: str) -> SessionCoordinator:
    try:
        return registry.get(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


def _get_trade(coordinator: SessionCoordinator, trade_id: str):
    try:
        return coordinator.machine(trade_id)
    except TradeNotInSession as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("", response_model=SessionRead, status_code=201)
async def create_session(body: SessionCreate, registry: SessionRegistry = Depends(get_registry)):
    """Execute the match plan and start tracking every created trade."""
    try:
        coordinator = await registry.open_session(body.match_plan, body.buyer_address)
    except TradeSyncTimeout as e:
        raise HTTPException(status_code=504, detail=str(e))
    except LedgerError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return _session_read(coordinator)


@router.get("/{session_id}", response_model=SessionRead)
def get_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    return _session_read(_get_session(registry, session_id))


@router.delete("/{session_id}")
async def close_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    try:
        await registry.close_session(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "closed", "session_id": session_id}


@router.post("/{session_id}/trades/{trade_id}/receipt", response_model=TradeStatusRead)
async def upload_receipt(
    session_id: str,
    trade_id: str,
    pdf: UploadFile | None = File(None),
    registry: SessionRegistry = Depends(get_registry),
):
    """Gate the receipt and hand it to the trade's pipeline.

    Returns immediately; poll the session for progress.
    """
    coordinator = _get_session(registry, session_id)
    _get_trade(coordinator, trade_id)

    receipt = None
    if pdf is not None:
        receipt = Receipt(
            filename=pdf.filename or "receipt.pdf",
            content_type=pdf.content_type or "",
            data=await pdf.read(),
        )
    try:
        coordinator.submit_receipt(trade_id, receipt)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _trade_read(coordinator, trade_id)


@router.post("/{session_id}/trades/{trade_id}/retry", response_model=TradeStatusRead)
async def retry_trade(session_id: str, trade_id: str, registry: SessionRegistry = Depends(get_registry)):
    coordinator = _get_session(registry, session_id)
    _get_trade(coordinator, trade_id)
    try:
        coordinator.retry(trade_id)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _trade_read(coordinator, trade_id)


@router.post("/{session_id}/trades/{trade_id}/resume", response_model=TradeStatusRead)
async def resume_trade(session_id: str, trade_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Re-run a failed proof phase with the already validated receipt."""
    coordinator = _get_session(registry, session_id)
    _get_trade(coordinator, trade_id)
    try:
        coordinator.resume(trade_id)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _trade_read(coordinator, trade_id)


@router.post("/{session_id}/trades/{trade_id}/refresh", response_model=RefreshRead)
async def refresh_trade(session_id: str, trade_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Check the ledger once for a settlement that happened elsewhere."""
    coordinator = _get_session(registry, session_id)
    _get_trade(coordinator, trade_id)
    settled = await coordinator.check_settlement(trade_id, attempts=1, interval=0)
    if settled or coordinator.machine(trade_id).state.is_terminal:
        status = coordinator.machine(trade_id).status
        return RefreshRead(trade_id=trade_id, settled=settled, message=f"Trade is {status.value}")
    return RefreshRead(trade_id=trade_id, settled=False, message=NOT_YET_SETTLED)
