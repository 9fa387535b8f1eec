"""Session coordinator: one buyer batch, one state machine per trade.

Responsibilities:
1. Create trades from a match plan and wait for the ledger to index them
2. Own one TradeStateMachine per trade_id and the shared submission queue
3. Run long phases as background tasks so callers never block
4. Detect "all settled" and fire the completion callback exactly once
"""

import asyncio
import logging
import time
import uuid
from decimal import Decimal, ROUND_HALF_UP
from types import MappingProxyType
from typing import Callable, Mapping

from tradeflow.engine.pollers import poll_settlement, wait_for_trades_sync
from tradeflow.engine.submission_queue import SubmissionQueue
from tradeflow.engine.trade_machine import TradeStateMachine
from tradeflow.models.runtime import TradePhase, TradeRuntimeState
from tradeflow.models.trade import CreatedTrade
from tradeflow.schemas.ledger import Fill, MatchPlan
from tradeflow.services.ledger_client import LedgerClient, LedgerError
from tradeflow.services.receipt_gate import Receipt
from tradeflow.utils.constants import token_decimals
from tradeflow.utils.formatting import format_cny_amount

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[Mapping[str, TradePhase]], None]


class TradeSyncTimeout(Exception):
    """Trades exist on-chain but never became visible in the ledger."""


class TradeNotInSession(LookupError):
    pass


def _notify(message: str):
    """Send a Telegram notification (fire-and-forget)."""
    try:
        from tradeflow.services.telegram_bot import get_bot
        bot = get_bot()
        if bot and bot._loop:
            asyncio.run_coroutine_threadsafe(bot.send_notification(message), bot._loop)
    except Exception as e:
        logger.debug(f"Notification skipped: {e}")


def fill_cny_cents(fill: Fill) -> str:
    """CNY owed for a fill, in cents: base units / 10**decimals * rate (cents per token)."""
    tokens = Decimal(fill.fill_amount) / (Decimal(10) ** token_decimals(fill.token))
    cents = (tokens * Decimal(fill.exchange_rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return str(cents)


class SessionCoordinator:
    def __init__(
        self,
        client: LedgerClient,
        session_id: str | None = None,
        on_all_settled: CompletionCallback | None = None,
        clock: Callable[[], float] = time.time,
        grace_seconds: float | None = None,
        max_receipt_bytes: int | None = None,
        sync_attempts: int | None = None,
        sync_delay: float | None = None,
        settlement_attempts: int | None = None,
        settlement_interval: float | None = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.client = client
        self.submissions = SubmissionQueue()
        self._on_all_settled = on_all_settled
        self._clock = clock
        self._grace_seconds = grace_seconds
        self._max_receipt_bytes = max_receipt_bytes
        self._sync_attempts = sync_attempts
        self._sync_delay = sync_delay
        self._settlement_attempts = settlement_attempts
        self._settlement_interval = settlement_interval
        self._trades: dict[str, CreatedTrade] = {}
        self._machines: dict[str, TradeStateMachine] = {}
        self._tasks: set[asyncio.Task] = set()
        self._watching: set[str] = set()
        self._completed = False

    # ------------------------------------------------------------------
    # Batch setup
    # ------------------------------------------------------------------

    async def open(self, match_plan: MatchPlan, buyer_address: str) -> list[CreatedTrade]:
        """Fill the plan on-chain, wait for ledger indexing, then adopt the trades.

        Raises TradeSyncTimeout if the ledger never shows every trade; no trade
        may enter its payment phase in that case.
        """
        fills = [f.model_copy(update={"cny_amount": fill_cny_cents(f)}) for f in match_plan.fills]
        plan = match_plan.model_copy(update={"fills": fills})

        created = await self.client.execute_fill(plan, buyer_address)
        if not created:
            raise LedgerError("Execute-fill returned no trades")

        cny_by_order = {f.order_id: f.cny_amount for f in fills}
        trades = [
            t.model_copy(update={"cny_amount": cny_by_order.get(t.order_id) or "0"})
            for t in created
        ]

        synced = await wait_for_trades_sync(
            self.client,
            [t.trade_id for t in trades],
            attempts=self._sync_attempts,
            delay=self._sync_delay,
        )
        if not synced:
            raise TradeSyncTimeout(
                "Trades created but ledger sync timed out. Please refresh and try again."
            )

        self.adopt(trades)
        return trades

    def adopt(self, trades: list[CreatedTrade]):
        """Start one state machine per distinct trade_id."""
        for trade in trades:
            if trade.trade_id in self._machines:
                continue
            self._trades[trade.trade_id] = trade
            self._machines[trade.trade_id] = TradeStateMachine(
                trade,
                self.client,
                submission_slot=self.submissions.slot,
                on_change=self._on_trade_change,
                clock=self._clock,
                grace_seconds=self._grace_seconds,
                max_receipt_bytes=self._max_receipt_bytes,
            )
            logger.info(
                f"[{trade.trade_id}] Awaiting payment of CNY {format_cny_amount(trade.cny_amount)} "
                f"(nonce={trade.payment_nonce}, expires_at={trade.expires_at})"
            )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def trades(self) -> list[CreatedTrade]:
        return list(self._trades.values())

    @property
    def all_settled(self) -> bool:
        return bool(self._machines) and all(
            m.status == TradePhase.SETTLED for m in self._machines.values()
        )

    def snapshot(self) -> Mapping[str, TradeRuntimeState]:
        """Read-only view of every trade's runtime state."""
        return MappingProxyType({tid: m.state for tid, m in self._machines.items()})

    def statuses(self) -> Mapping[str, TradePhase]:
        return MappingProxyType({tid: m.status for tid, m in self._machines.items()})

    def machine(self, trade_id: str) -> TradeStateMachine:
        machine = self._machines.get(trade_id)
        if machine is None:
            raise TradeNotInSession(f"Trade {trade_id} is not part of session {self.session_id}")
        return machine

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def tick(self, now: float | None = None):
        now = self._clock() if now is None else now
        for machine in self._machines.values():
            machine.tick(now)

    def _on_trade_change(self, state: TradeRuntimeState):
        trade_id = state.trade_id
        if state.status == TradePhase.SETTLED:
            _notify(f"[{trade_id[:10]}] Settled | tx={state.settlement_tx_hash}")
        elif state.status == TradePhase.EXPIRED:
            _notify(f"[{trade_id[:10]}] Payment window expired")
        elif state.status == TradePhase.INVALID:
            _notify(f"[{trade_id[:10]}] Receipt rejected by validator")
        elif state.status == TradePhase.PROOF_FAILED:
            _notify(f"[{trade_id[:10]}] Proof failed: {state.error}")
        elif state.status == TradePhase.BLOCKCHAIN_SUBMITTED:
            self.watch_settlement(trade_id)
        self._check_completion()

    def _check_completion(self):
        if self._completed or not self.all_settled:
            return
        self._completed = True
        logger.info(f"Session {self.session_id}: all {len(self._machines)} trades settled")
        _notify(f"Session {self.session_id[:8]}: all {len(self._machines)} trades settled")
        if self._on_all_settled is not None:
            self._on_all_settled(self.statuses())

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def submit_receipt(self, trade_id: str, receipt: Receipt | None) -> TradeRuntimeState:
        """Gate the file now; upload, validation and proving continue in the background."""
        machine = self.machine(trade_id)
        accepted = machine.begin_upload(receipt)
        if accepted is not None:
            self._spawn(machine, machine.run_pipeline(accepted))
        return machine.state

    def retry(self, trade_id: str) -> TradeRuntimeState:
        machine = self.machine(trade_id)
        machine.retry()
        return machine.state

    def resume(self, trade_id: str) -> TradeRuntimeState:
        machine = self.machine(trade_id)
        machine.begin_resume()
        self._spawn(machine, machine.continue_proof())
        return machine.state

    async def check_settlement(
        self,
        trade_id: str,
        attempts: int | None = None,
        interval: float | None = None,
        until_terminal: bool = False,
    ) -> bool:
        """Ask the ledger whether the trade settled; adopt its settlement hash if so.

        With until_terminal, polling stops as soon as the trade settles or
        expires by some other path.
        """
        machine = self.machine(trade_id)
        trade = await poll_settlement(
            self.client,
            trade_id,
            attempts=attempts if attempts is not None else self._settlement_attempts,
            interval=interval if interval is not None else self._settlement_interval,
            stop=(lambda: machine.state.is_terminal) if until_terminal else None,
        )
        if trade is None:
            return False
        machine.mark_settled(trade.settlement_tx_hash)
        return True

    def watch_settlement(self, trade_id: str):
        """Poll the ledger for settlement in the background (once per trade)."""
        machine = self.machine(trade_id)
        if trade_id in self._watching or machine.state.is_terminal:
            return
        self._watching.add(trade_id)

        async def _watch():
            try:
                await self.check_settlement(trade_id, until_terminal=True)
            finally:
                self._watching.discard(trade_id)

        self._spawn(machine, _watch())

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _spawn(self, machine: TradeStateMachine, coro):
        task = asyncio.create_task(self._guarded(machine, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, machine: TradeStateMachine, coro):
        try:
            await coro
        except Exception as e:
            logger.error(f"[{machine.trade_id}] Phase error: {e}", exc_info=True)
            machine.recover(f"Unexpected error: {e}")

    async def wait_idle(self):
        """Wait for every background phase currently running."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Session {self.session_id} closed")
