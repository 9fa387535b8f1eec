"""Bounded ledger polling: creation sync and settlement confirmation.

Escrow fills and settlements are indexed into the ledger asynchronously, so
both waits poll at a fixed cadence with a hard attempt ceiling and report a
soft failure instead of retrying forever.
"""

import asyncio
import logging
from typing import Callable

from tradeflow.config import settings
from tradeflow.models.trade import LedgerStatus, Trade
from tradeflow.services.ledger_client import LedgerClient, LedgerError

logger = logging.getLogger(__name__)


async def wait_for_trades_sync(
    client: LedgerClient,
    trade_ids: list[str],
    attempts: int | None = None,
    delay: float | None = None,
) -> bool:
    """Poll until every trade id is fetchable in the same round.

    Returns False once the attempt budget is spent.
    """
    if not trade_ids:
        raise ValueError("trade_ids must not be empty")
    attempts = attempts if attempts is not None else settings.sync_max_attempts
    delay = delay if delay is not None else settings.sync_delay_seconds

    for attempt in range(1, attempts + 1):
        logger.info(f"Checking ledger sync for {len(trade_ids)} trades (attempt {attempt}/{attempts})")
        results = await asyncio.gather(
            *(client.get_trade(trade_id) for trade_id in trade_ids),
            return_exceptions=True,
        )
        for r in results:
            if isinstance(r, BaseException) and not isinstance(r, LedgerError):
                raise r
        missing = [tid for tid, r in zip(trade_ids, results) if isinstance(r, LedgerError)]
        if not missing:
            logger.info(f"All {len(trade_ids)} trades visible in ledger")
            return True

        logger.info(f"Trades not synced yet ({', '.join(missing)}), waiting {delay}s")
        if attempt < attempts:
            await asyncio.sleep(delay)

    logger.error(f"Timed out waiting for {len(trade_ids)} trades to sync to the ledger")
    return False


async def poll_settlement(
    client: LedgerClient,
    trade_id: str,
    attempts: int | None = None,
    interval: float | None = None,
    stop: Callable[[], bool] | None = None,
) -> Trade | None:
    """Poll a trade until the ledger reports SETTLED.

    Returns the settled record, or None when the budget runs out or `stop()`
    turns true (checked before every fetch).
    """
    attempts = attempts if attempts is not None else settings.settlement_poll_attempts
    interval = interval if interval is not None else settings.settlement_poll_interval_seconds

    for attempt in range(1, attempts + 1):
        await asyncio.sleep(interval)
        if stop is not None and stop():
            logger.debug(f"[{trade_id}] Settlement polling stopped after {attempt - 1} attempts")
            return None
        logger.debug(f"[{trade_id}] Polling settlement (attempt {attempt}/{attempts})")
        try:
            trade = await client.get_trade(trade_id)
        except LedgerError as e:
            logger.warning(f"[{trade_id}] Settlement poll error: {e}")
            continue
        if trade.status == LedgerStatus.SETTLED:
            logger.info(f"[{trade_id}] Ledger reports settled (tx={trade.settlement_tx_hash})")
            return trade

    logger.warning(f"[{trade_id}] Settlement polling timed out; trade may be settled but not synced yet")
    return None
