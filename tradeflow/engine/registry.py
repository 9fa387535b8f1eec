"""Open buyer sessions, keyed by session id, for the HTTP layer."""

import logging

from tradeflow.engine.deadline import DeadlineTimer, timer as default_timer
from tradeflow.engine.session import SessionCoordinator
from tradeflow.models.runtime import TradePhase
from tradeflow.schemas.ledger import MatchPlan
from tradeflow.services.ledger_client import LedgerClient

logger = logging.getLogger(__name__)


class SessionNotFound(LookupError):
    pass


class SessionRegistry:
    def __init__(self, client: LedgerClient, timer: DeadlineTimer, **session_options):
        self.client = client
        self.timer = timer
        self._session_options = session_options
        self._sessions: dict[str, SessionCoordinator] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[SessionCoordinator]:
        return list(self._sessions.values())

    def summary(self) -> dict[str, dict[str, TradePhase]]:
        """Plain copies of every session's trade statuses.

        Call on the event loop that owns the sessions; the result can then be
        handed to another thread.
        """
        return {c.session_id: dict(c.statuses()) for c in self._sessions.values()}

    async def open_session(self, match_plan: MatchPlan, buyer_address: str) -> SessionCoordinator:
        """Create trades for a match plan and start tracking them.

        Propagates TradeSyncTimeout / LedgerError; nothing is registered then.
        """
        coordinator = SessionCoordinator(
            self.client, clock=self.timer.clock, **self._session_options
        )
        await coordinator.open(match_plan, buyer_address)
        self._sessions[coordinator.session_id] = coordinator
        self.timer.register(coordinator.session_id, coordinator.tick)
        logger.info(
            f"Session {coordinator.session_id} opened with {len(coordinator.trades)} trades for {buyer_address}"
        )
        return coordinator

    def get(self, session_id: str) -> SessionCoordinator:
        coordinator = self._sessions.get(session_id)
        if coordinator is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return coordinator

    async def close_session(self, session_id: str):
        coordinator = self._sessions.pop(session_id, None)
        if coordinator is None:
            raise SessionNotFound(f"Session {session_id} not found")
        self.timer.unregister(session_id)
        await coordinator.close()

    async def close_all(self):
        for session_id in list(self._sessions):
            await self.close_session(session_id)
        await self.client.close()


registry = SessionRegistry(LedgerClient(), default_timer)
