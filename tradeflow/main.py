"""FastAPI application entry point.

Run with: uvicorn tradeflow.main:app --port 8000
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tradeflow.config import settings
from tradeflow.utils.logging import setup_logging
from tradeflow.api import sessions, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    from tradeflow.engine.deadline import timer
    from tradeflow.engine.registry import registry
    timer.start()

    # Start Telegram bot if configured
    telegram_bot = None
    if settings.telegram_bot_token:
        from tradeflow.services.telegram_bot import init_bot
        telegram_bot = init_bot()
        telegram_bot.start()

    yield

    await registry.close_all()
    if telegram_bot:
        telegram_bot.stop()
    timer.stop()


app = FastAPI(
    title="Trade Lifecycle Orchestrator",
    description="Buyer-side escrow trade orchestration: receipts, proofs and settlement",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions.router)
app.include_router(system.router)
