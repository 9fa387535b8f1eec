"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    ledger_api_url: str = "http://localhost:3000"
    request_timeout_seconds: float = 30.0
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]  # Vite dev server

    # Creation sync: 20 x 3s = 60s ceiling
    sync_max_attempts: int = 20
    sync_delay_seconds: float = 3.0

    # Settlement confirmation: 20 x 3s = 60s ceiling
    settlement_poll_attempts: int = 20
    settlement_poll_interval_seconds: float = 3.0
    settlement_grace_seconds: float = 3.0

    deadline_tick_seconds: int = 1
    max_receipt_bytes: int = 10 * 1024 * 1024

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    model_config = {"env_prefix": "TF_", "env_file": ".env"}


settings = Settings()
