"""Application settings — loaded from environment variables / .env file."""

from __future__ import annotations

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Logging
    LOG_LEVEL: str = "INFO"

    # Store API the wizard talks to
    STORE_API_URL: str = "http://127.0.0.1:10000"
    STORE_TIMEOUT_SECONDS: int = 15

    # Postgres (store service). Empty → API answers 503
    DATABASE_URL: str = ""

    # Store API + health server
    PORT: int = 10000

    # Telegram front end (optional)
    BOT_TOKEN: str = ""

    # Comma-separated Telegram user IDs notified about new orders
    ADMIN_CHAT_ID: str = ""

    # Wizard sessions idle for longer than this are closed
    SESSION_IDLE_SECONDS: int = 1800

    ORDER_NUMBER_PREFIX: str = "SHIP-"

    @property
    def admin_ids(self) -> List[int]:
        """Parse comma-separated admin IDs into a list of ints."""
        return [int(x.strip()) for x in self.ADMIN_CHAT_ID.split(",") if x.strip()]

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
