"""Shipping intake service — entry point.

1. Store JSON API + health endpoint (aiohttp) backed by Postgres.
2. Periodic DB health check with auto-reconnect.
3. Service starts even if the database is unreachable (API answers 503).
4. Telegram front end for the wizard when BOT_TOKEN is set, with
   auto-restart of polling on crash.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sys

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.types import BotCommand

from intake.api import StoreClient
from intake.config import settings
from intake.db import PgStore, close_db, init_db
from intake.handlers import common, wizard
from intake.handlers.common import fallback_router
from intake.handlers.wizard import notify_admins
from intake.middleware import WizardSessionMiddleware
from intake.server import start_server


def _setup_logging() -> None:
    fmt = logging.Formatter(
        "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(fmt)
    logging.root.handlers = [handler]
    logging.root.setLevel(settings.LOG_LEVEL)


# ═══════════════════════════════════════════════════════════════
# Periodic DB health check
# ═══════════════════════════════════════════════════════════════

async def _db_health_loop() -> None:
    """Every 60 s check that the DB pool is alive.

    If the connection is dead, close the pool and trigger reconnect
    via init_db() which already has retry logic.
    """
    from intake import db as db_mod

    logger = logging.getLogger("db.health")

    while True:
        await asyncio.sleep(60)
        if db_mod.pool is None:
            # init_db / _retry_connect is probably already handling this
            continue
        try:
            async with db_mod.pool.acquire(timeout=5) as conn:
                await conn.fetchval("SELECT 1")
        except Exception as exc:
            logger.error("DB health check failed: %s — reconnecting", exc)
            try:
                await db_mod.pool.close()
            except Exception as close_exc:
                logger.warning("Closing dead pool failed: %s", close_exc)
            db_mod.pool = None
            # Re-init in background (has its own retry loop)
            asyncio.create_task(init_db())


# ═══════════════════════════════════════════════════════════════
# Telegram front end
# ═══════════════════════════════════════════════════════════════

async def _run_bot() -> None:
    logger = logging.getLogger("bot")

    bot = Bot(
        token=settings.BOT_TOKEN,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    await bot.set_my_commands([
        BotCommand(command="start", description="📦 New shipping order"),
        BotCommand(command="resume", description="📝 Continue a saved draft"),
        BotCommand(command="cancel", description="✖️ Drop the current form"),
        BotCommand(command="help", description="ℹ️ Help"),
    ])

    sessions = WizardSessionMiddleware(
        StoreClient(),
        listeners=[functools.partial(notify_admins, bot)],
    )
    dp = Dispatcher(storage=MemoryStorage())
    dp.message.middleware(sessions)
    dp.callback_query.middleware(sessions)

    # Router order matters: common first, then the wizard, fallback last.
    dp.include_router(common.router)
    dp.include_router(wizard.router)
    dp.include_router(fallback_router)

    # ── Polling with auto-restart ─────────────────────────────
    MAX_RETRIES = 100
    try:
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                await bot.delete_webhook(drop_pending_updates=False)
                logger.info("Polling started (attempt #%d)", attempt)
                await dp.start_polling(
                    bot,
                    polling_timeout=30,      # seconds between getUpdates
                    handle_signals=False,     # we handle lifecycle ourselves
                )
                # If start_polling returns cleanly → normal shutdown
                logger.info("Polling stopped cleanly")
                break

            except Exception as exc:
                logger.error(
                    "Polling crashed (attempt #%d/%d): %s",
                    attempt, MAX_RETRIES, exc,
                    exc_info=True,
                )
                if attempt < MAX_RETRIES:
                    wait = min(attempt * 5, 60)   # 5s → 10s → … → cap at 60s
                    logger.info("Restarting polling in %ds…", wait)
                    await asyncio.sleep(wait)
                else:
                    logger.critical("Max retries (%d) reached — exiting", MAX_RETRIES)
    finally:
        sessions.close_all()
        await bot.session.close()


# ═══════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════

async def main() -> None:
    _setup_logging()
    logger = logging.getLogger("intake")
    logger.info("Starting shipping intake service")

    # Database — non-fatal
    try:
        await init_db()
    except Exception as exc:
        logger.error("init_db raised: %s — service will start without DB", exc)

    runner = await start_server(PgStore(), settings.PORT)
    logger.info("Store API on :%d", settings.PORT)

    # Background DB health monitor
    health_task = asyncio.create_task(_db_health_loop())

    try:
        if settings.BOT_TOKEN:
            await _run_bot()
        else:
            logger.info("BOT_TOKEN is empty — chat front end disabled")
            await asyncio.Event().wait()
    finally:
        health_task.cancel()
        await runner.cleanup()
        await close_db()
        logger.info("Service stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
