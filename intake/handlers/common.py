"""Common handlers: /start, /help, /cancel, error handler, fallback.

The fallback_router also includes a CATCH-ALL for callback queries
so that buttons of a card whose session is gone (restart, /cancel,
idle cleanup) restart the wizard instead of silently disappearing.
"""

from __future__ import annotations

import logging

from aiogram import F, Router
from aiogram.filters import Command, CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.types import CallbackQuery, ErrorEvent, Message

from intake.controller import WizardController
from intake.handlers.wizard import send_fresh_card
from intake.middleware import WizardSessionMiddleware

logger = logging.getLogger(__name__)
router = Router()
fallback_router = Router()


# ═══════════════════════════════════════════════════════════════
# /start
# ═══════════════════════════════════════════════════════════════

@router.message(CommandStart())
async def cmd_start(message: Message, wizard: WizardController, state: FSMContext) -> None:
    try:
        await send_fresh_card(message, wizard, state)
    except Exception as exc:
        logger.error("/start failed: %s", exc)
        await message.answer(
            "The order form is temporarily unavailable. Try again in a minute.",
            parse_mode=None,
        )


@router.message(F.text.regexp(r"(?i)^(start|new order|menu)$"))
async def text_start(message: Message, wizard: WizardController, state: FSMContext) -> None:
    await cmd_start(message, wizard, state)


# ═══════════════════════════════════════════════════════════════
# /help, /cancel
# ═══════════════════════════════════════════════════════════════

@router.message(Command("help"))
async def cmd_help(message: Message) -> None:
    await message.answer(
        "📦 <b>Shipping order form</b>\n\n"
        "▸ /start — New order\n"
        "▸ /resume — Continue your last draft\n"
        "▸ /resume &lt;draft id&gt; — Continue a draft by its id\n"
        "▸ /cancel — Drop the current form\n"
        "▸ /help — Help",
    )


@router.message(Command("cancel"))
async def cmd_cancel(message: Message, sessions: WizardSessionMiddleware, state: FSMContext) -> None:
    await state.clear()
    if message.from_user:
        sessions.drop(message.from_user.id)
    await message.answer("Form dropped. Send /start for a new order.")


# ═══════════════════════════════════════════════════════════════
# Global error handler
# ═══════════════════════════════════════════════════════════════

@router.error()
async def global_error_handler(event: ErrorEvent) -> None:
    logger.error(
        "Unhandled error in update %s: %s",
        event.update.update_id if event.update else "?",
        event.exception,
        exc_info=event.exception,
    )


# ═══════════════════════════════════════════════════════════════
# FALLBACK — catch-all for expired sessions
# ═══════════════════════════════════════════════════════════════

@fallback_router.callback_query()
async def expired_callback(cb: CallbackQuery, wizard: WizardController, state: FSMContext) -> None:
    """Handle any callback no wizard handler took.

    MemoryStorage and the session registry are wiped on restart, so
    buttons from an older card lose their context.  Start over.
    """
    logger.info(
        "Expired/unmatched callback from user %s: %s",
        cb.from_user.id, cb.data,
    )
    await cb.answer("⏳ Session expired — starting over", show_alert=False)
    try:
        await send_fresh_card(cb.message, wizard, state)  # type: ignore[arg-type]
    except Exception as exc:
        logger.error("Recovery after expired callback failed: %s", exc)


@fallback_router.message()
async def fallback_message(message: Message) -> None:
    await message.answer("Send /start to fill in a new shipping order.")
