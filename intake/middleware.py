"""Wizard session middleware: one WizardController per Telegram user.

The controller is injected into handlers as ``wizard``.  Sessions idle for
longer than SESSION_IDLE_SECONDS are closed, which also cancels any store
call still in flight for them.  The last draft id of every user outlives
the session, so a bare /resume can pick it up again.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Sequence

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject

from intake.api import Store
from intake.config import settings
from intake.controller import WizardController
from intake.events import Listener

logger = logging.getLogger(__name__)

# How often idle sessions are swept (seconds)
_CLEANUP_EVERY = 300


class WizardSessionMiddleware(BaseMiddleware):
    def __init__(self, store: Store, listeners: Sequence[Listener] = ()) -> None:
        super().__init__()
        self._store = store
        self._listeners = list(listeners)
        self._sessions: Dict[int, WizardController] = {}
        self._seen: Dict[int, float] = {}
        self._last_draft: Dict[int, str] = {}
        self._last_cleanup: float = 0.0

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        user = data.get("event_from_user")
        if user is None:
            return await handler(event, data)

        now = time.monotonic()
        if now - self._last_cleanup > _CLEANUP_EVERY:
            self._cleanup(now)
            self._last_cleanup = now

        data["wizard"] = self.get(user.id)
        data["sessions"] = self
        self._seen[user.id] = now
        try:
            return await handler(event, data)
        finally:
            self._remember(user.id, data["wizard"])

    def get(self, user_id: int) -> WizardController:
        wizard = self._sessions.get(user_id)
        if wizard is None or wizard.closed:
            wizard = WizardController(self._store, session_id=f"tg{user_id}")
            for listener in self._listeners:
                wizard.notifier.subscribe(listener)
            self._sessions[user_id] = wizard
            logger.info("Session opened for user %d", user_id)
        return wizard

    def drop(self, user_id: int) -> None:
        wizard = self._sessions.pop(user_id, None)
        self._seen.pop(user_id, None)
        if wizard is not None:
            self._remember(user_id, wizard)
            wizard.close()

    def last_draft(self, user_id: int) -> str | None:
        return self._last_draft.get(user_id)

    def _remember(self, user_id: int, wizard: WizardController) -> None:
        if wizard.completed is not None:
            # submitted drafts cannot be resumed
            self._last_draft.pop(user_id, None)
        elif wizard.form.draft_id:
            self._last_draft[user_id] = wizard.form.draft_id

    def close_all(self) -> None:
        for user_id in list(self._sessions):
            self.drop(user_id)

    def _cleanup(self, now: float) -> None:
        """Close sessions nobody has touched for a while."""
        stale = [
            uid for uid, seen in self._seen.items()
            if now - seen > settings.SESSION_IDLE_SECONDS
        ]
        for uid in stale:
            logger.info("Closing idle session of user %d", uid)
            self.drop(uid)
