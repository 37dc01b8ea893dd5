"""Draft order lifecycle for one wizard session.

The first save creates the draft, every later save replaces its snapshot.
Saves are serialized and the assigned id is held here, so two saves in
flight still end up on a single draft (last write wins).

A failed save or load is retryable only when the store was unreachable; a
missing or already finalized draft stays that way.
"""

from __future__ import annotations

import asyncio
import logging

from intake.api import Store
from intake.errors import (
    DraftNotFound,
    DraftSaveError,
    DraftSuperseded,
    StoreError,
    StoreUnavailable,
)
from intake.models import DraftOrder, FormState

logger = logging.getLogger(__name__)


class DraftManager:
    def __init__(self, store: Store) -> None:
        self._store = store
        self._lock = asyncio.Lock()
        self.draft_id: str | None = None

    async def save(self, form: FormState, draft_id: str | None = None) -> str:
        # Edits made while waiting for the lock belong to the next save
        snapshot = form.snapshot()
        async with self._lock:
            target = draft_id or self.draft_id
            snapshot.draft_id = target
            try:
                saved_id = await self._store.save_draft(snapshot, target, snapshot.step)
            except (StoreUnavailable, StoreError, DraftNotFound, DraftSuperseded) as exc:
                logger.warning("Draft save failed (draft=%s): %s", target, exc)
                raise DraftSaveError(
                    f"Could not save the draft: {exc}",
                    retryable=isinstance(exc, StoreUnavailable),
                ) from exc

            if target is None:
                logger.info("Draft %s created at step %d", saved_id, snapshot.step)
            else:
                logger.info("Draft %s updated at step %d", saved_id, snapshot.step)
            self.draft_id = saved_id
            return saved_id

    async def load(self, draft_id: str) -> DraftOrder:
        try:
            draft = await self._store.load_draft(draft_id)
        except (StoreUnavailable, StoreError, DraftNotFound) as exc:
            raise DraftSaveError(
                f"Could not load draft {draft_id}: {exc}",
                retryable=isinstance(exc, StoreUnavailable),
            ) from exc
        self.draft_id = draft.id
        return draft

    def forget(self) -> None:
        self.draft_id = None
