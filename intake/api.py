"""Store protocol and the aiohttp JSON client the wizard uses to reach it."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

import aiohttp

from intake.config import settings
from intake.errors import StoreError, StoreUnavailable
from intake.models import (
    DraftOrder,
    DraftSaveRequest,
    DraftSaveResponse,
    DuplicateCheckRequest,
    DuplicateFlags,
    FinalizeRequest,
    FinalizeResult,
    FormState,
    IdentitySearchRequest,
    SearchResult,
    SearchType,
    Step,
)

logger = logging.getLogger(__name__)


class Store(Protocol):
    """What the wizard needs from the order/customer store."""

    async def duplicate_check(self, identification: str, email: str, phone: str) -> DuplicateFlags: ...

    async def identity_search(self, search_type: SearchType, identifier: str) -> SearchResult: ...

    async def save_draft(self, form: FormState, draft_id: str | None, step: Step | None) -> str: ...

    async def load_draft(self, draft_id: str) -> DraftOrder: ...

    async def finalize(self, form: FormState, draft_id: str) -> FinalizeResult: ...


class StoreClient:
    """HTTP implementation of :class:`Store`.

    Transport failures, timeouts and 5xx answers raise ``StoreUnavailable``;
    any other non-2xx answer raises ``StoreError``.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None) -> None:
        self.base_url = (base_url or settings.STORE_API_URL).rstrip("/")
        self.timeout = timeout or settings.STORE_TIMEOUT_SECONDS

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, json=payload) as resp:
                    if resp.status >= 500:
                        body = await resp.text()
                        logger.warning("Store %s %s → %s: %s", method, path, resp.status, body[:500])
                        raise StoreUnavailable(f"Store answered {resp.status}")
                    if resp.status >= 400:
                        raise StoreError(resp.status, _error_message(await resp.text()))
                    return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Store %s %s failed: %s", method, path, exc)
            raise StoreUnavailable(str(exc) or type(exc).__name__) from exc

    async def duplicate_check(self, identification: str, email: str, phone: str) -> DuplicateFlags:
        body = DuplicateCheckRequest(identification=identification, email=email, phone=phone)
        data = await self._request("POST", "/api/intake/duplicate-check", body.to_json())
        return DuplicateFlags.model_validate(data)

    async def identity_search(self, search_type: SearchType, identifier: str) -> SearchResult:
        body = IdentitySearchRequest(type=search_type, identifier=identifier)
        data = await self._request("POST", "/api/intake/identity-search", body.to_json())
        return SearchResult.model_validate(data)

    async def save_draft(self, form: FormState, draft_id: str | None, step: Step | None) -> str:
        body = DraftSaveRequest(form_state=form, draft_id=draft_id, step=step)
        data = await self._request("POST", "/api/intake/drafts", body.to_json())
        return DraftSaveResponse.model_validate(data).draft_id

    async def load_draft(self, draft_id: str) -> DraftOrder:
        data = await self._request("GET", f"/api/intake/drafts/{draft_id}")
        return DraftOrder.model_validate(data)

    async def finalize(self, form: FormState, draft_id: str) -> FinalizeResult:
        body = FinalizeRequest(form_state=form, draft_id=draft_id)
        data = await self._request("POST", "/api/intake/finalize", body.to_json())
        return FinalizeResult.model_validate(data)


def _error_message(body: str) -> str:
    """Pull ``error`` out of a JSON error body, fall back to raw text."""
    try:
        return str(json.loads(body).get("error") or body)[:500]
    except (ValueError, AttributeError):
        return body[:500]
