"""Duplicate resolver: find an existing customer, or guard a new one.

Two different lookups live here on purpose:

* ``search`` / ``find_existing`` — identity search.  One field at a time,
  first hit wins, returns the matched record.
* ``guard`` — duplicate-guard for the customer being entered.  All three
  fields are checked and every collision is reported at once.

Both are read-only.  A store failure raises ``ResolverUnavailable`` and is
never reported as "no duplicate".
"""

from __future__ import annotations

import logging

from intake.api import Store
from intake.errors import ResolverUnavailable, StoreError, StoreUnavailable
from intake.models import CustomerRecord, SearchResult, SearchType

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGES: dict[str, str] = {
    "identification": "A customer with this identification number already exists",
    "email": "A customer with this e-mail already exists",
    "phone": "A customer with this phone number already exists",
}


class DuplicateResolver:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def search(self, search_type: SearchType, identifier: str) -> SearchResult:
        identifier = (identifier or "").strip()
        if not identifier:
            return SearchResult(found=False)
        try:
            result = await self._store.identity_search(SearchType(search_type), identifier)
        except (StoreUnavailable, StoreError) as exc:
            raise ResolverUnavailable(f"Customer search failed: {exc}") from exc
        if result.found and result.customer is None:
            # found without a record is useless to the caller
            return SearchResult(found=False)
        return result

    async def find_existing(self, identification: str, email: str, phone: str) -> SearchResult:
        """Identification, then e-mail, then phone; the first match wins."""
        for search_type, value in (
            (SearchType.IDENTIFICATION, identification),
            (SearchType.EMAIL, email),
            (SearchType.PHONE, phone),
        ):
            result = await self.search(search_type, value)
            if result.found:
                return result
        return SearchResult(found=False)

    async def guard(
        self,
        identification: str,
        email: str,
        phone: str,
        own: CustomerRecord | None = None,
    ) -> dict[str, str]:
        """Collisions keyed by form field.

        With *own* set (a customer bound by search), a value equal to that
        customer's stored value is not a collision; any other colliding
        value still is.
        """
        values = {
            "identification": (identification or "").strip(),
            "email": (email or "").strip(),
            "phone": (phone or "").strip(),
        }
        if own is not None:
            for field in values:
                if values[field] and values[field] == (getattr(own, field) or "").strip():
                    values[field] = ""
        if not any(values.values()):
            return {}
        try:
            flags = await self._store.duplicate_check(
                values["identification"], values["email"], values["phone"],
            )
        except (StoreUnavailable, StoreError) as exc:
            raise ResolverUnavailable(f"Duplicate check failed: {exc}") from exc

        collisions = [f for f in flags.collisions() if values[f]]
        if collisions:
            logger.warning("Duplicate customer data on: %s", ", ".join(collisions))
        return {field: DUPLICATE_MESSAGES[field] for field in collisions}
