"""Shared fixtures: an in-memory store with failure injection and gates."""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter, defaultdict

import pytest

from intake.controller import WizardController
from intake.errors import CustomerConflict, DraftNotFound, DraftSuperseded
from intake.models import (
    Address,
    CustomerRecord,
    DraftOrder,
    DuplicateFlags,
    FinalizeResult,
    FormState,
    SearchResult,
    SearchType,
    Step,
)


class FakeStore:
    """In-memory ``Store``.

    ``fail[name] = exc`` makes every call of *name* raise *exc*.
    ``gates[name]`` (an asyncio.Event) holds calls of *name* until set;
    ``entered[name]`` is set as soon as a call of *name* starts.
    """

    def __init__(self) -> None:
        self.customers: dict[int, CustomerRecord] = {}
        self.drafts: dict[str, DraftOrder] = {}
        self.orders: dict[str, FinalizeResult] = {}
        self.calls: Counter[str] = Counter()
        self.fail: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.entered: defaultdict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.saved: list[FormState] = []
        self._next_customer = 1
        self._next_order = 1

    def add_customer(self, address: Address | None = None, **fields) -> CustomerRecord:
        customer = CustomerRecord(id=self._next_customer, address=address, **fields)
        self.customers[customer.id] = customer
        self._next_customer += 1
        return customer

    async def _enter(self, name: str) -> None:
        self.calls[name] += 1
        self.entered[name].set()
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    # ── Store protocol ───────────────────────────────────────────────

    async def duplicate_check(self, identification: str, email: str, phone: str) -> DuplicateFlags:
        await self._enter("duplicate_check")
        wanted = {"identification": identification, "email": email, "phone": phone}
        flags = {
            field: bool(value) and any(getattr(c, field) == value for c in self.customers.values())
            for field, value in wanted.items()
        }
        return DuplicateFlags(**flags)

    async def identity_search(self, search_type: SearchType, identifier: str) -> SearchResult:
        await self._enter("identity_search")
        field = SearchType(search_type).value
        for customer in self.customers.values():
            if getattr(customer, field) == identifier:
                return SearchResult(found=True, customer=customer, address=customer.address)
        return SearchResult(found=False)

    async def save_draft(self, form: FormState, draft_id: str | None, step: Step | None) -> str:
        await self._enter("save_draft")
        if draft_id is not None:
            if draft_id not in self.drafts:
                raise DraftNotFound(draft_id)
            if self.drafts[draft_id].status != "draft":
                raise DraftSuperseded(draft_id)
        draft_id = draft_id or uuid.uuid4().hex
        snapshot = form.model_copy(deep=True, update={"draft_id": draft_id})
        self.saved.append(snapshot)
        self.drafts[draft_id] = DraftOrder(
            id=draft_id, form_state=snapshot, step=Step(step or form.step),
        )
        return draft_id

    async def load_draft(self, draft_id: str) -> DraftOrder:
        await self._enter("load_draft")
        if draft_id not in self.drafts:
            raise DraftNotFound(draft_id)
        return self.drafts[draft_id].model_copy(deep=True)

    async def finalize(self, form: FormState, draft_id: str) -> FinalizeResult:
        await self._enter("finalize")
        if draft_id not in self.drafts:
            raise DraftNotFound(draft_id)
        if draft_id in self.orders:
            return self.orders[draft_id]
        draft = self.drafts[draft_id]
        if draft.status != "draft":
            raise DraftSuperseded(draft_id)

        customer_id = self._upsert_customer(form)
        order_id = self._next_order
        self._next_order += 1
        result = FinalizeResult(
            order_id=order_id,
            order_number=f"SHIP-{order_id:06d}",
            customer_id=customer_id,
            draft_id=draft_id,
        )
        self.orders[draft_id] = result
        draft.status = "superseded"
        return result

    def _upsert_customer(self, form: FormState) -> int:
        fields = {
            "first_name": form.first_name,
            "last_name": form.last_name,
            "identification": form.identification or None,
            "email": form.email or None,
            "phone": form.phone or None,
            "address": form.address(),
        }
        existing_id = form.customer_id
        if existing_id is not None and existing_id in self.customers:
            # a stored identification is never replaced
            fields["identification"] = (
                self.customers[existing_id].identification or fields["identification"]
            )
        else:
            existing_id = next(
                (c.id for c in self.customers.values()
                 if form.identification and c.identification == form.identification),
                None,
            )
        if fields["identification"] and any(
            c.identification == fields["identification"] and c.id != existing_id
            for c in self.customers.values()
        ):
            raise CustomerConflict(
                f"Identification {fields['identification']} belongs to another customer"
            )
        if existing_id is not None:
            self.customers[existing_id] = CustomerRecord(id=existing_id, **fields)
            return existing_id
        return self.add_customer(**fields).id


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def wizard(store: FakeStore) -> WizardController:
    return WizardController(store, session_id="test")


@pytest.fixture
def identity() -> dict[str, str]:
    """Valid step 2 values of a customer nobody has seen before."""
    return {
        "first_name": "Maria",
        "last_name": "Lopez",
        "identification": "9999999999",
        "phone": "0991234567",
        "email": "a@b.com",
    }


@pytest.fixture
def address() -> dict[str, str]:
    return {
        "street": "Av. Amazonas 123",
        "city": "Quito",
        "province": "Pichincha",
        "delivery_instructions": "Ring twice",
    }


@pytest.fixture
def existing_customer(store: FakeStore) -> CustomerRecord:
    return store.add_customer(
        first_name="Juan",
        last_name="Perez",
        identification="1712345678",
        email="juan@example.com",
        phone="0987654321",
        address=Address(street="Calle Sucre 45", city="Cuenca", province="Azuay"),
    )
