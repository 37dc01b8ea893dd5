"""PgStore against a real PostgreSQL database.

Set TEST_DATABASE_URL to a throwaway database to run these; its tables are
truncated before every test.
"""

import os

import asyncpg
import pytest
import pytest_asyncio

from intake import db
from intake.db import PgStore
from intake.errors import CustomerConflict, DraftNotFound, DraftSuperseded
from intake.models import (
    Address,
    CustomerMode,
    FormState,
    SearchType,
    Step,
)

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "")

pytestmark = pytest.mark.skipif(
    not TEST_DATABASE_URL,
    reason="PgStore tests need a PostgreSQL database (set TEST_DATABASE_URL)",
)


@pytest_asyncio.fixture
async def pg():
    db.pool = await asyncpg.create_pool(TEST_DATABASE_URL, min_size=1, max_size=4)
    try:
        await db._run_migrations()
        async with db.pool.acquire() as conn:
            await conn.execute("TRUNCATE orders, draft_orders, customers RESTART IDENTITY CASCADE")
        yield PgStore()
    finally:
        await db.close_db()


@pytest.fixture
def form(identity, address) -> FormState:
    return FormState(**identity, **address, customer_mode=CustomerMode.NEW, step=Step.REVIEW)


async def _count(table: str) -> int:
    async with db.pool.acquire() as conn:
        return await conn.fetchval(f"SELECT count(*) FROM {table}")


class TestDrafts:
    @pytest.mark.asyncio
    async def test_save_and_load(self, pg, form):
        draft_id = await pg.save_draft(form, None, Step.ADDRESS)
        form.city = "Loja"
        assert await pg.save_draft(form, draft_id, Step.REVIEW) == draft_id

        draft = await pg.load_draft(draft_id)

        assert draft.status == "draft"
        assert draft.step is Step.REVIEW
        assert draft.form_state.city == "Loja"
        assert draft.form_state.draft_id == draft_id
        assert await _count("draft_orders") == 1

    @pytest.mark.asyncio
    async def test_unknown_draft(self, pg, form):
        with pytest.raises(DraftNotFound):
            await pg.save_draft(form, "missing", Step.REVIEW)
        with pytest.raises(DraftNotFound):
            await pg.load_draft("missing")

    @pytest.mark.asyncio
    async def test_finalized_draft_rejects_saves(self, pg, form):
        draft_id = await pg.save_draft(form, None, Step.REVIEW)
        await pg.finalize(form, draft_id)

        with pytest.raises(DraftSuperseded):
            await pg.save_draft(form, draft_id, Step.REVIEW)
        assert (await pg.load_draft(draft_id)).status == "superseded"


class TestFinalize:
    @pytest.mark.asyncio
    async def test_retry_returns_the_same_order(self, pg, form):
        draft_id = await pg.save_draft(form, None, Step.REVIEW)

        first = await pg.finalize(form, draft_id)
        second = await pg.finalize(form, draft_id)

        assert first == second
        assert first.order_number
        assert await _count("customers") == 1
        assert await _count("orders") == 1

    @pytest.mark.asyncio
    async def test_same_identification_reuses_the_customer(self, pg, form):
        first = await pg.finalize(form, await pg.save_draft(form, None, Step.REVIEW))
        form.street = "Calle Larga 7"
        second = await pg.finalize(form, await pg.save_draft(form, None, Step.REVIEW))

        assert first.order_id != second.order_id
        assert first.customer_id == second.customer_id
        assert await _count("customers") == 1

        found = await pg.identity_search(SearchType.IDENTIFICATION, form.identification)
        assert found.customer.address.street == "Calle Larga 7"

    @pytest.mark.asyncio
    async def test_superseded_draft_without_order(self, pg, form):
        draft_id = await pg.save_draft(form, None, Step.REVIEW)
        async with db.pool.acquire() as conn:
            await conn.execute("UPDATE draft_orders SET status = 'superseded' WHERE id = $1", draft_id)

        with pytest.raises(DraftSuperseded):
            await pg.finalize(form, draft_id)
        assert await _count("orders") == 0

    @pytest.mark.asyncio
    async def test_unknown_draft(self, pg, form):
        with pytest.raises(DraftNotFound):
            await pg.finalize(form, "missing")

    @pytest.mark.asyncio
    async def test_bound_customer_keeps_its_identification(self, pg, form):
        draft_id = await pg.save_draft(form, None, Step.REVIEW)
        customer_id = (await pg.finalize(form, draft_id)).customer_id

        form.customer_id = customer_id
        form.customer_mode = CustomerMode.EXISTING
        form.identification = "5555555555"
        await pg.finalize(form, await pg.save_draft(form, None, Step.REVIEW))

        found = await pg.identity_search(SearchType.IDENTIFICATION, "9999999999")
        assert found.customer.id == customer_id

    @pytest.mark.asyncio
    async def test_identification_of_another_customer_is_a_conflict(self, pg, form):
        """A bound customer without identification cannot take someone else's."""
        async with db.pool.acquire() as conn:
            juan = await conn.fetchval(
                "INSERT INTO customers (first_name, identification) VALUES ('Juan', $1) RETURNING id",
                "1712345678",
            )
            ana = await conn.fetchval(
                "INSERT INTO customers (first_name, email) VALUES ('Ana', 'ana@example.com') RETURNING id",
            )
        form.customer_mode = CustomerMode.EXISTING
        form.customer_id = ana
        form.identification = "1712345678"
        draft_id = await pg.save_draft(form, None, Step.REVIEW)

        with pytest.raises(CustomerConflict):
            await pg.finalize(form, draft_id)

        assert await _count("orders") == 0
        assert (await pg.load_draft(draft_id)).status == "draft"
        found = await pg.identity_search(SearchType.IDENTIFICATION, "1712345678")
        assert found.customer.id == juan


class TestLookups:
    @pytest.mark.asyncio
    async def test_duplicate_check_and_search(self, pg, form):
        await pg.finalize(form, await pg.save_draft(form, None, Step.REVIEW))

        flags = await pg.duplicate_check("0000000000", form.email, "")
        assert flags.collisions() == ["email"]

        result = await pg.identity_search(SearchType.PHONE, form.phone)
        assert result.found
        assert result.customer.full_name == "Maria Lopez"
        assert result.address == Address(
            street=form.street, city=form.city, province=form.province,
            delivery_instructions=form.delivery_instructions,
        )

        assert not (await pg.identity_search(SearchType.EMAIL, "nobody@example.com")).found
