"""Database layer — asyncpg pool + the Postgres implementation of the store.

The service starts even if the database is unreachable.
Every store call on a missing pool raises StoreUnavailable (→ HTTP 503).
A background retry keeps trying to connect.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any

import asyncpg

from intake.config import settings
from intake.errors import CustomerConflict, DraftNotFound, DraftSuperseded, StoreUnavailable
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

logger = logging.getLogger(__name__)

pool: asyncpg.Pool | None = None

_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

# How long to wait for pool creation before giving up (seconds)
_POOL_CREATE_TIMEOUT = 20

_SEARCH_COLUMNS: dict[SearchType, str] = {
    SearchType.IDENTIFICATION: "identification",
    SearchType.EMAIL: "email",
    SearchType.PHONE: "phone",
}


async def _create_pool() -> asyncpg.Pool:
    return await asyncio.wait_for(
        asyncpg.create_pool(
            settings.DATABASE_URL,
            min_size=1,
            max_size=10,
            command_timeout=15,
        ),
        timeout=_POOL_CREATE_TIMEOUT,
    )


async def init_db() -> None:
    """Connect to Postgres and run migrations.

    If the connection fails the service still starts; a background task
    retries every 15 seconds.
    """
    global pool
    if not settings.DATABASE_URL:
        logger.warning("DATABASE_URL is empty — running without database")
        return

    try:
        pool = await _create_pool()
        await _run_migrations()
        logger.info("Database connected")
    except Exception as exc:
        logger.error("Database connection failed: %s — will retry in background", exc)
        pool = None
        asyncio.create_task(_retry_connect())


async def _retry_connect() -> None:
    global pool
    for attempt in range(1, 40):
        await asyncio.sleep(15)
        try:
            pool = await _create_pool()
            await _run_migrations()
            logger.info("Database connected on retry #%d", attempt)
            return
        except Exception as exc:
            logger.warning("DB retry #%d failed: %s", attempt, exc)
    logger.error("Gave up reconnecting to database after 40 attempts")


async def _run_migrations() -> None:
    if not pool:
        return
    migration_files = sorted(_MIGRATIONS_DIR.glob("*.sql"))
    async with pool.acquire() as conn:
        for mf in migration_files:
            await conn.execute(mf.read_text(encoding="utf-8"))
    logger.info("Migrations applied: %d file(s)", len(migration_files))


async def close_db() -> None:
    global pool
    if pool:
        await pool.close()
        pool = None


def _check_pool() -> asyncpg.Pool:
    if pool is None:
        raise StoreUnavailable("Database is not available")
    return pool


def _customer_from_row(row: asyncpg.Record) -> CustomerRecord:
    address = Address(
        street=row["street"] or "",
        city=row["city"] or "",
        province=row["province"] or "",
        delivery_instructions=row["delivery_instructions"] or "",
    )
    return CustomerRecord(
        id=row["id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        identification=row["identification"],
        email=row["email"],
        phone=row["phone"],
        address=None if address.is_empty() else address,
    )


def _none_if_blank(value: str) -> str | None:
    value = value.strip()
    return value or None


# ═══════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════

class PgStore:
    """Postgres-backed store served by ``intake.server``."""

    async def duplicate_check(self, identification: str, email: str, phone: str) -> DuplicateFlags:
        p = _check_pool()
        flags: dict[str, bool] = {}
        async with p.acquire(timeout=10) as conn:
            for field, value in (
                ("identification", identification),
                ("email", email),
                ("phone", phone),
            ):
                value = (value or "").strip()
                if not value:
                    flags[field] = False
                    continue
                flags[field] = bool(
                    await conn.fetchval(
                        f"SELECT EXISTS (SELECT 1 FROM customers WHERE {field} = $1)", value,
                    )
                )
        return DuplicateFlags(**flags)

    async def identity_search(self, search_type: SearchType, identifier: str) -> SearchResult:
        p = _check_pool()
        column = _SEARCH_COLUMNS[SearchType(search_type)]
        async with p.acquire(timeout=10) as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM customers WHERE {column} = $1 ORDER BY id LIMIT 1",
                identifier.strip(),
            )
        if row is None:
            return SearchResult(found=False)
        customer = _customer_from_row(row)
        return SearchResult(found=True, customer=customer, address=customer.address)

    async def save_draft(self, form: FormState, draft_id: str | None, step: Step | None) -> str:
        p = _check_pool()
        step = Step(step or form.step)
        async with p.acquire(timeout=10) as conn:
            if draft_id is None:
                new_id = uuid.uuid4().hex
                snapshot = form.model_copy(update={"draft_id": new_id})
                await conn.execute(
                    "INSERT INTO draft_orders (id, snapshot, step) VALUES ($1, $2::jsonb, $3)",
                    new_id, json.dumps(snapshot.to_json()), int(step),
                )
                return new_id

            snapshot = form.model_copy(update={"draft_id": draft_id})
            row = await conn.fetchrow(
                """
                UPDATE draft_orders
                   SET snapshot = $2::jsonb, step = $3, updated_at = NOW()
                 WHERE id = $1 AND status = 'draft'
                RETURNING id
                """,
                draft_id, json.dumps(snapshot.to_json()), int(step),
            )
            if row is not None:
                return draft_id
            status = await conn.fetchval("SELECT status FROM draft_orders WHERE id = $1", draft_id)
        if status is None:
            raise DraftNotFound(draft_id)
        raise DraftSuperseded(draft_id)

    async def load_draft(self, draft_id: str) -> DraftOrder:
        p = _check_pool()
        async with p.acquire(timeout=10) as conn:
            row = await conn.fetchrow("SELECT * FROM draft_orders WHERE id = $1", draft_id)
        if row is None:
            raise DraftNotFound(draft_id)
        return DraftOrder(
            id=row["id"],
            form_state=FormState.model_validate(json.loads(row["snapshot"])),
            step=Step(row["step"]),
            status=row["status"],
            updated_at=row["updated_at"],
        )

    async def finalize(self, form: FormState, draft_id: str) -> FinalizeResult:
        """Customer upsert + order insert + draft supersede, in one transaction.

        Replaying a finalize for the same draft returns the order it already
        produced; the customer is keyed by identification, so no second
        customer row appears either.
        """
        p = _check_pool()
        async with p.acquire(timeout=10) as conn:
            async with conn.transaction():
                draft = await conn.fetchrow(
                    "SELECT id, status FROM draft_orders WHERE id = $1 FOR UPDATE", draft_id,
                )
                if draft is None:
                    raise DraftNotFound(draft_id)

                existing = await conn.fetchrow(
                    "SELECT id, order_number, customer_id FROM orders WHERE draft_id = $1",
                    draft_id,
                )
                if existing is not None:
                    logger.info("Finalize replay for draft %s → order #%d", draft_id, existing["id"])
                    return FinalizeResult(
                        order_id=existing["id"],
                        order_number=existing["order_number"],
                        customer_id=existing["customer_id"],
                        draft_id=draft_id,
                    )
                if draft["status"] != "draft":
                    raise DraftSuperseded(draft_id)

                try:
                    customer_id = await self._upsert_customer(conn, form)
                except asyncpg.UniqueViolationError as exc:
                    logger.warning("Finalize of draft %s: customer conflict: %s", draft_id, exc)
                    raise CustomerConflict(
                        f"Identification {form.identification.strip()} belongs to another customer"
                    ) from exc
                order_id = await conn.fetchval(
                    """
                    INSERT INTO orders (order_number, customer_id, draft_id, shipping_address)
                    VALUES ('', $1, $2, $3::jsonb)
                    RETURNING id
                    """,
                    customer_id, draft_id, json.dumps(self._shipping_address(form)),
                )
                order_number = f"{settings.ORDER_NUMBER_PREFIX}{order_id:06d}"
                await conn.execute(
                    "UPDATE orders SET order_number = $1 WHERE id = $2", order_number, order_id,
                )
                snapshot = form.model_copy(update={"draft_id": draft_id})
                await conn.execute(
                    """
                    UPDATE draft_orders
                       SET status = 'superseded', snapshot = $2::jsonb, updated_at = NOW()
                     WHERE id = $1
                    """,
                    draft_id, json.dumps(snapshot.to_json()),
                )

        logger.info("Order #%d (%s) created for customer #%d", order_id, order_number, customer_id)
        return FinalizeResult(
            order_id=order_id,
            order_number=order_number,
            customer_id=customer_id,
            draft_id=draft_id,
        )

    @staticmethod
    async def _upsert_customer(conn: asyncpg.Connection, form: FormState) -> int:
        values = (
            form.first_name.strip(),
            form.last_name.strip(),
            _none_if_blank(form.email),
            _none_if_blank(form.phone),
            form.street.strip(),
            form.city.strip(),
            form.province.strip(),
            form.delivery_instructions.strip(),
        )
        if form.customer_id is not None:
            customer_id = await conn.fetchval(
                """
                UPDATE customers
                   SET first_name = $2, last_name = $3,
                       email = COALESCE($4, email), phone = COALESCE($5, phone),
                       street = $6, city = $7, province = $8, delivery_instructions = $9,
                       identification = COALESCE(identification, $10),
                       updated_at = NOW()
                 WHERE id = $1
                RETURNING id
                """,
                form.customer_id, *values, _none_if_blank(form.identification),
            )
            if customer_id is not None:
                return customer_id

        return await conn.fetchval(
            """
            INSERT INTO customers
                (first_name, last_name, email, phone,
                 street, city, province, delivery_instructions, identification)
            VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9)
            ON CONFLICT (identification) DO UPDATE
               SET first_name = EXCLUDED.first_name,
                   last_name = EXCLUDED.last_name,
                   email = COALESCE(EXCLUDED.email, customers.email),
                   phone = COALESCE(EXCLUDED.phone, customers.phone),
                   street = EXCLUDED.street,
                   city = EXCLUDED.city,
                   province = EXCLUDED.province,
                   delivery_instructions = EXCLUDED.delivery_instructions,
                   updated_at = NOW()
            RETURNING id
            """,
            *values, _none_if_blank(form.identification),
        )

    @staticmethod
    def _shipping_address(form: FormState) -> dict[str, Any]:
        return {
            "fullName": f"{form.first_name} {form.last_name}".strip(),
            "phone": form.phone,
            "idNumber": form.identification,
            **form.address().to_json(),
        }
