"""Wizard data model and the JSON bodies exchanged with the store.

Everything on the wire is camelCase (``firstName``, ``draftId`` …); Python
code uses the snake_case attribute names.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Step(IntEnum):
    CLIENT_TYPE = 1
    IDENTITY = 2
    ADDRESS = 3
    REVIEW = 4


class CustomerMode(str, Enum):
    EXISTING = "existing"
    NEW = "new"


class SearchType(str, Enum):
    IDENTIFICATION = "identification"
    EMAIL = "email"
    PHONE = "phone"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ── Domain records ───────────────────────────────────────────────────

class Address(WireModel):
    street: str = ""
    city: str = ""
    province: str = ""
    delivery_instructions: str = ""

    def is_empty(self) -> bool:
        return not (self.street or self.city or self.province)


class CustomerRecord(WireModel):
    id: int
    first_name: str = ""
    last_name: str = ""
    identification: str | None = None
    email: str | None = None
    phone: str | None = None
    address: Address | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class FormState(WireModel):
    """The in-progress wizard form."""

    IDENTITY_FIELDS: ClassVar[tuple[str, ...]] = (
        "first_name", "last_name", "identification", "phone", "email",
    )
    ADDRESS_FIELDS: ClassVar[tuple[str, ...]] = (
        "street", "city", "province", "delivery_instructions",
    )

    # identity
    first_name: str = ""
    last_name: str = ""
    identification: str = ""
    # contact
    phone: str = ""
    email: str = ""
    # destination
    street: str = ""
    city: str = ""
    province: str = ""
    delivery_instructions: str = ""

    # workflow metadata
    step: Step = Step.CLIENT_TYPE
    customer_mode: CustomerMode | None = None
    draft_id: str | None = None
    customer_id: int | None = None

    @classmethod
    def editable_fields(cls) -> tuple[str, ...]:
        return cls.IDENTITY_FIELDS + cls.ADDRESS_FIELDS

    def snapshot(self) -> FormState:
        return self.model_copy(deep=True)

    def address(self) -> Address:
        return Address(
            street=self.street,
            city=self.city,
            province=self.province,
            delivery_instructions=self.delivery_instructions,
        )

    def clear_customer_fields(self) -> None:
        """Empty identity, contact and address fields and drop the binding."""
        for field in self.editable_fields():
            setattr(self, field, "")
        self.customer_id = None

    def fill_from_customer(self, customer: CustomerRecord, address: Address | None) -> None:
        """Replace everything customer-related with *customer*'s data."""
        self.clear_customer_fields()
        self.first_name = customer.first_name or ""
        self.last_name = customer.last_name or ""
        self.identification = customer.identification or ""
        self.email = customer.email or ""
        self.phone = customer.phone or ""
        self.customer_id = customer.id
        if address is not None and not address.is_empty():
            self.street = address.street
            self.city = address.city
            self.province = address.province
            self.delivery_instructions = address.delivery_instructions


class DraftOrder(WireModel):
    id: str
    form_state: FormState
    step: Step
    status: str = "draft"
    updated_at: datetime | None = None


# ── Store API bodies ─────────────────────────────────────────────────

class DuplicateCheckRequest(WireModel):
    identification: str = ""
    email: str = ""
    phone: str = ""


class DuplicateFlags(WireModel):
    identification: bool = False
    email: bool = False
    phone: bool = False

    def collisions(self) -> list[str]:
        return [f for f in ("identification", "email", "phone") if getattr(self, f)]


class IdentitySearchRequest(WireModel):
    type: SearchType
    identifier: str


class SearchResult(WireModel):
    found: bool = False
    customer: CustomerRecord | None = None
    address: Address | None = None


class DraftSaveRequest(WireModel):
    form_state: FormState
    draft_id: str | None = None
    step: Step | None = None


class DraftSaveResponse(WireModel):
    draft_id: str


class FinalizeRequest(WireModel):
    form_state: FormState
    draft_id: str


class FinalizeResult(WireModel):
    order_id: int
    order_number: str = ""
    customer_id: int | None = None
    draft_id: str
