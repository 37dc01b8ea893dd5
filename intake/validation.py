"""Step validation for the intake wizard.

Each step owns exactly one schema variant:

    Step 1  ClientTypeSchema   customer mode chosen (and bound, if existing)
    Step 2  IdentitySchema     names, phone, e-mail, identification
    Step 3  AddressSchema      street, city, province

The review step re-checks steps 2 and 3 together.  Everything here is pure:
no I/O, no exceptions, the same input always gives the same error map.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal, Union

from intake.models import CustomerMode, FormState, Step

EMAIL_RE = re.compile(
    r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,}$"
)


@dataclass(frozen=True)
class FieldRule:
    field: str
    message: str
    min_length: int = 0
    pattern: re.Pattern[str] | None = None

    def check(self, value: Any) -> str | None:
        text = _as_text(value)
        if len(text) < self.min_length:
            return self.message
        if self.pattern is not None and not self.pattern.match(text):
            return self.message
        return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    try:
        return str(value).strip()
    except Exception:
        return ""


IDENTITY_RULES: tuple[FieldRule, ...] = (
    FieldRule("first_name", "First name must be at least 2 characters", min_length=2),
    FieldRule("last_name", "Last name must be at least 2 characters", min_length=2),
    FieldRule("phone", "Phone must be at least 8 characters", min_length=8),
    FieldRule("email", "Enter a valid e-mail address", min_length=3, pattern=EMAIL_RE),
    FieldRule("identification", "Identification must be at least 5 characters", min_length=5),
)

ADDRESS_RULES: tuple[FieldRule, ...] = (
    FieldRule("street", "Street must be at least 3 characters", min_length=3),
    FieldRule("city", "City must be at least 2 characters", min_length=2),
    FieldRule("province", "Province must be at least 3 characters", min_length=3),
)

_RULES_BY_FIELD: dict[str, FieldRule] = {r.field: r for r in IDENTITY_RULES + ADDRESS_RULES}


# ── Tagged step schemas ──────────────────────────────────────────────

@dataclass(frozen=True)
class ClientTypeSchema:
    kind: Literal["client_type"] = "client_type"


@dataclass(frozen=True)
class IdentitySchema:
    kind: Literal["identity"] = "identity"
    rules: tuple[FieldRule, ...] = IDENTITY_RULES


@dataclass(frozen=True)
class AddressSchema:
    kind: Literal["address"] = "address"
    rules: tuple[FieldRule, ...] = ADDRESS_RULES


StepSchema = Union[ClientTypeSchema, IdentitySchema, AddressSchema]

SCHEMAS: dict[Step, StepSchema] = {
    Step.CLIENT_TYPE: ClientTypeSchema(),
    Step.IDENTITY: IdentitySchema(),
    Step.ADDRESS: AddressSchema(),
}


def schema_for(step: Step) -> StepSchema | None:
    """Schema owned by *step*; the review step has none of its own."""
    return SCHEMAS.get(step)


def _apply(rules: tuple[FieldRule, ...], form: FormState) -> dict[str, str]:
    errors: dict[str, str] = {}
    for rule in rules:
        message = rule.check(getattr(form, rule.field, None))
        if message:
            errors[rule.field] = message
    return errors


def _check_schema(schema: StepSchema | None, form: FormState) -> dict[str, str]:
    match schema:
        case ClientTypeSchema():
            if form.customer_mode is None:
                return {"customer_mode": "Choose an existing or a new customer"}
            if form.customer_mode is CustomerMode.EXISTING and form.customer_id is None:
                return {"customer_mode": "Search for the customer or choose a new customer"}
            return {}
        case IdentitySchema(rules=rules) | AddressSchema(rules=rules):
            return _apply(rules, form)
        case None:
            return {}


# ── Public API ───────────────────────────────────────────────────────

def validate_step(form: FormState, step: Step | int) -> dict[str, str]:
    """Errors for the fields that belong to *step* (empty when valid)."""
    try:
        step = Step(step)
    except (TypeError, ValueError):
        return {"step": f"Unknown step {step!r}"}
    if step is Step.REVIEW:
        return validate_form(form)
    return _check_schema(schema_for(step), form)


def validate_form(form: FormState) -> dict[str, str]:
    """Full-form check used before finalization."""
    errors = _check_schema(schema_for(Step.IDENTITY), form)
    errors.update(_check_schema(schema_for(Step.ADDRESS), form))
    return errors


def validate_field(field: str, value: Any) -> str | None:
    """Re-check one field in isolation (per keystroke).

    Fields without a rule (delivery instructions, metadata) are always valid.
    """
    rule = _RULES_BY_FIELD.get(field)
    if rule is None:
        return None
    return rule.check(value)
