"""All keyboards and field labels of the chat front end."""

from __future__ import annotations

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from intake.models import FormState, SearchType, Step

# ── Labels ──────────────────────────────────────────────────────────

FIELD_LABELS: dict[str, str] = {
    "first_name": "First name",
    "last_name": "Last name",
    "identification": "ID / passport",
    "phone": "Phone",
    "email": "E-mail",
    "street": "Street",
    "city": "City",
    "province": "Province",
    "delivery_instructions": "Delivery instructions",
}

STEP_FIELDS: dict[Step, tuple[str, ...]] = {
    Step.IDENTITY: ("first_name", "last_name", "identification", "phone", "email"),
    Step.ADDRESS: ("street", "city", "province", "delivery_instructions"),
}

STEP_TITLES: dict[Step, str] = {
    Step.CLIENT_TYPE: "Customer",
    Step.IDENTITY: "Personal data",
    Step.ADDRESS: "Shipping address",
    Step.REVIEW: "Review",
}

SEARCH_TYPES = [
    ("🪪 ID / passport", SearchType.IDENTIFICATION),
    ("✉️ E-mail", SearchType.EMAIL),
    ("📱 Phone", SearchType.PHONE),
]

SEARCH_LABELS: dict[SearchType | None, str] = {v: lbl for lbl, v in SEARCH_TYPES}
# "any": identification, then e-mail, then phone
SEARCH_LABELS[None] = "🔎 ID, e-mail or phone"


# ── Keyboard builders ───────────────────────────────────────────────

def client_type_kb(can_advance: bool = False) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="👤 Existing customer", callback_data="mode:existing")
    b.button(text="🆕 New customer", callback_data="mode:new")
    if can_advance:
        b.button(text="Next ▶", callback_data="nav:next")
        b.adjust(2, 1)
    else:
        b.adjust(2)
    return b.as_markup()


def search_type_kb() -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    for label, search_type in SEARCH_TYPES:
        b.button(text=label, callback_data=f"search:{search_type.value}")
    b.button(text="🔎 Any field", callback_data="search:any")
    b.button(text="🆕 New customer instead", callback_data="mode:new")
    b.adjust(2, 2, 1)
    return b.as_markup()


def fields_kb(step: Step, form: FormState) -> InlineKeyboardMarkup:
    """One edit button per field of the step, then navigation."""
    b = InlineKeyboardBuilder()
    for field in STEP_FIELDS.get(step, ()):
        mark = "✅" if getattr(form, field) else "✏️"
        b.button(text=f"{mark} {FIELD_LABELS[field]}", callback_data=f"edit:{field}")
    b.adjust(2)
    b.row(*_nav_buttons(step))
    return b.as_markup()


def review_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            _nav_buttons(Step.REVIEW),
            [InlineKeyboardButton(text="🔄 Start over", callback_data="action:restart")],
        ]
    )


def _nav_buttons(step: Step) -> list[InlineKeyboardButton]:
    buttons = [InlineKeyboardButton(text="◀ Back", callback_data="nav:back")]
    if step is Step.REVIEW:
        buttons.append(InlineKeyboardButton(text="✅ Submit order", callback_data="nav:submit"))
    else:
        buttons.append(InlineKeyboardButton(text="Next ▶", callback_data="nav:next"))
    return buttons


def retry_kb(action: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="🔁 Retry", callback_data=f"nav:{action}")],
            [InlineKeyboardButton(text="◀ Back", callback_data="nav:back")],
        ]
    )


def after_submit_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="🔄 New order", callback_data="action:restart")],
        ]
    )
