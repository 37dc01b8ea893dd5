"""
Chat front end of the intake wizard, with edit-in-place UX.

/start → customer type (search existing / new) → personal data →
shipping address → review → submit

• One card message is edited at every step; field errors are shown inline.
• Inline buttons for choices and navigation; a text reply only when a
  value has to be typed.
• All state lives on the WizardController injected by the session
  middleware; the FSM only remembers which text reply is expected.
"""

from __future__ import annotations

import logging
from html import escape

from aiogram import Bot, F, Router
from aiogram.filters import Command, CommandObject
from aiogram.fsm.context import FSMContext
from aiogram.types import CallbackQuery, InlineKeyboardMarkup, Message

from intake.config import settings
from intake.controller import WizardController, WizardView
from intake.errors import ErrorKind
from intake.events import OrderCompleted
from intake.keyboards import (
    FIELD_LABELS,
    SEARCH_LABELS,
    STEP_FIELDS,
    STEP_TITLES,
    after_submit_kb,
    client_type_kb,
    fields_kb,
    retry_kb,
    review_kb,
    search_type_kb,
)
from intake.middleware import WizardSessionMiddleware
from intake.models import CustomerMode, FormState, SearchType, Step
from intake.states import WizardInput

logger = logging.getLogger(__name__)
router = Router()

TOTAL_STEPS = len(Step)

# Optional fields are skipped when prompting for the next missing value
_OPTIONAL_FIELDS = {"delivery_instructions"}


# ── Helper: build the wizard card ────────────────────────────────────

def _bar(step: int) -> str:
    step = max(1, min(TOTAL_STEPS, step))
    filled = "▰" * step
    empty = "▱" * (TOTAL_STEPS - step)
    return f"Step {step}/{TOTAL_STEPS}  {filled}{empty}"


def _field_line(view: WizardView, field: str) -> str:
    value = getattr(view.form, field)
    label = FIELD_LABELS[field]
    problem = view.field_error(field)
    if problem:
        shown = escape(value) if value else "—"
        return f"  ⚠️ {label}: {shown}\n        <i>{escape(problem)}</i>"
    if value:
        return f"  ✅ {label}: {escape(value)}"
    return f"  ▫️ {label}: —"


def _card(view: WizardView, question: str = "") -> str:
    step = view.step
    lines: list[str] = [
        "<b>Shipping order</b>\n"
        f"{_bar(step)}  <b>{STEP_TITLES[step]}</b>\n"
    ]

    if view.customer_mode is CustomerMode.EXISTING and view.bound_customer:
        lines.append(f"  👤 Existing customer: {escape(view.bound_customer.full_name)}")
    elif view.customer_mode is CustomerMode.NEW:
        lines.append("  🆕 New customer")
    if view.form.draft_id:
        lines.append(f"  📝 Draft <code>{escape(view.form.draft_id)}</code>")

    if step is Step.REVIEW:
        fields = STEP_FIELDS[Step.IDENTITY] + STEP_FIELDS[Step.ADDRESS]
    else:
        fields = STEP_FIELDS.get(step, ())
    for field in fields:
        lines.append(_field_line(view, field))

    if step is Step.CLIENT_TYPE and view.errors.get("customer_mode"):
        lines.append(f"\n⚠️ {escape(view.errors['customer_mode'])}")
    if view.notice:
        lines.append(f"\nℹ️ {escape(view.notice)}")
    if view.error and view.error.kind not in (ErrorKind.VALIDATION, ErrorKind.DUPLICATE):
        hint = "  Tap «Retry», nothing you entered is lost." if view.error.retryable else ""
        lines.append(f"\n❌ {escape(view.error.message)}{hint}")
    if question:
        lines.append(f"\n{question}")
    return "\n".join(lines)


def _markup(view: WizardView) -> InlineKeyboardMarkup:
    if view.error and view.error.retryable:
        if view.error.kind is ErrorKind.FINALIZATION:
            return retry_kb("submit")
        if view.error.kind in (ErrorKind.PERSISTENCE, ErrorKind.RESOLVER) and view.step is not Step.CLIENT_TYPE:
            return retry_kb("next")

    if view.step is Step.CLIENT_TYPE:
        if view.customer_mode is CustomerMode.EXISTING and view.bound_customer is None:
            return search_type_kb()
        can_advance = view.customer_mode is CustomerMode.NEW or view.bound_customer is not None
        return client_type_kb(can_advance)
    if view.step is Step.REVIEW:
        return review_kb()
    return fields_kb(view.step, view.form)


def _question(view: WizardView) -> str:
    if view.step is Step.CLIENT_TYPE:
        if view.customer_mode is CustomerMode.EXISTING and view.bound_customer is None:
            return "🔍 <b>Search the customer by:</b>"
        return "👥 <b>Is this an existing or a new customer?</b>"
    if view.step is Step.REVIEW:
        return "📋 <b>Check the data and submit the order.</b>"
    return "✏️ <b>Tap a field to fill it in.</b>"


async def _safe_edit(
    cb: CallbackQuery,
    text: str,
    reply_markup=None,  # noqa: ANN001
) -> None:
    """
    Users may click buttons of an old card after a restart.
    If edit fails (old message / already edited), send a new message.
    """
    try:
        await cb.message.edit_text(text, reply_markup=reply_markup)  # type: ignore[union-attr]
    except Exception:
        await cb.message.answer(text, reply_markup=reply_markup)  # type: ignore[union-attr]


async def _show(target: Message | CallbackQuery, view: WizardView) -> None:
    text = _card(view, _question(view))
    markup = _markup(view)
    if isinstance(target, CallbackQuery):
        await _safe_edit(target, text, reply_markup=markup)
    else:
        await target.answer(text, reply_markup=markup)


def _next_missing_field(view: WizardView) -> str | None:
    for field in STEP_FIELDS.get(view.step, ()):
        if field in _OPTIONAL_FIELDS:
            continue
        if not getattr(view.form, field) or view.field_error(field):
            return field
    return None


async def send_fresh_card(message: Message, wizard: WizardController, state: FSMContext) -> None:
    await state.clear()
    await _show(message, wizard.reset())


# ── Step 1: customer type ────────────────────────────────────────────

@router.callback_query(F.data.startswith("mode:"))
async def pick_mode(cb: CallbackQuery, wizard: WizardController, state: FSMContext) -> None:
    value = cb.data.split(":")[1]  # type: ignore[union-attr]
    if value not in {m.value for m in CustomerMode}:
        await cb.answer()
        return
    await state.clear()
    view = wizard.choose_customer_mode(CustomerMode(value))
    await _show(cb, view)
    await cb.answer()


@router.callback_query(F.data.startswith("search:"))
async def pick_search_type(cb: CallbackQuery, wizard: WizardController, state: FSMContext) -> None:
    value = cb.data.split(":")[1]  # type: ignore[union-attr]
    search_type = None if value == "any" else SearchType(value)
    view = wizard.set_search_type(search_type)
    await state.set_state(WizardInput.search_identifier)
    await _safe_edit(cb, _card(view, f"🔍 <b>Type the {SEARCH_LABELS[search_type]}:</b>"))
    await cb.answer()


@router.message(WizardInput.search_identifier, ~F.text.startswith("/"))
async def type_search_identifier(message: Message, wizard: WizardController, state: FSMContext) -> None:
    identifier = (message.text or "").strip()
    if not identifier:
        await message.answer("⚠️ Type a value to search for.")
        return
    view = await wizard.search_customer(identifier)
    await state.clear()
    await _show(message, view)


# ── Steps 2–3: field input ───────────────────────────────────────────

@router.callback_query(F.data.startswith("edit:"))
async def pick_field(cb: CallbackQuery, wizard: WizardController, state: FSMContext) -> None:
    field = cb.data.split(":", 1)[1]  # type: ignore[union-attr]
    if field not in FormState.editable_fields():
        await cb.answer()
        return
    await state.set_state(WizardInput.field_value)
    await state.update_data(field=field)
    await _safe_edit(cb, _card(wizard.view, f"✏️ <b>{FIELD_LABELS[field]}:</b>"))
    await cb.answer()


@router.message(WizardInput.field_value, ~F.text.startswith("/"))
async def type_field(message: Message, wizard: WizardController, state: FSMContext) -> None:
    data = await state.get_data()
    field = data.get("field")
    if field not in FormState.editable_fields():
        await state.clear()
        await _show(message, wizard.view)
        return

    view = wizard.update_field(field, (message.text or "").strip())
    problem = view.errors.get(field)
    if problem:
        await message.answer(f"⚠️ {escape(problem)}\n✏️ <b>{FIELD_LABELS[field]}:</b>")
        return

    following = _next_missing_field(view)
    if following:
        await state.update_data(field=following)
        await message.answer(_card(view, f"✏️ <b>{FIELD_LABELS[following]}:</b>"))
        return

    await state.clear()
    await _show(message, view)


# ── Navigation ───────────────────────────────────────────────────────

@router.callback_query(F.data == "nav:next")
async def nav_next(cb: CallbackQuery, wizard: WizardController, state: FSMContext) -> None:
    await state.clear()
    view = await wizard.advance()
    await _show(cb, view)
    await cb.answer()


@router.callback_query(F.data == "nav:back")
async def nav_back(cb: CallbackQuery, wizard: WizardController, state: FSMContext) -> None:
    await state.clear()
    view = await wizard.back()
    await _show(cb, view)
    await cb.answer()


@router.callback_query(F.data == "nav:submit")
async def nav_submit(cb: CallbackQuery, wizard: WizardController, state: FSMContext) -> None:
    await state.clear()
    view = await wizard.submit()
    if view.completed is None:
        await _show(cb, view)
        await cb.answer()
        return

    result = view.completed
    await _safe_edit(
        cb,
        f"<b>✅ Order {escape(result.order_number or str(result.order_id))} created!</b>\n\n"
        "The shipping team will prepare the package and the label.",
        reply_markup=after_submit_kb(),
    )
    await cb.answer()


@router.callback_query(F.data == "action:restart")
async def action_restart(cb: CallbackQuery, wizard: WizardController, state: FSMContext) -> None:
    await state.clear()
    view = wizard.reset()
    await cb.message.answer(_card(view, _question(view)), reply_markup=_markup(view))  # type: ignore[union-attr]
    await cb.answer()


@router.message(Command("resume"))
async def cmd_resume(
    message: Message,
    command: CommandObject,
    wizard: WizardController,
    sessions: WizardSessionMiddleware,
    state: FSMContext,
) -> None:
    """/resume <draft id>, or the user's last draft when no id is given."""
    draft_id = (command.args or "").strip()
    if not draft_id and message.from_user:
        draft_id = sessions.last_draft(message.from_user.id) or ""
    if not draft_id:
        await message.answer("No saved draft to continue. Usage: /resume &lt;draft id&gt;")
        return
    await state.clear()
    view = await wizard.resume(draft_id)
    await _show(message, view)


# ── Order-completed listener ─────────────────────────────────────────

async def notify_admins(bot: Bot, event: OrderCompleted) -> None:
    """Tell every admin chat about a new order."""
    text = (
        f"🆕 <b>New order {escape(event.order_number or str(event.order_id))}</b>\n\n"
        f"👤 Customer #{event.customer_id}\n"
        f"📝 Draft {escape(event.draft_id)}"
    )
    for admin_id in settings.admin_ids:
        try:
            await bot.send_message(admin_id, text)
        except Exception as exc:
            logger.error("Failed to notify admin %s: %s", admin_id, exc)
