"""
Wizard controller — the intake state machine.

    Step 1 client type → Step 2 identity → Step 3 address → Step 4 review
                                                               → submitted

• Forward moves validate the current step, run the duplicate-guard at 2 → 3
  (a bound customer's own values do not count) and save the draft
  *before* the step pointer moves.
• Backward moves never validate and never persist.
• Transitions are serialized: one requested while another is pending waits
  for it (asyncio.Lock is FIFO).
• Every store call runs as a tracked task; ``reset()``/``close()`` cancel
  them and any late response is dropped instead of applied.

The controller owns the FormState.  Callers get a ``WizardView`` snapshot
back from every operation; errors are reported on the view, not raised.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, TypeVar

from intake.api import Store
from intake.drafts import DraftManager
from intake.duplicates import DuplicateResolver
from intake.errors import (
    CustomerConflict,
    DraftNotFound,
    DraftSaveError,
    DraftSuperseded,
    ErrorInfo,
    ErrorKind,
    FinalizationError,
    ResolverUnavailable,
    SessionClosed,
    StaleResponse,
    StoreError,
    StoreUnavailable,
)
from intake.events import CompletionNotifier, OrderCompleted
from intake.models import (
    CustomerMode,
    CustomerRecord,
    FinalizeResult,
    FormState,
    SearchType,
    Step,
)
from intake.validation import validate_field, validate_form, validate_step

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class WizardView:
    step: Step
    form: FormState
    customer_mode: CustomerMode | None
    search_type: SearchType | None
    bound_customer: CustomerRecord | None
    errors: dict[str, str]
    duplicate_errors: dict[str, str]
    error: ErrorInfo | None = None
    notice: str | None = None
    completed: FinalizeResult | None = None
    pending: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def field_error(self, field: str) -> str | None:
        return self.errors.get(field) or self.duplicate_errors.get(field)


class WizardController:
    def __init__(
        self,
        store: Store,
        session_id: str | None = None,
        notifier: CompletionNotifier | None = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self.notifier = notifier or CompletionNotifier()
        self._store = store
        self.resolver = DuplicateResolver(store)
        self._transition_lock = asyncio.Lock()
        self._inflight: set[asyncio.Task[Any]] = set()
        self._generation = 0
        self._closed = False
        self._reset_state()

    def _reset_state(self) -> None:
        self.form = FormState()
        self.drafts = DraftManager(self._store)
        self.search_type: SearchType | None = SearchType.IDENTIFICATION
        self.bound_customer: CustomerRecord | None = None
        self.errors: dict[str, str] = {}
        self.duplicate_errors: dict[str, str] = {}
        self.error: ErrorInfo | None = None
        self.notice: str | None = None
        self.completed: FinalizeResult | None = None

    # ── Introspection ────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def view(self) -> WizardView:
        return WizardView(
            step=self.form.step,
            form=self.form.snapshot(),
            customer_mode=self.form.customer_mode,
            search_type=self.search_type,
            bound_customer=self.bound_customer,
            errors=dict(self.errors),
            duplicate_errors=dict(self.duplicate_errors),
            error=self.error,
            notice=self.notice,
            completed=self.completed,
            pending=self._transition_lock.locked(),
        )

    def finalize_problems(self) -> dict[str, str]:
        """Empty when the form may be submitted."""
        problems = validate_form(self.form)
        mode = self.form.customer_mode
        if mode is CustomerMode.EXISTING:
            if self.form.customer_id is None:
                problems["customer_mode"] = "No existing customer is selected"
        elif mode is CustomerMode.NEW:
            for field in FormState.IDENTITY_FIELDS:
                if not getattr(self.form, field).strip():
                    problems.setdefault(field, "Required")
        else:
            problems["customer_mode"] = "Choose an existing or a new customer"
        return problems

    # ── Local edits ──────────────────────────────────────────────────

    def choose_customer_mode(self, mode: CustomerMode | str) -> WizardView:
        self._ensure_open()
        mode = CustomerMode(mode)
        self._clear_transient()
        if self.form.step is not Step.CLIENT_TYPE:
            self.notice = "The customer type can only be changed on the first step"
            return self.view

        self.form.customer_mode = mode
        self.errors.pop("customer_mode", None)
        if mode is CustomerMode.NEW:
            self.form.customer_id = None
            self.bound_customer = None
        else:
            self.duplicate_errors.clear()
        return self.view

    def set_search_type(self, search_type: SearchType | str | None) -> WizardView:
        """``None`` searches identification, e-mail and phone in turn."""
        self._ensure_open()
        self.search_type = None if search_type is None else SearchType(search_type)
        return self.view

    def update_field(self, field: str, value: Any) -> WizardView:
        self._ensure_open()
        if field not in FormState.editable_fields():
            raise ValueError(f"Unknown form field {field!r}")

        text = "" if value is None else str(value)
        setattr(self.form, field, text)

        # Old verdicts for this field are void the moment a new value arrives
        self.errors.pop(field, None)
        self.duplicate_errors.pop(field, None)
        if self.error is not None and self.error.field == field:
            self.error = None

        message = validate_field(field, text)
        if message:
            self.errors[field] = message
        return self.view

    # ── Transitions ──────────────────────────────────────────────────

    async def search_customer(
        self,
        identifier: str,
        search_type: SearchType | str | None = None,
    ) -> WizardView:
        """Look the customer up and pre-fill the form from the match.

        Whatever the outcome, the previous customer's data is cleared first.
        """
        async with self._transition():
            if self.form.step is not Step.CLIENT_TYPE:
                self.notice = "Customer search is only available on the first step"
                return self.view
            if search_type is not None:
                self.search_type = SearchType(search_type)
            self.form.customer_mode = CustomerMode.EXISTING
            self.errors.pop("customer_mode", None)

            if self.search_type is None:
                lookup = self.resolver.find_existing(identifier, identifier, identifier)
            else:
                lookup = self.resolver.search(self.search_type, identifier)
            try:
                result = await self._call(lookup)
            except ResolverUnavailable as exc:
                self.error = ErrorInfo(ErrorKind.RESOLVER, str(exc), retryable=True)
                return self.view
            except StaleResponse:
                return self.view

            searched_by = self.search_type.value if self.search_type else "any-field"
            self.form.clear_customer_fields()
            self.bound_customer = None
            self.duplicate_errors.clear()
            for field in FormState.editable_fields():
                self.errors.pop(field, None)

            if result.found and result.customer is not None:
                customer = result.customer
                self.form.fill_from_customer(customer, result.address or customer.address)
                self.bound_customer = customer
                self.notice = f"Customer found: {customer.full_name}"
                logger.info(
                    "Session %s bound to customer #%d (%s)",
                    self.session_id, customer.id, searched_by,
                )
            else:
                self.form.customer_mode = CustomerMode.NEW
                self.notice = "No customer found, continuing as a new customer"
                logger.info("Session %s: no customer for %s search", self.session_id, searched_by)
            return self.view

    async def advance(self) -> WizardView:
        async with self._transition():
            step = self.form.step
            if step is Step.REVIEW:
                self.notice = "Submit the order to finish"
                return self.view

            errors = validate_step(self.form, step)
            self.errors = errors
            if errors:
                self.error = ErrorInfo(
                    ErrorKind.VALIDATION,
                    "Some fields need attention",
                    field=next(iter(errors)),
                )
                logger.info("Session %s: step %d blocked by %s", self.session_id, step, sorted(errors))
                return self.view

            target = Step(step + 1)
            try:
                if step is Step.IDENTITY:
                    duplicates = await self._call(
                        self.resolver.guard(
                            self.form.identification, self.form.email, self.form.phone,
                            own=self.bound_customer,
                        )
                    )
                    self.duplicate_errors = duplicates
                    if duplicates:
                        self.error = ErrorInfo(
                            ErrorKind.DUPLICATE,
                            "This customer already exists. Change the value or search for the customer",
                            field=next(iter(duplicates)),
                        )
                        return self.view

                pending = self.form.snapshot()
                pending.step = target
                draft_id = await self._call(self.drafts.save(pending))
            except ResolverUnavailable as exc:
                self.error = ErrorInfo(ErrorKind.RESOLVER, str(exc), retryable=True)
                return self.view
            except DraftSaveError as exc:
                self.error = ErrorInfo(ErrorKind.PERSISTENCE, str(exc), retryable=exc.retryable)
                return self.view
            except StaleResponse:
                return self.view

            self.form.draft_id = draft_id
            self.form.step = target
            logger.info("Session %s: step %d → %d (draft %s)", self.session_id, step, target, draft_id)
            return self.view

    async def back(self) -> WizardView:
        async with self._transition():
            if self.form.step is not Step.CLIENT_TYPE:
                self.form.step = Step(self.form.step - 1)
            return self.view

    async def submit(self) -> WizardView:
        async with self._transition():
            if self.form.step is not Step.REVIEW:
                self.error = ErrorInfo(ErrorKind.VALIDATION, "Complete every step before submitting")
                return self.view

            problems = self.finalize_problems()
            if problems:
                self.errors = problems
                self.error = ErrorInfo(
                    ErrorKind.VALIDATION, "Some fields need attention", field=next(iter(problems)),
                )
                return self.view
            if self.duplicate_errors:
                self.error = ErrorInfo(
                    ErrorKind.DUPLICATE,
                    "Resolve the duplicate customer data first",
                    field=next(iter(self.duplicate_errors)),
                )
                return self.view

            try:
                draft_id = self.form.draft_id or self.drafts.draft_id
                if draft_id is None:
                    draft_id = await self._call(self.drafts.save(self.form))
                    self.form.draft_id = draft_id
                result = await self._call(self._finalize(self.form.snapshot(), draft_id))
            except DraftSaveError as exc:
                self.error = ErrorInfo(ErrorKind.PERSISTENCE, str(exc), retryable=exc.retryable)
                return self.view
            except FinalizationError as exc:
                self.error = ErrorInfo(
                    ErrorKind.FINALIZATION,
                    f"The order could not be created, your data is kept: {exc}",
                    retryable=exc.retryable,
                )
                return self.view
            except StaleResponse:
                return self.view

            logger.info(
                "Session %s: order #%d (%s) created from draft %s",
                self.session_id, result.order_id, result.order_number, draft_id,
            )
            self._reset_state()
            self.completed = result
            self.notice = f"Order {result.order_number or result.order_id} created"
            await self.notifier.publish(
                OrderCompleted(
                    order_id=result.order_id,
                    order_number=result.order_number,
                    customer_id=result.customer_id,
                    draft_id=result.draft_id,
                )
            )
            return self.view

    async def resume(self, draft_id: str) -> WizardView:
        """Continue a saved draft."""
        async with self._transition():
            try:
                draft = await self._call(self.drafts.load(draft_id))
            except DraftSaveError as exc:
                self.error = ErrorInfo(ErrorKind.PERSISTENCE, str(exc), retryable=exc.retryable)
                return self.view
            except StaleResponse:
                return self.view

            if draft.status != "draft":
                self.drafts.forget()
                self.error = ErrorInfo(ErrorKind.PERSISTENCE, f"Draft {draft_id} was already submitted")
                return self.view

            self.form = draft.form_state.snapshot()
            self.form.draft_id = draft.id
            self.form.step = draft.step
            self.bound_customer = None
            self.errors = {}
            self.duplicate_errors = {}
            logger.info("Session %s resumed draft %s at step %d", self.session_id, draft.id, draft.step)
            return self.view

    # ── Session lifecycle ────────────────────────────────────────────

    def reset(self) -> WizardView:
        """Back to an empty Step 1; responses still in flight are dropped."""
        self._ensure_open()
        self._discard_inflight()
        self._reset_state()
        return self.view

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._discard_inflight()
        logger.info("Session %s closed", self.session_id)

    # ── Internals ────────────────────────────────────────────────────

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosed(f"Wizard session {self.session_id} is closed")

    def _clear_transient(self) -> None:
        self.error = None
        self.notice = None
        self.completed = None

    def _discard_inflight(self) -> None:
        self._generation += 1
        for task in list(self._inflight):
            task.cancel()

    async def _finalize(self, form: FormState, draft_id: str) -> FinalizeResult:
        try:
            return await self._store.finalize(form, draft_id)
        except (StoreUnavailable, StoreError, DraftNotFound, DraftSuperseded, CustomerConflict) as exc:
            logger.warning("Session %s: finalization of draft %s failed: %s", self.session_id, draft_id, exc)
            raise FinalizationError(str(exc), retryable=exc.retryable) from exc

    @asynccontextmanager
    async def _transition(self) -> AsyncIterator[None]:
        self._ensure_open()
        async with self._transition_lock:
            self._ensure_open()
            self._clear_transient()
            yield

    async def _call(self, coro: Awaitable[T]) -> T:
        """Run one store call as a cancellable task bound to the current form."""
        if self._closed:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise SessionClosed(f"Wizard session {self.session_id} is closed")

        generation = self._generation
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        try:
            result = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            self._check_generation(generation)
            raise
        finally:
            self._inflight.discard(task)
        self._check_generation(generation)
        return result

    def _check_generation(self, generation: int) -> None:
        if self._closed:
            raise SessionClosed(f"Wizard session {self.session_id} is closed")
        if generation != self._generation:
            logger.debug("Session %s: dropping stale store response", self.session_id)
            raise StaleResponse()
