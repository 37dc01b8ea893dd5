"""FSM states for the chat front end.

Wizard steps live on the controller; the FSM only records which kind of
text reply the chat is waiting for.
"""

from aiogram.fsm.state import State, StatesGroup


class WizardInput(StatesGroup):
    search_identifier = State()   # existing customer: id / e-mail / phone
    field_value = State()         # data["field"] names the form field being typed
