"""
ConfigurationWizard: free-text driven group setup (price, welcome text, gateway
credentials, trial length, grace period).

A text message in a non-idle state is always consumed by the wizard. The store is written
(and committed) before the conversation state advances, so a failed write leaves the user
on the same step and a completed step survives any later interruption.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable

import pydantic
from sqlalchemy.orm import Session

from groupgate.core.config import settings
from groupgate.services.groups.service import GroupService
from groupgate.services.state import StateStore
from groupgate.wizard.states import (
    IDLE,
    AwaitingGraceHours,
    AwaitingPrice,
    AwaitingTrialDays,
    AwaitingWelcome,
    ConfiguringPayment,
    ConversationState,
    Idle,
    PaymentStep,
    conversation_state_adapter,
)

logger = logging.getLogger(__name__)

CANCEL_TOKEN = "/cancel"
SKIP_TOKEN = "skip"
MAX_PRICE = Decimal("9999999999.99")


class WizardOutcome(str, Enum):
    SAVED = "saved"          # value persisted, wizard back to idle
    NEXT_STEP = "next_step"  # value persisted, waiting for the next credential
    REJECTED = "rejected"    # invalid input, state unchanged
    CANCELLED = "cancelled"  # cancel token, back to idle


class ReturnMenu(str, Enum):
    REGISTRATION = "registration"
    SUBSCRIPTION_SETTINGS = "subscription_settings"
    MANAGE_GROUP = "manage_group"
    PAYMENT_SETTINGS = "payment_settings"


@dataclass(frozen=True)
class WizardReply:
    outcome: WizardOutcome
    group_id: int
    field: str
    return_to: ReturnMenu | None = None
    next_step: PaymentStep | None = None
    value: Any = None


def _return_menu(state: ConversationState) -> ReturnMenu | None:
    if isinstance(state, AwaitingPrice):
        return ReturnMenu.SUBSCRIPTION_SETTINGS if state.from_subscription_settings else ReturnMenu.REGISTRATION
    if isinstance(state, AwaitingWelcome):
        return ReturnMenu.MANAGE_GROUP if state.from_management_menu else None
    if isinstance(state, ConfiguringPayment):
        return ReturnMenu.PAYMENT_SETTINGS
    if isinstance(state, (AwaitingTrialDays, AwaitingGraceHours)):
        return ReturnMenu.MANAGE_GROUP
    return None


def _field_of(state: ConversationState) -> str:
    if isinstance(state, ConfiguringPayment):
        return state.payment_step.value
    return {
        AwaitingPrice: "price",
        AwaitingWelcome: "welcome_message",
        AwaitingTrialDays: "trial_days",
        AwaitingGraceHours: "grace_hours",
    }.get(type(state), "")


def parse_price(text: str) -> Decimal | None:
    try:
        price = Decimal(text.strip())
    except InvalidOperation:
        return None
    if not price.is_finite() or price <= 0 or price > MAX_PRICE:
        return None
    return price.quantize(Decimal("0.01"))


def parse_trial_days(text: str) -> int | None:
    try:
        days = int(text.strip())
    except ValueError:
        return None
    if not settings.trial_days_min <= days <= settings.trial_days_max:
        return None
    return days


def parse_grace_hours(text: str) -> int | None:
    try:
        hours = int(text.strip())
    except ValueError:
        return None
    if not 0 <= hours <= settings.grace_period_hours_max:
        return None
    return hours


class ConfigurationWizard:
    def __init__(self, db: Session, store: StateStore):
        self.db = db
        self.store = store
        self.groups = GroupService(db)
        # Priority-ordered: first matching state type wins.
        self._handlers: tuple[tuple[type, Callable[[int, int, Any, str], WizardReply]], ...] = (
            (AwaitingWelcome, self._on_welcome),
            (AwaitingPrice, self._on_price),
            (ConfiguringPayment, self._on_payment),
            (AwaitingTrialDays, self._on_trial_days),
            (AwaitingGraceHours, self._on_grace_hours),
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def state(self, chat_id: int, user_id: int) -> ConversationState:
        raw = self.store.get(chat_id, user_id)
        if not raw:
            return IDLE
        try:
            return conversation_state_adapter.validate_python(raw)
        except pydantic.ValidationError:
            logger.warning("wizard_state_corrupt", extra={"chat_id": chat_id, "user_id": user_id})
            self.store.clear(chat_id, user_id)
            return IDLE

    def _enter(self, chat_id: int, user_id: int, state: ConversationState) -> ConversationState:
        self.store.set(chat_id, user_id, state.model_dump(mode="json"))
        logger.info(
            "wizard_state_entered",
            extra={"chat_id": chat_id, "user_id": user_id, "action": state.step, "group_id": getattr(state, "group_id", None)},
        )
        return state

    def _finish(self, chat_id: int, user_id: int) -> None:
        self.store.clear(chat_id, user_id)

    # ------------------------------------------------------------------
    # Menu actions
    # ------------------------------------------------------------------

    def start_price(self, chat_id: int, user_id: int, group_id: int, from_subscription_settings: bool = False):
        self.groups.require(group_id)
        return self._enter(chat_id, user_id, AwaitingPrice(group_id=group_id, from_subscription_settings=from_subscription_settings))

    def start_welcome(self, chat_id: int, user_id: int, group_id: int, from_management_menu: bool = False):
        self.groups.require(group_id)
        return self._enter(chat_id, user_id, AwaitingWelcome(group_id=group_id, from_management_menu=from_management_menu))

    def start_payment(self, chat_id: int, user_id: int, group_id: int, provider: str = "payfast"):
        self.groups.set_payment_method(group_id, provider)
        self.db.commit()
        return self._enter(chat_id, user_id, ConfiguringPayment(group_id=group_id, provider=provider))

    def start_trial_days(self, chat_id: int, user_id: int, group_id: int):
        self.groups.require(group_id)
        return self._enter(chat_id, user_id, AwaitingTrialDays(group_id=group_id))

    def start_grace_hours(self, chat_id: int, user_id: int, group_id: int):
        self.groups.require(group_id)
        return self._enter(chat_id, user_id, AwaitingGraceHours(group_id=group_id))

    def cancel(self, chat_id: int, user_id: int) -> WizardReply | None:
        """Back to idle. None if nothing was in progress."""
        state = self.state(chat_id, user_id)
        if isinstance(state, Idle):
            return None
        self._finish(chat_id, user_id)
        logger.info("wizard_cancelled", extra={"chat_id": chat_id, "user_id": user_id, "action": state.step})
        return WizardReply(
            outcome=WizardOutcome.CANCELLED,
            group_id=state.group_id,
            field=_field_of(state),
            return_to=_return_menu(state),
        )

    # ------------------------------------------------------------------
    # Text routing
    # ------------------------------------------------------------------

    def handle_text(self, chat_id: int, user_id: int, text: str) -> WizardReply | None:
        """Consume text for the active state. None means idle: route the text elsewhere."""
        state = self.state(chat_id, user_id)
        if isinstance(state, Idle):
            return None
        if text.strip().lower() == CANCEL_TOKEN:
            return self.cancel(chat_id, user_id)
        for state_type, handler in self._handlers:
            if isinstance(state, state_type):
                return handler(chat_id, user_id, state, text)
        return None

    def _rejected(self, state: ConversationState) -> WizardReply:
        return WizardReply(
            outcome=WizardOutcome.REJECTED,
            group_id=state.group_id,
            field=_field_of(state),
            return_to=_return_menu(state),
        )

    def _on_price(self, chat_id: int, user_id: int, state: AwaitingPrice, text: str) -> WizardReply:
        price = parse_price(text)
        if price is None:
            return self._rejected(state)
        self.groups.set_price(state.group_id, price)
        self.db.commit()
        self._finish(chat_id, user_id)
        return WizardReply(
            outcome=WizardOutcome.SAVED,
            group_id=state.group_id,
            field="price",
            return_to=_return_menu(state),
            value=price,
        )

    def _on_welcome(self, chat_id: int, user_id: int, state: AwaitingWelcome, text: str) -> WizardReply:
        self.groups.set_welcome_message(state.group_id, text)
        self.db.commit()
        self._finish(chat_id, user_id)
        return WizardReply(
            outcome=WizardOutcome.SAVED,
            group_id=state.group_id,
            field="welcome_message",
            return_to=_return_menu(state),
            value=text,
        )

    def _on_payment(self, chat_id: int, user_id: int, state: ConfiguringPayment, text: str) -> WizardReply:
        step = state.payment_step
        skipped = step == PaymentStep.PASSPHRASE and text.strip().lower() == SKIP_TOKEN
        if not skipped:
            self.groups.update_payment_credentials(state.group_id, state.provider, **{step.value: text})
            self.db.commit()

        next_step = step.next()
        if next_step is not None:
            self._enter(chat_id, user_id, state.model_copy(update={"payment_step": next_step}))
            return WizardReply(
                outcome=WizardOutcome.NEXT_STEP,
                group_id=state.group_id,
                field=step.value,
                return_to=_return_menu(state),
                next_step=next_step,
            )
        self._finish(chat_id, user_id)
        return WizardReply(
            outcome=WizardOutcome.SAVED,
            group_id=state.group_id,
            field=step.value,
            return_to=_return_menu(state),
        )

    def _on_trial_days(self, chat_id: int, user_id: int, state: AwaitingTrialDays, text: str) -> WizardReply:
        days = parse_trial_days(text)
        if days is None:
            return self._rejected(state)
        self.groups.set_trial_days(state.group_id, days)
        self.db.commit()
        self._finish(chat_id, user_id)
        return WizardReply(
            outcome=WizardOutcome.SAVED,
            group_id=state.group_id,
            field="trial_days",
            return_to=_return_menu(state),
            value=days,
        )

    def _on_grace_hours(self, chat_id: int, user_id: int, state: AwaitingGraceHours, text: str) -> WizardReply:
        hours = parse_grace_hours(text)
        if hours is None:
            return self._rejected(state)
        self.groups.set_grace_period_hours(state.group_id, hours)
        self.db.commit()
        self._finish(chat_id, user_id)
        return WizardReply(
            outcome=WizardOutcome.SAVED,
            group_id=state.group_id,
            field="grace_hours",
            return_to=_return_menu(state),
            value=hours,
        )
