"""
ConversationState: one tagged value per (chat, user). Entering a state replaces the
previous one wholesale, so two wizard flows can never be active at once.
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class PaymentStep(str, Enum):
    MERCHANT_ID = "merchant_id"
    MERCHANT_KEY = "merchant_key"
    PASSPHRASE = "passphrase"

    def next(self) -> "PaymentStep | None":
        order = list(PaymentStep)
        idx = order.index(self)
        return order[idx + 1] if idx + 1 < len(order) else None


class Idle(BaseModel):
    step: Literal["idle"] = "idle"

    model_config = {"frozen": True}


class AwaitingPrice(BaseModel):
    step: Literal["awaiting_price"] = "awaiting_price"
    group_id: int
    from_subscription_settings: bool = False

    model_config = {"frozen": True}


class AwaitingWelcome(BaseModel):
    step: Literal["awaiting_welcome"] = "awaiting_welcome"
    group_id: int
    from_management_menu: bool = False

    model_config = {"frozen": True}


class ConfiguringPayment(BaseModel):
    step: Literal["configuring_payment"] = "configuring_payment"
    group_id: int
    provider: str = "payfast"
    payment_step: PaymentStep = PaymentStep.MERCHANT_ID

    model_config = {"frozen": True}


class AwaitingTrialDays(BaseModel):
    step: Literal["awaiting_trial_days"] = "awaiting_trial_days"
    group_id: int

    model_config = {"frozen": True}


class AwaitingGraceHours(BaseModel):
    step: Literal["awaiting_grace_hours"] = "awaiting_grace_hours"
    group_id: int

    model_config = {"frozen": True}


ConversationState = Annotated[
    Union[Idle, AwaitingPrice, AwaitingWelcome, ConfiguringPayment, AwaitingTrialDays, AwaitingGraceHours],
    Field(discriminator="step"),
]

conversation_state_adapter: TypeAdapter[ConversationState] = TypeAdapter(ConversationState)

IDLE = Idle()
