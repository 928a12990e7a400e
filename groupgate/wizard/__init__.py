"""
Group configuration wizard: per-conversation state machine driven by free-text replies.
"""
from groupgate.wizard.states import (
    AwaitingGraceHours,
    AwaitingPrice,
    AwaitingTrialDays,
    AwaitingWelcome,
    ConfiguringPayment,
    ConversationState,
    Idle,
    PaymentStep,
)
from groupgate.wizard.wizard import (
    CANCEL_TOKEN,
    ConfigurationWizard,
    ReturnMenu,
    WizardOutcome,
    WizardReply,
)

__all__ = [
    "AwaitingGraceHours",
    "AwaitingPrice",
    "AwaitingTrialDays",
    "AwaitingWelcome",
    "CANCEL_TOKEN",
    "ConfigurationWizard",
    "ConfiguringPayment",
    "ConversationState",
    "Idle",
    "PaymentStep",
    "ReturnMenu",
    "WizardOutcome",
    "WizardReply",
]
