"""
Group access control (internal library).
Decision (access) and execution (engine) are split; the contract is AccessContext.
"""
from groupgate.access.access import decide_access
from groupgate.access.engine import AccessControlEngine, ChatEvent
from groupgate.access.models import (
    AccessAction,
    AccessContext,
    AccessDecision,
    EventKind,
    PolicySnapshot,
    SubscriptionSnapshot,
)

__all__ = [
    "AccessAction",
    "AccessContext",
    "AccessControlEngine",
    "AccessDecision",
    "ChatEvent",
    "EventKind",
    "PolicySnapshot",
    "SubscriptionSnapshot",
    "decide_access",
]
