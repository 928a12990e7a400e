"""
User-facing message texts shared by the bot and the Celery sweeps.
"""
from datetime import datetime
from decimal import Decimal

from groupgate.core.config import settings
from groupgate.models.group_policy import GroupPolicy
from groupgate.services.groups.service import GroupStats

TRANSIENT_FAILURE = "⚠️ Something went wrong on our side. Please try again in a moment."

HELP = (
    "🤖 Group subscription bot\n\n"
    "Group admins:\n"
    "• Add me to your group as an admin (delete messages + ban users)\n"
    "• Use /manage_this_group in the group or /my_groups here to configure it\n\n"
    "Members:\n"
    "• /status shows your group subscriptions\n"
    "• /cancel stops any setup step in progress"
)

ASK_PRICE = "💰 Send the monthly subscription price in {currency} (e.g. 50).\nSend /cancel to stop."
ASK_WELCOME = "👋 Send the welcome message new members should see.\nSend /cancel to stop."
ASK_TRIAL_DAYS = "🎁 How many free trial days should new members get? Send a number from {low} to {high}.\nSend /cancel to stop."
ASK_GRACE_HOURS = (
    "🕐 How many hours should existing members keep access after subscriptions become required? "
    "Send a number from 0 to {high}.\nSend /cancel to stop."
)
ASK_CREDENTIAL = {
    "merchant_id": "🔑 Step 1/3: send your {provider} Merchant ID.\nSend /cancel to stop.",
    "merchant_key": "🔑 Step 2/3: send your {provider} Merchant Key.\nSend /cancel to stop.",
    "passphrase": "🔑 Step 3/3: send your {provider} passphrase, or 'skip' if you have none.\nSend /cancel to stop.",
}

INVALID_PRICE = "❌ Please send a positive number, e.g. 50 or 49.99."
INVALID_TRIAL_DAYS = "❌ Please send a whole number of days from {low} to {high}."
INVALID_GRACE_HOURS = "❌ Please send a whole number of hours from 0 to {high}."
CANCELLED = "❎ Cancelled. Nothing else was changed."


def subscribe_link(group_id: int) -> str:
    return f"https://t.me/{settings.telegram_bot_username}?start=subscribe_group_{group_id}"


def price_saved(price: Decimal) -> str:
    return f"✅ Subscription price set to {price} {settings.default_currency}."


def group_label(title: str | None, group_id: int) -> str:
    return title or f"group {group_id}"


def send_restricted(title: str | None, group_id: int) -> str:
    return (
        f"🔒 Only subscribers can post in {group_label(title, group_id)}. Your message was removed.\n"
        f"Subscribe here: {subscribe_link(group_id)}"
    )


def view_restricted(title: str | None, group_id: int) -> str:
    return (
        f"🔒 {group_label(title, group_id)} is for subscribers only, so you were removed.\n"
        f"Subscribe first, then rejoin: {subscribe_link(group_id)}"
    )


def trial_granted(title: str | None, group_id: int, days: int) -> str:
    return f"🎁 Welcome to {group_label(title, group_id)}! You have a free {days}-day trial."


def subscribe_prompt(title: str | None, group_id: int) -> str:
    return f"💳 {group_label(title, group_id)} is a subscriber group. Subscribe here: {subscribe_link(group_id)}"


def subscription_expired(title: str | None, group_id: int) -> str:
    return (
        f"⏰ Your subscription to {group_label(title, group_id)} has expired.\n"
        f"Renew here: {subscribe_link(group_id)}"
    )


def removed_for_lapse(title: str | None, group_id: int) -> str:
    return (
        f"👋 You were removed from {group_label(title, group_id)} because you have no active subscription.\n"
        f"Subscribe and rejoin any time: {subscribe_link(group_id)}"
    )


def management_header(policy: GroupPolicy, now: datetime | None = None) -> str:
    lines = [
        f"⚙️ Settings for {group_label(policy.group_title, policy.group_id)}",
        f"Registration: {'✅ registered' if policy.is_registered else '❌ not registered'}",
        f"Subscription: {'🔒 required' if policy.subscription_required else '🔓 not required'}",
    ]
    if policy.subscription_price:
        lines.append(f"Price: {policy.subscription_price} {policy.subscription_currency}")
    days_left = policy.trial_days_left(now)
    if days_left is not None:
        lines.append(f"⏳ Trial active until {policy.trial_end_date:%Y-%m-%d} ({days_left} days left)")
    return "\n".join(lines)


def group_stats(title: str | None, group_id: int, stats: GroupStats) -> str:
    return (
        f"📊 Statistics for {group_label(title, group_id)}\n\n"
        f"Subscription: {'required ✅' if stats.subscription_required else 'not required ❌'}\n"
        f"Active subscribers: {stats.active_subscribers}\n"
        f"Total members: {stats.total_members}\n"
        f"Subscription rate: {stats.subscription_rate}%\n\n"
        f"Last 30 days:\n"
        f"• Revenue: {stats.revenue_last_30_days} {stats.currency}\n"
        f"• Payments: {stats.payments_last_30_days}\n\n"
        f"Only members the bot has seen are counted."
    )
