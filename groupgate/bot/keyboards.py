"""
Dumb layer: policy/menu context in, InlineKeyboardMarkup out.
Callback data is "<action>:<group_id>[:<arg>]".
"""
from __future__ import annotations

from datetime import datetime

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from groupgate.models.group_policy import GroupPolicy
from groupgate.payments.registry import GATEWAY_CLASSES
from groupgate.wizard import ReturnMenu


def _btn(text: str, data: str) -> InlineKeyboardButton:
    return InlineKeyboardButton(text=text, callback_data=data)


def _flag(value: bool) -> str:
    return "✅" if value else "❌"


def registration_menu(group_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [_btn("💰 Set price", f"price:{group_id}:reg")],
        [_btn("💳 Payment method", f"paymethod:{group_id}")],
        [_btn("✅ Complete registration", f"complete:{group_id}")],
    ])


def management_menu(policy: GroupPolicy, now: datetime | None = None) -> InlineKeyboardMarkup:
    gid = policy.group_id
    if not policy.is_registered:
        return InlineKeyboardMarkup(inline_keyboard=[[_btn("📝 Register group", f"register:{gid}")]])
    rows = []
    days_left = policy.trial_days_left(now)
    if days_left is not None:
        rows.append([_btn(f"⏳ Trial period: {days_left} days left", f"manage:{gid}")])
    rows += [
        [_btn(f"{_flag(policy.subscription_required)} Subscription required", f"monetize:{gid}")],
        [_btn("💰 Price", f"price:{gid}:settings"), _btn("💳 Payment", f"paymethod:{gid}")],
        [_btn("👋 Welcome message", f"welcome:{gid}")],
        [_btn(f"{_flag(policy.restrict_non_subs_sending)} Block posting", f"toggle:{gid}:send")],
        [_btn(f"{_flag(policy.restrict_non_subs_viewing)} Remove on join", f"toggle:{gid}:view")],
        [_btn(f"{_flag(policy.auto_remove_non_subscribers)} Auto-remove lapsed", f"toggle:{gid}:remove")],
        [
            _btn(f"{_flag(policy.user_trial_enabled)} Trial", f"toggle:{gid}:trial"),
            _btn(f"🎁 Trial days ({policy.user_trial_days})", f"trialdays:{gid}"),
        ],
        [_btn(f"🕐 Grace period ({policy.existing_user_grace_period_hours}h)", f"grace:{gid}")],
        [_btn("📊 Statistics", f"stats:{gid}")],
    ]
    return InlineKeyboardMarkup(inline_keyboard=rows)


def payment_methods(group_id: int) -> InlineKeyboardMarkup:
    rows = [
        [_btn(cls.display_name or name, f"gateway:{group_id}:{name}")]
        for name, cls in GATEWAY_CLASSES.items()
    ]
    return InlineKeyboardMarkup(inline_keyboard=rows)


def groups_list(policies: list[GroupPolicy]) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [_btn(p.group_title or str(p.group_id), f"manage:{p.group_id}")] for p in policies
    ])


def subscribe_offer(group_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[[_btn("💳 Subscribe", f"pay:{group_id}")]])


def pay_link(url: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[[InlineKeyboardButton(text="💳 Pay now", url=url)]])


def back_to(menu: ReturnMenu | None, group_id: int) -> InlineKeyboardMarkup | None:
    if menu is None:
        return None
    if menu == ReturnMenu.REGISTRATION:
        return InlineKeyboardMarkup(inline_keyboard=[[_btn("⬅️ Back to registration", f"register:{group_id}")]])
    return InlineKeyboardMarkup(inline_keyboard=[[_btn("⬅️ Back to settings", f"manage:{group_id}")]])
