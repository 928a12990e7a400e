"""
Telegram bot (aiogram 3).
Group events go through the access-control engine; private text goes to the configuration
wizard; callbacks drive the registration and management menus.
"""
import asyncio
import logging
from typing import Any

from aiogram import Bot, Dispatcher, F, Router, BaseMiddleware
from aiogram.enums import ChatMemberStatus, ChatType
from aiogram.exceptions import TelegramAPIError, TelegramForbiddenError
from aiogram.filters import JOIN_TRANSITION, ChatMemberUpdatedFilter, Command, CommandObject, CommandStart, Filter
from aiogram.types import (
    CallbackQuery,
    Chat,
    ChatMemberUpdated,
    ErrorEvent,
    Message,
    TelegramObject,
    User as TgUser,
)

from groupgate.access import AccessAction, AccessControlEngine, AccessDecision, ChatEvent, EventKind
from groupgate.bot import keyboards, texts
from groupgate.core.config import settings
from groupgate.core.logging import configure_logging
from groupgate.db.session import get_db_session
from groupgate.payments.errors import ConfigurationError
from groupgate.payments.registry import GATEWAY_CLASSES, get_registry
from groupgate.services.entitlements.service import EntitlementService
from groupgate.services.groups.service import GroupNotFoundError, GroupService, RegistrationIncompleteError
from groupgate.services.payments.service import CheckoutService
from groupgate.services.state import StateStore
from groupgate.services.users.service import UserService
from groupgate.utils.metrics import members_removed_total
from groupgate.wizard import ConfigurationWizard, PaymentStep, ReturnMenu, WizardOutcome, WizardReply

configure_logging("bot")
logger = logging.getLogger(__name__)

router = Router()

GROUP_CHATS = {ChatType.GROUP, ChatType.SUPERGROUP}
ADMIN_STATUSES = {ChatMemberStatus.CREATOR, ChatMemberStatus.ADMINISTRATOR}

_state_store: StateStore | None = None


def get_state_store() -> StateStore:
    global _state_store
    if _state_store is None:
        _state_store = StateStore()
    return _state_store


class WizardInProgress(Filter):
    """Private text while a wizard step is open; matched ahead of every command handler."""

    async def __call__(self, message: Message) -> bool:
        if message.from_user is None:
            return False
        state = get_state_store().get(message.chat.id, message.from_user.id)
        return state.get("step", "idle") != "idle"


# ===========================================
# Middleware
# ===========================================
class EventErrorMiddleware(BaseMiddleware):
    """
    Per-event isolation: a failing handler is logged and the user gets a generic notice.
    Group chats get no notice (no noise in the group).
    """

    async def __call__(self, handler, event: TelegramObject, data: dict[str, Any]):
        try:
            return await handler(event, data)
        except Exception as e:
            logger.exception(
                "handler_failed",
                extra={"error": str(e), "chat_id": _chat_id_of(event)},
            )
            try:
                if isinstance(event, CallbackQuery):
                    await event.answer(texts.TRANSIENT_FAILURE, show_alert=True)
                elif isinstance(event, Message) and event.chat.type == ChatType.PRIVATE:
                    await event.answer(texts.TRANSIENT_FAILURE)
            except TelegramAPIError:
                logger.warning("handler_failure_notice_failed", extra={"chat_id": _chat_id_of(event)})
            return None


def _chat_id_of(event: TelegramObject) -> int | None:
    if isinstance(event, Message):
        return event.chat.id
    if isinstance(event, CallbackQuery) and event.message:
        return event.message.chat.id
    if isinstance(event, ChatMemberUpdated):
        return event.chat.id
    return None


# ===========================================
# Telegram helpers
# ===========================================
async def _is_group_admin(bot: Bot, chat_id: int, user_id: int) -> bool:
    try:
        member = await bot.get_chat_member(chat_id, user_id)
    except TelegramAPIError as e:
        logger.warning("admin_check_failed", extra={"chat_id": chat_id, "user_id": user_id, "error": str(e)})
        return False
    return member.status in ADMIN_STATUSES


async def _bot_can_remove(bot: Bot, chat_id: int) -> bool:
    try:
        member = await bot.get_chat_member(chat_id, bot.id)
    except TelegramAPIError:
        return False
    if member.status == ChatMemberStatus.CREATOR:
        return True
    return member.status == ChatMemberStatus.ADMINISTRATOR and bool(getattr(member, "can_restrict_members", False))


async def _notify(bot: Bot, user_id: int, text: str, reply_markup=None) -> None:
    """DM a user; users who never started the bot cannot be messaged."""
    try:
        await bot.send_message(user_id, text, reply_markup=reply_markup)
    except TelegramForbiddenError:
        logger.info("dm_not_allowed", extra={"user_id": user_id})
    except TelegramAPIError as e:
        logger.warning("dm_failed", extra={"user_id": user_id, "error": str(e)})


async def _remove_member(bot: Bot, chat_id: int, user_id: int) -> None:
    """Ban + unban: removes without blocking a later rejoin."""
    await bot.ban_chat_member(chat_id, user_id)
    await bot.unban_chat_member(chat_id, user_id, only_if_banned=True)


# ===========================================
# Access enforcement
# ===========================================
async def enforce(bot: Bot, chat: Chat, user: TgUser, kind: EventKind, message: Message | None = None) -> AccessDecision:
    is_admin = await _is_group_admin(bot, chat.id, user.id)
    can_remove = await _bot_can_remove(bot, chat.id)
    event = ChatEvent(
        user_id=user.id,
        group_id=chat.id,
        kind=kind,
        group_title=chat.title,
        username=user.username,
        first_name=user.first_name,
    )
    with get_db_session() as db:
        decision = AccessControlEngine(db).evaluate(event, is_admin=is_admin, can_remove_members=can_remove)

    if decision.action == AccessAction.RESTRICT_SEND and message is not None:
        try:
            await message.delete()
        except TelegramAPIError as e:
            logger.warning("restricted_message_delete_failed", extra={"chat_id": chat.id, "error": str(e)})
        await _notify(bot, user.id, texts.send_restricted(chat.title, chat.id))
    elif decision.action == AccessAction.RESTRICT_VIEW:
        if message is not None and kind == EventKind.MESSAGE:
            try:
                await message.delete()
            except TelegramAPIError as e:
                logger.warning("restricted_message_delete_failed", extra={"chat_id": chat.id, "error": str(e)})
        await _remove_member(bot, chat.id, user.id)
        members_removed_total.labels(source="join" if kind == EventKind.MEMBER_JOIN else "message").inc()
        await _notify(bot, user.id, texts.view_restricted(chat.title, chat.id))
    elif decision.action == AccessAction.GRANT_TRIAL:
        await _notify(bot, user.id, texts.trial_granted(chat.title, chat.id, decision.trial_days or 0))

    if decision.send_prompt:
        await _notify(bot, user.id, texts.subscribe_prompt(chat.title, chat.id))
    return decision


# ===========================================
# Group lifecycle
# ===========================================
@router.my_chat_member(ChatMemberUpdatedFilter(member_status_changed=JOIN_TRANSITION))
async def on_bot_added(event: ChatMemberUpdated, bot: Bot) -> None:
    if event.chat.type not in GROUP_CHATS:
        return
    adder = event.from_user
    # Only a live chat administrator is put on the stored admin list
    adder_is_admin = adder is not None and await _is_group_admin(bot, event.chat.id, adder.id)
    with get_db_session() as db:
        GroupService(db).get_or_create(event.chat.id, event.chat.title, added_by=adder.id if adder_is_admin else None)
    logger.info("bot_added_to_group", extra={"group_id": event.chat.id, "user_id": adder.id if adder else None})
    if adder:
        await _notify(
            bot,
            adder.id,
            f"👋 Thanks for adding me to {event.chat.title}! Register the group to start charging for access.",
            reply_markup=keyboards.registration_menu(event.chat.id),
        )


@router.message(F.chat.type.in_(GROUP_CHATS), F.new_chat_members)
async def on_members_joined(message: Message, bot: Bot) -> None:
    for member in message.new_chat_members:
        if member.is_bot:
            continue
        decision = await enforce(bot, message.chat, member, EventKind.MEMBER_JOIN)
        if not decision.allowed:
            continue
        with get_db_session() as db:
            policy = GroupService(db).get(message.chat.id)
            welcome = policy.welcome_message if policy else None
        if welcome:
            await message.answer(f"{member.first_name}, {welcome}")


@router.message(F.chat.type.in_(GROUP_CHATS), Command("manage_this_group"))
async def cmd_manage_this_group(message: Message, bot: Bot) -> None:
    if not message.from_user or not await _is_group_admin(bot, message.chat.id, message.from_user.id):
        await message.reply("Only group admins can manage this group.")
        return
    with get_db_session() as db:
        policy = GroupService(db).get_or_create(message.chat.id, message.chat.title, added_by=message.from_user.id)
        markup = keyboards.management_menu(policy)
        header = texts.management_header(policy)
    await _notify(bot, message.from_user.id, header, reply_markup=markup)
    await message.reply("I've sent you the settings in a private chat.")


@router.message(F.chat.type.in_(GROUP_CHATS), F.from_user)
async def on_group_message(message: Message, bot: Bot) -> None:
    if message.from_user.is_bot or message.sender_chat is not None or message.left_chat_member is not None:
        return
    await enforce(bot, message.chat, message.from_user, EventKind.MESSAGE, message=message)


# ===========================================
# Private commands
# ===========================================
@router.message(F.chat.type == ChatType.PRIVATE, F.text, WizardInProgress())
async def on_wizard_text(message: Message) -> None:
    """An open wizard step consumes all text, commands included (/cancel is its own token)."""
    await _answer_wizard(message)


@router.message(F.chat.type == ChatType.PRIVATE, CommandStart())
async def cmd_start(message: Message, command: CommandObject) -> None:
    args = (command.args or "").strip()
    if args.startswith("subscribe_group_"):
        try:
            group_id = int(args.removeprefix("subscribe_group_"))
        except ValueError:
            await message.answer(texts.HELP)
            return
        await _show_offer(message, group_id)
        return
    with get_db_session() as db:
        UserService(db).get_or_create_user(message.from_user.id, message.from_user.username, message.from_user.first_name)
    await message.answer(texts.HELP)


async def _show_offer(message: Message, group_id: int) -> None:
    with get_db_session() as db:
        policy = GroupService(db).get(group_id)
        if policy is None or not policy.is_registered or not policy.subscription_required:
            await message.answer("This group is not accepting subscriptions.")
            return
        text = (
            f"📢 {policy.group_title}\n"
            f"💰 {policy.subscription_price} {policy.subscription_currency} per month"
        )
    await message.answer(text, reply_markup=keyboards.subscribe_offer(group_id))


@router.message(F.chat.type == ChatType.PRIVATE, Command("help"))
async def cmd_help(message: Message) -> None:
    await message.answer(texts.HELP)


@router.message(F.chat.type == ChatType.PRIVATE, Command("status"))
async def cmd_status(message: Message) -> None:
    with get_db_session() as db:
        user = UserService(db).get_by_telegram_id(message.from_user.id)
        subs = EntitlementService(db).list_subscriptions(user) if user else []
        lines = []
        for sub in subs:
            kind = " (trial)" if sub.is_trial else " (admin)" if sub.is_admin_subscription else ""
            state = "active" if sub.is_active() else "expired"
            until = sub.subscription_expires_at.strftime("%Y-%m-%d") if sub.subscription_expires_at else "-"
            lines.append(f"• {sub.group_title or sub.group_id}: {state}{kind}, until {until}")
    if not lines:
        await message.answer("You have no group subscriptions yet.")
        return
    await message.answer("📋 Your subscriptions:\n" + "\n".join(lines))


@router.message(F.chat.type == ChatType.PRIVATE, Command("my_groups"))
async def cmd_my_groups(message: Message) -> None:
    with get_db_session() as db:
        policies = GroupService(db).groups_administered_by(message.from_user.id)
        markup = keyboards.groups_list(policies) if policies else None
    if markup is None:
        await message.answer("You don't manage any groups with me yet. Add me to a group as an admin first.")
        return
    await message.answer("Your groups:", reply_markup=markup)


@router.message(F.chat.type == ChatType.PRIVATE, Command("cancel"))
async def cmd_cancel(message: Message) -> None:
    with get_db_session() as db:
        reply = ConfigurationWizard(db, get_state_store()).cancel(message.chat.id, message.from_user.id)
    if reply is None:
        await message.answer("Nothing to cancel.")
        return
    await message.answer(texts.CANCELLED, reply_markup=keyboards.back_to(reply.return_to, reply.group_id))


@router.message(F.chat.type == ChatType.PRIVATE, F.text)
async def on_private_text(message: Message) -> None:
    await _answer_wizard(message)


async def _answer_wizard(message: Message) -> None:
    with get_db_session() as db:
        reply = ConfigurationWizard(db, get_state_store()).handle_text(message.chat.id, message.from_user.id, message.text)
    if reply is None:
        await message.answer("I didn't understand that. Send /help to see what I can do.")
        return
    await message.answer(_wizard_text(reply), reply_markup=_wizard_markup(reply))


def _wizard_text(reply: WizardReply) -> str:
    if reply.outcome == WizardOutcome.CANCELLED:
        return texts.CANCELLED
    if reply.outcome == WizardOutcome.REJECTED:
        if reply.field == "price":
            return texts.INVALID_PRICE
        if reply.field == "grace_hours":
            return texts.INVALID_GRACE_HOURS.format(high=settings.grace_period_hours_max)
        return texts.INVALID_TRIAL_DAYS.format(low=settings.trial_days_min, high=settings.trial_days_max)
    if reply.outcome == WizardOutcome.NEXT_STEP:
        return texts.ASK_CREDENTIAL[reply.next_step.value].format(provider="PayFast")
    if reply.field == "price":
        return texts.price_saved(reply.value)
    if reply.field == "welcome_message":
        return "✅ Welcome message saved."
    if reply.field == "trial_days":
        return f"✅ New members get a {reply.value}-day free trial."
    if reply.field == "grace_hours":
        return f"✅ Existing members keep access for {reply.value} hours after subscriptions become required."
    return "✅ Payment settings saved."


def _wizard_markup(reply: WizardReply):
    if reply.outcome in (WizardOutcome.REJECTED, WizardOutcome.NEXT_STEP):
        return None
    return keyboards.back_to(reply.return_to, reply.group_id)


# ===========================================
# Callbacks
# ===========================================
def _parse(data: str) -> tuple[str, int, str | None]:
    parts = data.split(":")
    return parts[0], int(parts[1]), parts[2] if len(parts) > 2 else None


async def _guard_admin(callback: CallbackQuery, bot: Bot, group_id: int) -> bool:
    if await _is_group_admin(bot, group_id, callback.from_user.id):
        return True
    await callback.answer("Only group admins can do that.", show_alert=True)
    return False


@router.callback_query(F.data.startswith("pay:"))
async def cb_pay(callback: CallbackQuery) -> None:
    _, group_id, _ = _parse(callback.data)
    try:
        with get_db_session() as db:
            url = CheckoutService(db, get_registry()).build_checkout_url(callback.from_user.id, group_id)
    except (ConfigurationError, GroupNotFoundError) as e:
        logger.warning("checkout_unavailable", extra={"group_id": group_id, "error": str(e)})
        await callback.answer("Payments for this group are not configured yet.", show_alert=True)
        return
    await callback.message.answer("Tap to complete your subscription:", reply_markup=keyboards.pay_link(url))
    await callback.answer()


@router.callback_query(F.data.startswith("manage:"))
async def cb_manage(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, _ = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    with get_db_session() as db:
        policy = GroupService(db).require(group_id)
        markup = keyboards.management_menu(policy)
        header = texts.management_header(policy)
    await callback.message.answer(header, reply_markup=markup)
    await callback.answer()


@router.callback_query(F.data.startswith("register:"))
async def cb_register(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, _ = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    await callback.message.answer("📝 Registration", reply_markup=keyboards.registration_menu(group_id))
    await callback.answer()


@router.callback_query(F.data.startswith("complete:"))
async def cb_complete(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, _ = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    try:
        with get_db_session() as db:
            policy = GroupService(db).complete_registration(group_id)
            markup = keyboards.management_menu(policy)
    except RegistrationIncompleteError as e:
        await callback.answer("Still missing: " + ", ".join(e.missing), show_alert=True)
        return
    await callback.message.answer("🎉 Registration complete. Subscriptions are now required.", reply_markup=markup)
    await callback.answer()


@router.callback_query(F.data.startswith("monetize:"))
async def cb_monetize(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, _ = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    try:
        with get_db_session() as db:
            groups = GroupService(db)
            policy = groups.set_subscription_required(group_id, not groups.require(group_id).subscription_required)
            markup = keyboards.management_menu(policy)
    except RegistrationIncompleteError:
        await callback.answer("Register the group first.", show_alert=True)
        return
    await callback.message.edit_reply_markup(reply_markup=markup)
    await callback.answer()


@router.callback_query(F.data.startswith("toggle:"))
async def cb_toggle(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, kind = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    with get_db_session() as db:
        groups = GroupService(db)
        policy = groups.require(group_id)
        current = {
            "send": policy.restrict_non_subs_sending,
            "view": policy.restrict_non_subs_viewing,
            "remove": policy.auto_remove_non_subscribers,
            "trial": policy.user_trial_enabled,
        }[kind]
        policy = groups.set_restriction(group_id, kind, not current)
        markup = keyboards.management_menu(policy)
        enabled_removal = kind in ("view", "remove") and not current
    if enabled_removal and not await _bot_can_remove(bot, group_id):
        await callback.answer("⚠️ I need the 'Ban users' admin right for this to work.", show_alert=True)
    else:
        await callback.answer()
    await callback.message.edit_reply_markup(reply_markup=markup)


@router.callback_query(F.data.startswith("paymethod:"))
async def cb_payment_methods(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, _ = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    await callback.message.answer("Choose a payment method:", reply_markup=keyboards.payment_methods(group_id))
    await callback.answer()


@router.callback_query(F.data.startswith("gateway:"))
async def cb_gateway(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, provider = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    if provider not in GATEWAY_CLASSES:
        await callback.answer("Unknown payment method.", show_alert=True)
        return
    with get_db_session() as db:
        ConfigurationWizard(db, get_state_store()).start_payment(callback.message.chat.id, callback.from_user.id, group_id, provider)
    await callback.message.answer(texts.ASK_CREDENTIAL[PaymentStep.MERCHANT_ID.value].format(provider="PayFast"))
    await callback.answer()


@router.callback_query(F.data.startswith("price:"))
async def cb_price(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, origin = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    with get_db_session() as db:
        ConfigurationWizard(db, get_state_store()).start_price(
            callback.message.chat.id, callback.from_user.id, group_id, from_subscription_settings=origin == "settings"
        )
    await callback.message.answer(texts.ASK_PRICE.format(currency=settings.default_currency))
    await callback.answer()


@router.callback_query(F.data.startswith("welcome:"))
async def cb_welcome(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, _ = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    with get_db_session() as db:
        ConfigurationWizard(db, get_state_store()).start_welcome(
            callback.message.chat.id, callback.from_user.id, group_id, from_management_menu=True
        )
    await callback.message.answer(texts.ASK_WELCOME)
    await callback.answer()


@router.callback_query(F.data.startswith("trialdays:"))
async def cb_trial_days(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, _ = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    with get_db_session() as db:
        ConfigurationWizard(db, get_state_store()).start_trial_days(callback.message.chat.id, callback.from_user.id, group_id)
    await callback.message.answer(texts.ASK_TRIAL_DAYS.format(low=settings.trial_days_min, high=settings.trial_days_max))
    await callback.answer()


@router.callback_query(F.data.startswith("grace:"))
async def cb_grace_hours(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, _ = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    with get_db_session() as db:
        ConfigurationWizard(db, get_state_store()).start_grace_hours(callback.message.chat.id, callback.from_user.id, group_id)
    await callback.message.answer(texts.ASK_GRACE_HOURS.format(high=settings.grace_period_hours_max))
    await callback.answer()


@router.callback_query(F.data.startswith("stats:"))
async def cb_stats(callback: CallbackQuery, bot: Bot) -> None:
    _, group_id, _ = _parse(callback.data)
    if not await _guard_admin(callback, bot, group_id):
        return
    with get_db_session() as db:
        groups = GroupService(db)
        policy = groups.require(group_id)
        text = texts.group_stats(policy.group_title, group_id, groups.stats(group_id))
    await callback.message.answer(text, reply_markup=keyboards.back_to(ReturnMenu.MANAGE_GROUP, group_id))
    await callback.answer()


# ===========================================
# Entry point
# ===========================================
async def on_error(event: ErrorEvent, *args, **kwargs):
    """Global error handler."""
    logger.exception(
        "Error in handler",
        extra={"error": str(event.exception)},
    )


async def main():
    """Start the bot."""
    logger.info("Starting bot...")
    bot = Bot(token=settings.telegram_bot_token)
    dp = Dispatcher()

    dp.errors.register(on_error)
    dp.message.middleware(EventErrorMiddleware())
    dp.callback_query.middleware(EventErrorMiddleware())
    dp.my_chat_member.middleware(EventErrorMiddleware())
    dp.include_router(router)

    # Polling; webhooks are reserved for payment gateways
    await bot.delete_webhook(drop_pending_updates=False)
    logger.info("Bot started successfully!")
    try:
        await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
    finally:
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
