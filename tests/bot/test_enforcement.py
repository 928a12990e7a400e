"""Tests for the bot's chat-side enforcement and group onboarding."""
import asyncio
import contextlib
import logging
from unittest.mock import AsyncMock, MagicMock, patch

from aiogram.enums import ChatMemberStatus, ChatType
from aiogram.exceptions import TelegramAPIError

from groupgate.access import AccessAction, AccessDecision, EventKind
from groupgate.bot import main as bot_main
from groupgate.services.groups.service import GroupService

GROUP = -100123


def _bot(status=ChatMemberStatus.MEMBER) -> MagicMock:
    bot = MagicMock()
    bot.id = 1
    bot.get_chat_member = AsyncMock(return_value=MagicMock(status=status))
    bot.ban_chat_member = AsyncMock()
    bot.unban_chat_member = AsyncMock()
    bot.send_message = AsyncMock()
    return bot


def _session(db=None):
    return lambda: contextlib.nullcontext(db if db is not None else MagicMock())


class TestOnboarding:
    def _event(self, user_id=99):
        event = MagicMock()
        event.chat.type = ChatType.SUPERGROUP
        event.chat.id = GROUP
        event.chat.title = "Traders"
        event.from_user.id = user_id
        return event

    def test_non_admin_adder_not_listed(self, db):
        with patch.object(bot_main, "get_db_session", _session(db)):
            asyncio.run(bot_main.on_bot_added(self._event(), _bot(ChatMemberStatus.MEMBER)))
        policy = GroupService(db).require(GROUP)
        assert policy.admin_users == []

    def test_admin_adder_listed(self, db):
        with patch.object(bot_main, "get_db_session", _session(db)):
            asyncio.run(bot_main.on_bot_added(self._event(), _bot(ChatMemberStatus.ADMINISTRATOR)))
        assert GroupService(db).require(GROUP).is_admin(99)


class TestEnforce:
    def test_failed_delete_is_logged_and_member_still_removed(self, caplog):
        bot = _bot()
        chat = MagicMock(id=GROUP, title="Traders")
        user = MagicMock(id=42, username="alice", first_name="Alice")
        message = MagicMock()
        message.delete = AsyncMock(side_effect=TelegramAPIError(method=MagicMock(), message="message can't be deleted"))
        engine = MagicMock()
        engine.return_value.evaluate.return_value = AccessDecision(
            action=AccessAction.RESTRICT_VIEW, reason="restrict_viewing"
        )

        with patch.object(bot_main, "get_db_session", _session()), \
                patch.object(bot_main, "AccessControlEngine", engine), \
                caplog.at_level(logging.WARNING, logger=bot_main.logger.name):
            asyncio.run(bot_main.enforce(bot, chat, user, EventKind.MESSAGE, message=message))

        assert "restricted_message_delete_failed" in [r.getMessage() for r in caplog.records]
        bot.ban_chat_member.assert_awaited_once_with(GROUP, 42)
        bot.unban_chat_member.assert_awaited_once_with(GROUP, 42, only_if_banned=True)
