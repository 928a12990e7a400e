"""
Telegram client wrapper using httpx sync client.
Provides sync interface for Celery workers (no event loop issues).
"""
import time
import logging

import httpx

from groupgate.core.config import settings
from groupgate.utils.metrics import (
    telegram_requests_total,
    telegram_request_duration_seconds,
)


logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

# Descriptions Telegram returns when the member is already gone; removal is a no-op then.
_ALREADY_GONE = ("user not found", "participant_id_invalid", "user_not_participant", "member not found")


class TelegramAPIError(Exception):
    def __init__(self, method: str, error_code: int, description: str):
        self.method = method
        self.error_code = error_code
        self.description = description
        super().__init__(f"{method} -> {error_code}: {description}")


class TelegramClient:
    """
    Sync Telegram client for Celery workers.
    Uses httpx sync client - no event loop issues.
    """

    def __init__(self) -> None:
        self._token = settings.telegram_bot_token
        self._base_url = f"{TELEGRAM_API_BASE}/bot{self._token}"
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=30.0)
        return self._client

    def _record_request(self, method: str, status: str, duration: float) -> None:
        telegram_requests_total.labels(method=method, status=status).inc()
        telegram_request_duration_seconds.labels(method=method).observe(duration)

    def _api_call(self, method: str, data: dict) -> dict:
        start = time.time()
        try:
            resp = self.client.post(f"{self._base_url}/{method}", json=data)
            result = resp.json()
        except (httpx.HTTPError, ValueError):
            self._record_request(method, "error", time.time() - start)
            raise
        if not result.get("ok"):
            self._record_request(method, "error", time.time() - start)
            error_desc = result.get("description", "Unknown error")
            error_code = result.get("error_code", 0)
            logger.warning(f"Telegram API error: {method} -> {error_code}: {error_desc}")
            raise TelegramAPIError(method, error_code, error_desc)
        self._record_request(method, "success", time.time() - start)
        return result

    def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: dict | None = None,
        parse_mode: str | None = None,
    ) -> dict:
        """Send text message to chat."""
        data = {"chat_id": int(chat_id), "text": text}
        if reply_markup:
            data["reply_markup"] = reply_markup
        if parse_mode:
            data["parse_mode"] = parse_mode
        try:
            return self._api_call("sendMessage", data)
        except Exception as e:
            logger.error("Failed to send message", extra={"error": str(e), "chat_id": chat_id})
            raise

    def remove_member(self, chat_id: int, user_id: int) -> bool:
        """
        Kick without a permanent ban (ban then unban) so the user can rejoin after paying.
        Returns False when the user was no longer a member.
        """
        try:
            self._api_call("banChatMember", {"chat_id": int(chat_id), "user_id": int(user_id)})
        except TelegramAPIError as e:
            if any(marker in e.description.lower() for marker in _ALREADY_GONE):
                return False
            raise
        self._api_call(
            "unbanChatMember",
            {"chat_id": int(chat_id), "user_id": int(user_id), "only_if_banned": True},
        )
        return True

    def close(self) -> None:
        """Close httpx client."""
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.warning("Failed to close client", extra={"error": str(e)})
            self._client = None
