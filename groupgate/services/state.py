"""
Per-conversation wizard state in Redis, signed with itsdangerous.
Keyed by (chat id, user id) so a private configuration dialog never sees group traffic.
"""
import logging
from typing import Any

import redis
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from groupgate.core.config import settings

logger = logging.getLogger(__name__)


class StateStore:
    """
    One signed blob per key, written with a single SETEX. The signature's max_age matches
    the key TTL, so a value that outlives its key (e.g. restored backup) is still rejected.
    """

    def __init__(self, client: redis.Redis | None = None, namespace: str = "conv") -> None:
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.serializer = URLSafeTimedSerializer(settings.state_secret, salt="conversation-state")
        self.namespace = namespace
        self.default_ttl = settings.conversation_state_ttl

    def _key(self, chat_id: int, user_id: int) -> str:
        return f"{self.namespace}:{chat_id}:{user_id}"

    def get(self, chat_id: int, user_id: int) -> dict[str, Any]:
        """Stored payload, or {} when missing, expired or tampered with."""
        raw = self.client.get(self._key(chat_id, user_id))
        if not raw:
            return {}
        try:
            data = self.serializer.loads(raw, max_age=self.default_ttl)
        except SignatureExpired:
            self.clear(chat_id, user_id)
            return {}
        except BadSignature:
            logger.warning("conversation_state_bad_signature", extra={"chat_id": chat_id, "user_id": user_id})
            self.clear(chat_id, user_id)
            return {}
        return data if isinstance(data, dict) else {}

    def set(self, chat_id: int, user_id: int, payload: dict[str, Any], ttl_seconds: int | None = None) -> None:
        self.client.setex(
            self._key(chat_id, user_id),
            ttl_seconds or self.default_ttl,
            self.serializer.dumps(payload),
        )

    def clear(self, chat_id: int, user_id: int) -> None:
        self.client.delete(self._key(chat_id, user_id))
