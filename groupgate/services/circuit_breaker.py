"""
pybreaker circuit breakers for outbound gateway calls (PayFast ITN validation and the
subscriptions API). State lives in Redis so the API and worker processes trip together.
"""
import logging
from datetime import datetime, timezone

import pybreaker
import redis

from groupgate.core.config import settings
from groupgate.utils.metrics import circuit_breaker_state

logger = logging.getLogger("circuit_breaker")

PAYFAST_BREAKER = "payfast"


class RedisCircuitBreakerStorage(pybreaker.CircuitBreakerStorage):
    """
    Keys: cb:{name}:state, cb:{name}:fails, cb:{name}:opened_at.
    Everything expires, so a Redis flush or a forgotten breaker heals itself to CLOSED.
    Half-open success counting is not shared (single trial call per process).
    """

    def __init__(self, name: str, client: redis.Redis | None = None) -> None:
        super().__init__(name)
        self.breaker_name = name
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self._ttl = settings.cb_open_seconds * 2

    def _key(self, suffix: str) -> str:
        return f"cb:{self.breaker_name}:{suffix}"

    @property
    def state(self) -> str:
        return self.client.get(self._key("state")) or pybreaker.STATE_CLOSED

    @state.setter
    def state(self, value: str) -> None:
        self.client.set(self._key("state"), value, ex=self._ttl)
        circuit_breaker_state.labels(name=self.breaker_name).set(1 if value == pybreaker.STATE_OPEN else 0)

    @property
    def counter(self) -> int:
        return int(self.client.get(self._key("fails")) or 0)

    def increment_counter(self) -> None:
        pipe = self.client.pipeline()
        pipe.incr(self._key("fails"))
        pipe.expire(self._key("fails"), settings.cb_open_seconds)
        pipe.execute()

    def reset_counter(self) -> None:
        self.client.delete(self._key("fails"))

    @property
    def success_counter(self) -> int:
        return 0

    def increment_success_counter(self) -> None:
        return None

    def reset_success_counter(self) -> None:
        return None

    @property
    def opened_at(self) -> datetime | None:
        raw = self.client.get(self._key("opened_at"))
        return datetime.fromtimestamp(float(raw), tz=timezone.utc) if raw else None

    @opened_at.setter
    def opened_at(self, value: datetime) -> None:
        self.client.set(self._key("opened_at"), str(value.timestamp()), ex=self._ttl)


class BreakerLogListener(pybreaker.CircuitBreakerListener):
    """Logs transitions and failures with the breaker name attached."""

    def __init__(self, name: str) -> None:
        self.name = name

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        logger.warning(
            "circuit_breaker_state_change",
            extra={
                "breaker_name": self.name,
                "old_state": getattr(old_state, "name", str(old_state)),
                "new_state": getattr(new_state, "name", str(new_state)),
            },
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: Exception) -> None:
        logger.warning("circuit_breaker_failure", extra={"breaker_name": self.name, "error": type(exc).__name__})


_breakers: dict[str, pybreaker.CircuitBreaker] = {}


def get_circuit_breaker(name: str) -> pybreaker.CircuitBreaker:
    """Breaker by name, built on first use (constructing the storage connects to Redis)."""
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = pybreaker.CircuitBreaker(
            fail_max=settings.cb_fail_max,
            reset_timeout=settings.cb_open_seconds,
            state_storage=RedisCircuitBreakerStorage(name),
            listeners=[BreakerLogListener(name)],
            name=name,
        )
        _breakers[name] = breaker
    return breaker


def breaker_states(client: redis.Redis, names: tuple[str, ...] = (PAYFAST_BREAKER,)) -> dict[str, str]:
    """Shared state of each breaker as stored in Redis (readiness reporting)."""
    return {name: RedisCircuitBreakerStorage(name, client=client).state for name in names}
