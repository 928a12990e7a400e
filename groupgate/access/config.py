"""
Access control config: typed getters over groupgate.core.config.
"""
from __future__ import annotations

from groupgate.core.config import settings


def get_prompt_interval_seconds() -> int:
    return settings.subscription_prompt_interval_seconds
