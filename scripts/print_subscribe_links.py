#!/usr/bin/env python3
"""
Print the subscribe deep link of every registered group (title + link).
Run from the project root: python -m scripts.print_subscribe_links
"""
from groupgate.core.config import settings
from groupgate.db.session import SessionLocal
from groupgate.models.group_policy import GroupPolicy


def main():
    username = (settings.telegram_bot_username or "").strip()
    if not username:
        print("TELEGRAM_BOT_USERNAME is not set in .env: deep links are unavailable.")
        return
    db = SessionLocal()
    try:
        policies = (
            db.query(GroupPolicy)
            .filter(GroupPolicy.is_registered.is_(True))
            .order_by(GroupPolicy.created_at)
            .all()
        )
        if not policies:
            print("No registered groups.")
            return
        print(f"Subscribe links (bot: @{username}):\n")
        for p in policies:
            state = "required" if p.subscription_required else "paused"
            link = f"https://t.me/{username}?start=subscribe_group_{p.group_id}"
            print(f"  {p.group_title or p.group_id} [{state}, {p.subscription_price} {p.subscription_currency}]\n    {link}\n")
    finally:
        db.close()


if __name__ == "__main__":
    main()
