#!/usr/bin/env python3
"""
Create all tables that do not exist yet.
Run from the project root: python -m scripts.init_db
"""
from groupgate.db.base import Base
from groupgate.db.session import engine
import groupgate.models.group_policy  # noqa: F401
import groupgate.models.payment  # noqa: F401
import groupgate.models.user  # noqa: F401


def main():
    Base.metadata.create_all(engine)
    print("Tables: " + ", ".join(sorted(Base.metadata.tables)))


if __name__ == "__main__":
    main()
