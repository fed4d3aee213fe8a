"""
Database queries

Module organization:
- checkin.py: check-in activity log, XP balances, schema setup
"""

from checkin_rewards.db.queries.checkin import (
    SCHEMA_SQL,
    init_schema,
    PostgresActivityLog,
    PostgresBalanceStore,
)

__all__ = [
    "SCHEMA_SQL",
    "init_schema",
    "PostgresActivityLog",
    "PostgresBalanceStore",
]
