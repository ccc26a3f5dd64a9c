"""Database connection and session management."""

from scheduled_messaging.db.session import (
    db_manager,
    init_database,
    close_database,
)
from scheduled_messaging.db.redis import (
    redis_manager,
    init_redis,
    close_redis,
)

__all__ = [
    "db_manager",
    "init_database",
    "close_database",
    "redis_manager",
    "init_redis",
    "close_redis",
]
