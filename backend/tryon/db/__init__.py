"""Database package: engine lifecycle, session factory and Redis client."""

from tryon.db.base import Base, bind_engine, close_db, create_schema, get_session_factory, init_db, make_engine
from tryon.db.redis import close_redis, get_redis, init_redis, set_redis

__all__ = [
    "Base",
    "bind_engine",
    "close_db",
    "close_redis",
    "create_schema",
    "get_redis",
    "get_session_factory",
    "init_db",
    "init_redis",
    "make_engine",
    "set_redis",
]
