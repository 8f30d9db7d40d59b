from .connection import (
    Base,
    async_session_maker,
    close_db,
    engine,
    engine_options,
    get_db,
    init_db,
)

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_db",
    "engine_options",
    "init_db",
    "close_db",
]
