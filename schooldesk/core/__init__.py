# SchoolDesk Core Module
from .config import get_settings, parse_duration, settings
from .database import Base, async_session_maker, check_db_connection, engine, get_db
from .logging import setup_logging
from .revocation_store import RevocationStore, RevocationStoreError

__all__ = [
    "settings",
    "get_settings",
    "parse_duration",
    "setup_logging",
    "Base",
    "engine",
    "async_session_maker",
    "get_db",
    "check_db_connection",
    "RevocationStore",
    "RevocationStoreError",
]
