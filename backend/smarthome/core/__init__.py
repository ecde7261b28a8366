from smarthome.core.config import Settings, settings
from smarthome.core.database import Base, SessionLocal, engine, get_db
from smarthome.core.errors import HomeStateError, StoreTimeout, StoreUnavailable, ValidationError

__all__ = [
    "Base",
    "HomeStateError",
    "SessionLocal",
    "Settings",
    "StoreTimeout",
    "StoreUnavailable",
    "ValidationError",
    "engine",
    "get_db",
    "settings",
]
