from smarthome.core.config import settings
from smarthome.core.database import SessionLocal
from smarthome.services.runtime import HomeRuntime

runtime = HomeRuntime.from_settings(settings, SessionLocal)


def get_runtime() -> HomeRuntime:
    return runtime


__all__ = ["HomeRuntime", "get_runtime", "runtime"]
