from smarthome.api.routes import router

__all__ = ["router"]
