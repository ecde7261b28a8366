from smarthome.models.document import DocumentNode

__all__ = ["DocumentNode"]
