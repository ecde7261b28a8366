from smarthome.crud.crud_document import document_crud

__all__ = ["document_crud"]
