from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from smarthome.core.database import Base


class DocumentNode(Base):
    __tablename__ = "documents"

    path = Column(String, primary_key=True, index=True)
    body = Column(JSON, nullable=True)
    revision = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<DocumentNode(path={self.path}, revision={self.revision})>"
