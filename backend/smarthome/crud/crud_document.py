from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from smarthome.models.document import DocumentNode


class CRUDDocument:
    def get(self, db: Session, path: str) -> Optional[DocumentNode]:
        return db.get(DocumentNode, path)

    def get_revision(self, db: Session, path: str) -> int:
        result = db.execute(select(DocumentNode.revision).where(DocumentNode.path == path))
        revision = result.scalar_one_or_none()
        return revision or 0

    def compare_and_put(self, db: Session, path: str, body: Any, expected_revision: int) -> Optional[int]:
        """Replace the body only if nobody committed since ``expected_revision``.

        Returns the new revision, or ``None`` when another writer got there first.
        """
        if expected_revision == 0:
            db.add(DocumentNode(path=path, body=body, revision=1))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return None
            return 1

        result = db.execute(
            update(DocumentNode)
            .where(DocumentNode.path == path, DocumentNode.revision == expected_revision)
            .values(body=body, revision=expected_revision + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            return None
        db.commit()
        return expected_revision + 1


document_crud = CRUDDocument()
