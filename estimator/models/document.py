"""Document model for files attached to estimates and their line items."""
import enum
import uuid
from sqlalchemy import Column, String, BigInteger, DateTime
from sqlalchemy.sql import func
from estimator.database import Base

TEMP_ID_PREFIX = 'temp-'


class EntityType(enum.Enum):
    """Kinds of entity a document can be attached to."""
    ESTIMATE = "ESTIMATE"
    ESTIMATE_ITEM = "ESTIMATE_ITEM"


class Document(Base):
    """
    Uploaded document metadata.

    entity_id holds a temporary identifier while the estimate or line item
    it belongs to does not exist yet; reconciliation rewrites it to the
    permanent identifier exactly once. Documents are never deleted by
    reconciliation.
    """

    __tablename__ = 'documents'

    document_id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    entity_type = Column(String(20), nullable=False, index=True)
    entity_id = Column(String(64), nullable=False, index=True)
    storage_path = Column(String(512), nullable=False)
    file_name = Column(String(255), nullable=True)
    file_type = Column(String(100), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    category = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def is_orphaned(self):
        """True while the document still points at a temporary identifier."""
        return is_temporary_id(self.entity_id)

    def __repr__(self):
        return f"<Document(document_id='{self.document_id}', entity_type='{self.entity_type}', entity_id='{self.entity_id}')>"


def is_temporary_id(value):
    """Check whether an entity id is a client-minted placeholder."""
    return bool(value) and str(value).startswith(TEMP_ID_PREFIX)
