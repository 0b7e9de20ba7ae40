"""Estimate revision model."""
from sqlalchemy import Column, BigInteger, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from estimator.database import Base


class EstimateRevision(Base):
    """Versioned snapshot of an estimate's line items."""

    __tablename__ = 'estimate_revisions'

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    estimate_id = Column(String(20), ForeignKey('estimates.estimateid'), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    is_selected_for_view = Column(Boolean, nullable=False, default=False)
    status = Column(String(30), nullable=False)
    revision_date = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    estimate = relationship('Estimate', back_populates='revisions')
    items = relationship('EstimateItem', back_populates='revision', order_by='EstimateItem.id')

    def __repr__(self):
        return f"<EstimateRevision(id={self.id}, estimate_id='{self.estimate_id}', version={self.version})>"
