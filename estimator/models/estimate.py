"""Estimate model for contractor price estimates."""
import enum
from sqlalchemy import Column, String, Numeric, DateTime, Text, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from estimator.database import Base


class EstimateStatus(enum.Enum):
    """Estimate status enum."""
    DRAFT = "draft"
    SENT = "sent"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"

    @classmethod
    def parse(cls, value):
        """Accept an enum member or its value (case-insensitive)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or '').strip().lower())
        except ValueError:
            allowed = ', '.join(s.value for s in cls)
            raise ValueError(f"Unknown estimate status '{value}'. Allowed: {allowed}")


class Estimate(Base):
    """
    Estimate (price estimate for a project).

    Amounts start at zero when the row is created and are finalized once
    the line items of the first revision are stored:
    estimateamount is the subtotal, contingencyamount the contingency and
    grandtotal their sum.
    """

    __tablename__ = 'estimates'

    estimateid = Column(String(20), primary_key=True)
    customerid = Column(String(20), ForeignKey('customers.customerid'), nullable=False)
    customername = Column(String(200), nullable=True)
    projectname = Column(String(255), nullable=False)
    job_description = Column(Text, nullable=True)
    sitelocationaddress = Column(Text, nullable=True)
    sitelocationcity = Column(String(100), nullable=True)
    sitelocationstate = Column(String(50), nullable=True)
    sitelocationzip = Column(String(20), nullable=True)
    status = Column(String(30), nullable=False, default=EstimateStatus.DRAFT.value)
    contingency_percentage = Column(Numeric(7, 2), nullable=False, default=0)
    estimateamount = Column(Numeric(14, 2), nullable=False, default=0)
    contingencyamount = Column(Numeric(14, 2), nullable=False, default=0)
    grandtotal = Column(Numeric(14, 2), nullable=False, default=0)
    isactive = Column(Boolean, nullable=False, default=True)
    datecreated = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    customer = relationship('Customer', back_populates='estimates')
    revisions = relationship('EstimateRevision', back_populates='estimate', order_by='EstimateRevision.version')

    def __repr__(self):
        return f"<Estimate(estimateid='{self.estimateid}', status='{self.status}', total={self.grandtotal})>"

    @property
    def selected_revision(self):
        """Revision currently selected for view (first revision as fallback)."""
        for revision in self.revisions:
            if revision.is_selected_for_view:
                return revision
        return self.revisions[0] if self.revisions else None
