"""EstimateItem model for estimate line items."""
import enum
from sqlalchemy import Column, BigInteger, Integer, String, Numeric, Text, ForeignKey
from sqlalchemy.orm import relationship
from estimator.database import Base


class ItemType(enum.Enum):
    """Line item type enum ('material' is stored as vendor)."""
    LABOR = "labor"
    VENDOR = "vendor"
    SUBCONTRACTOR = "subcontractor"
    FEE = "fee"
    OTHER = "other"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        normalized = str(value or '').strip().lower()
        if normalized == 'material':
            return cls.VENDOR
        try:
            return cls(normalized)
        except ValueError:
            allowed = ', '.join(t.value for t in cls)
            raise ValueError(f"Unknown item type '{value}'. Allowed: {allowed}, material")


class EstimateItem(Base):
    """
    Estimate line item.

    The derived columns (markup_amount, unit_price, total_price,
    gross_margin, gross_margin_percentage) are a snapshot computed from
    cost, markup_percentage and quantity at insert time.
    temp_item_id is the client correlation token echoed back by the
    bulk insert so uploaded documents can be re-pointed at this row.
    """

    __tablename__ = 'estimate_items'

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    estimate_id = Column(String(20), ForeignKey('estimates.estimateid'), nullable=False, index=True)
    revision_id = Column(BigInteger, ForeignKey('estimate_revisions.id'), nullable=False, index=True)
    description = Column(Text, nullable=False)
    item_type = Column(String(20), nullable=False, default=ItemType.OTHER.value)
    cost = Column(Numeric(14, 2), nullable=False, default=0)
    markup_percentage = Column(Numeric(7, 2), nullable=False, default=0)
    markup_amount = Column(Numeric(14, 2), nullable=False, default=0)
    unit_price = Column(Numeric(14, 2), nullable=False, default=0)
    quantity = Column(Numeric(12, 3), nullable=False, default=1)
    total_price = Column(Numeric(14, 2), nullable=False, default=0)
    gross_margin = Column(Numeric(14, 2), nullable=False, default=0)
    gross_margin_percentage = Column(Numeric(7, 2), nullable=False, default=0)
    vendor_id = Column(String(64), nullable=True)
    subcontractor_id = Column(String(64), nullable=True)
    document_id = Column(String(64), nullable=True)
    temp_item_id = Column(String(64), nullable=True, index=True)

    # Relationships
    revision = relationship('EstimateRevision', back_populates='items')

    def __repr__(self):
        return f"<EstimateItem(id={self.id}, revision_id={self.revision_id}, description='{self.description}', total={self.total_price})>"
