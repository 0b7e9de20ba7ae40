"""Models package - exports all SQLAlchemy models."""
from estimator.models.customer import Customer
from estimator.models.estimate import Estimate, EstimateStatus
from estimator.models.estimate_revision import EstimateRevision
from estimator.models.estimate_item import EstimateItem, ItemType
from estimator.models.document import Document, EntityType, TEMP_ID_PREFIX, is_temporary_id

__all__ = [
    'Customer',
    'Estimate', 'EstimateStatus', 'EstimateRevision',
    'EstimateItem', 'ItemType',
    'Document', 'EntityType', 'TEMP_ID_PREFIX', 'is_temporary_id',
]
