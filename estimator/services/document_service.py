"""
Document service - uploads, listing and temporary reference reconciliation.

Documents can be uploaded while the estimate (or one of its line items)
does not exist yet. They are then stored with a temporary entity_id:
the draft temp_id for estimate-level documents, the item temp_item_id for
line item documents. Once the rows are persisted, reconcile_documents()
rewrites those references to the permanent identifiers.

Every document update is committed on its own. A failure is logged,
counted and skipped; it never aborts the other updates and never deletes
a document. The worst case is an orphan that still points at a temporary
id, which find_orphaned_documents() and the orphan metric surface.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from estimator.blueprints.metrics import document_orphans_total
from estimator.exceptions import NotFoundError
from estimator.models import (
    Document, EntityType, Estimate, EstimateItem, ItemType, TEMP_ID_PREFIX, is_temporary_id
)
from estimator.services.draft_service import DraftEstimate

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation run."""
    updated: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    unmatched_items: List[str] = field(default_factory=list)
    orphans: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures and not self.unmatched_items and not self.orphans


# ----------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------

def _relink(session: Session, document: Document, entity_id: str, report: ReconciliationReport,
            entity_type: Optional[EntityType] = None) -> None:
    """Point one document at a permanent id; failures are recorded, not raised."""
    document_id = document.document_id
    previous = document.entity_id
    try:
        document.entity_id = entity_id
        if entity_type is not None:
            document.entity_type = entity_type.value
        session.commit()
        report.updated += 1
        logger.info(f"[DOCS] Document {document_id} relinked {previous} -> {entity_id}")
    except Exception as e:
        session.rollback()
        report.failures.append({'document_id': document_id, 'entity_id': previous, 'error': str(e)})
        logger.error(f"[DOCS] ✗ Could not relink document {document_id} from {previous}: {e}")


def _documents_for(session: Session, entity_type: EntityType, entity_id: str,
                   report: ReconciliationReport) -> List[Document]:
    try:
        return session.query(Document).filter(
            Document.entity_type == entity_type.value,
            Document.entity_id == entity_id
        ).all()
    except Exception as e:
        session.rollback()
        report.failures.append({'document_id': None, 'entity_id': entity_id, 'error': str(e)})
        logger.error(f"[DOCS] ✗ Could not load {entity_type.value} documents for {entity_id}: {e}")
        return []


def _reconcile_line_items(session: Session, draft: DraftEstimate, items: Iterable[EstimateItem],
                          report: ReconciliationReport) -> None:
    """Line item pass: temp_item_id (and still-temporary document_id links) -> item id."""
    by_token = {row.temp_item_id: row.id for row in items if row.temp_item_id}
    by_document = {row.document_id: row.id for row in items if row.document_id}

    for draft_item in draft.items:
        if not draft_item.temp_item_id:
            continue
        item_id = by_token.get(draft_item.temp_item_id)
        if item_id is None:
            report.unmatched_items.append(draft_item.temp_item_id)
            logger.warning(f"[DOCS] No persisted line item echoed token {draft_item.temp_item_id}")
            continue
        for document in _documents_for(session, EntityType.ESTIMATE_ITEM, draft_item.temp_item_id, report):
            _relink(session, document, str(item_id), report)

    for document_id, item_id in by_document.items():
        document = session.get(Document, document_id)
        if document is not None and is_temporary_id(document.entity_id):
            _relink(session, document, str(item_id), report, EntityType.ESTIMATE_ITEM)


def _reconcile_estimate(session: Session, draft: DraftEstimate, estimate_id: str,
                        report: ReconciliationReport) -> None:
    """Estimate pass: draft temp_id -> estimate id, plus attached ids still temporary."""
    temp_id = draft.handle.temp_id
    if temp_id:
        for document in _documents_for(session, EntityType.ESTIMATE, temp_id, report):
            _relink(session, document, estimate_id, report)
        # Item documents uploaded before any line item existed fall back to the estimate
        for document in _documents_for(session, EntityType.ESTIMATE_ITEM, temp_id, report):
            _relink(session, document, estimate_id, report, EntityType.ESTIMATE)

    for document_id in draft.attached_document_ids:
        document = session.get(Document, document_id)
        if document is None:
            logger.warning(f"[DOCS] Attached document {document_id} not found")
            continue
        if is_temporary_id(document.entity_id):
            _relink(session, document, estimate_id, report, EntityType.ESTIMATE)


def _count_leftovers(session: Session, draft: DraftEstimate) -> int:
    temp_ids = [draft.handle.temp_id] + [item.temp_item_id for item in draft.items]
    temp_ids = [t for t in temp_ids if t]
    if not temp_ids:
        return 0
    try:
        return session.query(Document).filter(Document.entity_id.in_(temp_ids)).count()
    except Exception as e:
        session.rollback()
        logger.error(f"[DOCS] Could not count leftover temporary references: {e}")
        return 0


def reconcile_documents(session: Session, draft: DraftEstimate, estimate_id: str,
                        items: Iterable[EstimateItem]) -> ReconciliationReport:
    """
    Rewrite temporary document references of a freshly persisted draft.

    Args:
        session: Database session
        draft: The submitted draft (handle and line item tokens)
        estimate_id: Permanent estimate id
        items: Inserted line item rows (carrying the echoed temp_item_id)

    Returns:
        ReconciliationReport; never raises for per-document failures
    """
    items = list(items)
    report = ReconciliationReport()

    _reconcile_line_items(session, draft, items, report)
    _reconcile_estimate(session, draft, estimate_id, report)

    report.orphans = _count_leftovers(session, draft)
    if report.orphans:
        document_orphans_total.inc(report.orphans)
    if report.orphans or report.failures:
        logger.warning(
            f"[DOCS] Estimate {estimate_id}: {report.orphans} document(s) still point at a "
            f"temporary id, {len(report.failures)} update(s) failed"
        )

    logger.info(f"[DOCS] Estimate {estimate_id}: {report.updated} document reference(s) reconciled")
    return report


def find_orphaned_documents(session: Session) -> List[Document]:
    """Documents still pointing at a temporary identifier."""
    return session.query(Document).filter(
        Document.entity_id.like(f"{TEMP_ID_PREFIX}%")
    ).order_by(Document.created_at).all()


# ----------------------------------------------------------------------
# Upload and listing
# ----------------------------------------------------------------------

def classify_document(file_name: str, item_type: Optional[ItemType] = None) -> str:
    """Document category from its file name and the line item type."""
    name = (file_name or '').lower()
    if 'invoice' in name or 'receipt' in name:
        return 'invoice'
    if 'quote' in name or 'proposal' in name:
        return 'vendor_quote' if item_type is ItemType.VENDOR else 'subcontractor_estimate'
    if item_type is ItemType.VENDOR:
        return 'vendor_quote'
    if item_type is ItemType.SUBCONTRACTOR:
        return 'subcontractor_estimate'
    return 'estimate'


def build_storage_path(prefix: str, entity_id: str, file_name: str) -> str:
    """Object key: <prefix>/<entity_id>/<epoch millis>-<safe name>."""
    safe_name = secure_filename(file_name) or 'document'
    return f"{prefix}/{entity_id}/{int(time.time() * 1000)}-{safe_name}"


def register_document(
    session: Session,
    storage,
    file: FileStorage,
    entity_type: EntityType,
    entity_id: str,
    prefix: str = 'estimates',
    item_type: Optional[ItemType] = None
) -> Document:
    """
    Upload a file and store its document row.

    entity_id may be temporary (draft temp_id / temp_item_id) or permanent.
    If the row cannot be stored the uploaded object is removed again.
    """
    storage_path = build_storage_path(prefix, entity_id, file.filename)
    file_size = storage.upload_file(file, storage_path)

    document = Document(
        entity_type=entity_type.value,
        entity_id=entity_id,
        storage_path=storage_path,
        file_name=file.filename,
        file_type=file.content_type,
        file_size=file_size,
        category=classify_document(file.filename, item_type),
    )
    try:
        session.add(document)
        session.commit()
    except Exception:
        session.rollback()
        storage.delete_file(storage_path)
        raise

    logger.info(f"[DOCS] Document {document.document_id} stored for {entity_type.value} {entity_id}")
    return document


def serialize_document(document: Document, storage=None) -> Dict[str, Any]:
    return {
        'document_id': document.document_id,
        'entity_type': document.entity_type,
        'entity_id': document.entity_id,
        'file_name': document.file_name,
        'file_type': document.file_type,
        'file_size': document.file_size,
        'category': document.category,
        'storage_path': document.storage_path,
        'url': storage.get_public_url(document.storage_path) if storage else None,
    }


def list_estimate_documents(session: Session, estimate_id: str, storage=None) -> List[Dict[str, Any]]:
    """Estimate-level and line-item documents of an estimate, with public URLs."""
    if session.get(Estimate, estimate_id) is None:
        raise NotFoundError(f"Estimate {estimate_id} not found")

    item_ids = [
        str(item_id) for (item_id,) in
        session.query(EstimateItem.id).filter(EstimateItem.estimate_id == estimate_id).all()
    ]

    documents = session.query(Document).filter(
        Document.entity_type == EntityType.ESTIMATE.value,
        Document.entity_id == estimate_id
    ).all()
    if item_ids:
        documents += session.query(Document).filter(
            Document.entity_type == EntityType.ESTIMATE_ITEM.value,
            Document.entity_id.in_(item_ids)
        ).all()

    return [serialize_document(d, storage) for d in documents]
