"""
Estimate submission service.

Turns a validated DraftEstimate into rows across customers, estimates,
estimate_revisions, estimate_items and documents. The store gives no
cross-table atomicity, so every step commits on its own and the failure
policy is explicit:

    step                      on failure
    ------------------------  ---------------------------------------------
    1. customer resolution    fatal
    2. location resolution    (pure)
    3. estimate creation      fatal
    4. revision creation      fatal
    5. line item bulk insert  fatal
    6. document reconcile     warning, continue
    7. totals finalization    warning, estimate keeps placeholder amounts
    8. "sent" notification    warning

A fatal failure raises SubmissionError; rows written by earlier steps are
left in place (no compensating delete). The caller catches it once.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from estimator.blueprints.metrics import estimate_submission_warnings_total, estimate_submissions_total
from estimator.exceptions import SubmissionError, ValidationError
from estimator.models import Customer, Estimate, EstimateItem, EstimateRevision, EstimateStatus, ItemType
from estimator.services.calculation_service import ZERO, calculate_contingency, calculate_line_item, money
from estimator.services.customer_service import resolve_customer
from estimator.services.document_service import ReconciliationReport, reconcile_documents
from estimator.services.draft_service import DraftEstimate, validate_draft
from estimator.services.identifier_service import ESTIMATE_PREFIX, insert_with_identifier
from estimator.services.submission_guard import SubmissionGuard, submission_guard

logger = logging.getLogger(__name__)


class SubmissionStage(enum.Enum):
    """Progress of one draft submission."""
    IDLE = "idle"
    ADMITTED = "admitted"
    CUSTOMER_RESOLVED = "customer_resolved"
    ESTIMATE_CREATED = "estimate_created"
    REVISION_CREATED = "revision_created"
    ITEMS_INSERTED = "items_inserted"
    RECONCILED = "reconciled"
    FINALIZED = "finalized"
    RELEASED = "released"


@dataclass
class SubmissionResult:
    """Outcome of EstimateSubmitter.submit(); truthy only on success."""
    success: bool = False
    duplicate: bool = False
    customer_id: Optional[str] = None
    estimate_id: Optional[str] = None
    revision_id: Optional[int] = None
    item_ids: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    stages: List[SubmissionStage] = field(default_factory=lambda: [SubmissionStage.IDLE])
    reconciliation: Optional[ReconciliationReport] = None

    def __bool__(self) -> bool:
        return self.success

    @property
    def stage(self) -> SubmissionStage:
        return self.stages[-1]

    def advance(self, stage: SubmissionStage) -> None:
        self.stages.append(stage)

    def created(self) -> Dict[str, Any]:
        """Permanent ids written so far."""
        created = {
            'customer_id': self.customer_id,
            'estimate_id': self.estimate_id,
            'revision_id': self.revision_id,
        }
        return {key: value for key, value in created.items() if value is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'duplicate': self.duplicate,
            'estimate_id': self.estimate_id,
            'customer_id': self.customer_id,
            'revision_id': self.revision_id,
            'warnings': list(self.warnings),
        }


Notifier = Callable[[Estimate, Customer, List[EstimateItem]], bool]


class EstimateSubmitter:
    """
    Submission orchestrator.

    Usage:
        submitter = EstimateSubmitter(session)
        result = submitter.submit(draft, known_customers, status='sent')
    """

    def __init__(
        self,
        session: Session,
        guard: Optional[SubmissionGuard] = None,
        notifier: Optional[Notifier] = None,
        max_identifier_attempts: Optional[int] = None,
        business_info: Optional[Dict[str, Any]] = None
    ):
        self.session = session
        self.guard = guard if guard is not None else submission_guard
        self.notifier = notifier or self._email_estimate
        self.max_identifier_attempts = max_identifier_attempts
        self.business_info = business_info or {}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def submit(
        self,
        draft: DraftEstimate,
        known_customers: Optional[Iterable[Any]] = None,
        status: Any = EstimateStatus.DRAFT
    ) -> SubmissionResult:
        """
        Persist a draft.

        Returns:
            SubmissionResult; falsy with duplicate=True (and no writes) when
            the same draft is already being submitted

        Raises:
            ValidationError: the draft or status is invalid (nothing admitted)
            SubmissionError: a fatal step failed
        """
        try:
            status = EstimateStatus.parse(status)
        except ValueError as e:
            raise ValidationError(str(e), [str(e)])
        validate_draft(draft)

        key = draft.handle.submission_key
        if not self.guard.try_admit(key):
            estimate_submissions_total.labels(outcome='duplicate').inc()
            logger.info(f"[SUBMIT] Draft {key} is already being submitted, ignoring")
            return SubmissionResult(duplicate=True)

        result = SubmissionResult()
        result.advance(SubmissionStage.ADMITTED)
        logger.info(f"[SUBMIT] Draft {key} admitted ({len(draft.items)} items, status={status.value})")

        try:
            self._persist(draft, known_customers, status, result)
            result.success = True
            estimate_submissions_total.labels(outcome='success').inc()
            logger.info(
                f"[SUBMIT] ✓ Draft {key} persisted as {result.estimate_id}"
                + (f" with {len(result.warnings)} warning(s)" if result.warnings else "")
            )
            return result
        except SubmissionError as e:
            estimate_submissions_total.labels(outcome='failed').inc()
            logger.error(f"[SUBMIT] ✗ Draft {key} failed at {e.step}: {e.message} (created: {e.created})")
            raise
        finally:
            self.guard.release(key)
            result.advance(SubmissionStage.RELEASED)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _persist(self, draft: DraftEstimate, known_customers, status: EstimateStatus,
                 result: SubmissionResult) -> None:
        customer = self._fatal('customer', result, lambda: resolve_customer(
            self.session, draft, known_customers, self.max_identifier_attempts
        ))
        result.customer_id = customer.customerid
        result.advance(SubmissionStage.CUSTOMER_RESOLVED)

        location = draft.location.as_dict() if draft.use_custom_location else customer.address_fields()

        estimate = self._fatal('estimate', result, lambda: self._create_estimate(draft, customer, location, status))
        result.estimate_id = estimate.estimateid
        result.advance(SubmissionStage.ESTIMATE_CREATED)

        revision = self._fatal('revision', result, lambda: self._create_revision(estimate, status))
        result.revision_id = revision.id
        result.advance(SubmissionStage.REVISION_CREATED)

        items = self._fatal('line_items', result, lambda: self._insert_items(draft, estimate, revision))
        result.item_ids = [item.id for item in items]
        result.advance(SubmissionStage.ITEMS_INSERTED)

        report = self._non_fatal('documents', result, lambda: reconcile_documents(
            self.session, draft, result.estimate_id, items
        ))
        if report is not None:
            result.reconciliation = report
            unlinked = report.orphans + len(report.unmatched_items)
            if report.failures or unlinked:
                self._warn(result, 'documents',
                           f"Some documents could not be linked to estimate {result.estimate_id}; "
                           "they remain attached to the draft")
        result.advance(SubmissionStage.RECONCILED)

        self._non_fatal('totals', result, lambda: self._finalize_totals(estimate, revision))
        result.advance(SubmissionStage.FINALIZED)

        if status is EstimateStatus.SENT:
            sent = self._non_fatal('notification', result, lambda: self.notifier(estimate, customer, items))
            if sent is False:
                self._warn(result, 'notification',
                           f"Estimate {result.estimate_id} was saved but could not be emailed to the customer")

    def _create_estimate(self, draft: DraftEstimate, customer: Customer, location: Dict[str, str],
                         status: EstimateStatus) -> Estimate:
        def build(estimate_id: str) -> Estimate:
            return Estimate(
                estimateid=estimate_id,
                customerid=customer.customerid,
                customername=customer.customername,
                projectname=draft.project_name,
                job_description=draft.job_description or None,
                sitelocationaddress=location.get('address', ''),
                sitelocationcity=location.get('city', ''),
                sitelocationstate=location.get('state', ''),
                sitelocationzip=location.get('zip', ''),
                status=status.value,
                contingency_percentage=draft.contingency_percentage,
                estimateamount=0,
                contingencyamount=0,
                grandtotal=0,
                isactive=True,
            )

        estimate = insert_with_identifier(
            self.session, Estimate, ESTIMATE_PREFIX, build, self.max_identifier_attempts
        )
        logger.info(f"[SUBMIT] Estimate {estimate.estimateid} created for {customer.customerid}")
        return estimate

    def _create_revision(self, estimate: Estimate, status: EstimateStatus) -> EstimateRevision:
        revision = EstimateRevision(
            estimate_id=estimate.estimateid,
            version=1,
            is_selected_for_view=True,
            status=status.value,
        )
        self.session.add(revision)
        self.session.commit()
        return revision

    def _insert_items(self, draft: DraftEstimate, estimate: Estimate,
                      revision: EstimateRevision) -> List[EstimateItem]:
        """Bulk insert; the committed rows echo back (temp_item_id, id)."""
        rows = []
        for item in draft.items:
            inputs = item.stored_inputs()
            figures = calculate_line_item(**inputs)
            rows.append(EstimateItem(
                estimate_id=estimate.estimateid,
                revision_id=revision.id,
                description=item.description,
                item_type=item.item_type.value,
                cost=inputs['cost'],
                markup_percentage=inputs['markup_percentage'],
                markup_amount=money(figures['markup_amount']),
                unit_price=money(figures['unit_price']),
                quantity=inputs['quantity'],
                total_price=money(figures['total_price']),
                gross_margin=money(figures['gross_margin']),
                gross_margin_percentage=money(figures['gross_margin_percentage']),
                vendor_id=item.vendor_id if item.item_type is ItemType.VENDOR else None,
                subcontractor_id=item.subcontractor_id if item.item_type is ItemType.SUBCONTRACTOR else None,
                document_id=item.document_id,
                temp_item_id=item.temp_item_id,
            ))

        self.session.add_all(rows)
        self.session.commit()
        logger.info(f"[SUBMIT] {len(rows)} line item(s) stored for revision {revision.id}")
        return rows

    def _finalize_totals(self, estimate: Estimate, revision: EstimateRevision) -> Dict[str, Any]:
        """
        Recompute totals from the stored rows and update the estimate.
        The subtotal is the sum of the stored total_price snapshots.
        """
        rows = self.session.query(EstimateItem).filter(EstimateItem.revision_id == revision.id).all()
        subtotal = sum((row.total_price for row in rows), ZERO)
        totals = {'subtotal': subtotal}
        totals.update(calculate_contingency(subtotal, estimate.contingency_percentage))

        estimate.estimateamount = money(totals['subtotal'])
        estimate.contingencyamount = money(totals['contingency_amount'])
        estimate.grandtotal = money(totals['grand_total'])
        self.session.commit()
        logger.info(f"[SUBMIT] Estimate {estimate.estimateid} totals finalized: {totals['grand_total']}")
        return totals

    def _email_estimate(self, estimate: Estimate, customer: Customer, items: List[EstimateItem]) -> bool:
        from estimator.services.email_service import send_estimate_email
        from estimator.services.estimate_pdf_service import render_estimate_pdf

        pdf = render_estimate_pdf(estimate, items, self.business_info)
        return send_estimate_email(estimate, customer, pdf.getvalue())

    # ------------------------------------------------------------------
    # Failure policy helpers
    # ------------------------------------------------------------------

    def _fatal(self, step: str, result: SubmissionResult, action: Callable[[], Any]) -> Any:
        try:
            return action()
        except Exception as e:
            self.session.rollback()
            logger.exception(f"[SUBMIT] Fatal failure in step '{step}'")
            message = getattr(e, 'message', None) or str(e) or e.__class__.__name__
            raise SubmissionError(step, f"Could not save the estimate ({step}): {message}", result.created()) from e

    def _non_fatal(self, step: str, result: SubmissionResult, action: Callable[[], Any]) -> Any:
        try:
            return action()
        except Exception as e:
            self.session.rollback()
            logger.exception(f"[SUBMIT] Non-fatal failure in step '{step}' for {result.estimate_id}")
            self._warn(result, step, f"Estimate {result.estimate_id} was saved, but step '{step}' failed: {e}")
            return None

    def _warn(self, result: SubmissionResult, step: str, message: str) -> None:
        estimate_submission_warnings_total.labels(step=step).inc()
        result.warnings.append(message)
