"""
Integration tests for the estimate submission pipeline.

Runs EstimateSubmitter against the in-memory database and checks which
rows exist after success, after each kind of failure, and after a
duplicate submission.
"""

import re
import pytest
from decimal import Decimal

from estimator.exceptions import SubmissionError, ValidationError
from estimator.models import Customer, Estimate, EstimateItem, EstimateRevision, ItemType
from estimator.services.calculation_service import calculate_line_item, money
from estimator.services.draft_service import DraftLineItem
from estimator.services.submission_service import EstimateSubmitter, SubmissionStage


class RecordingNotifier:
    def __init__(self, outcome=True):
        self.outcome = outcome
        self.calls = []

    def __call__(self, estimate, customer, items):
        self.calls.append((estimate.estimateid, customer.customerid, len(items)))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def submitter(session, guard, notifier):
    return EstimateSubmitter(session, guard=guard, notifier=notifier)


class TestSuccessfulSubmission:

    def test_persists_estimate_revision_and_items(self, session, customer, submitter, guard, make_draft):
        result = submitter.submit(make_draft())

        assert result
        assert re.fullmatch(r'EST-\d{6}', result.estimate_id)
        assert result.customer_id == 'CUS-000100'
        assert result.warnings == []
        assert result.stage is SubmissionStage.RELEASED
        assert len(guard) == 0

        estimate = session.get(Estimate, result.estimate_id)
        assert estimate.status == 'draft'
        assert estimate.customername == 'Acme Homes'
        assert estimate.estimateamount == Decimal('290')
        assert estimate.contingencyamount == Decimal('29')
        assert estimate.grandtotal == Decimal('319')

        revisions = session.query(EstimateRevision).filter_by(estimate_id=result.estimate_id).all()
        assert len(revisions) == 1
        assert revisions[0].version == 1
        assert revisions[0].is_selected_for_view is True
        assert revisions[0].id == result.revision_id

    def test_item_rows_carry_derived_snapshot(self, session, customer, submitter, make_draft):
        result = submitter.submit(make_draft())

        items = session.query(EstimateItem).filter_by(revision_id=result.revision_id).order_by(EstimateItem.id).all()
        assert [item.id for item in items] == result.item_ids
        assert items[0].unit_price == Decimal('120')
        assert items[0].total_price == Decimal('240')
        assert items[0].gross_margin == Decimal('40')
        assert items[0].item_type == 'vendor'
        assert items[1].total_price == Decimal('50')
        assert items[1].gross_margin_percentage == Decimal('0')

    def test_snapshot_is_computed_from_stored_inputs(self, session, customer, submitter, make_draft):
        draft = make_draft(contingency_percentage=Decimal('0'), items=[
            DraftLineItem(description='Trim', cost=Decimal('10.005'), quantity=Decimal('3')),
            DraftLineItem(description='Paint', cost=Decimal('10'), markup_percentage=Decimal('33.333'),
                          quantity=Decimal('3')),
        ])

        result = submitter.submit(draft)

        items = session.query(EstimateItem).filter_by(revision_id=result.revision_id).order_by(EstimateItem.id).all()
        assert items[0].cost == Decimal('10.00')
        assert items[0].total_price == Decimal('30.00')
        assert items[1].markup_percentage == Decimal('33.33')
        for item in items:
            expected = calculate_line_item(item.cost, item.markup_percentage, item.quantity)
            assert item.unit_price == money(expected['unit_price'])
            assert item.total_price == money(expected['total_price'])

        estimate = session.get(Estimate, result.estimate_id)
        assert estimate.estimateamount == sum(item.total_price for item in items)
        assert estimate.grandtotal == estimate.estimateamount

    def test_party_ids_only_kept_for_matching_type(self, session, customer, submitter, make_draft):
        draft = make_draft()
        draft.items[1].vendor_id = 'VEN-2'
        draft.items.append(DraftLineItem(
            description='Electrical', item_type=ItemType.SUBCONTRACTOR, cost=Decimal('300'),
            subcontractor_id='SUB-7', vendor_id='VEN-3'
        ))

        result = submitter.submit(draft)

        items = session.query(EstimateItem).filter_by(revision_id=result.revision_id).order_by(EstimateItem.id).all()
        assert (items[0].vendor_id, items[0].subcontractor_id) == ('VEN-1', None)
        assert (items[1].vendor_id, items[1].subcontractor_id) == (None, None)
        assert (items[2].vendor_id, items[2].subcontractor_id) == (None, 'SUB-7')

    def test_site_location_defaults_to_customer_address(self, session, customer, submitter, make_draft):
        result = submitter.submit(make_draft())

        estimate = session.get(Estimate, result.estimate_id)
        assert estimate.sitelocationaddress == '12 Main St'
        assert estimate.sitelocationcity == 'Springfield'

    def test_custom_location_overrides_customer_address(self, session, customer, submitter,
                                                        make_draft, custom_location):
        result = submitter.submit(make_draft(use_custom_location=True, location=custom_location))

        estimate = session.get(Estimate, result.estimate_id)
        assert estimate.sitelocationcity == 'Fish Creek'
        assert estimate.sitelocationzip == '54212'

    def test_inline_customer_is_created(self, session, submitter, make_draft, new_customer_details):
        result = submitter.submit(make_draft(customer_id=None, new_customer=new_customer_details))

        assert re.fullmatch(r'CUS-\d{6}', result.customer_id)
        created = session.get(Customer, result.customer_id)
        assert created.customername == 'Jordan Lee'
        assert session.get(Estimate, result.estimate_id).sitelocationcity == 'Madison'

    def test_sent_status_notifies_customer(self, session, customer, submitter, notifier, make_draft):
        result = submitter.submit(make_draft(), status='sent')

        assert result
        assert notifier.calls == [(result.estimate_id, 'CUS-000100', 2)]
        assert session.get(Estimate, result.estimate_id).status == 'sent'
        assert session.get(EstimateRevision, result.revision_id).status == 'sent'

    def test_draft_status_does_not_notify(self, customer, submitter, notifier, make_draft):
        submitter.submit(make_draft())
        assert notifier.calls == []


class TestRejectedBeforeAdmission:

    def test_invalid_draft_writes_nothing(self, session, customer, submitter, guard, make_draft):
        with pytest.raises(ValidationError):
            submitter.submit(make_draft(project_name=''))

        assert session.query(Estimate).count() == 0
        assert len(guard) == 0

    def test_unknown_status(self, session, customer, submitter, make_draft):
        with pytest.raises(ValidationError):
            submitter.submit(make_draft(), status='archived')

        assert session.query(Estimate).count() == 0


class TestDuplicateSubmission:

    def test_in_flight_key_is_rejected_without_writes(self, session, customer, submitter, guard, make_draft):
        draft = make_draft()
        guard.try_admit(draft.handle.submission_key)

        result = submitter.submit(draft)

        assert not result
        assert result.duplicate is True
        assert session.query(Estimate).count() == 0
        assert draft.handle.submission_key in guard

    def test_resubmission_during_notification_is_a_duplicate(self, session, customer, guard, make_draft):
        draft = make_draft()
        inner_results = []

        def notifier(estimate, customer, items):
            inner_results.append(submitter.submit(draft, status='sent'))
            return True

        submitter = EstimateSubmitter(session, guard=guard, notifier=notifier)
        result = submitter.submit(draft, status='sent')

        assert result
        assert len(inner_results) == 1
        assert inner_results[0].duplicate
        assert session.query(Estimate).count() == 1
        assert len(guard) == 0

    def test_same_draft_can_be_submitted_again_after_release(self, session, customer, submitter, make_draft):
        draft = make_draft()

        first = submitter.submit(draft)
        second = submitter.submit(draft)

        assert first and second
        assert first.estimate_id != second.estimate_id


class TestFatalFailures:

    def test_unknown_customer_aborts_before_estimate(self, session, submitter, guard, make_draft):
        with pytest.raises(SubmissionError) as exc_info:
            submitter.submit(make_draft(customer_id='CUS-999999'))

        assert exc_info.value.step == 'customer'
        assert 'CUS-999999' in exc_info.value.message
        assert session.query(Estimate).count() == 0
        assert len(guard) == 0

    def test_item_insert_failure_leaves_earlier_rows(self, session, customer, submitter, guard,
                                                     make_draft, monkeypatch):
        def broken_insert(self, draft, estimate, revision):
            raise RuntimeError('connection reset')

        monkeypatch.setattr(EstimateSubmitter, '_insert_items', broken_insert)

        with pytest.raises(SubmissionError) as exc_info:
            submitter.submit(make_draft())

        error = exc_info.value
        assert error.step == 'line_items'
        assert error.status_code == 500
        assert 'connection reset' in error.message
        assert set(error.created) == {'customer_id', 'estimate_id', 'revision_id'}

        # No compensating delete: estimate and revision stay, without items
        assert session.get(Estimate, error.created['estimate_id']) is not None
        assert session.get(EstimateRevision, error.created['revision_id']) is not None
        assert session.query(EstimateItem).count() == 0
        assert len(guard) == 0

    def test_estimate_identifier_exhaustion_is_fatal(self, session, customer, guard, make_draft, monkeypatch):
        # Every generated identifier becomes <prefix>-000001
        monkeypatch.setattr('estimator.services.identifier_service.secrets.randbelow', lambda n: 1)
        session.add(Estimate(
            estimateid='EST-000001', customerid='CUS-000100', projectname='Existing', status='draft'
        ))
        session.commit()
        session.expunge_all()

        submitter = EstimateSubmitter(session, guard=guard, max_identifier_attempts=2)
        with pytest.raises(SubmissionError) as exc_info:
            submitter.submit(make_draft())

        assert exc_info.value.step == 'estimate'
        assert exc_info.value.created == {'customer_id': 'CUS-000100'}
        assert session.query(Estimate).count() == 1


class TestNonFatalFailures:

    def test_totals_failure_keeps_placeholder_amounts(self, session, customer, submitter,
                                                      make_draft, monkeypatch):
        def broken_totals(self, estimate, revision):
            raise RuntimeError('numeric overflow')

        monkeypatch.setattr(EstimateSubmitter, '_finalize_totals', broken_totals)

        result = submitter.submit(make_draft())

        assert result
        assert len(result.warnings) == 1
        assert "'totals'" in result.warnings[0]
        assert session.get(Estimate, result.estimate_id).grandtotal == Decimal('0')
        assert session.query(EstimateItem).count() == 2

    def test_notification_not_sent_is_a_warning(self, session, customer, guard, make_draft):
        submitter = EstimateSubmitter(session, guard=guard, notifier=RecordingNotifier(outcome=False))

        result = submitter.submit(make_draft(), status='sent')

        assert result
        assert 'could not be emailed' in result.warnings[0]

    def test_notification_error_is_a_warning(self, session, customer, guard, make_draft):
        notifier = RecordingNotifier(outcome=RuntimeError('SMTP down'))
        submitter = EstimateSubmitter(session, guard=guard, notifier=notifier)

        result = submitter.submit(make_draft(), status='sent')

        assert result
        assert len(notifier.calls) == 1
        assert 'SMTP down' in result.warnings[0]
        assert len(guard) == 0
