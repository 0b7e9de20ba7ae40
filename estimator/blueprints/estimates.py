"""Estimates blueprint - draft handle, live calculation, submission and documents."""
from flask import Blueprint, request, session, jsonify, send_file, current_app
from typing import Any, Dict, Tuple

from estimator.database import get_session
from estimator.exceptions import SubmissionError, ValidationError
from estimator.models import EntityType, ItemType
from estimator.services import customer_service, document_service
from estimator.services.calculation_service import (
    calculate_estimate_totals, calculate_line_item, item_inputs, serialize_figures, to_decimal
)
from estimator.services.draft_service import (
    clear_draft_handle, get_or_create_draft_handle, parse_draft
)
from estimator.services.estimate_pdf_service import business_info_from_config, generate_estimate_pdf
from estimator.services.identifier_service import mint_temp_id
from estimator.services.storage_service import get_storage_service
from estimator.services.submission_service import EstimateSubmitter

estimates_bp = Blueprint('estimates', __name__, url_prefix='/estimates')


def _payload() -> Dict[str, Any]:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _session_key() -> str:
    return current_app.config.get('DRAFT_SESSION_KEY', 'estimate_draft_temp_id')


@estimates_bp.route('/draft', methods=['POST'])
def draft_handle():
    """
    Get the draft handle for this session, minting one if needed.
    {"new": true} abandons the current draft and starts another.
    """
    if _payload().get('new'):
        clear_draft_handle(session, _session_key())
    handle = get_or_create_draft_handle(session, _session_key())
    return jsonify({'temp_id': handle.temp_id})


@estimates_bp.route('/draft/items', methods=['POST'])
def draft_item_token():
    """Mint a temp_item_id for a line item that needs a document before it exists."""
    return jsonify({'temp_item_id': mint_temp_id()})


@estimates_bp.route('/customers', methods=['GET'])
def list_customers():
    """Customers available in the estimate form."""
    customers = customer_service.list_customers(get_session())
    return jsonify({'customers': [
        {'id': c.customerid, 'name': c.customername, **c.address_fields()} for c in customers
    ]})


@estimates_bp.route('/calculate', methods=['POST'])
def calculate():
    """Preview derived figures and totals for the items being edited."""
    payload = _payload()
    items = payload.get('items') or []
    try:
        figures = [calculate_line_item(**item_inputs(item)) for item in items]
        totals = calculate_estimate_totals(
            items, to_decimal(payload.get('contingency_percentage'), field='contingency_percentage')
        )
    except (ValueError, TypeError, AttributeError) as e:
        raise ValidationError(f'Cannot calculate totals: {e}', [str(e)])

    return jsonify({
        'items': [serialize_figures(f) for f in figures],
        'totals': serialize_figures(totals),
    })


@estimates_bp.route('/', methods=['POST'])
def submit_estimate() -> Tuple[Any, int]:
    """Validate and persist the session's draft."""
    db_session = get_session()
    payload = _payload()
    handle = get_or_create_draft_handle(session, _session_key())

    # Raises ValidationError before anything is admitted
    draft = parse_draft(payload, handle)

    submitter = EstimateSubmitter(
        db_session,
        max_identifier_attempts=current_app.config.get('IDENTIFIER_MAX_ATTEMPTS'),
        business_info=business_info_from_config(current_app.config),
    )

    try:
        result = submitter.submit(draft, status=payload.get('status') or 'draft')
    except SubmissionError as e:
        current_app.logger.error(f"Estimate submission failed at {e.step}: {e.message}")
        return jsonify({'success': False, 'message': e.message, 'step': e.step}), e.status_code

    if result.duplicate:
        return jsonify(result.to_dict()), 202

    clear_draft_handle(session, _session_key())
    for warning in result.warnings:
        current_app.logger.warning(f"Estimate {result.estimate_id}: {warning}")
    return jsonify(result.to_dict()), 201


@estimates_bp.route('/documents', methods=['POST'])
def upload_document():
    """
    Upload a document for an estimate or line item.
    entity_id defaults to the session's draft temp_id.
    """
    db_session = get_session()
    file = request.files.get('file')
    if file is None:
        raise ValidationError('No file was provided')

    try:
        entity_type = EntityType(request.form.get('entity_type', EntityType.ESTIMATE.value).upper())
        item_type = ItemType.parse(request.form['item_type']) if request.form.get('item_type') else None
    except ValueError as e:
        raise ValidationError(str(e), [str(e)])

    entity_id = request.form.get('entity_id', '').strip()
    if not entity_id:
        entity_id = get_or_create_draft_handle(session, _session_key()).temp_id

    storage = get_storage_service()
    try:
        document = document_service.register_document(
            db_session, storage, file, entity_type, entity_id,
            prefix=current_app.config.get('DOCUMENTS_PREFIX', 'estimates'),
            item_type=item_type,
        )
    except ValueError as e:
        raise ValidationError(str(e), [str(e)])

    return jsonify(document_service.serialize_document(document, storage)), 201


@estimates_bp.route('/<estimate_id>/documents', methods=['GET'])
def estimate_documents(estimate_id):
    """Documents attached to an estimate and its line items."""
    documents = document_service.list_estimate_documents(
        get_session(), estimate_id, get_storage_service()
    )
    return jsonify({'documents': documents})


@estimates_bp.route('/<estimate_id>/pdf', methods=['GET'])
def estimate_pdf(estimate_id):
    """Download the estimate as PDF."""
    buffer = generate_estimate_pdf(get_session(), estimate_id, business_info_from_config(current_app.config))
    return send_file(
        buffer,
        mimetype='application/pdf',
        as_attachment=True,
        download_name=f'{estimate_id}.pdf'
    )
