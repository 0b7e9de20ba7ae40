"""Draft service - in-memory estimate drafts, their handle and validation."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, MutableMapping, Optional

from estimator.exceptions import ValidationError
from estimator.models import ItemType
from estimator.services.calculation_service import calculate_line_item, quantize_inputs, to_decimal
from estimator.services.identifier_service import fallback_submission_key, mint_temp_id

DEFAULT_SESSION_KEY = 'estimate_draft_temp_id'


@dataclass(frozen=True)
class DraftHandle:
    """
    Temporary identity of a draft.

    temp_id is minted once per draft and used both as the guard key and as
    the placeholder entity_id of documents uploaded before the estimate exists.
    """
    temp_id: Optional[str] = None

    @classmethod
    def mint(cls) -> 'DraftHandle':
        return cls(mint_temp_id())

    @property
    def submission_key(self) -> str:
        return self.temp_id or fallback_submission_key()


@dataclass
class CustomerDetails:
    """Inline new-customer fields."""
    name: str
    address: str = ''
    city: str = ''
    state: str = ''
    zip: str = ''
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class SiteLocation:
    address: str = ''
    city: str = ''
    state: str = ''
    zip: str = ''

    def as_dict(self) -> Dict[str, str]:
        return {'address': self.address, 'city': self.city, 'state': self.state, 'zip': self.zip}


@dataclass
class DraftLineItem:
    description: str
    item_type: ItemType = ItemType.OTHER
    cost: Decimal = Decimal('0')
    markup_percentage: Decimal = Decimal('0')
    quantity: Decimal = Decimal('1')
    vendor_id: Optional[str] = None
    subcontractor_id: Optional[str] = None
    document_id: Optional[str] = None
    temp_item_id: Optional[str] = None

    def stored_inputs(self) -> Dict[str, Decimal]:
        """cost, markup_percentage and quantity as the line item row will hold them."""
        return quantize_inputs(self.cost, self.markup_percentage, self.quantity)

    def figures(self) -> Dict[str, Decimal]:
        """Derived figures; never stored on the draft itself."""
        return calculate_line_item(**self.stored_inputs())


@dataclass
class DraftEstimate:
    handle: DraftHandle
    project_name: str
    items: List[DraftLineItem] = field(default_factory=list)
    job_description: str = ''
    customer_id: Optional[str] = None
    new_customer: Optional[CustomerDetails] = None
    use_custom_location: bool = False
    location: SiteLocation = field(default_factory=SiteLocation)
    contingency_percentage: Decimal = Decimal('0')
    attached_document_ids: List[str] = field(default_factory=list)


# ----------------------------------------------------------------------
# Parsing and validation
# ----------------------------------------------------------------------

def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ''


def _optional_text(value: Any) -> Optional[str]:
    return _text(value) or None


def _number(payload: Dict[str, Any], key: str, errors: List[str], label: str, default: Decimal = Decimal('0')) -> Decimal:
    try:
        return to_decimal(payload.get(key), default=default, field=label)
    except ValueError as e:
        errors.append(str(e))
        return default


def _parse_item(index: int, payload: Dict[str, Any], errors: List[str]) -> DraftLineItem:
    label = f"Item {index + 1}"
    try:
        item_type = ItemType.parse(payload.get('item_type') or ItemType.OTHER.value)
    except ValueError as e:
        errors.append(f"{label}: {e}")
        item_type = ItemType.OTHER

    return DraftLineItem(
        description=_text(payload.get('description')),
        item_type=item_type,
        cost=_number(payload, 'cost', errors, f"{label} cost"),
        markup_percentage=_number(payload, 'markup_percentage', errors, f"{label} markup_percentage"),
        quantity=_number(payload, 'quantity', errors, f"{label} quantity", default=Decimal('1')),
        vendor_id=_optional_text(payload.get('vendor_id')),
        subcontractor_id=_optional_text(payload.get('subcontractor_id')),
        document_id=_optional_text(payload.get('document_id')),
        temp_item_id=_optional_text(payload.get('temp_item_id')),
    )


def parse_draft(payload: Dict[str, Any], handle: DraftHandle) -> DraftEstimate:
    """
    Build a DraftEstimate from a JSON/form payload.

    Raises:
        ValidationError: with every problem found
    """
    payload = payload or {}
    errors: List[str] = []

    new_customer = None
    new_customer_payload = payload.get('new_customer')
    if new_customer_payload:
        new_customer = CustomerDetails(
            name=_text(new_customer_payload.get('name')),
            address=_text(new_customer_payload.get('address')),
            city=_text(new_customer_payload.get('city')),
            state=_text(new_customer_payload.get('state')),
            zip=_text(new_customer_payload.get('zip')),
            email=_optional_text(new_customer_payload.get('email')),
            phone=_optional_text(new_customer_payload.get('phone')),
        )

    location_payload = payload.get('location') or {}
    location = SiteLocation(
        address=_text(location_payload.get('address')),
        city=_text(location_payload.get('city')),
        state=_text(location_payload.get('state')),
        zip=_text(location_payload.get('zip')),
    )

    items_payload = payload.get('items') or []
    if not isinstance(items_payload, list):
        errors.append('items must be a list')
        items_payload = []

    draft = DraftEstimate(
        handle=handle,
        project_name=_text(payload.get('project')),
        job_description=_text(payload.get('description')),
        customer_id=_optional_text(payload.get('customer')),
        new_customer=new_customer,
        use_custom_location=bool(payload.get('use_custom_location')),
        location=location,
        contingency_percentage=_number(payload, 'contingency_percentage', errors, 'contingency_percentage'),
        items=[_parse_item(i, item or {}, errors) for i, item in enumerate(items_payload)],
        attached_document_ids=[_text(d) for d in (payload.get('documents') or []) if _text(d)],
    )

    validate_draft(draft, errors)
    return draft


def validate_draft(draft: DraftEstimate, errors: Optional[List[str]] = None) -> None:
    """
    Check a draft before it is admitted for submission.

    Raises:
        ValidationError: if any rule fails (parse errors passed in are included)
    """
    errors = list(errors or [])

    if not draft.project_name:
        errors.append('Project name is required')

    if draft.new_customer is not None:
        if not draft.new_customer.name:
            errors.append('New customer name is required')
    elif not draft.customer_id:
        errors.append('Select a customer or enter a new one')

    if draft.contingency_percentage < 0:
        errors.append('Contingency percentage cannot be negative')

    if not draft.items:
        errors.append('Add at least one line item')

    seen_tokens = set()
    for index, item in enumerate(draft.items):
        label = f"Item {index + 1}"
        if not item.description:
            errors.append(f"{label}: description is required")
        if item.cost < 0:
            errors.append(f"{label}: cost cannot be negative")
        if item.markup_percentage < 0:
            errors.append(f"{label}: markup percentage cannot be negative")
        if item.stored_inputs()['quantity'] <= 0:
            errors.append(f"{label}: quantity must be greater than 0")
        if item.temp_item_id:
            if item.temp_item_id in seen_tokens:
                errors.append(f"{label}: duplicate temp_item_id {item.temp_item_id}")
            seen_tokens.add(item.temp_item_id)

    if errors:
        raise ValidationError('The estimate draft is not valid', errors)


# ----------------------------------------------------------------------
# Session-scoped handle
# ----------------------------------------------------------------------

def get_draft_handle(store: MutableMapping, key: str = DEFAULT_SESSION_KEY) -> Optional[DraftHandle]:
    """Handle stored in the session, if any."""
    temp_id = store.get(key)
    return DraftHandle(temp_id) if temp_id else None


def get_or_create_draft_handle(store: MutableMapping, key: str = DEFAULT_SESSION_KEY) -> DraftHandle:
    """
    Get the session's draft handle or mint a new one.
    The same temp_id survives page reloads for the session lifetime.
    """
    handle = get_draft_handle(store, key)
    if handle is None:
        handle = DraftHandle.mint()
        store[key] = handle.temp_id
    return handle


def clear_draft_handle(store: MutableMapping, key: str = DEFAULT_SESSION_KEY) -> None:
    """Forget the draft handle (after a successful submission)."""
    store.pop(key, None)
