"""Customer service for resolving the customer of a submitted estimate."""
import logging
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from estimator.exceptions import NotFoundError
from estimator.models import Customer
from estimator.services.draft_service import CustomerDetails, DraftEstimate
from estimator.services.identifier_service import CUSTOMER_PREFIX, insert_with_identifier

logger = logging.getLogger(__name__)


def _record_value(record: Any, *names: str) -> Any:
    for name in names:
        value = record.get(name) if isinstance(record, dict) else getattr(record, name, None)
        if value is not None:
            return value
    return None


def _find_known_customer(known_customers: Optional[Iterable[Any]], customer_id: str) -> Optional[Customer]:
    """
    Look a customer up in the list the form already loaded.

    Records may be Customer rows or mappings with id/customerid, name/customername
    and the address fields. Mappings become detached Customer instances.
    """
    if not known_customers:
        return None

    records = known_customers.values() if isinstance(known_customers, dict) else known_customers
    for record in records:
        if isinstance(record, Customer):
            if record.customerid == customer_id:
                return record
            continue
        if _record_value(record, 'customerid', 'id') != customer_id:
            continue
        return Customer(
            customerid=customer_id,
            customername=_record_value(record, 'customername', 'name') or 'Unknown Client',
            address=_record_value(record, 'address'),
            city=_record_value(record, 'city'),
            state=_record_value(record, 'state'),
            zip=_record_value(record, 'zip'),
            contactemail=_record_value(record, 'contactemail', 'email'),
            phone=_record_value(record, 'phone'),
        )
    return None


def create_customer(session: Session, details: CustomerDetails, max_attempts: Optional[int] = None) -> Customer:
    """
    Insert a new customer with a generated CUS-###### identifier.

    The insert is committed on its own and retried with a new identifier
    on a primary key collision.
    """
    def build(customer_id: str) -> Customer:
        return Customer(
            customerid=customer_id,
            customername=details.name,
            address=details.address or None,
            city=details.city or None,
            state=details.state or None,
            zip=details.zip or None,
            contactemail=details.email,
            phone=details.phone,
        )

    customer = insert_with_identifier(session, Customer, CUSTOMER_PREFIX, build, max_attempts)
    logger.info(f"[CUSTOMER] Created customer {customer.customerid} ({customer.customername})")
    return customer


def resolve_customer(
    session: Session,
    draft: DraftEstimate,
    known_customers: Optional[Iterable[Any]] = None,
    max_attempts: Optional[int] = None
) -> Customer:
    """
    Customer the estimate will belong to.

    Inline customer fields create a new row; otherwise the selected id is
    taken from `known_customers` or, failing that, from the store.

    Raises:
        NotFoundError: the selected customer does not exist
    """
    if draft.new_customer is not None:
        return create_customer(session, draft.new_customer, max_attempts)

    customer = _find_known_customer(known_customers, draft.customer_id)
    if customer is None:
        customer = session.get(Customer, draft.customer_id)
    if customer is None:
        raise NotFoundError(f"Customer {draft.customer_id} not found")
    return customer


def list_customers(session: Session):
    """Customers ordered by name (used to populate the estimate form)."""
    return session.query(Customer).order_by(Customer.customername).all()
