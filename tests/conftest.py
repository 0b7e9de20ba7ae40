import pytest
from decimal import Decimal

from estimator import create_app
from estimator import database
from estimator.models import Customer, Document, EntityType
from estimator.services.draft_service import (
    CustomerDetails, DraftEstimate, DraftHandle, DraftLineItem, SiteLocation
)
from estimator.models import ItemType
from estimator.services.submission_guard import SubmissionGuard


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.TestingConfig')
    return app


@pytest.fixture(scope='function')
def session(app):
    """Database session on a fresh schema."""
    with app.app_context():
        database.create_all()
        session = database.get_session()
        yield session
        session.rollback()
        session.remove()
        database.drop_all()


@pytest.fixture(scope='function')
def client(app, session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def guard():
    """Guard scoped to one test."""
    return SubmissionGuard()


@pytest.fixture(scope='function')
def customer(session):
    """Existing customer with an address."""
    customer = Customer(
        customerid='CUS-000100',
        customername='Acme Homes',
        address='12 Main St',
        city='Springfield',
        state='IL',
        zip='62701',
        contactemail='office@acme.test',
        phone='555-0100'
    )
    session.add(customer)
    session.commit()
    return customer


@pytest.fixture(scope='function')
def make_draft():
    """Factory for valid drafts; keyword overrides replace fields."""
    def factory(**overrides):
        fields = dict(
            handle=DraftHandle('temp-1700000000000-abc123xyz'),
            project_name='Kitchen remodel',
            job_description='Replace cabinets and counters',
            customer_id='CUS-000100',
            contingency_percentage=Decimal('10'),
            items=[
                DraftLineItem(
                    description='Cabinets',
                    item_type=ItemType.VENDOR,
                    cost=Decimal('100'),
                    markup_percentage=Decimal('20'),
                    quantity=Decimal('2'),
                    vendor_id='VEN-1',
                ),
                DraftLineItem(
                    description='Install labor',
                    item_type=ItemType.LABOR,
                    cost=Decimal('50'),
                    markup_percentage=Decimal('0'),
                    quantity=Decimal('1'),
                ),
            ],
        )
        fields.update(overrides)
        return DraftEstimate(**fields)
    return factory


@pytest.fixture(scope='function')
def new_customer_details():
    return CustomerDetails(
        name='Jordan Lee',
        address='400 Oak Ave',
        city='Madison',
        state='WI',
        zip='53703',
        email='jordan@example.test'
    )


@pytest.fixture(scope='function')
def custom_location():
    return SiteLocation(address='9 Lake Rd', city='Fish Creek', state='WI', zip='54212')


@pytest.fixture(scope='function')
def add_document(session):
    """Factory inserting a document row pointing at `entity_id`."""
    def factory(document_id, entity_type, entity_id):
        document = Document(
            document_id=document_id,
            entity_type=entity_type.value if isinstance(entity_type, EntityType) else entity_type,
            entity_id=entity_id,
            storage_path=f'estimates/{entity_id}/{document_id}.pdf',
            file_name=f'{document_id}.pdf',
            file_type='application/pdf',
        )
        session.add(document)
        session.commit()
        return document
    return factory
