"""
Pytest fixtures for branchpos backend tests.

Provides the in-memory document store, a two-branch tenant factory,
tenant contexts and the test client.
"""

import pytest
from branchpos import create_app
from branchpos.extensions import db, change_feed
from branchpos.models import OperatorDocument
from branchpos.services import activity_service, checkout_service
from branchpos.services.document_store_service import PersistenceError, create_tenant_document
from branchpos.services.tenant_service import resolve_context


TENANT_ID = "shop-1"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SYNC_TRANSPORT': 'live',
        'SYNC_POLL_INTERVAL_SECONDS': 5,
        'VAT_RATE': '0.16',
        'DEFAULT_LOAN_TERM_DAYS': 30,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh document store (and an open change feed) for each test."""
    with app.app_context():
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        change_feed.reopen()

        yield db.session

        db.session.rollback()


def tenant_payload() -> dict:
    """Two branches, one cashier each, an unassigned cashier and an admin."""
    return {
        "branches": [
            {"id": "branch-a", "name": "Branch A", "active": True},
            {"id": "branch-b", "name": "Branch B", "active": True},
        ],
        "users": [
            {"id": "admin-1", "name": "Owner", "role": "admin", "branchId": None},
            {"id": "cashier-a", "name": "Alice", "role": "cashier", "branchId": "branch-a"},
            {"id": "cashier-b", "name": "Brian", "role": "cashier", "branchId": "branch-b"},
            {"id": "cashier-x", "name": "Xavier", "role": "cashier", "branchId": "NO_BRANCH"},
        ],
        "inventory": [
            {"id": "milk-a", "name": "Milk 500ml", "sku": "MILK", "barcode": "600100",
             "quantity": 10, "sellingPrice": 1000, "costPrice": 700, "reorderLevel": 2,
             "branchId": "branch-a"},
            {"id": "bread-a", "name": "Bread", "sku": "BREAD", "quantity": 5,
             "sellingPrice": 50, "costPrice": 35, "reorderLevel": 5, "branchId": "branch-a"},
            {"id": "milk-b", "name": "Milk 500ml", "sku": "MILK", "quantity": 7,
             "sellingPrice": 1000, "costPrice": 700, "branchId": "branch-b"},
        ],
        "customers": [
            {"id": "cust-1", "name": "Jane Wanjiru", "balance": 0, "creditLimit": 5000},
            {"id": "cust-vip", "name": "VIP Hotel", "balance": 0, "creditLimit": 100000,
             "specialPricing": True, "discountRate": 10},
        ],
        "transactions": [],
        "suppliers": [{"id": "sup-1", "name": "Dairy Co"}],
        "expenses": [],
        "settings": {"currency": "KES"},
    }


@pytest.fixture(scope='function')
def make_tenant(db_session):
    """Factory: create a tenant document from a payload (defaults to tenant_payload())."""
    def _make(payload=None, tenant_id=TENANT_ID):
        return create_tenant_document(tenant_id, tenant_payload() if payload is None else payload)
    return _make


@pytest.fixture(scope='function')
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture(scope='function')
def ctx_for(tenant):
    """Factory: resolved TenantContext for an operator of the default tenant."""
    def _ctx(operator_id):
        return resolve_context(TENANT_ID, operator_id)
    return _ctx


@pytest.fixture(scope='function')
def headers_for(tenant):
    """Factory: tenant context headers for an operator of the default tenant."""
    def _headers(operator_id, tenant_id=TENANT_ID):
        return {'X-Tenant-Id': tenant_id, 'X-Operator-Id': operator_id}
    return _headers


@pytest.fixture(scope='function')
def operator_store_down(monkeypatch):
    """Operator-scoped writes (expenses, activities) fail; tenant writes still commit."""
    def _fail(snapshot):
        raise PersistenceError(
            "Failed to write operator document",
            details={"tenant_id": snapshot.tenant_id, "operator_id": snapshot.operator_id},
        )

    monkeypatch.setattr(activity_service, "write_operator_snapshot", _fail)
    monkeypatch.setattr(checkout_service, "write_operator_snapshot", _fail)


@pytest.fixture(scope='function')
def legacy_operator_document(tenant):
    """Factory: store an operator document holding an expense without a date."""
    def _store(operator_id):
        db.session.add(OperatorDocument(
            tenant_id=TENANT_ID,
            operator_id=operator_id,
            payload={"expenses": [{"id": "legacy-1", "amount": 10}]},
            revision=1,
        ))
        db.session.commit()
    return _store
