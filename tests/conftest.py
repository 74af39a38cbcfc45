import os

# Settings are read at import time; keep tests on an in-memory database and the local catalog
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("CATALOG_SEARCH_URL", None)

from datetime import date, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from procureflow.database import Base, get_db
from procureflow.models import Supplier, ItemCategory, ItemMaster
from procureflow.schemas import RFPCreate, RFPItemCreate, RFPFloat, QuotationSubmit, QuotationItemInput
from procureflow.services import rfp_service, quotation_service

ACTOR = "Priya Buyer"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def closing_date():
    return date.today() + timedelta(days=14)


@pytest.fixture
def suppliers(db):
    """Three registered suppliers"""
    rows = [
        Supplier(supplier_code="SUP-001", name="Sharma IT Solutions", email="sales@sharmait.example.com"),
        Supplier(supplier_code="SUP-002", name="NetCore Distributors", email="contact@netcore.example.com"),
        Supplier(supplier_code="SUP-003", name="Prime Computers", email="prime@computers.example.com"),
    ]
    db.add_all(rows)
    db.commit()
    return rows


@pytest.fixture
def catalog(db):
    """Catalog with one category tree and a handful of items"""
    it = ItemCategory(code="IT", name="IT Hardware")
    db.add(it)
    db.flush()
    laptops = ItemCategory(parent_id=it.id, code="LAP", name="Laptops")
    db.add(laptops)
    db.flush()

    items = [
        ItemMaster(item_code="ITM-0001", display_name="Dell Latitude 5440", model_name="Latitude 5440",
                   make="Dell", category_id=it.id, sub_category_id=laptops.id, uom="Piece",
                   reference_price=Decimal("45000")),
        ItemMaster(item_code="ITM-0002", display_name="Lenovo ThinkPad E14", model_name="ThinkPad E14",
                   make="Lenovo", category_id=it.id, sub_category_id=laptops.id, uom="Piece"),
        ItemMaster(item_code="ITM-0003", display_name="Retired Netbook", model_name="Netbook 10",
                   make="Acer", category_id=it.id, is_active=False),
    ]
    db.add_all(items)
    db.commit()
    return items


@pytest.fixture
def make_rfp(db, closing_date):
    """Factory: RFP with the given items, optionally submitted and floated"""
    def _make(items=None, float_to=None, **fields):
        items = items if items is not None else [
            RFPItemCreate(item_name="Laptop", quantity=10, unit_of_measurement="Piece",
                          indicative_price=48000, target_unit_price=46000),
            RFPItemCreate(item_name="Wireless Mouse", quantity=20, unit_of_measurement="Piece",
                          indicative_price=900),
        ]
        fields.setdefault("closing_date", closing_date)
        rfp = rfp_service.create_rfp(db, RFPCreate(items=items, **fields), ACTOR)
        if float_to is not None:
            rfp_service.submit_rfp(db, rfp, ACTOR)
            rfp_service.float_rfp(db, rfp, RFPFloat(supplier_ids=[s.id for s in float_to]), ACTOR)
        db.commit()
        return rfp

    return _make


@pytest.fixture
def floated_rfp(make_rfp, suppliers):
    """RFP (Laptop x10, Wireless Mouse x20) floated to the first two suppliers"""
    return make_rfp(float_to=suppliers[:2])


@pytest.fixture
def submit_quote(db):
    """Factory: submit a quotation with prices keyed by item name"""
    def _submit(rfp, supplier, prices, tax_rate=Decimal("18"), **fields):
        data = QuotationSubmit(
            supplier_id=supplier.id,
            items=[
                QuotationItemInput(item_name=name, unit_price=Decimal(str(price)), tax_rate=tax_rate)
                for name, price in prices.items()
            ],
            **fields
        )
        quotation = quotation_service.submit_quotation(db, rfp, data, ACTOR)
        db.commit()
        return quotation

    return _submit
