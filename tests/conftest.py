from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from erp_engine import ledger
from erp_engine.db import Base, enable_sqlite_foreign_keys
from erp_engine.main import app, get_db
from erp_engine.models import (
    BatchType,
    Branch,
    Contact,
    InventoryBatch,
    Product,
    Recipe,
    product_branch,
)
from erp_engine.schemas import Actor

T0 = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


class Factory:
    """Master data and stock rows for tests, committed immediately."""

    def __init__(self, db):
        self.db = db
        self._batch_clock = T0

    def _save(self, row):
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def branch(self, name: str = "Main") -> Branch:
        return self._save(Branch(name=name, is_active=True))

    def customer(self, name: str = "Acme Roofing", credit: str | None = None) -> Contact:
        contact = self._save(Contact(contact_type="customer", name=name, ledger_balance=0))
        if credit is not None:
            ledger.append_entry(
                self.db,
                contact.id,
                transaction_type=ledger.ADVANCE_PAYMENT,
                credit=Decimal(credit),
                transaction_date=T0 - timedelta(days=30),
                reference_type="seed",
            )
            self.db.commit()
        return contact

    def supplier(self, name: str = "Coil Mills") -> Contact:
        return self._save(Contact(contact_type="supplier", name=name, ledger_balance=0))

    def product(
        self,
        sku: str,
        product_type: str = "standard",
        selling_price: str = "0",
        branches: list[Branch] | None = None,
    ) -> Product:
        product = self._save(
            Product(sku=sku, name=sku.title(), product_type=product_type, selling_price=Decimal(selling_price))
        )
        for branch in branches or []:
            self.db.execute(product_branch.insert().values(product_id=product.id, branch_id=branch.id))
        self.db.commit()
        return product

    def recipe(self, virtual: Product, raw: Product, factor: str, wastage: str = "0") -> Recipe:
        return self._save(
            Recipe(
                virtual_product_id=virtual.id,
                raw_product_id=raw.id,
                conversion_factor=Decimal(factor),
                wastage_margin=Decimal(wastage),
            )
        )

    def batch_type(self, name: str = "Coil", is_active: bool = True) -> BatchType:
        return self._save(BatchType(name=name, is_active=is_active))

    def batch(self, product: Product, branch: Branch, quantity: str, code: str | None = None) -> InventoryBatch:
        self._batch_clock += timedelta(minutes=1)
        amount = Decimal(quantity)
        return self._save(
            InventoryBatch(
                product_id=product.id,
                branch_id=branch.id,
                instance_code=code or f"{product.sku}-B{self._batch_clock:%H%M}",
                initial_quantity=amount,
                remaining_quantity=amount,
                status="in_stock" if amount > 0 else "depleted",
                created_at=self._batch_clock,
            )
        )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def factory(db) -> Factory:
    return Factory(db)


@pytest.fixture
def actor() -> Actor:
    return Actor(user_id="clerk-1")


@pytest.fixture
def client(session_factory):
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
