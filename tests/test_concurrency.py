import threading
from decimal import Decimal

from sqlalchemy.orm import sessionmaker

from conftest import Factory
from erp_engine import sales
from erp_engine.db import Base, make_engine
from erp_engine.errors import InsufficientStock
from erp_engine.models import InventoryBatch, SalesOrder
from erp_engine.schemas import Actor, SaleCreate


def test_two_sales_racing_for_the_last_coil(tmp_path) -> None:
    engine = make_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    with Session() as db:
        factory = Factory(db)
        branch = factory.branch()
        coil = factory.product("COIL", "raw_tracked")
        batch = factory.batch(coil, branch, "100", code="COIL-A")
        payload = SaleCreate(
            branch_id=branch.id,
            items=[{"product_id": coil.id, "quantity": "100", "unit_price": "10"}],
        )
        batch_id = batch.id

    barrier = threading.Barrier(2)
    outcomes = []

    def sell(clerk: str) -> None:
        with Session() as db:
            barrier.wait()
            try:
                order = sales.create_sale(db, payload, Actor(user_id=clerk))
                outcomes.append(("ok", order.invoice_number))
            except InsufficientStock:
                outcomes.append(("short", None))

    threads = [threading.Thread(target=sell, args=(f"clerk-{n}",)) for n in (1, 2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(kind for kind, _ in outcomes) == ["ok", "short"]
    with Session() as db:
        batch = db.get(InventoryBatch, batch_id)
        assert batch.remaining_quantity == Decimal("0")
        assert batch.status == "depleted"
        assert db.query(SalesOrder).count() == 1
    engine.dispose()
