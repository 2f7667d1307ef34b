import os

# avant tout import po_engine : la config lit DATABASE_URL à l'import
os.environ["DATABASE_URL"] = "sqlite://"

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from po_engine.app.core.config import ApprovalPolicyConfig, ApprovalThreshold  # noqa: E402
from po_engine.app.db.base import Base  # noqa: E402
from po_engine.app.db.models.core_types import Role  # noqa: E402
from po_engine.app.db.models.models_v1 import Product, Supplier, User  # noqa: E402
from po_engine.app.db.session import make_engine  # noqa: E402
from po_engine.services import audit  # noqa: F401,E402  (append-only listeners)
from po_engine.services.approval_policy import PolicyStore  # noqa: E402
from po_engine.services.engine import OrderLineInput, PurchaseOrderEngine  # noqa: E402
from po_engine.services.inventory import StockDeltaResult  # noqa: E402
from po_engine.services.notifications import InMemoryEventSink  # noqa: E402


@pytest.fixture(scope="function")
def db_session() -> Session:
    """
    Session DB isolée par test.

    Une base SQLite en mémoire neuve par test (StaticPool : une seule connexion),
    schéma créé depuis les modèles. Rien ne survit au test.
    """
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def supplier(db_session) -> Supplier:
    s = Supplier(name="TEST SUPPLIER", lead_time_days=5)
    db_session.add(s)
    db_session.commit()
    return s


@pytest.fixture
def products(db_session) -> list[Product]:
    rows = [Product(sku=f"TEST-SKU-{i}", name=f"Test product {i}", uom="unit", active=True) for i in range(1, 4)]
    db_session.add_all(rows)
    db_session.commit()
    return rows


@pytest.fixture
def users(db_session) -> dict[str, User]:
    """admin, admin2, manager, manager2, purchaser, warehouse -> user"""
    spec = {
        "admin": Role.admin,
        "admin2": Role.admin,
        "manager": Role.manager,
        "manager2": Role.manager,
        "purchaser": Role.purchaser,
        "warehouse": Role.warehouse,
    }
    rows = {key: User(name=key.upper(), role=role, active=True) for key, role in spec.items()}
    db_session.add_all(rows.values())
    db_session.commit()
    return rows


@pytest.fixture
def sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def policy_store() -> PolicyStore:
    return PolicyStore()


@pytest.fixture
def po(db_session, policy_store, sink) -> PurchaseOrderEngine:
    return PurchaseOrderEngine(db_session, policy_store=policy_store, events=sink)


def _single_approver_config(**overrides) -> ApprovalPolicyConfig:
    """Two bands, one approver each: managers below 50k, admins above."""
    return ApprovalPolicyConfig(
        thresholds=(
            ApprovalThreshold(
                id="t-manager",
                name="Manager approval",
                min_amount=Decimal("0"),
                max_amount=Decimal("50000"),
                required_roles=("manager",),
            ),
            ApprovalThreshold(
                id="t-admin",
                name="Admin approval",
                min_amount=Decimal("50000"),
                required_roles=("admin",),
            ),
        ),
        **overrides,
    )


@pytest.fixture
def single_approver_config():
    return _single_approver_config


@pytest.fixture
def make_order(po, supplier, users):
    """make_order([(product, qty, unit_cost)], submit=True) -> PurchaseOrder, created by the purchaser"""

    def _make(lines, *, submit=True, creator=None):
        creator_id = str((creator or users["purchaser"]).id)
        order = po.create_order(
            supplier.id,
            [OrderLineInput(p.id, qty, Decimal(str(cost))) for p, qty, cost in lines],
            creator_id,
        )
        if submit:
            order = po.submit_for_approval(order.id, creator_id)
        return order

    return _make


class MemoryStockRepository:
    """Non-transactional stock service double: survives rollbacks, so the engine must compensate."""

    transactional = False

    def __init__(self):
        self.levels: dict[int, int] = {}
        self.seen: dict[str, StockDeltaResult] = {}
        self.calls: list[tuple[int, int, str]] = []

    def get_current_quantity(self, product_id: int) -> int:
        return self.levels.get(product_id, 0)

    def apply_delta(self, product_id, delta, reference_id, *, reason=None) -> StockDeltaResult:
        self.calls.append((product_id, delta, reference_id))
        if reference_id in self.seen:
            prev = self.seen[reference_id]
            return StockDeltaResult(product_id, reference_id, prev.delta, prev.qty_before, prev.qty_after, applied=False)
        before = self.levels.get(product_id, 0)
        self.levels[product_id] = before + delta
        res = StockDeltaResult(product_id, reference_id, delta, before, before + delta, applied=True)
        self.seen[reference_id] = res
        return res


@pytest.fixture
def memory_stock() -> MemoryStockRepository:
    return MemoryStockRepository()
