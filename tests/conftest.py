"""
Shared fixtures.

Planner and classifier tests build InventorySnapshot objects in memory.
Service and API tests run against a fresh in-memory SQLite database per test.
"""
import os

# Must be set before anything imports rebalancer.config
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("ENABLE_SCHEDULER", "false")

from datetime import date, timedelta  # noqa: E402
from typing import Dict, List, Optional, Tuple  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import rebalancer.models  # noqa: E402,F401
from rebalancer.config import Settings  # noqa: E402
from rebalancer.models.base import Base  # noqa: E402
from rebalancer.models.catalog import Product, ProductSku, SkuPrice, Store  # noqa: E402
from rebalancer.models.inventory import DemandSignal, InventoryPosition  # noqa: E402
from rebalancer.services.position_store import (  # noqa: E402
    DemandView,
    InventorySnapshot,
    PositionView,
    StoreView,
    weeks_of_cover,
)

TENANT = "acme"
SNAPSHOT_DATE = date(2026, 10, 1)


def sku_code(product_id: int, size: str) -> str:
    return f"P{product_id}-{size}"


# ────────────────────────────────────────────
# IN-MEMORY SNAPSHOTS
# ────────────────────────────────────────────


class SnapshotBuilder:
    """Assemble an InventorySnapshot without a database."""

    def __init__(self, tenant_id: str = TENANT, snapshot_date: date = SNAPSHOT_DATE):
        self.tenant_id = tenant_id
        self.snapshot_date = snapshot_date
        self.stores: Dict[int, StoreView] = {}
        self.demand: Dict[Tuple[int, int], DemandView] = {}
        self.product_sizes: Dict[int, Tuple[str, ...]] = {}
        self.sku_sizes: Dict[Tuple[int, str], str] = {}
        self.sku_prices: Dict[Tuple[int, str], float] = {}
        self.product_prices: Dict[int, float] = {}
        self._positions: List[dict] = []

    def store(self, store_id: int, tier: str = "B", capacity: int = 0, warehouse: bool = False):
        self.stores[store_id] = StoreView(
            id=store_id,
            code=f"S{store_id}",
            name=f"Store {store_id}" if not warehouse else "Central Warehouse",
            tier=tier,
            capacity=capacity,
            is_warehouse=warehouse,
        )
        return self

    def product(self, product_id: int, sizes=("M",), price: Optional[float] = None):
        self.product_sizes[product_id] = tuple(sizes)
        for size in sizes:
            self.sku_sizes[(product_id, sku_code(product_id, size))] = size
        if price is not None:
            self.product_prices[product_id] = price
        return self

    def sku_price(self, product_id: int, size: str, price: float):
        self.sku_prices[(product_id, sku_code(product_id, size))] = price
        return self

    def demand_signal(self, store_id: int, product_id: int, velocity: float, trend: str = "flat", total_sold: Optional[int] = None):
        self.demand[(product_id, store_id)] = DemandView(
            product_id=product_id,
            store_id=store_id,
            sales_velocity=velocity,
            avg_daily_sales=velocity,
            total_sold=int(velocity * 28) if total_sold is None else total_sold,
            trend=trend,
        )
        return self

    def position(
        self,
        store_id: int,
        product_id: int,
        size: str = "M",
        on_hand: int = 0,
        safety_stock: int = 0,
        in_transit: int = 0,
        reserved: int = 0,
        woc: Optional[float] = None,
    ):
        self._positions.append(dict(
            store_id=store_id, product_id=product_id, size=size, on_hand=on_hand,
            safety_stock=safety_stock, in_transit=in_transit, reserved=reserved, woc=woc,
        ))
        return self

    def build(self) -> InventorySnapshot:
        positions = []
        for p in self._positions:
            signal = self.demand.get((p["product_id"], p["store_id"]))
            woc = p["woc"]
            if woc is None:
                woc = weeks_of_cover(p["on_hand"], signal.sales_velocity if signal else 0.0)
            positions.append(PositionView(
                product_id=p["product_id"],
                store_id=p["store_id"],
                sku=sku_code(p["product_id"], p["size"]),
                size_code=p["size"],
                on_hand=p["on_hand"],
                reserved=p["reserved"],
                in_transit=p["in_transit"],
                safety_stock=p["safety_stock"],
                weeks_of_cover=float(woc),
                snapshot_date=self.snapshot_date,
            ))
        return InventorySnapshot(
            tenant_id=self.tenant_id,
            snapshot_date=self.snapshot_date,
            stores=dict(self.stores),
            positions=positions,
            demand=dict(self.demand),
            product_sizes=dict(self.product_sizes),
            sku_sizes=dict(self.sku_sizes),
            sku_prices=dict(self.sku_prices),
            product_prices=dict(self.product_prices),
        )


@pytest.fixture
def snapshot_builder():
    return SnapshotBuilder()


# ────────────────────────────────────────────
# DATABASE
# ────────────────────────────────────────────


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        log_to_file=False,
        enable_scheduler=False,
        lateral_same_tier_only=True,
    )


class Seeder:
    """Insert master data, positions and demand rows for one tenant."""

    def __init__(self, db, tenant_id: str = TENANT, snapshot_date: date = SNAPSHOT_DATE):
        self.db = db
        self.tenant_id = tenant_id
        self.snapshot_date = snapshot_date

    def store(self, code: str, tier: str = "B", capacity: int = 0, warehouse: bool = False, active: bool = True) -> Store:
        store = Store(
            tenant_id=self.tenant_id,
            code=code,
            name=code.title(),
            tier=tier,
            capacity=capacity,
            active=active,
            location_type="central_warehouse" if warehouse else "store",
        )
        self.db.add(store)
        self.db.commit()
        return store

    def product(self, code: str, sizes=("M",), price: Optional[float] = None) -> Product:
        product = Product(tenant_id=self.tenant_id, code=code, name=code, avg_unit_price=price)
        self.db.add(product)
        self.db.flush()
        for i, size in enumerate(sizes):
            self.db.add(ProductSku(product_id=product.id, sku=sku_code(product.id, size), size_code=size, sort_order=i))
        self.db.commit()
        return product

    def sku_price(self, product: Product, size: str, price: float) -> None:
        self.db.add(SkuPrice(tenant_id=self.tenant_id, product_id=product.id, sku=sku_code(product.id, size), avg_unit_price=price))
        self.db.commit()

    def position(
        self,
        store: Store,
        product: Product,
        size: str = "M",
        on_hand: int = 0,
        safety_stock: int = 0,
        in_transit: int = 0,
        reserved: int = 0,
        woc: Optional[float] = None,
        snapshot_date: Optional[date] = None,
    ) -> InventoryPosition:
        row = InventoryPosition(
            tenant_id=self.tenant_id,
            product_id=product.id,
            store_id=store.id,
            sku=sku_code(product.id, size),
            snapshot_date=snapshot_date or self.snapshot_date,
            on_hand=on_hand,
            reserved=reserved,
            available=max(on_hand - reserved, 0),
            in_transit=in_transit,
            safety_stock=safety_stock,
            weeks_of_cover=woc,
        )
        self.db.add(row)
        self.db.commit()
        return row

    def demand(self, store: Store, product: Product, velocity: float, trend: str = "flat", period_end: Optional[date] = None) -> DemandSignal:
        end = period_end or self.snapshot_date
        row = DemandSignal(
            tenant_id=self.tenant_id,
            product_id=product.id,
            store_id=store.id,
            period_start=end - timedelta(days=27),
            period_end=end,
            sales_velocity=velocity,
            avg_daily_sales=velocity,
            total_sold=int(round(velocity * 28)),
            trend=trend,
        )
        self.db.add(row)
        self.db.commit()
        return row


@pytest.fixture
def seed(db):
    return Seeder(db)


def seed_simple_push(seed: Seeder) -> dict:
    """Warehouse with 100 units; store A short (5 of 20 safety stock), store B comfortable."""
    warehouse = seed.store("central", tier="A", warehouse=True)
    store_a = seed.store("store-a", tier="A", capacity=1000)
    store_b = seed.store("store-b", tier="A", capacity=1000)
    product = seed.product("sku-x", sizes=("M",), price=40.0)

    seed.position(warehouse, product, on_hand=100)
    seed.position(store_a, product, on_hand=5, safety_stock=20, woc=1.0)
    seed.position(store_b, product, on_hand=30, safety_stock=20, woc=6.0)
    seed.demand(store_a, product, velocity=0.7)
    seed.demand(store_b, product, velocity=0.7)
    return {"warehouse": warehouse, "store_a": store_a, "store_b": store_b, "product": product}


@pytest.fixture
def simple_push(seed):
    return seed_simple_push(seed)
