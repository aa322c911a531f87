"""
Position & Demand Store

Read-only access to the latest inventory position and demand signal per key.
The latest snapshot_date (positions) or period_end (demand) is authoritative;
values are never averaged or interpolated across snapshots.

load_snapshot() reads everything a run needs exactly once and returns
immutable in-memory views, so the planners never re-read the database
partway through a run.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy import func, and_
from sqlalchemy.orm import Session

from rebalancer.models.catalog import Store, Product, ProductSku, SkuPrice
from rebalancer.models.inventory import InventoryPosition, DemandSignal

logger = logging.getLogger(__name__)

WAREHOUSE_LOCATION = "central_warehouse"
NO_COVER = 999.0
TIER_RANK = {"A": 0, "B": 1, "C": 2}


def weeks_of_cover(on_hand: int, sales_velocity: float) -> float:
    """on_hand / weekly sales; 999 when there is stock but no demand."""
    if on_hand <= 0:
        return 0.0
    if sales_velocity <= 0:
        return NO_COVER
    return on_hand / (sales_velocity * 7)


@dataclass(frozen=True)
class StoreView:
    id: int
    code: str
    name: str
    tier: str
    capacity: int
    is_warehouse: bool = False

    @property
    def tier_rank(self) -> int:
        return TIER_RANK.get((self.tier or "").upper(), len(TIER_RANK))

    @property
    def label(self) -> str:
        return self.name or self.code or str(self.id)


@dataclass(frozen=True)
class PositionView:
    product_id: int
    store_id: int
    sku: str
    size_code: str
    on_hand: int
    reserved: int
    in_transit: int
    safety_stock: int
    weeks_of_cover: float
    snapshot_date: Optional[date] = None

    @property
    def available(self) -> int:
        return max(self.on_hand - self.reserved, 0)

    @property
    def safety_deficit(self) -> int:
        """Units needed to bring on-hand plus in-transit up to safety stock."""
        return max(self.safety_stock - self.on_hand - self.in_transit, 0)


@dataclass(frozen=True)
class DemandView:
    product_id: int
    store_id: int
    sales_velocity: float
    avg_daily_sales: float
    total_sold: int
    trend: Optional[str]


@dataclass
class InventorySnapshot:
    """Everything a run reads, fetched once at run start."""
    tenant_id: str
    snapshot_date: Optional[date]
    stores: Dict[int, StoreView]
    positions: List[PositionView]
    demand: Dict[Tuple[int, int], DemandView] = field(default_factory=dict)
    product_sizes: Dict[int, Tuple[str, ...]] = field(default_factory=dict)
    sku_sizes: Dict[Tuple[int, str], str] = field(default_factory=dict)
    sku_prices: Dict[Tuple[int, str], float] = field(default_factory=dict)
    product_prices: Dict[int, float] = field(default_factory=dict)
    skipped_rows: int = 0
    # (product, store) pairs with sales in any loaded demand period
    demand_history: FrozenSet[Tuple[int, int]] = frozenset()

    def demand_for(self, product_id: int, store_id: int) -> Optional[DemandView]:
        return self.demand.get((product_id, store_id))

    def velocity(self, product_id: int, store_id: int) -> float:
        """Missing demand is a valid state and means zero velocity."""
        signal = self.demand.get((product_id, store_id))
        return float(signal.sales_velocity or 0.0) if signal else 0.0

    def trend(self, product_id: int, store_id: int) -> Optional[str]:
        signal = self.demand.get((product_id, store_id))
        return signal.trend if signal else None

    def has_sold(self, product_id: int, store_id: int) -> bool:
        """True when the pair sold in the latest period or any earlier one."""
        if (product_id, store_id) in self.demand_history:
            return True
        signal = self.demand.get((product_id, store_id))
        return bool(signal and (signal.total_sold > 0 or signal.sales_velocity > 0))

    def store(self, store_id: int) -> Optional[StoreView]:
        return self.stores.get(store_id)

    def warehouses(self) -> List[StoreView]:
        return sorted((s for s in self.stores.values() if s.is_warehouse), key=lambda s: s.id)

    def retail_stores(self) -> List[StoreView]:
        return sorted((s for s in self.stores.values() if not s.is_warehouse), key=lambda s: s.id)

    def positions_by_sku(self) -> Dict[Tuple[int, str], List[PositionView]]:
        """Positions grouped per (product, sku), keys and members in a stable order."""
        grouped: Dict[Tuple[int, str], List[PositionView]] = {}
        for p in self.positions:
            grouped.setdefault((p.product_id, p.sku), []).append(p)
        return {
            key: sorted(grouped[key], key=lambda p: p.store_id)
            for key in sorted(grouped)
        }

    def on_hand_by_store(self) -> Dict[int, int]:
        totals = {store_id: 0 for store_id in self.stores}
        for p in self.positions:
            totals[p.store_id] = totals.get(p.store_id, 0) + max(p.on_hand, 0)
        return totals

    def sku_for_size(self, product_id: int, size_code: str) -> Optional[str]:
        for (pid, sku), size in sorted(self.sku_sizes.items()):
            if pid == product_id and size == size_code:
                return sku
        return None


class PositionDemandStore:
    def __init__(self, db: Session, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    # ─────────────────────────────────────────────
    # POINT LOOKUPS
    # ─────────────────────────────────────────────

    def latest_position(self, product_id: int, store_id: int, sku: str) -> Optional[InventoryPosition]:
        """Most recent position row for the key, or None."""
        return (
            self.db.query(InventoryPosition)
            .filter(
                InventoryPosition.tenant_id == self.tenant_id,
                InventoryPosition.product_id == product_id,
                InventoryPosition.store_id == store_id,
                InventoryPosition.sku == sku,
            )
            .order_by(InventoryPosition.snapshot_date.desc())
            .first()
        )

    def latest_positions(self, product_id: int, store_id: int) -> List[InventoryPosition]:
        """Most recent position row for every SKU of a product at a store."""
        latest = self._latest_position_subquery(product_id=product_id, store_id=store_id)
        return (
            self._join_latest(latest)
            .order_by(InventoryPosition.sku)
            .all()
        )

    def latest_demand(self, product_id: int, store_id: int) -> Optional[DemandSignal]:
        """Most recent demand signal for the key, or None (treat as zero velocity)."""
        return (
            self.db.query(DemandSignal)
            .filter(
                DemandSignal.tenant_id == self.tenant_id,
                DemandSignal.product_id == product_id,
                DemandSignal.store_id == store_id,
            )
            .order_by(DemandSignal.period_end.desc(), DemandSignal.period_start.desc(), DemandSignal.id.desc())
            .first()
        )

    # ─────────────────────────────────────────────
    # FULL SNAPSHOT
    # ─────────────────────────────────────────────

    def load_snapshot(self, as_of: Optional[date] = None) -> InventorySnapshot:
        """
        Load stores, catalog, prices, latest positions and latest demand.

        Rows pointing at an unknown product or store, or at a SKU that is not
        registered for its product, are skipped and counted. Positions at
        inactive stores are ignored.
        """
        all_stores = self.db.query(Store).filter(Store.tenant_id == self.tenant_id).all()
        stores = {
            s.id: StoreView(
                id=s.id,
                code=s.code,
                name=s.name or s.code,
                tier=(s.tier or "C").upper(),
                capacity=int(s.capacity or 0),
                is_warehouse=(s.location_type == WAREHOUSE_LOCATION),
            )
            for s in all_stores
            if s.active
        }
        inactive_ids = {s.id for s in all_stores if not s.active}

        product_rows = self.db.query(Product).filter(Product.tenant_id == self.tenant_id).all()
        product_prices = {
            p.id: float(p.avg_unit_price)
            for p in product_rows
            if p.avg_unit_price is not None
        }
        product_ids = {p.id for p in product_rows}

        sku_rows = (
            self.db.query(ProductSku)
            .join(Product, ProductSku.product_id == Product.id)
            .filter(Product.tenant_id == self.tenant_id)
            .order_by(ProductSku.product_id, ProductSku.sort_order, ProductSku.id)
            .all()
        )
        sku_sizes: Dict[Tuple[int, str], str] = {}
        registered_sizes: Dict[int, List[str]] = {}
        for row in sku_rows:
            sku_sizes[(row.product_id, row.sku)] = row.size_code
            sizes = registered_sizes.setdefault(row.product_id, [])
            if row.size_code not in sizes:
                sizes.append(row.size_code)

        sku_prices = {
            (r.product_id, r.sku): float(r.avg_unit_price)
            for r in self.db.query(SkuPrice).filter(SkuPrice.tenant_id == self.tenant_id).all()
            if r.avg_unit_price is not None
        }

        demand, demand_history = self._load_demand(as_of, stores, product_ids)

        latest = self._latest_position_subquery(as_of=as_of)
        rows = (
            self._join_latest(latest)
            .order_by(InventoryPosition.product_id, InventoryPosition.sku, InventoryPosition.store_id)
            .all()
        )

        skipped = 0
        positions: List[PositionView] = []
        observed_sizes: Dict[int, List[str]] = {}
        snapshot_date = None
        for row in rows:
            if row.product_id not in product_ids:
                skipped += 1
                continue
            if row.store_id in inactive_ids:
                continue
            if row.store_id not in stores:
                skipped += 1
                continue
            if row.product_id in registered_sizes and (row.product_id, row.sku) not in sku_sizes:
                skipped += 1
                continue

            size_code = sku_sizes.get((row.product_id, row.sku), row.sku)
            if row.product_id not in registered_sizes:
                sizes = observed_sizes.setdefault(row.product_id, [])
                if size_code not in sizes:
                    sizes.append(size_code)

            on_hand = int(row.on_hand or 0)
            woc = row.weeks_of_cover
            if woc is None:
                signal = demand.get((row.product_id, row.store_id))
                woc = weeks_of_cover(on_hand, signal.sales_velocity if signal else 0.0)

            positions.append(
                PositionView(
                    product_id=row.product_id,
                    store_id=row.store_id,
                    sku=row.sku,
                    size_code=size_code,
                    on_hand=on_hand,
                    reserved=int(row.reserved or 0),
                    in_transit=int(row.in_transit or 0),
                    safety_stock=int(row.safety_stock or 0),
                    weeks_of_cover=float(woc),
                    snapshot_date=row.snapshot_date,
                )
            )
            if snapshot_date is None or row.snapshot_date > snapshot_date:
                snapshot_date = row.snapshot_date

        # Unregistered products fall back to the sizes actually observed
        for pid, sizes in observed_sizes.items():
            for size in sizes:
                sku_sizes.setdefault((pid, size), size)
        product_sizes = {pid: tuple(sizes) for pid, sizes in registered_sizes.items()}
        product_sizes.update({pid: tuple(sizes) for pid, sizes in observed_sizes.items()})

        if skipped:
            logger.warning(f"Skipped {skipped} malformed position rows for tenant {self.tenant_id}")
        logger.info(
            f"Loaded snapshot for tenant {self.tenant_id}: {len(positions)} positions, "
            f"{len(demand)} demand signals, {len(stores)} active locations"
        )

        return InventorySnapshot(
            tenant_id=self.tenant_id,
            snapshot_date=snapshot_date,
            stores=stores,
            positions=positions,
            demand=demand,
            product_sizes=product_sizes,
            sku_sizes=sku_sizes,
            sku_prices=sku_prices,
            product_prices=product_prices,
            skipped_rows=skipped,
            demand_history=demand_history,
        )

    # ─────────────────────────────────────────────
    # HELPERS
    # ─────────────────────────────────────────────

    def _latest_position_subquery(
        self,
        as_of: Optional[date] = None,
        product_id: Optional[int] = None,
        store_id: Optional[int] = None,
    ):
        """One row per (product, store, sku) holding its latest snapshot_date."""
        query = self.db.query(
            InventoryPosition.product_id.label("product_id"),
            InventoryPosition.store_id.label("store_id"),
            InventoryPosition.sku.label("sku"),
            func.max(InventoryPosition.snapshot_date).label("snapshot_date"),
        ).filter(InventoryPosition.tenant_id == self.tenant_id)
        if as_of is not None:
            query = query.filter(InventoryPosition.snapshot_date <= as_of)
        if product_id is not None:
            query = query.filter(InventoryPosition.product_id == product_id)
        if store_id is not None:
            query = query.filter(InventoryPosition.store_id == store_id)
        return query.group_by(
            InventoryPosition.product_id,
            InventoryPosition.store_id,
            InventoryPosition.sku,
        ).subquery()

    def _join_latest(self, latest):
        return (
            self.db.query(InventoryPosition)
            .join(
                latest,
                and_(
                    InventoryPosition.product_id == latest.c.product_id,
                    InventoryPosition.store_id == latest.c.store_id,
                    InventoryPosition.sku == latest.c.sku,
                    InventoryPosition.snapshot_date == latest.c.snapshot_date,
                ),
            )
            .filter(InventoryPosition.tenant_id == self.tenant_id)
        )

    def _load_demand(
        self,
        as_of: Optional[date],
        stores: Dict[int, StoreView],
        product_ids: set,
    ) -> Tuple[Dict[Tuple[int, int], DemandView], FrozenSet[Tuple[int, int]]]:
        """Latest signal per (product, store), plus every pair that ever sold."""
        query = self.db.query(DemandSignal).filter(DemandSignal.tenant_id == self.tenant_id)
        if as_of is not None:
            query = query.filter(DemandSignal.period_end <= as_of)
        rows = query.order_by(
            DemandSignal.period_end.desc(),
            DemandSignal.period_start.desc(),
            DemandSignal.id.desc(),
        ).all()

        demand: Dict[Tuple[int, int], DemandView] = {}
        sold = set()
        for row in rows:
            key = (row.product_id, row.store_id)
            if row.product_id not in product_ids or row.store_id not in stores:
                continue
            if (row.total_sold or 0) > 0 or (row.sales_velocity or 0) > 0:
                sold.add(key)
            if key in demand:
                continue  # older period
            demand[key] = DemandView(
                product_id=row.product_id,
                store_id=row.store_id,
                sales_velocity=float(row.sales_velocity or 0.0),
                avg_daily_sales=float(row.avg_daily_sales or 0.0),
                total_sold=int(row.total_sold or 0),
                trend=row.trend,
            )
        return demand, frozenset(sold)
